# A/B Testing Module
"""
A/Bテスト エンジン

訪問者を実験の代替案に割り当て、参加・完了・スコアを共有ストアに記録し、
ベイズ推定で勝者確率を求める。

設計方針:
- カウンターの加算は単一キーの原子的操作、複合更新は MULTI/EXEC
- 訪問者ごとの割り当て・完了・スコアはフラグで1回に制限
- 実験のバージョンでリセット前の割り当てを分離
"""

from split_engine.ab_testing.alternative import Alternative, AlternativeCounts
from split_engine.ab_testing.catalog import ExperimentCatalog
from split_engine.ab_testing.client import AbTestResult, SplitClient
from split_engine.ab_testing.delayed_score import DelayedScoreRecord, DelayedScoreStore
from split_engine.ab_testing.experiment import Experiment
from split_engine.ab_testing.trial import Trial, TrialContext, is_excluded_visitor
from split_engine.ab_testing.winner_estimator import BayesianWinnerEstimator

__all__ = [
    "AbTestResult",
    "Alternative",
    "AlternativeCounts",
    "BayesianWinnerEstimator",
    "DelayedScoreRecord",
    "DelayedScoreStore",
    "Experiment",
    "ExperimentCatalog",
    "SplitClient",
    "Trial",
    "TrialContext",
    "is_excluded_visitor",
]
