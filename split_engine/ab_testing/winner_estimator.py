# ベイズ推定による勝者確率
"""
BayesianWinnerEstimator: モンテカルロ法による勝者確率の推定

各代替案の変換率を一様事前分布の Beta 分布でモデル化する:
    alpha = 1 + 完了数
    beta  = 1 + 参加数 - 完了数

N 回の試行で代替案ごとに変換率を1つずつサンプリングし、最大の
代替案を勝者として数える（同値の場合は先頭側が勝つ）。
勝者確率 = 勝利回数 / N。

ゴールのない実験は全体の完了数で1回、ゴールのある実験は
ゴールごとに独立して推定する。
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from split_engine.ab_testing.alternative import AlternativeCounts


logger = logging.getLogger(__name__)

DEFAULT_SIMULATIONS = 2000


class BayesianWinnerEstimator:
    """ベイズ推定による勝者確率の推定

    使用例:
        estimator = BayesianWinnerEstimator(simulations=10000, random_state=42)
        probabilities = estimator.estimate(experiment.alternative_counts())
        # {"blue": 0.31, "red": 0.69}

        estimator.calc_winning_alternatives(experiment)  # p_winner を書き込む

    Attributes:
        simulations: モンテカルロ試行回数
    """

    def __init__(self, simulations: int = DEFAULT_SIMULATIONS, random_state: Any = None):
        """BayesianWinnerEstimatorを初期化

        Args:
            simulations: モンテカルロ試行回数
            random_state: 乱数シード（または numpy.random.Generator）
        """
        if simulations <= 0:
            raise ValueError("simulations must be positive")
        self.simulations = simulations
        self._rng = np.random.default_rng(random_state)

    @staticmethod
    def beta_params(counts: Sequence[AlternativeCounts], goal: Optional[str] = None) -> List[Tuple[int, int]]:
        """代替案ごとの (alpha, beta)"""
        params = []
        for c in counts:
            conversions = c.completed(goal)
            alpha = 1 + conversions
            beta = 1 + c.participant_count - conversions
            # 完了数が参加数を上回る不整合なデータでもパラメータを正に保つ
            params.append((max(alpha, 1), max(beta, 1)))
        return params

    def estimate(
        self,
        counts: Sequence[AlternativeCounts],
        goal: Optional[str] = None,
    ) -> Dict[Any, float]:
        """勝者確率を推定

        Args:
            counts: 代替案ごとのカウンター（代替案の順序）
            goal: ゴール名（省略時は全体の完了数）

        Returns:
            代替案名 → 勝者確率
        """
        if not counts:
            return {}

        params = np.array(self.beta_params(counts, goal), dtype=float)
        samples = stats.beta.rvs(
            params[:, 0],
            params[:, 1],
            size=(self.simulations, len(counts)),
            random_state=self._rng,
        )

        # argmax は最初に現れた最大値の位置を返す
        winners = np.argmax(samples, axis=1)
        wins = np.bincount(winners, minlength=len(counts))

        return {c.name: float(w) / self.simulations for c, w in zip(counts, wins)}

    def calc_winning_alternatives(self, experiment: Any) -> Dict[Optional[str], Dict[Any, float]]:
        """実験の勝者確率を推定して各代替案に書き込む

        Args:
            experiment: Experiment インスタンス

        Returns:
            ゴール（ゴールなしは None）→ 代替案名 → 勝者確率
        """
        counts = experiment.alternative_counts()
        goals: List[Optional[str]] = list(experiment.goals) or [None]

        results: Dict[Optional[str], Dict[Any, float]] = {}
        for goal in goals:
            results[goal] = self.estimate(counts, goal)

        with experiment.connection.transaction() as txn:
            for goal, probabilities in results.items():
                for alternative in experiment.alternatives:
                    alternative.set_p_winner(
                        probabilities.get(alternative.name, 0.0), goal, transaction=txn
                    )

        logger.info(
            f"勝者確率を推定: experiment={experiment.name}, "
            f"simulations={self.simulations}, results={results}"
        )
        return results
