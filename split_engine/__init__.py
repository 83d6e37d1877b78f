"""
split_engine: Redis を共有ストアとする A/B テスト割り当てエンジン

訪問者を実験の代替案に割り当て、参加・完了・スコアを記録し、
ベイズ推定で最良の代替案を推定する。
"""

__version__ = "1.0.0"
