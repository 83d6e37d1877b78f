# 割り当てアルゴリズムの共通インターフェース
"""
割り当てアルゴリズム基底クラス

新しい試行に対して代替案を1つ選ぶ戦略の共通インターフェース。
代替案が1つしかない実験ではアルゴリズムを呼び出さずにそれを返す。
"""

import random
from abc import ABC, abstractmethod
from typing import Any, List, Optional


class AllocationAlgorithm(ABC):
    """割り当てアルゴリズム

    Attributes:
        name: レジストリ上の識別子
        rng: 乱数生成器（テスト時はシード付きのものを注入）
    """

    name: str = ""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def choose_alternative(self, experiment: Any) -> Any:
        """実験の代替案から1つを選択

        Args:
            experiment: Experiment インスタンス

        Returns:
            選択された Alternative

        Raises:
            ValueError: 代替案が1つもない場合
        """
        alternatives = experiment.alternatives
        if not alternatives:
            raise ValueError(f"experiment '{experiment.name}' has no alternatives")
        if len(alternatives) == 1:
            return alternatives[0]
        return self._select(experiment, alternatives)

    @abstractmethod
    def _select(self, experiment: Any, alternatives: List[Any]) -> Any:
        """2つ以上の代替案から1つを選択"""
