# 重み付きランダムサンプリング
"""
静的な重みによる割り当て

[0, 1) の一様乱数に重みの合計を掛け、リスト順に累積した重みの
半開区間 [下限, 上限) に入る代替案を選ぶ。
"""

from typing import Any, List

from split_engine.algorithms.base import AllocationAlgorithm


class WeightedSample(AllocationAlgorithm):
    """重み付きランダムサンプリング

    使用例:
        algorithm = WeightedSample(rng=random.Random(42))
        alternative = algorithm.choose_alternative(experiment)
    """

    name = "weighted_sample"

    def _select(self, experiment: Any, alternatives: List[Any]) -> Any:
        total = sum(alternative.weight for alternative in alternatives)

        # 全ての重みが0の場合は均等に選択
        if total <= 0:
            return self.rng.choice(alternatives)

        point = self.rng.random() * total
        cumulative = 0.0
        for alternative in alternatives:
            cumulative += alternative.weight
            if point < cumulative:
                return alternative

        # 浮動小数点の丸めで末尾を超えた場合
        return alternatives[-1]
