# 多腕バンディット（Whiplash）
"""
適応型の割り当て

各代替案の変換率を Beta 分布で表し、Thompson サンプリングで
期待リグレットが最小の代替案を選ぶ。

    sample_i = Beta(完了数_i + FAIRNESS, 参加数_i - 完了数_i + FAIRNESS)
    regret_i = max(sample) - sample_i

FAIRNESS は事前分布の擬似カウント。サンプル数が少ない代替案ほど
分布が広く、探索の対象として選ばれやすい。データが蓄積するほど
変換率の高い代替案に収束する。参加数がすべて0の場合は均等に選ぶ。
"""

from typing import Any, List

from split_engine.algorithms.base import AllocationAlgorithm


FAIRNESS_CONSTANT = 7


class Whiplash(AllocationAlgorithm):
    """Thompson サンプリングによる多腕バンディット"""

    name = "whiplash"

    def _select(self, experiment: Any, alternatives: List[Any]) -> Any:
        counts = experiment.alternative_counts()

        if all(c.participant_count == 0 for c in counts):
            return self.rng.choice(alternatives)

        samples = []
        for c in counts:
            completions = min(c.completed_count, c.participant_count)
            failures = c.participant_count - completions
            samples.append(
                self.rng.betavariate(completions + FAIRNESS_CONSTANT, failures + FAIRNESS_CONSTANT)
            )

        best = max(samples)
        regrets = [best - sample for sample in samples]
        lowest = min(regrets)
        candidates = [
            alternative
            for alternative, regret in zip(alternatives, regrets)
            if regret == lowest
        ]
        return self.rng.choice(candidates)
