# 割り当てアルゴリズム モジュール
import random
from typing import Dict, Optional, Type

from split_engine.algorithms.base import AllocationAlgorithm
from split_engine.algorithms.weighted_sample import WeightedSample
from split_engine.algorithms.whiplash import Whiplash
from split_engine.exceptions import ConfigurationError

ALGORITHMS: Dict[str, Type[AllocationAlgorithm]] = {
    WeightedSample.name: WeightedSample,
    Whiplash.name: Whiplash,
}


def get_algorithm(name: str, rng: Optional[random.Random] = None) -> AllocationAlgorithm:
    """識別子から割り当てアルゴリズムを作成

    Raises:
        ConfigurationError: 未登録の識別子の場合
    """
    try:
        algorithm_class = ALGORITHMS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown algorithm '{name}'. Available: {', '.join(sorted(ALGORITHMS))}"
        ) from None
    return algorithm_class(rng=rng)


__all__ = [
    "ALGORITHMS",
    "AllocationAlgorithm",
    "WeightedSample",
    "Whiplash",
    "get_algorithm",
]
