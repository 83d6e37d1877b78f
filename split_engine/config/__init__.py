# Config モジュール
from split_engine.config.split_config import (
    ALLOCATION_ALGORITHMS,
    SplitConfig,
    SplitHooks,
    split_config,
)

__all__ = [
    "ALLOCATION_ALGORITHMS",
    "SplitConfig",
    "SplitHooks",
    "split_config",
]
