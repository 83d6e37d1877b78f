# Persistence モジュール
"""訪問者ストア

訪問者ごとの割り当て・完了・スコア済みフラグの保存先を提供する。
"""

from split_engine.persistence.adapters import (
    PersistenceAdapter,
    RedisAdapter,
    RequestScopedAdapter,
)
from split_engine.persistence.visitor import Visitor

__all__ = [
    "PersistenceAdapter",
    "RedisAdapter",
    "RequestScopedAdapter",
    "Visitor",
]
