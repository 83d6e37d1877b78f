# DB モジュール（共有ストア接続）
from split_engine.db.connection import (
    STORE_ERRORS,
    RedisConnection,
    Transaction,
    close_redis,
    get_redis,
)

__all__ = [
    "STORE_ERRORS",
    "RedisConnection",
    "Transaction",
    "close_redis",
    "get_redis",
]
