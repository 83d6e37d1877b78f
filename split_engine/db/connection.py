# Redis接続管理
# 接続: redis://localhost:6379/0（環境変数 REDIS_URL で上書き）
"""
共有ストア（Redis）接続管理モジュール

コネクションプールとコンテキストマネージャーによる安全な接続管理を提供。

設計方針:
- 原子性: 複合更新は MULTI/EXEC トランザクション、読み取り後の更新は WATCH で保護
- 効率性: 複数キーの読み取りはパイプラインでまとめて1往復にする
- テスト容易性: クライアントを外部から注入可能にし、テスト時は fakeredis に差し替える
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Callable, Generator, List, Optional

import redis
from redis.client import Pipeline


logger = logging.getLogger(__name__)

# 共有ストア障害として扱う例外
STORE_ERRORS = (redis.exceptions.RedisError, OSError)


class Transaction:
    """MULTI/EXEC トランザクション

    redis-py のトランザクションパイプラインに、コミット成功後にだけ
    実行するコールバックを付け加えたもの。共有ストア外（リクエスト内）の
    訪問者ストアへの書き込みをトランザクションの成否に揃えるために使う。

    Attributes:
        pipeline: MULTI/EXEC パイプライン
    """

    def __init__(self, pipeline: Pipeline):
        self.pipeline = pipeline
        self.results: Optional[List[Any]] = None
        self._after_commit: List[Callable[[], None]] = []

    def after_commit(self, callback: Callable[[], None]) -> None:
        """コミット成功後に実行するコールバックを登録"""
        self._after_commit.append(callback)

    def execute(self) -> List[Any]:
        """トランザクションを実行し、成功後にコールバックを実行

        Returns:
            各コマンドの結果リスト
        """
        self.results = self.pipeline.execute()
        for callback in self._after_commit:
            callback()
        return self.results


class RedisConnection:
    """共有ストア（Redis）接続管理クラス

    使用例:
        conn = RedisConnection()

        # 単一コマンド（原子的）
        conn.client.hincrby("link_color:blue", "participant_count", 1)

        # 複数キーの一括読み取り
        pipe = conn.pipeline()
        pipe.get("link_color:version")
        pipe.hget("experiment_winner", "link_color")
        version, winner = pipe.execute()

        # 複合更新（すべて適用されるか、何も適用されないか）
        with conn.transaction() as txn:
            txn.pipeline.sadd("experiments", "link_color")
            txn.pipeline.rpush("link_color", "blue", "red")

    Attributes:
        redis_url: 接続文字列（環境変数REDIS_URLから取得、または直接指定）
        socket_timeout: ソケットタイムアウト（秒）
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        socket_timeout: float = 5.0,
    ):
        """RedisConnectionを初期化

        Args:
            redis_url: Redis接続文字列。Noneの場合は環境変数REDIS_URLを使用。
            client: 既存のクライアント（decode_responses=True で作成されたもの）。
                    指定時はプールを作成しない。
            socket_timeout: ソケットタイムアウト（秒）
        """
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.socket_timeout = socket_timeout
        self._client: Optional[redis.Redis] = client
        self._pool: Optional[redis.ConnectionPool] = None

    def _get_pool(self) -> redis.ConnectionPool:
        """コネクションプールを取得（遅延初期化）"""
        if self._pool is None:
            self._pool = redis.ConnectionPool.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        return self._pool

    @property
    def client(self) -> redis.Redis:
        """Redisクライアントを取得（遅延初期化）"""
        if self._client is None:
            self._client = redis.Redis(connection_pool=self._get_pool())
        return self._client

    def pipeline(self) -> Pipeline:
        """一括読み取り用のパイプライン（非トランザクション）を取得"""
        return self.client.pipeline(transaction=False)

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """MULTI/EXEC トランザクションをコンテキストマネージャーとして取得

        正常終了時にまとめて実行。例外発生時はキューを破棄し、何も適用しない。

        Yields:
            Transaction: コマンドをキューイングするトランザクション

        Raises:
            redis.exceptions.RedisError: 実行時のストアエラー
        """
        pipe = self.client.pipeline(transaction=True)
        txn = Transaction(pipe)
        try:
            yield txn
            txn.execute()
        finally:
            pipe.reset()

    def watch_transaction(self, func: Callable[[Pipeline], Any], *keys: str) -> Any:
        """WATCH による楽観的トランザクションを実行

        func は WATCH 中に読み取りを行い、pipe.multi() の後に更新を
        キューイングする。監視キーが他のクライアントに変更された場合は
        func ごと再実行される。

        Args:
            func: パイプラインを受け取る関数
            *keys: 監視するキー

        Returns:
            func の戻り値
        """
        return self.client.transaction(func, *keys, value_from_callable=True)

    def close(self) -> None:
        """コネクションプールをクローズ

        アプリケーション終了時に呼び出すことで、
        すべての接続を適切に解放。
        """
        if self._pool is not None:
            self._pool.disconnect()
            self._pool = None
            self._client = None

    def health_check(self) -> bool:
        """共有ストア接続の健全性をチェック

        Returns:
            bool: 接続が正常な場合True
        """
        try:
            return bool(self.client.ping())
        except STORE_ERRORS as e:
            logger.warning(f"Redisヘルスチェック失敗: {e}")
            return False

    def __enter__(self) -> "RedisConnection":
        """コンテキストマネージャーとしての入口"""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """コンテキストマネージャーとしての出口"""
        self.close()


# シングルトンインスタンス（オプション）
# アプリケーション全体で共有する場合に使用
_default_connection: Optional[RedisConnection] = None


def get_redis(redis_url: Optional[str] = None) -> RedisConnection:
    """デフォルトの共有ストア接続を取得

    シングルトンパターンでアプリケーション全体で
    同一のコネクションプールを共有。

    Returns:
        RedisConnection: 共有ストア接続インスタンス
    """
    global _default_connection
    if _default_connection is None:
        _default_connection = RedisConnection(redis_url)
    return _default_connection


def close_redis() -> None:
    """デフォルトの共有ストア接続をクローズ

    アプリケーション終了時に呼び出す。
    """
    global _default_connection
    if _default_connection is not None:
        _default_connection.close()
        _default_connection = None
