# 訪問者ストア（永続化アダプター）
"""
訪問者ごとのキー・バリューストア

訪問者の割り当て・完了フラグ・スコア済みフラグを保持する。
呼び出し側が実装を選択し、内部でバックエンド名による分岐は行わない。

実装:
- RequestScopedAdapter: リクエスト（セッション）スコープのインメモリ辞書
- RedisAdapter: 外部IDをキーとする共有ストア上のハッシュ（有効期限付き）

値はすべて文字列で保存する（フラグは "true"）。
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, MutableMapping, Optional, Sequence, Set

from split_engine.db.connection import RedisConnection, Transaction


logger = logging.getLogger(__name__)

TRUE_VALUE = "true"


class PersistenceAdapter(ABC):
    """訪問者ストアの抽象インターフェース

    実装は訪問者ごとに分離されていること（他の訪問者のキーが見えないこと）。
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """キーの値を取得（存在しない場合は None）"""

    @abstractmethod
    def multi_get(self, keys: Sequence[str]) -> List[Optional[str]]:
        """複数キーの値をまとめて取得（keys と同じ順序）"""

    @abstractmethod
    def set(self, key: str, value: Any, transaction: Optional[Transaction] = None) -> None:
        """キーに値を設定

        Args:
            key: キー
            value: 値（文字列に変換して保存）
            transaction: 指定時はトランザクションのコミットに合わせて書き込む
        """

    @abstractmethod
    def set_if_absent(self, key: str, value: Any) -> bool:
        """キーが存在しない場合のみ値を設定

        Returns:
            書き込みを行った場合 True
        """

    @abstractmethod
    def delete(self, *keys: str) -> None:
        """キーを削除"""

    @abstractmethod
    def keys(self) -> Set[str]:
        """すべてのキーを取得"""


class RequestScopedAdapter(PersistenceAdapter):
    """リクエスト（セッション）スコープの訪問者ストア

    セッション辞書の名前空間配下に値を保持する。セッションを渡さない場合は
    このインスタンス限りの辞書となる。

    Note:
        set_if_absent は原子的ではない。同じセッションを複数リクエストが
        同時に扱う場合、まれに二重割り当てが起こり得る。

    使用例:
        session = {}
        adapter = RequestScopedAdapter(session)
        adapter.set("link_color", "blue")
        session  # {"split": {"link_color": "blue"}}
    """

    def __init__(
        self,
        session: Optional[MutableMapping[str, Any]] = None,
        namespace: str = "split",
    ):
        """RequestScopedAdapterを初期化

        Args:
            session: セッション辞書（Noneの場合は新しい辞書を使用）
            namespace: セッション内の名前空間キー
        """
        if session is None:
            session = {}
        self._data: Dict[str, str] = session.setdefault(namespace, {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def multi_get(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [self._data.get(key) for key in keys]

    def set(self, key: str, value: Any, transaction: Optional[Transaction] = None) -> None:
        if transaction is not None:
            transaction.after_commit(lambda: self._data.__setitem__(key, str(value)))
            return
        self._data[key] = str(value)

    def set_if_absent(self, key: str, value: Any) -> bool:
        if key in self._data:
            return False
        self._data[key] = str(value)
        return True

    def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    def keys(self) -> Set[str]:
        return set(self._data.keys())


class RedisAdapter(PersistenceAdapter):
    """共有ストア上の永続訪問者ストア

    訪問者ごとに1つのハッシュ（"<namespace>:<id>"）を使い、
    書き込みのたびに有効期限を延長する。

    使用例:
        conn = RedisConnection()
        adapter = RedisAdapter(conn, user.id, expire_seconds=2592000)
        adapter.set("link_color", "blue")

    Attributes:
        connection: 共有ストア接続
        redis_key: 訪問者ハッシュのキー
        expire_seconds: 有効期限（秒、Noneの場合は無期限）
    """

    def __init__(
        self,
        connection: RedisConnection,
        identity: Any,
        lookup_by: Callable[[Any], str] = str,
        namespace: str = "users",
        expire_seconds: Optional[int] = None,
    ):
        """RedisAdapterを初期化

        Args:
            connection: 共有ストア接続
            identity: 訪問者の外部ID（ユーザーオブジェクトなど）
            lookup_by: 外部IDからストア上のIDを導出する関数
            namespace: キー接頭辞
            expire_seconds: 有効期限（秒）

        Raises:
            ValueError: 導出したIDが空の場合
        """
        visitor_id = lookup_by(identity)
        if visitor_id is None or str(visitor_id) == "":
            raise ValueError("visitor id must not be empty")

        self.connection = connection
        self.redis_key = f"{namespace}:{visitor_id}"
        self.expire_seconds = expire_seconds

    def get(self, key: str) -> Optional[str]:
        return self.connection.client.hget(self.redis_key, key)

    def multi_get(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return self.connection.client.hmget(self.redis_key, list(keys))

    def set(self, key: str, value: Any, transaction: Optional[Transaction] = None) -> None:
        if transaction is not None:
            self._queue_set(transaction.pipeline, key, value)
            return
        with self.connection.transaction() as txn:
            self._queue_set(txn.pipeline, key, value)

    def set_if_absent(self, key: str, value: Any) -> bool:
        with self.connection.transaction() as txn:
            txn.pipeline.hsetnx(self.redis_key, key, str(value))
            self._queue_expire(txn.pipeline)
        return bool(txn.results[0])

    def delete(self, *keys: str) -> None:
        if keys:
            self.connection.client.hdel(self.redis_key, *keys)

    def keys(self) -> Set[str]:
        return set(self.connection.client.hkeys(self.redis_key))

    def _queue_set(self, pipeline: Any, key: str, value: Any) -> None:
        pipeline.hset(self.redis_key, key, str(value))
        self._queue_expire(pipeline)

    def _queue_expire(self, pipeline: Any) -> None:
        if self.expire_seconds:
            pipeline.expire(self.redis_key, self.expire_seconds)
