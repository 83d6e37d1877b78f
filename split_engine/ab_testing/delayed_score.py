# 遅延スコア
"""
遅延スコア: ラベル単位で保留し、後でまとめて適用するスコア

共有ストアのキー:
    delayed_score:<score>:<label>                保留中の値（INCRBY、TTL付き）
    delayed_score:<score>:<label>:alternatives   加算対象の代替案キー（セット、TTL付き）

保留時に対象の訪問者をスコア済みにするため、保留中の二重送信は起こらない。
適用は WATCH で値を読み、同じトランザクションで保留キーの削除とスコア加算を行う。
適用済み・期限切れのラベルに対する再適用は何もしない。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from split_engine.ab_testing.alternative import score_field
from split_engine.config.split_config import DEFAULT_DELAYED_SCORE_TTL
from split_engine.db.connection import RedisConnection


logger = logging.getLogger(__name__)

DELAYED_SCORE_PREFIX = "delayed_score"


def delayed_score_key(score_name: str, label: str) -> str:
    return f"{DELAYED_SCORE_PREFIX}:{score_name}:{label}"


def delayed_alternatives_key(score_name: str, label: str) -> str:
    return f"{delayed_score_key(score_name, label)}:alternatives"


@dataclass
class DelayedScoreRecord:
    """保留中（または適用済み）の遅延スコア"""
    score_name: str
    label: str
    value: int
    alternative_keys: List[str] = field(default_factory=list)
    ttl: Optional[int] = None


class DelayedScoreStore:
    """遅延スコアの保留と適用

    使用例:
        store = DelayedScoreStore(conn)
        store.add_delayed("qty", "order-42", trials, value=5, ttl=60)
        # ... 注文確定後 ...
        store.apply_delayed("qty", "order-42")

    Attributes:
        connection: 共有ストア接続
        default_ttl: ttl 省略時の有効期限（秒）
    """

    def __init__(self, connection: RedisConnection, default_ttl: int = DEFAULT_DELAYED_SCORE_TTL):
        self.connection = connection
        self.default_ttl = default_ttl

    def add_delayed(
        self,
        score_name: str,
        label: str,
        trials: Iterable[Any],
        value: int = 1,
        ttl: Optional[int] = None,
    ) -> Optional[DelayedScoreRecord]:
        """スコアを保留

        対象は代替案が割り当て済みで、そのスコアを持ち、まだスコア済みでない試行。
        値と代替案キーの保存、有効期限の設定、各訪問者のスコア済みフラグを
        1つのトランザクションで適用する。

        Args:
            score_name: スコア名
            label: 保留ラベル
            trials: Trial のリスト
            value: 加算する値
            ttl: 有効期限（秒）

        Returns:
            保留した内容。対象の試行がない場合 None。
        """
        score_name = str(score_name)
        label = str(label)
        ttl = self.default_ttl if ttl is None else int(ttl)

        eligible = [
            trial
            for trial in trials
            if trial.alternative is not None
            and score_name in trial.experiment.scores
            and not trial.visitor.is_flagged(trial.experiment.scored_key(score_name))
        ]
        if not eligible:
            return None

        value_key = delayed_score_key(score_name, label)
        alternatives_key = delayed_alternatives_key(score_name, label)
        alternative_keys = sorted({trial.alternative.key for trial in eligible})

        with self.connection.transaction() as txn:
            pipe = txn.pipeline
            pipe.incrby(value_key, int(value))
            pipe.expire(value_key, ttl)
            pipe.sadd(alternatives_key, *alternative_keys)
            pipe.expire(alternatives_key, ttl)
            for trial in eligible:
                trial.visitor.flag(trial.experiment.scored_key(score_name), transaction=txn)

        logger.info(
            f"遅延スコアを保留: score={score_name}, label={label}, "
            f"value={value}, alternatives={alternative_keys}, ttl={ttl}"
        )
        return DelayedScoreRecord(score_name, label, int(value), alternative_keys, ttl)

    def apply_delayed(self, score_name: str, label: str) -> Optional[DelayedScoreRecord]:
        """保留中のスコアを適用

        Returns:
            適用した内容。保留がない（適用済み・期限切れ）場合 None。
        """
        score_name = str(score_name)
        label = str(label)
        value_key = delayed_score_key(score_name, label)
        alternatives_key = delayed_alternatives_key(score_name, label)

        def apply(pipe: Any) -> Optional[DelayedScoreRecord]:
            raw_value = pipe.get(value_key)
            alternative_keys = sorted(pipe.smembers(alternatives_key))
            if raw_value is None:
                return None

            value = int(raw_value)
            pipe.multi()
            pipe.delete(value_key, alternatives_key)
            for key in alternative_keys:
                pipe.hincrby(key, score_field(score_name), value)
            return DelayedScoreRecord(score_name, label, value, alternative_keys)

        record = self.connection.watch_transaction(apply, value_key, alternatives_key)

        if record is None:
            logger.debug(f"適用する遅延スコアなし: score={score_name}, label={label}")
        else:
            logger.info(
                f"遅延スコアを適用: score={score_name}, label={label}, "
                f"value={record.value}, alternatives={record.alternative_keys}"
            )
        return record

    def pending(self, score_name: str, label: str) -> Optional[DelayedScoreRecord]:
        """保留中のスコアを参照（保留がない場合 None）"""
        value_key = delayed_score_key(str(score_name), str(label))
        pipe = self.connection.pipeline()
        pipe.get(value_key)
        pipe.smembers(delayed_alternatives_key(str(score_name), str(label)))
        pipe.ttl(value_key)
        raw_value, alternative_keys, ttl = pipe.execute()
        if raw_value is None:
            return None
        return DelayedScoreRecord(
            str(score_name),
            str(label),
            int(raw_value),
            sorted(alternative_keys),
            ttl if ttl is not None and ttl >= 0 else None,
        )
