# A/Bテスト実験
"""
Experiment: 実験の定義・検証・永続化・バージョン管理

設計方針:
- 実験の定義（代替案・ゴール・スコア・メタデータ・アルゴリズム）は設定から読み込み、
  設定にない実験は共有ストアに保存済みのリストから復元する
- 実験レベルの状態（勝者・開始時刻・バージョン・登録有無）は1往復のパイプラインで遅延取得
- 保存・リセット・削除の複合更新は MULTI/EXEC でまとめて適用する
- バージョンはリセット・削除のたびに1ずつ増え、訪問者の割り当てキーを世代ごとに分離する

共有ストアのキー:
    experiments                  登録済み実験名（セット）
    experiment_winner            実験名 → 勝者の代替案名（ハッシュ）
    experiment_start_times       実験名 → 開始時刻のエポック秒（ハッシュ）
    <name>:version               バージョン（INCR）
    <name> / <name>:goals / <name>:scores   代替案・ゴール・スコアのリスト
"""

import logging
import random
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from split_engine.ab_testing.alternative import Alternative, AlternativeCounts
from split_engine.algorithms import ALGORITHMS, AllocationAlgorithm, get_algorithm
from split_engine.config.split_config import SplitConfig, normalize_alternatives
from split_engine.db.connection import RedisConnection
from split_engine.exceptions import ConfigurationError
from split_engine.persistence.visitor import finished_key, scored_key


logger = logging.getLogger(__name__)

EXPERIMENTS_KEY = "experiments"
WINNER_KEY = "experiment_winner"
START_TIMES_KEY = "experiment_start_times"

# 実験名と同じ接頭辞を使う共有ストアのキーと衝突する代替案名
RESERVED_ALTERNATIVE_NAMES = ("version", "goals", "scores")

# 重みの合計と1.0の許容誤差
WEIGHT_TOLERANCE = 1e-9


class Experiment:
    """A/Bテスト実験

    使用例:
        config = SplitConfig(experiments={"link_color": {"alternatives": ["blue", "red"]}})
        experiment = Experiment("link_color", conn, config)
        experiment.save()

        alternative = experiment.next_alternative()
        experiment.set_winner("red")
        experiment.reset()   # カウンターを0に戻し、バージョンを1増やす

    Attributes:
        name: 実験名
        alternatives: 代替案のリスト（先頭がコントロール）
        goals: ゴール名のリスト
        scores: スコア名のリスト
        metadata: 代替案名 → メタデータ（未設定の場合 None）
        resettable: 完了後に割り当てをリセットするか
        algorithm: 割り当てアルゴリズムの識別子
        is_configured: 設定（または引数）から定義を得たか
    """

    def __init__(
        self,
        name: Any,
        connection: RedisConnection,
        config: SplitConfig,
        alternatives: Any = None,
        goals: Optional[List[str]] = None,
        scores: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        resettable: Optional[bool] = None,
        algorithm: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        """Experimentを初期化

        引数で定義を渡さない場合は config.experiments の定義を使用する。

        Args:
            name: 実験名
            connection: 共有ストア接続
            config: SplitConfig インスタンス
            alternatives: 代替案（normalize_alternatives が受け付ける形式）
            goals: ゴール名のリスト
            scores: スコア名のリスト
            metadata: 代替案名 → メタデータ
            resettable: 完了後に割り当てをリセットするか
            algorithm: 割り当てアルゴリズムの識別子
            rng: 割り当てに使う乱数生成器
        """
        self.name = str(name)
        self.connection = connection
        self.config = config
        self.rng = rng
        self._redis_data: Optional[Dict[str, Any]] = None

        definition = config.experiment_for(self.name) or {}
        self.is_configured = bool(definition) or alternatives is not None

        if alternatives is not None:
            weighted = normalize_alternatives(alternatives)
        else:
            weighted = definition.get("alternatives", [])

        self.goals: List[Any] = list(goals) if goals is not None else definition.get("goals", [])
        self.scores: List[Any] = list(scores) if scores is not None else definition.get("scores", [])

        if metadata is not None:
            self.metadata: Optional[Dict[str, Any]] = {str(k): v for k, v in metadata.items()}
        else:
            self.metadata = definition.get("metadata")

        if isinstance(resettable, bool):
            self.resettable = resettable
        else:
            self.resettable = definition.get("resettable", True)

        self.algorithm: str = algorithm or definition.get("algorithm") or config.algorithm
        self.alternatives: List[Alternative] = []
        self._set_alternatives(weighted)

    def _set_alternatives(self, weighted: List[Any]) -> None:
        self.alternatives = [
            Alternative(
                name,
                self.name,
                self.connection,
                weight=weight,
                goals=self.goals,
                is_control=(index == 0),
            )
            for index, (name, weight) in enumerate(weighted)
        ]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Experiment):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)

    def __repr__(self) -> str:
        return f"Experiment(name={self.name!r}, alternatives={[a.name for a in self.alternatives]})"

    # === 共有ストア上の実験状態 ===

    @property
    def redis_data(self) -> Dict[str, Any]:
        """バージョン・勝者・開始時刻・登録有無（1往復で取得してキャッシュ）"""
        if self._redis_data is None:
            pipe = self.connection.pipeline()
            pipe.get(f"{self.name}:version")
            pipe.hget(WINNER_KEY, self.name)
            pipe.hget(START_TIMES_KEY, self.name)
            pipe.sismember(EXPERIMENTS_KEY, self.name)
            version, winner_name, start_time, is_member = pipe.execute()
            self._redis_data = {
                "version": version,
                "winner_name": winner_name,
                "start_time": start_time,
                "is_new_record": not is_member,
            }
        return self._redis_data

    def refresh(self) -> "Experiment":
        """キャッシュした実験状態を破棄"""
        self._redis_data = None
        return self

    @property
    def is_new_record(self) -> bool:
        """共有ストアに未登録か"""
        return self.redis_data["is_new_record"]

    def load_from_store(self) -> "Experiment":
        """共有ストアに保存済みの代替案・ゴール・スコアで定義を置き換える

        保存されていない重みは均等配分とする。
        """
        pipe = self.connection.pipeline()
        pipe.lrange(self.name, 0, -1)
        pipe.lrange(f"{self.name}:goals", 0, -1)
        pipe.lrange(f"{self.name}:scores", 0, -1)
        alternative_names, goals, scores = pipe.execute()

        self.goals = list(goals)
        self.scores = list(scores)
        self._set_alternatives(normalize_alternatives(list(alternative_names)))
        return self

    # === 検証・保存 ===

    def validate(self) -> None:
        """定義を検証

        Raises:
            ConfigurationError: 定義に不備がある場合
        """
        if not self.alternatives:
            raise ConfigurationError(f"Experiment '{self.name}' must have one or more alternatives")

        for alternative in self.alternatives:
            alternative.validate()

        names = [alternative.name for alternative in self.alternatives]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Experiment '{self.name}' alternative names must be unique")

        total_weight = sum(alternative.weight for alternative in self.alternatives)
        if abs(total_weight - 1.0) > WEIGHT_TOLERANCE:
            raise ConfigurationError(
                f"Experiment '{self.name}' alternative weights must sum to 1.0, got {total_weight:g}"
            )

        reserved = [name for name in names if name in RESERVED_ALTERNATIVE_NAMES]
        if reserved:
            raise ConfigurationError(
                f"Experiment '{self.name}' uses reserved alternative names: {', '.join(reserved)}"
            )

        if not all(isinstance(goal, str) for goal in self.goals):
            raise ConfigurationError(f"Experiment '{self.name}' goals must be of type String")

        if not all(isinstance(score, str) for score in self.scores):
            raise ConfigurationError(f"Experiment '{self.name}' scores must be of type String")

        if self.metadata is not None and sorted(self.metadata) != sorted(names):
            raise ConfigurationError(
                f"Experiment '{self.name}' metadata keys must match with its alternatives"
            )

        if self.algorithm not in ALGORITHMS:
            raise ConfigurationError(
                f"Experiment '{self.name}' has unknown algorithm '{self.algorithm}'"
            )

    def is_valid(self) -> bool:
        """定義が妥当か（例外を送出しない版）"""
        try:
            self.validate()
        except ConfigurationError:
            return False
        return True

    def save(self) -> "Experiment":
        """定義を検証して共有ストアに登録

        初回保存時のみ書き込む。start_manually でなければ同じトランザクションで
        開始時刻も記録する。

        Returns:
            self

        Raises:
            ConfigurationError: 定義に不備がある場合（何も書き込まない）
        """
        self.validate()

        if not self.is_new_record:
            return self

        started_at = None if self.config.start_manually else int(time.time())

        with self.connection.transaction() as txn:
            pipe = txn.pipeline
            pipe.sadd(EXPERIMENTS_KEY, self.name)
            pipe.delete(self.name, f"{self.name}:goals", f"{self.name}:scores")
            pipe.rpush(self.name, *[alternative.name for alternative in self.alternatives])
            if self.goals:
                pipe.rpush(f"{self.name}:goals", *self.goals)
            if self.scores:
                pipe.rpush(f"{self.name}:scores", *self.scores)
            if started_at is not None:
                pipe.hset(START_TIMES_KEY, self.name, started_at)

        self.redis_data["is_new_record"] = False
        if started_at is not None:
            self.redis_data["start_time"] = str(started_at)

        logger.info(
            f"実験を登録: name={self.name}, "
            f"alternatives={[a.name for a in self.alternatives]}, started={started_at is not None}"
        )
        return self

    # === 開始時刻 ===

    def start(self) -> None:
        """開始時刻を記録"""
        started_at = int(time.time())
        self.connection.client.hset(START_TIMES_KEY, self.name, started_at)
        self.redis_data["start_time"] = str(started_at)
        logger.info(f"実験を開始: name={self.name}")

    @property
    def start_time(self) -> Optional[datetime]:
        """開始時刻（未開始の場合 None）

        エポック秒の整数、またはISO 8601形式の文字列を受け付ける。
        """
        raw = self.redis_data["start_time"]
        if raw is None:
            return None
        try:
            return datetime.fromtimestamp(int(raw))
        except ValueError:
            return datetime.fromisoformat(raw)

    # === 勝者 ===

    def _find_alternative(self, name: Any) -> Optional[Alternative]:
        for alternative in self.alternatives:
            if alternative.name == name:
                return alternative
        return None

    @property
    def winner(self) -> Optional[Alternative]:
        """勝者として固定された代替案"""
        winner_name = self.redis_data["winner_name"]
        if winner_name is None:
            return None
        return self._find_alternative(winner_name) or Alternative(
            winner_name, self.name, self.connection, weight=0.0, goals=self.goals
        )

    @property
    def has_winner(self) -> bool:
        return self.redis_data["winner_name"] is not None

    def set_winner(self, alternative_name: Any) -> Alternative:
        """勝者を固定

        Args:
            alternative_name: 代替案名（または Alternative）

        Returns:
            勝者の Alternative

        Raises:
            ValueError: 実験に存在しない代替案の場合
        """
        if isinstance(alternative_name, Alternative):
            alternative_name = alternative_name.name
        alternative = self._find_alternative(str(alternative_name))
        if alternative is None:
            raise ValueError(
                f"Alternative '{alternative_name}' does not exist in experiment '{self.name}'"
            )

        self.connection.client.hset(WINNER_KEY, self.name, alternative.name)
        self.redis_data["winner_name"] = alternative.name
        logger.info(f"勝者を設定: experiment={self.name}, winner={alternative.name}")
        return alternative

    def delete_winner(self) -> None:
        """勝者の固定を解除"""
        self.connection.client.hdel(WINNER_KEY, self.name)
        self.redis_data["winner_name"] = None

    def reopen(self) -> None:
        """勝者の固定を解除して実験を再開"""
        self.delete_winner()
        logger.info(f"実験を再開: name={self.name}")

    # === バージョン・キー ===

    @property
    def version(self) -> int:
        return int(self.redis_data["version"] or 0)

    def increment_version(self) -> int:
        version = self.connection.client.incr(f"{self.name}:version")
        self.redis_data["version"] = version
        return version

    @property
    def key(self) -> str:
        """訪問者ストア上の割り当てキー（バージョン0は実験名そのもの）"""
        if self.version > 0:
            return f"{self.name}:{self.version}"
        return self.name

    @property
    def finished_key(self) -> str:
        return finished_key(self.key)

    def scored_key(self, score_name: str) -> str:
        return scored_key(self.key, score_name)

    # === リセット・削除 ===

    def _run_hook(self, hook_name: str) -> None:
        self.config.hooks.run(hook_name, self)

    def reset(self) -> None:
        """すべてのカウンターを0に戻し、勝者を解除してバージョンを1増やす

        順序: before フック → カウンター削除・勝者解除（1トランザクション）
        → after フック → バージョン加算
        """
        self._run_hook("on_before_experiment_reset")

        with self.connection.transaction() as txn:
            for alternative in self.alternatives:
                alternative.reset(transaction=txn)
            txn.pipeline.hdel(WINNER_KEY, self.name)
        self.redis_data["winner_name"] = None

        self._run_hook("on_experiment_reset")
        version = self.increment_version()
        logger.info(f"実験をリセット: name={self.name}, version={version}")

    def delete(self) -> None:
        """実験の永続状態をすべて削除してバージョンを1増やす

        順序: before フック → 開始時刻・勝者・登録・リスト・カウンター削除
        （1トランザクション）→ after フック → バージョン加算
        """
        self._run_hook("on_before_experiment_delete")

        with self.connection.transaction() as txn:
            pipe = txn.pipeline
            pipe.hdel(START_TIMES_KEY, self.name)
            pipe.hdel(WINNER_KEY, self.name)
            pipe.srem(EXPERIMENTS_KEY, self.name)
            pipe.delete(self.name, f"{self.name}:goals", f"{self.name}:scores")
            for alternative in self.alternatives:
                alternative.delete(transaction=txn)

        self.redis_data.update(start_time=None, winner_name=None, is_new_record=True)

        self._run_hook("on_experiment_delete")
        version = self.increment_version()
        logger.info(f"実験を削除: name={self.name}, version={version}")

    # === 割り当て ===

    @property
    def control(self) -> Optional[Alternative]:
        """コントロール（最初の代替案）"""
        return self.alternatives[0] if self.alternatives else None

    @property
    def allocation(self) -> AllocationAlgorithm:
        """割り当てアルゴリズム

        Raises:
            ConfigurationError: 未登録の識別子の場合
        """
        return get_algorithm(self.algorithm, rng=self.rng)

    def next_alternative(self) -> Alternative:
        """勝者があれば勝者、なければアルゴリズムで選んだ代替案"""
        return self.winner or self.allocation.choose_alternative(self)

    # === 集計 ===

    def alternative_counts(self) -> List[AlternativeCounts]:
        """全代替案のカウンター（代替案の順序、1往復で取得）"""
        pipe = self.connection.pipeline()
        for alternative in self.alternatives:
            pipe.hgetall(alternative.key)
        return [
            AlternativeCounts.from_hash(alternative.name, data, self.goals)
            for alternative, data in zip(self.alternatives, pipe.execute())
        ]

    @property
    def participant_count(self) -> int:
        return sum(counts.participant_count for counts in self.alternative_counts())

    def calc_winning_alternatives(self, estimator: Any = None) -> "Experiment":
        """各代替案の勝者確率を推定して書き込む

        Args:
            estimator: BayesianWinnerEstimator（省略時は設定の試行回数で作成）
        """
        from split_engine.ab_testing.winner_estimator import BayesianWinnerEstimator

        if estimator is None:
            estimator = BayesianWinnerEstimator(self.config.beta_probability_simulations)
        estimator.calc_winning_alternatives(self)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（CLI・JSON出力用）"""
        start_time = self.start_time
        winner = self.winner
        return {
            "name": self.name,
            "version": self.version,
            "key": self.key,
            "start_time": start_time.isoformat() if start_time else None,
            "winner": winner.name if winner else None,
            "algorithm": self.algorithm,
            "resettable": self.resettable,
            "goals": list(self.goals),
            "scores": list(self.scores),
            "metadata": self.metadata,
            "alternatives": [alternative.to_dict() for alternative in self.alternatives],
        }
