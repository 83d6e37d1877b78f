# 代替案（Alternative）カウンター
"""
代替案ごとの参加・完了・スコアカウンター

カウンターは共有ストア上のハッシュ "<実験名>:<代替案名>" に保持し、
すべての加算は単一キーの原子的操作（HINCRBY）で行う。
呼び出し側での読み取り→書き込みは行わない。

ハッシュのフィールド:
    participant_count        参加数
    completed_count          完了数（ゴールなし）
    completed_count:<goal>   ゴール別完了数（全体の完了数とは独立）
    score:<name>             スコア累計
    p_winner[:<goal>]        勝者確率（BayesianWinnerEstimator が書き込む）
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from split_engine.db.connection import RedisConnection, Transaction
from split_engine.exceptions import ConfigurationError


PARTICIPANT_FIELD = "participant_count"
COMPLETED_FIELD = "completed_count"
SCORE_PREFIX = "score:"
P_WINNER_FIELD = "p_winner"


def completed_field(goal: Optional[str] = None) -> str:
    """完了数のフィールド名"""
    return COMPLETED_FIELD if goal is None else f"{COMPLETED_FIELD}:{goal}"


def p_winner_field(goal: Optional[str] = None) -> str:
    """勝者確率のフィールド名"""
    return P_WINNER_FIELD if goal is None else f"{P_WINNER_FIELD}:{goal}"


def score_field(score_name: str) -> str:
    """スコアのフィールド名"""
    return f"{SCORE_PREFIX}{score_name}"


@dataclass
class AlternativeCounts:
    """代替案カウンターのスナップショット

    パイプラインで一括取得したハッシュから作成する読み取り専用の値。
    """
    name: str
    participant_count: int = 0
    completed_count: int = 0
    goal_completed_counts: Dict[str, int] = field(default_factory=dict)
    scores: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_hash(
        cls,
        name: str,
        data: Optional[Mapping[str, str]],
        goals: Sequence[str] = (),
    ) -> "AlternativeCounts":
        """ハッシュの内容から作成"""
        data = data or {}
        scores = {
            key[len(SCORE_PREFIX):]: int(value)
            for key, value in data.items()
            if key.startswith(SCORE_PREFIX)
        }
        return cls(
            name=name,
            participant_count=int(data.get(PARTICIPANT_FIELD) or 0),
            completed_count=int(data.get(COMPLETED_FIELD) or 0),
            goal_completed_counts={
                goal: int(data.get(completed_field(goal)) or 0) for goal in goals
            },
            scores=scores,
        )

    def completed(self, goal: Optional[str] = None) -> int:
        if goal is None:
            return self.completed_count
        return self.goal_completed_counts.get(goal, 0)

    @property
    def all_completed_count(self) -> int:
        """全体の完了数 + ゴール別完了数の合計"""
        return self.completed_count + sum(self.goal_completed_counts.values())

    def conversion_rate(self, goal: Optional[str] = None) -> float:
        if self.participant_count == 0:
            return 0.0
        return self.completed(goal) / self.participant_count


class Alternative:
    """実験の代替案

    実験へは名前で参照する（所有関係ではなく後方参照）。

    使用例:
        blue = Alternative("blue", "link_color", conn, weight=0.5)
        blue.increment_participation()
        blue.increment_completion(goal="signup")
        blue.conversion_rate("signup")

    Attributes:
        name: 代替案名
        experiment_name: 所属する実験名
        weight: 割り当ての重み（0.0-1.0）
        goals: 実験のゴール一覧
        is_control: コントロール（最初の代替案）かどうか
    """

    def __init__(
        self,
        name: Any,
        experiment_name: str,
        connection: RedisConnection,
        weight: float = 1.0,
        goals: Optional[List[str]] = None,
        is_control: bool = False,
    ):
        self.name = name
        self.experiment_name = experiment_name
        self.connection = connection
        self.weight = weight
        self.goals = list(goals or [])
        self.is_control = is_control

    @property
    def key(self) -> str:
        """カウンターハッシュのキー"""
        return f"{self.experiment_name}:{self.name}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Alternative):
            return NotImplemented
        return self.experiment_name == other.experiment_name and self.name == other.name

    def __hash__(self) -> int:
        return hash((self.experiment_name, self.name))

    def __repr__(self) -> str:
        return f"Alternative(name={self.name!r}, experiment={self.experiment_name!r}, weight={self.weight})"

    def validate(self) -> None:
        """代替案の定義を検証

        Raises:
            ConfigurationError: 名前が空・文字列でない、または重みが範囲外の場合
        """
        if not isinstance(self.name, str) or not self.name:
            raise ConfigurationError("Alternative must be a non-empty string")
        if isinstance(self.weight, bool) or not isinstance(self.weight, (int, float)):
            raise ConfigurationError(f"Alternative '{self.name}' weight must be a number")
        if not 0.0 <= self.weight <= 1.0:
            raise ConfigurationError(
                f"Alternative '{self.name}' weight must be between 0 and 1, got {self.weight}"
            )

    # === 読み取り ===

    def counts(self) -> AlternativeCounts:
        """すべてのカウンターを1往復で取得"""
        return AlternativeCounts.from_hash(
            self.name, self.connection.client.hgetall(self.key), self.goals
        )

    def _get_int(self, field_name: str) -> int:
        return int(self.connection.client.hget(self.key, field_name) or 0)

    @property
    def participant_count(self) -> int:
        return self._get_int(PARTICIPANT_FIELD)

    def completed_count(self, goal: Optional[str] = None) -> int:
        return self._get_int(completed_field(goal))

    @property
    def all_completed_count(self) -> int:
        return self.counts().all_completed_count

    @property
    def unfinished_count(self) -> int:
        counts = self.counts()
        return counts.participant_count - counts.all_completed_count

    def score(self, score_name: str) -> int:
        return self._get_int(score_field(score_name))

    def conversion_rate(self, goal: Optional[str] = None) -> float:
        """完了数 / 参加数（参加数0の場合は0.0）"""
        pipe = self.connection.pipeline()
        pipe.hget(self.key, PARTICIPANT_FIELD)
        pipe.hget(self.key, completed_field(goal))
        participants, completions = pipe.execute()
        participants = int(participants or 0)
        if participants == 0:
            return 0.0
        return int(completions or 0) / participants

    def p_winner(self, goal: Optional[str] = None) -> float:
        return float(self.connection.client.hget(self.key, p_winner_field(goal)) or 0.0)

    # === 書き込み（原子的） ===

    def _target(self, transaction: Optional[Transaction]) -> Any:
        return transaction.pipeline if transaction is not None else self.connection.client

    def increment_participation(self, transaction: Optional[Transaction] = None) -> Any:
        return self._target(transaction).hincrby(self.key, PARTICIPANT_FIELD, 1)

    def increment_completion(
        self,
        goal: Optional[str] = None,
        transaction: Optional[Transaction] = None,
    ) -> Any:
        return self._target(transaction).hincrby(self.key, completed_field(goal), 1)

    def increment_score(
        self,
        score_name: str,
        amount: int = 1,
        transaction: Optional[Transaction] = None,
    ) -> Any:
        return self._target(transaction).hincrby(self.key, score_field(score_name), int(amount))

    def set_p_winner(
        self,
        probability: float,
        goal: Optional[str] = None,
        transaction: Optional[Transaction] = None,
    ) -> None:
        self._target(transaction).hset(self.key, p_winner_field(goal), float(probability))

    def reset(self, transaction: Optional[Transaction] = None) -> None:
        """すべてのカウンターを0に戻す

        カウンターは存在しないフィールドを0として読むため、ハッシュの削除で足りる。
        """
        self.delete(transaction=transaction)

    def delete(self, transaction: Optional[Transaction] = None) -> None:
        """カウンターハッシュを削除"""
        self._target(transaction).delete(self.key)

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（CLI・JSON出力用）"""
        counts = self.counts()
        return {
            "name": self.name,
            "weight": self.weight,
            "control": self.is_control,
            "participant_count": counts.participant_count,
            "completed_count": counts.completed_count,
            "goal_completed_counts": counts.goal_completed_counts,
            "unfinished_count": counts.participant_count - counts.all_completed_count,
            "conversion_rate": counts.conversion_rate(),
            "scores": counts.scores,
            "p_winner": self.p_winner(),
        }
