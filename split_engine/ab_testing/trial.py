# 試行（Trial）
"""
Trial: 1人の訪問者と1つの実験のライフサイクル

状態遷移:
    未割り当て → 割り当て済み → 完了済み
    （resettable な実験では完了時に未割り当てへ戻る）
スコア名ごとに独立して:
    未スコア → スコア済み

冪等性:
- 参加数の加算は訪問者ごとに1回（set_if_absent で割り当てを記録）
- 完了数の加算は完了フラグで1回に制限
- スコアの加算とスコア済みフラグは1つのトランザクションで同時に適用
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from split_engine.ab_testing.alternative import Alternative
from split_engine.ab_testing.experiment import Experiment
from split_engine.config.split_config import SplitConfig, SplitHooks
from split_engine.persistence.visitor import Visitor


logger = logging.getLogger(__name__)


@dataclass
class TrialContext:
    """呼び出し元のリクエスト情報

    除外判定と、設定のフックを差し替える場合に使用する。
    """
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    hooks: Optional[SplitHooks] = None


def is_excluded_visitor(context: Optional[TrialContext], config: SplitConfig) -> bool:
    """除外対象の訪問者か（除外フィルター・ロボット・除外IP）"""
    if context is None:
        return False

    if config.ignore_filter(context):
        return True

    if context.user_agent is not None and config.robot_regex.search(context.user_agent):
        return True

    if context.ip_address is not None:
        for ip in config.ignore_ip_addresses:
            if isinstance(ip, str):
                if context.ip_address == ip:
                    return True
            elif ip.search(context.ip_address):
                return True

    return False


class Trial:
    """1人の訪問者と1つの実験の試行

    使用例:
        trial = Trial(visitor, experiment, TrialContext(user_agent=ua))
        alternative = trial.choose()
        ...
        trial.complete(goal="signup")
        trial.score("revenue", 120)

    Attributes:
        visitor: 訪問者状態
        experiment: 実験
        context: 呼び出し元のリクエスト情報（任意）
        config: SplitConfig インスタンス
    """

    def __init__(
        self,
        visitor: Visitor,
        experiment: Experiment,
        context: Optional[TrialContext] = None,
        config: Optional[SplitConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.visitor = visitor
        self.experiment = experiment
        self.context = context
        self.config = config or experiment.config
        self.rng = rng or random.Random()
        self._alternative: Optional[Alternative] = None
        self._alternative_loaded = False

    # === 割り当て済みの代替案 ===

    def _resolve(self, value: Any) -> Optional[Alternative]:
        if isinstance(value, Alternative):
            value = value.name
        if value is None:
            return None
        for alternative in self.experiment.alternatives:
            if alternative.name == value:
                return alternative
        return None

    @property
    def alternative(self) -> Optional[Alternative]:
        """割り当てられた代替案（未割り当て、または無効な値の場合 None）"""
        if not self._alternative_loaded:
            self._alternative = self._resolve(self.visitor.get(self.experiment.key))
            self._alternative_loaded = True
        return self._alternative

    @alternative.setter
    def alternative(self, value: Any) -> None:
        self._alternative = value if isinstance(value, Alternative) else self._resolve(value)
        self._alternative_loaded = True

    @property
    def metadata(self) -> Any:
        """割り当てられた代替案のメタデータ"""
        if self.alternative is None or not self.experiment.metadata:
            return None
        return self.experiment.metadata.get(self.alternative.name)

    # === 判定 ===

    def is_valid(self) -> bool:
        """記録対象の試行か

        除外対象の訪問者、未開始の実験、同時参加数の上限に達した訪問者は対象外。
        """
        return not (
            is_excluded_visitor(self.context, self.config)
            or self.experiment.start_time is None
            or self.visitor.max_experiments_reached(self.experiment.key)
        )

    def _is_valid_alternative(self, override: Any) -> bool:
        return override is not None and self._resolve(override) is not None

    def _run_hook(self, hook_name: str) -> None:
        hooks = self.context.hooks if self.context and self.context.hooks else self.config.hooks
        hooks.run(hook_name, self)

    # === 操作 ===

    def choose(self, override: Any = None) -> Alternative:
        """代替案を決定

        優先順位: 有効なオーバーライド → コントロール（全体無効・対象外）
        → 勝者 → 既存の割り当て → アルゴリズムによる新規割り当て

        Args:
            override: 明示的に指定された代替案名

        Returns:
            決定した Alternative
        """
        if self.rng.random() < self.config.cleanup_probability:
            self.visitor.cleanup_old_experiments()
        if self.experiment.version > 0:
            self.visitor.cleanup_old_versions(self.experiment)

        record = False
        if self._is_valid_alternative(override):
            if (
                self.config.store_override
                and self.alternative is None
                and self.config.enabled
                and self.is_valid()
            ):
                record = True
            self.alternative = override
        elif self.config.disabled or not self.is_valid():
            self.alternative = self.experiment.control
        elif self.experiment.has_winner:
            self.alternative = self.experiment.winner
        elif self.alternative is None:
            record = True
            self.alternative = self.experiment.next_alternative()

        if record:
            self._record_assignment()

        if self.config.enabled:
            self._run_hook("on_trial")
        return self.alternative

    def _record_assignment(self) -> None:
        """割り当てを記録して参加数を加算

        並行リクエストが先に記録していた場合はその割り当てを採用し、加算しない。
        """
        alternative = self._alternative
        key = self.experiment.key

        if not self.visitor.set_if_absent(key, alternative.name):
            existing = self._resolve(self.visitor.get(key))
            if existing is not None:
                logger.debug(
                    f"既存の割り当てを採用: experiment={self.experiment.name}, alternative={existing.name}"
                )
                self._alternative = existing
                return
            self.visitor.set(key, alternative.name)

        alternative.increment_participation()
        logger.debug(
            f"代替案を割り当て: experiment={self.experiment.name}, alternative={alternative.name}"
        )
        self._run_hook("on_trial_choose")

    def complete(self, goal: Optional[str] = None, reset: Optional[bool] = None) -> Optional[bool]:
        """完了を記録

        Args:
            goal: ゴール名（省略時は全体の完了数）
            reset: True で割り当てを削除、False で完了フラグを設定。
                   省略時は実験の resettable 設定に従う。

        Returns:
            記録した場合 True、記録しなかった場合 None
        """
        if self.config.disabled or not self.is_valid():
            return None
        if goal is not None and str(goal) not in self.experiment.goals:
            return None
        if self.alternative is None:
            return None
        if self.visitor.is_flagged(self.experiment.finished_key) and not reset:
            return None

        self._run_hook("on_trial_complete")
        self.alternative.increment_completion(None if goal is None else str(goal))
        logger.debug(
            f"完了を記録: experiment={self.experiment.name}, "
            f"alternative={self.alternative.name}, goal={goal}"
        )

        should_reset = self.experiment.resettable if reset is None else reset
        if should_reset:
            self.reset()
        else:
            self.visitor.flag(self.experiment.finished_key)
        return True

    def score(self, score_name: str, value: int = 1) -> Optional[bool]:
        """スコアを記録（スコア名ごとに1回）

        スコアの加算とスコア済みフラグは1つのトランザクションで適用する。

        Returns:
            記録した場合 True、記録しなかった場合 None
        """
        score_name = str(score_name)
        if self.alternative is None or not self.is_valid():
            return None
        if score_name not in self.experiment.scores:
            return None
        scored = self.experiment.scored_key(score_name)
        if self.visitor.is_flagged(scored):
            return None

        with self.experiment.connection.transaction() as txn:
            self.alternative.increment_score(score_name, value, transaction=txn)
            self.visitor.flag(scored, transaction=txn)

        logger.debug(
            f"スコアを記録: experiment={self.experiment.name}, "
            f"alternative={self.alternative.name}, score={score_name}, value={value}"
        )
        return True

    def reset(self) -> None:
        """この実験の割り当て・完了フラグ・スコア済みフラグを削除"""
        keys = [self.experiment.key, self.experiment.finished_key]
        keys.extend(self.experiment.scored_key(name) for name in self.experiment.scores)
        self.visitor.delete(*keys)
        self._alternative = None
        self._alternative_loaded = True
