# A/Bテスト クライアント（境界API）
"""
SplitClient: アプリケーションから呼び出す A/B テストの入口

設定・共有ストア接続・実験カタログ・遅延スコアをまとめ、
訪問者単位の操作（割り当て・完了・スコア）を提供する。

共有ストア障害時の方針（SplitConfig.db_failover）:
- False: StoreUnavailableError を送出
- True:  on_db_failover フックを呼び、コントロール（または許可されていれば
         明示的なオーバーライド）を返す。記録系の操作は何もしない。
"""

import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Tuple

from split_engine.ab_testing.catalog import ExperimentCatalog
from split_engine.ab_testing.delayed_score import DelayedScoreRecord, DelayedScoreStore
from split_engine.ab_testing.experiment import Experiment
from split_engine.ab_testing.trial import Trial, TrialContext, is_excluded_visitor
from split_engine.config.split_config import SplitConfig, split_config
from split_engine.db.connection import STORE_ERRORS, RedisConnection, get_redis
from split_engine.exceptions import ExperimentNotFoundError, StoreUnavailableError
from split_engine.persistence.adapters import RedisAdapter, RequestScopedAdapter
from split_engine.persistence.visitor import Visitor


logger = logging.getLogger(__name__)


@dataclass
class AbTestResult:
    """ab_test の結果"""
    alternative: Optional[str]
    metadata: Any = None


class SplitClient:
    """A/Bテスト クライアント

    使用例:
        client = SplitClient(config=SplitConfig(experiments={...}))
        visitor = client.visitor_for(user_id)

        result = client.ab_test("link_color", visitor)
        result.alternative  # "blue" or "red"

        client.ab_finished("link_color", visitor)
        client.ab_finished({"link_color": "signup"}, visitor)  # ゴール指定
        client.ab_score("revenue", visitor, 120)

    Attributes:
        config: SplitConfig インスタンス
        connection: 共有ストア接続
        catalog: ExperimentCatalog インスタンス
        delayed_scores: DelayedScoreStore インスタンス
    """

    def __init__(
        self,
        connection: Optional[RedisConnection] = None,
        config: Optional[SplitConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        """SplitClientを初期化

        Args:
            connection: 共有ストア接続（省略時は共有のデフォルト接続）
            config: 設定（省略時はプロセス全体のデフォルト設定）
            rng: 割り当てと掃除に使う乱数生成器
        """
        self.config = config or split_config
        self.connection = connection or get_redis(self.config.redis_url)
        self.rng = rng
        self.catalog = ExperimentCatalog(self.connection, self.config, rng=rng)
        self.delayed_scores = DelayedScoreStore(self.connection, self.config.delayed_score_ttl)

    # === 訪問者 ===

    def visitor_for(
        self,
        identity: Any = None,
        session: Optional[MutableMapping[str, Any]] = None,
    ) -> Visitor:
        """訪問者状態を作成

        外部IDがあれば共有ストア上の永続ストア、なければセッション
        （またはこの呼び出し限り）のストアを使う。

        Args:
            identity: 訪問者の外部ID（ユーザーオブジェクトなど）
            session: セッション辞書
        """
        if identity is not None:
            adapter = RedisAdapter(
                self.connection,
                identity,
                lookup_by=self.config.visitor_lookup_by,
                namespace=self.config.visitor_namespace,
                expire_seconds=self.config.visitor_expire_seconds,
            )
        else:
            adapter = RequestScopedAdapter(session)
        return Visitor(adapter, self.catalog)

    def is_excluded(self, context: Optional[TrialContext]) -> bool:
        """除外対象の訪問者か"""
        return is_excluded_visitor(context, self.config)

    def active_experiments(self, visitor: Visitor) -> Dict[str, Optional[str]]:
        """参加中の実験: 実験名 → 代替案名"""
        return visitor.active_experiments()

    # === 障害時の処理 ===

    def _handle_store_error(self, error: BaseException) -> None:
        """フェイルオーバーしない設定なら StoreUnavailableError を送出"""
        if not self.config.db_failover:
            raise StoreUnavailableError(f"共有ストアに接続できません: {error}") from error
        logger.warning(f"共有ストア障害のためフェイルオーバー: {error}")
        self.config.hooks.run("on_db_failover", error)

    @staticmethod
    def _normalize_metric(metric: Any) -> Tuple[str, Optional[str]]:
        """実験名、または {実験名: ゴール} を (実験名, ゴール) に変換"""
        if isinstance(metric, Mapping):
            experiment_name, goal = next(iter(metric.items()))
            return str(experiment_name), None if goal is None else str(goal)
        return str(metric), None

    # === 割り当て ===

    def ab_test(
        self,
        experiment_name: str,
        visitor: Visitor,
        control: Optional[str] = None,
        override: Optional[str] = None,
        context: Optional[TrialContext] = None,
    ) -> AbTestResult:
        """訪問者に代替案を割り当てる

        Args:
            experiment_name: 実験名
            visitor: 訪問者状態
            control: 呼び出し側が指定するコントロール（指定時は記録しない）
            override: 明示的に指定された代替案名
            context: リクエスト情報

        Returns:
            AbTestResult（代替案名とメタデータ）

        Raises:
            ExperimentNotFoundError: 実験が正しく定義されておらず control もない場合
            StoreUnavailableError: 共有ストア障害（db_failover が False の場合）
        """
        experiment = Experiment(experiment_name, self.connection, self.config, rng=self.rng)
        alternative: Optional[str] = None
        metadata: Any = None

        try:
            if not experiment.is_configured and not experiment.is_new_record:
                experiment.load_from_store()

            if not experiment.is_valid() and control is None:
                raise ExperimentNotFoundError(
                    f"Experiment {experiment_name} not correctly defined in configuration."
                )

            if control is not None:
                alternative = experiment.winner.name if experiment.has_winner else str(control)
            elif self.config.enabled:
                experiment.save()
                trial = Trial(visitor, experiment, context, self.config, rng=self.rng)
                alternative = trial.choose(override).name
                metadata = trial.metadata
            else:
                alternative = experiment.control.name

            logger.info(
                f"ab_test: experiment={experiment.name}, alternative={alternative}, override={override}"
            )
        except STORE_ERRORS as e:
            self._handle_store_error(e)
            if self.config.db_failover_allow_parameter_override and override is not None:
                alternative = str(override)

        if alternative is None:
            if control is not None:
                alternative = str(control)
            elif experiment.control is not None:
                alternative = experiment.control.name
            else:
                raise ExperimentNotFoundError(f"Experiment {experiment_name} has no alternatives")

        return AbTestResult(alternative=alternative, metadata=metadata)

    def ab_test_result(
        self,
        experiment_name: str,
        visitor: Visitor,
        context: Optional[TrialContext] = None,
    ) -> Optional[str]:
        """訪問者に割り当て済みの代替案名（未割り当て・未登録の場合 None）"""
        if self.is_excluded(context) or self.config.disabled:
            return None
        try:
            experiment = self.catalog.find(experiment_name)
            if experiment is None:
                return None
            return visitor.get(experiment.key)
        except STORE_ERRORS as e:
            self._handle_store_error(e)
            return None

    # === 完了 ===

    def ab_finished(
        self,
        metric: Any,
        visitor: Visitor,
        reset: Optional[bool] = None,
        context: Optional[TrialContext] = None,
    ) -> Optional[bool]:
        """完了を記録

        Args:
            metric: 実験名、または {実験名: ゴール名}
            visitor: 訪問者状態
            reset: True で割り当てを削除、False で完了フラグを設定（省略時は実験設定に従う）
            context: リクエスト情報

        Returns:
            記録した場合 True、何もしなかった場合 None
        """
        if self.is_excluded(context) or self.config.disabled:
            return None

        experiment_name, goal = self._normalize_metric(metric)
        try:
            experiment = self.catalog.find_or_initialize(experiment_name)
            if experiment.has_winner or not experiment.is_valid():
                return None
            if visitor.is_flagged(experiment.finished_key) and not reset:
                return None

            result = Trial(visitor, experiment, context, self.config, rng=self.rng).complete(
                goal=goal, reset=reset
            )
            logger.info(
                f"ab_finished: experiment={experiment_name}, goal={goal}, reset={reset}, recorded={bool(result)}"
            )
            return result
        except STORE_ERRORS as e:
            self._handle_store_error(e)
            return None

    # === スコア ===

    def _unscored_trials(
        self,
        score_name: str,
        visitor: Visitor,
        context: Optional[TrialContext],
    ) -> List[Trial]:
        """スコア未記録で割り当て済みの、勝者未確定の実験の試行"""
        trials = []
        for experiment in self.catalog.experiments_with_score(score_name):
            if experiment.has_winner:
                continue
            if visitor.is_flagged(experiment.scored_key(score_name)):
                continue
            if visitor.get(experiment.key) is None:
                continue
            trials.append(Trial(visitor, experiment, context, self.config, rng=self.rng))
        return trials

    def ab_score(
        self,
        score_name: str,
        visitor: Visitor,
        value: int = 1,
        context: Optional[TrialContext] = None,
    ) -> Optional[int]:
        """訪問者が参加中の、スコアを持つ全実験にスコアを記録

        Returns:
            記録した実験の数（除外・無効時は None）
        """
        if self.is_excluded(context) or self.config.disabled:
            return None

        score_name = str(score_name)
        try:
            trials = self._unscored_trials(score_name, visitor, context)
            scored = sum(1 for trial in trials if trial.score(score_name, value))
            logger.info(f"ab_score: score={score_name}, value={value}, experiments={scored}")
            return scored
        except STORE_ERRORS as e:
            self._handle_store_error(e)
            return None

    def ab_add_delayed_score(
        self,
        score_name: str,
        label: str,
        visitor: Visitor,
        value: int = 1,
        ttl: Optional[int] = None,
        context: Optional[TrialContext] = None,
    ) -> Optional[DelayedScoreRecord]:
        """訪問者が参加中の実験に対してスコアを保留"""
        if self.is_excluded(context) or self.config.disabled:
            return None

        score_name = str(score_name)
        try:
            trials = self._unscored_trials(score_name, visitor, context)
            record = self.delayed_scores.add_delayed(score_name, label, trials, value, ttl)
            logger.info(
                f"ab_add_delayed_score: score={score_name}, label={label}, value={value}, ttl={ttl}"
            )
            return record
        except STORE_ERRORS as e:
            self._handle_store_error(e)
            return None

    def ab_apply_delayed_score(self, score_name: str, label: str) -> Optional[DelayedScoreRecord]:
        """保留中のスコアを適用"""
        if self.config.disabled:
            return None
        try:
            record = self.delayed_scores.apply_delayed(str(score_name), label)
            logger.info(f"ab_apply_delayed_score: score={score_name}, label={label}")
            return record
        except STORE_ERRORS as e:
            self._handle_store_error(e)
            return None

    def ab_score_alternative(
        self,
        experiment_name: str,
        alternative_name: str,
        score_name: str,
        value: int = 1,
    ) -> Optional[int]:
        """訪問者を介さずに代替案へ直接スコアを加算

        Returns:
            加算後のスコア（実験・代替案・スコアが不正な場合 None）
        """
        if self.config.disabled:
            return None

        score_name = str(score_name)
        alternative_name = str(alternative_name)
        try:
            experiment = self.catalog.find_or_initialize(str(experiment_name))
            if not experiment.is_valid() or score_name not in experiment.scores:
                return None

            alternative = next(
                (alt for alt in experiment.alternatives if alt.name == alternative_name), None
            )
            if alternative is None:
                return None

            result = alternative.increment_score(score_name, value)
            logger.info(
                f"ab_score_alternative: experiment={experiment_name}, "
                f"alternative={alternative_name}, score={score_name}, value={value}"
            )
            return result
        except STORE_ERRORS as e:
            self._handle_store_error(e)
            return None
