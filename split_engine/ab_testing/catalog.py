# 実験カタログ
"""
ExperimentCatalog: 実験の一覧・検索・作成

設定と共有ストアの両方から実験を解決する。設定にない実験は
共有ストアに保存済みの定義から復元する。
"""

import logging
import random
from typing import List, Optional

from split_engine.ab_testing.experiment import EXPERIMENTS_KEY, Experiment
from split_engine.config.split_config import SplitConfig
from split_engine.db.connection import RedisConnection
from split_engine.exceptions import ExperimentNotFoundError


logger = logging.getLogger(__name__)


class ExperimentCatalog:
    """実験カタログ

    使用例:
        catalog = ExperimentCatalog(conn, config)
        experiment = catalog.find_or_create("link_color")
        for experiment in catalog.all_active_first():
            print(experiment.name, experiment.has_winner)

    Attributes:
        connection: 共有ストア接続
        config: SplitConfig インスタンス
    """

    def __init__(
        self,
        connection: RedisConnection,
        config: SplitConfig,
        rng: Optional[random.Random] = None,
    ):
        self.connection = connection
        self.config = config
        self.rng = rng

    def find_or_initialize(self, name: str) -> Experiment:
        """実験を取得（未登録でも返す）

        設定にない登録済み実験は共有ストアから定義を復元する。
        """
        experiment = Experiment(name, self.connection, self.config, rng=self.rng)
        if not experiment.is_configured and not experiment.is_new_record:
            logger.debug(f"設定にない実験を共有ストアから復元: name={name}")
            experiment.load_from_store()
        return experiment

    def find(self, name: str) -> Optional[Experiment]:
        """登録済みの実験を取得（未登録の場合 None）"""
        experiment = self.find_or_initialize(name)
        if experiment.is_new_record:
            return None
        return experiment

    def get(self, name: str) -> Experiment:
        """実験を取得

        Raises:
            ExperimentNotFoundError: 設定にも共有ストアにも存在しない場合
        """
        experiment = self.find_or_initialize(name)
        if not experiment.is_configured and experiment.is_new_record:
            raise ExperimentNotFoundError(f"Experiment '{name}' not found")
        return experiment

    def find_or_create(self, name: str) -> Experiment:
        """実験を取得し、未登録であれば検証して登録

        Raises:
            ConfigurationError: 定義に不備がある場合
        """
        return self.find_or_initialize(name).save()

    def all(self) -> List[Experiment]:
        """登録済みの全実験（名前順）"""
        names = sorted(self.connection.client.smembers(EXPERIMENTS_KEY))
        return [experiment for experiment in map(self.find, names) if experiment is not None]

    def all_active_first(self) -> List[Experiment]:
        """勝者未確定の実験を先に、それぞれ開始時刻の新しい順で返す"""
        experiments = self.all()
        active = [e for e in experiments if not e.has_winner]
        finished = [e for e in experiments if e.has_winner]

        def newest_first(group: List[Experiment]) -> List[Experiment]:
            return sorted(
                group,
                key=lambda e: e.start_time.timestamp() if e.start_time else float("-inf"),
                reverse=True,
            )

        return newest_first(active) + newest_first(finished)

    def experiments_with_score(self, score_name: str) -> List[Experiment]:
        """指定スコアを持つ設定済みの実験"""
        return [
            self.find_or_initialize(name)
            for name in self.config.scores.get(str(score_name), [])
        ]
