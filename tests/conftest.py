# テスト共通フィクスチャ
"""
共有ストアは fakeredis を RedisConnection に注入して使用する。
乱数はシード付きの random.Random を注入して再現性を保つ。
"""

import random
from unittest.mock import MagicMock

import fakeredis
import pytest
import redis

from split_engine.ab_testing.catalog import ExperimentCatalog
from split_engine.config.split_config import SplitConfig
from split_engine.db.connection import RedisConnection
from split_engine.persistence.adapters import RequestScopedAdapter
from split_engine.persistence.visitor import Visitor


@pytest.fixture
def redis_client():
    """fakeredis クライアント（テストごとに独立）"""
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def connection(redis_client):
    """fakeredis を注入した共有ストア接続"""
    return RedisConnection(client=redis_client)


@pytest.fixture
def config():
    """テスト用設定（掃除の確率は0）"""
    return SplitConfig(
        experiments={
            "link_color": {"alternatives": ["blue", "red"]},
        },
        cleanup_probability=0.0,
        redis_url="redis://localhost:6379/15",
    )


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def catalog(connection, config, rng):
    return ExperimentCatalog(connection, config, rng=rng)


@pytest.fixture
def session():
    """セッション辞書"""
    return {}


@pytest.fixture
def visitor(session, catalog):
    """リクエストスコープの訪問者"""
    return Visitor(RequestScopedAdapter(session), catalog)


@pytest.fixture
def fail_transactions(connection, monkeypatch):
    """呼び出し以降、MULTI/EXEC の実行を ConnectionError にする

    非トランザクションのパイプラインと単一コマンドはそのまま動作する。
    """

    def activate():
        create_pipeline = connection.client.pipeline

        def pipeline(transaction=True, shard_hint=None):
            pipe = create_pipeline(transaction=transaction, shard_hint=shard_hint)
            if transaction:
                pipe.execute = MagicMock(side_effect=redis.exceptions.ConnectionError("connection lost"))
            return pipe

        monkeypatch.setattr(connection.client, "pipeline", pipeline)

    return activate
