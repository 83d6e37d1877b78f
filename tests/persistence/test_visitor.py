# 訪問者状態（Visitor）のテスト

import pytest

from split_engine.ab_testing.catalog import ExperimentCatalog
from split_engine.config.split_config import SplitConfig
from split_engine.persistence.adapters import RequestScopedAdapter
from split_engine.persistence.visitor import (
    Visitor,
    base_key,
    finished_key,
    is_assignment_key,
    key_without_version,
    scored_key,
)


# ============================================================================
# Fixtures
# ============================================================================


def make_visitor(connection, data=None, **config_options):
    config = SplitConfig(
        experiments={
            "link_color": {"alternatives": ["blue", "red"], "scores": ["revenue"]},
            "button_size": {"alternatives": ["small", "large"]},
            "headline": {"alternatives": ["short", "long"]},
        },
        cleanup_probability=0.0,
        **config_options,
    )
    catalog = ExperimentCatalog(connection, config)
    session = {"split": dict(data or {})}
    return Visitor(RequestScopedAdapter(session), catalog), catalog


# ============================================================================
# キー文法
# ============================================================================


class TestKeyGrammar:
    """キー文法ヘルパーのテスト"""

    def test_flag_keys(self):
        assert finished_key("link_color:2") == "link_color:2:finished"
        assert scored_key("link_color", "revenue") == "link_color:scored:revenue"

    def test_base_key(self):
        assert base_key("link_color:2:finished") == "link_color:2"
        assert base_key("link_color:scored:revenue") == "link_color"
        assert base_key("link_color:2") == "link_color:2"

    def test_is_assignment_key(self):
        assert is_assignment_key("link_color:1")
        assert not is_assignment_key("link_color:finished")
        assert not is_assignment_key("link_color:scored:revenue")

    def test_key_without_version(self):
        assert key_without_version("link_color:12") == "link_color"
        assert key_without_version("link_color") == "link_color"


# ============================================================================
# 委譲とフラグ
# ============================================================================


class TestVisitorStorage:
    """アダプターへの委譲とフラグのテスト"""

    def test_item_access(self, visitor):
        visitor["link_color"] = "blue"
        assert visitor["link_color"] == "blue"
        assert visitor.get("missing") is None

    def test_flags(self, visitor):
        assert visitor.is_flagged("link_color:finished") is False
        visitor.flag("link_color:finished")
        assert visitor.is_flagged("link_color:finished") is True

    @pytest.mark.parametrize("value", ["", "false", "0"])
    def test_false_values_not_flagged(self, visitor, value):
        visitor.set("link_color:finished", value)
        assert visitor.is_flagged("link_color:finished") is False

    def test_keys_for(self, visitor):
        for key in ("link_color", "link_color:finished", "link_color:scored:revenue", "button_size"):
            visitor.set(key, "x")
        assert sorted(visitor.keys_for("link_color")) == [
            "link_color", "link_color:finished", "link_color:scored:revenue",
        ]


# ============================================================================
# 掃除
# ============================================================================


class TestCleanupOldExperiments:
    """cleanup_old_experiments のテスト"""

    def test_removes_unknown_experiments(self, connection):
        visitor, catalog = make_visitor(connection, {"gone": "a", "gone:finished": "true"})
        catalog.find_or_create("link_color")
        visitor.set("link_color", "blue")

        visitor.cleanup_old_experiments()

        assert visitor.keys() == {"link_color"}

    def test_removes_experiments_with_winner(self, connection):
        visitor, catalog = make_visitor(connection, {"link_color": "blue"})
        catalog.find_or_create("link_color").set_winner("red")

        visitor.cleanup_old_experiments()

        assert visitor.keys() == set()

    def test_removes_unstarted_experiments(self, connection):
        visitor, catalog = make_visitor(connection, {"link_color": "blue"}, start_manually=True)
        catalog.find_or_create("link_color")

        visitor.cleanup_old_experiments()

        assert visitor.keys() == set()

    def test_runs_once(self, connection):
        visitor, catalog = make_visitor(connection)
        visitor.cleanup_old_experiments()
        visitor.set("gone", "a")

        visitor.cleanup_old_experiments()

        assert visitor.get("gone") == "a"


class TestCleanupOldVersions:
    """cleanup_old_versions のテスト"""

    def test_removes_previous_versions(self, connection):
        visitor, catalog = make_visitor(connection, {
            "link_color": "blue",
            "link_color:finished": "true",
            "link_color:1": "red",
            "link_color:1:scored:revenue": "true",
            "button_size": "small",
        })
        experiment = catalog.find_or_create("link_color")
        experiment.reset()
        experiment.reset()
        visitor.set("link_color:2", "blue")

        visitor.cleanup_old_versions(experiment)

        assert visitor.keys() == {"link_color:2", "button_size"}


# ============================================================================
# 参加状況・同時参加数の上限
# ============================================================================


class TestActiveExperiments:
    """active_experiments のテスト"""

    def test_lists_assignments_without_winner(self, connection):
        visitor, catalog = make_visitor(connection, {
            "link_color": "blue",
            "link_color:finished": "true",
            "button_size": "large",
            "unknown": "x",
        })
        catalog.find_or_create("link_color")
        catalog.find_or_create("button_size").set_winner("small")

        assert visitor.active_experiments() == {"link_color": "blue"}

    def test_versioned_key(self, connection):
        visitor, catalog = make_visitor(connection)
        experiment = catalog.find_or_create("link_color")
        experiment.reset()
        visitor.set(experiment.key, "red")

        assert visitor.active_experiments() == {"link_color": "red"}


class TestMaxExperimentsReached:
    """max_experiments_reached のテスト"""

    def test_single_experiment_mode(self, connection):
        visitor, catalog = make_visitor(connection, {"link_color": "blue"})
        assert visitor.max_experiments_reached("link_color") is False
        assert visitor.max_experiments_reached("button_size") is True

    def test_own_flags_do_not_count(self, connection):
        visitor, catalog = make_visitor(connection, {"link_color": "blue", "link_color:finished": "true"})
        assert visitor.max_experiments_reached("link_color") is False

    def test_unlimited_mode(self, connection):
        visitor, catalog = make_visitor(
            connection, {"link_color": "red", "button_size": "large"}, allow_multiple_experiments=True
        )
        assert visitor.max_experiments_reached("headline") is False

    def test_control_mode_allows_control_assignments(self, connection):
        visitor, catalog = make_visitor(
            connection, {"link_color": "blue", "button_size": "small"},
            allow_multiple_experiments="control",
        )
        catalog.find_or_create("link_color")
        catalog.find_or_create("button_size")

        assert visitor.max_experiments_reached("headline") is False

    def test_control_mode_blocks_after_non_control(self, connection):
        visitor, catalog = make_visitor(
            connection, {"link_color": "red"}, allow_multiple_experiments="control"
        )
        catalog.find_or_create("link_color")

        assert visitor.max_experiments_reached("headline") is True
        assert visitor.max_experiments_reached("link_color") is False
