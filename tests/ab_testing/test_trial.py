# Trial（試行の状態遷移）のテスト

import re

import pytest
import redis

from split_engine.ab_testing.trial import Trial, TrialContext, is_excluded_visitor
from split_engine.config.split_config import SplitConfig, SplitHooks
from split_engine.persistence.adapters import RedisAdapter, RequestScopedAdapter
from split_engine.persistence.visitor import Visitor


@pytest.fixture
def config():
    return SplitConfig(
        experiments={
            "link_color": {
                "alternatives": ["blue", "red"],
                "goals": ["signup"],
                "scores": ["revenue"],
                "metadata": {"blue": {"hex": "#00f"}, "red": {"hex": "#f00"}},
            },
            "button_size": {"alternatives": ["small", "big"], "resettable": False},
        },
        cleanup_probability=0.0,
    )


@pytest.fixture
def experiment(catalog):
    return catalog.find_or_create("link_color")


@pytest.fixture(params=["session", "redis"])
def stored_visitor(request, catalog, connection):
    """セッション・共有ストアそれぞれの訪問者"""
    if request.param == "session":
        adapter = RequestScopedAdapter({})
    else:
        adapter = RedisAdapter(connection, "42", expire_seconds=3600)
    return Visitor(adapter, catalog)


def new_trial(visitor, experiment, context=None, rng=None):
    return Trial(visitor, experiment, context, experiment.config, rng=rng)


# =============================================================================
# 除外判定
# =============================================================================


class TestIsExcludedVisitor:
    """is_excluded_visitor のテスト"""

    def test_no_context(self, config):
        assert not is_excluded_visitor(None, config)

    @pytest.mark.parametrize("user_agent", ["Googlebot/2.1", "curl/8.0", "", "  "])
    def test_robot(self, config, user_agent):
        assert is_excluded_visitor(TrialContext(user_agent=user_agent), config)

    def test_browser(self, config):
        context = TrialContext(user_agent="Mozilla/5.0 (Macintosh) Safari/605.1.15")
        assert not is_excluded_visitor(context, config)

    def test_ignored_ip(self):
        config = SplitConfig(ignore_ip_addresses=["10.0.0.1", re.compile(r"^192\.168\.")])
        assert is_excluded_visitor(TrialContext(ip_address="10.0.0.1"), config)
        assert is_excluded_visitor(TrialContext(ip_address="192.168.1.20"), config)
        assert not is_excluded_visitor(TrialContext(ip_address="10.0.0.2"), config)

    def test_ignore_filter(self):
        config = SplitConfig(ignore_filter=lambda context: context.attributes.get("admin", False))
        assert is_excluded_visitor(TrialContext(attributes={"admin": True}), config)
        assert not is_excluded_visitor(TrialContext(), config)


# =============================================================================
# 割り当て
# =============================================================================


class TestTrialChoose:
    """choose のテスト"""

    def test_assigns_and_counts_once(self, visitor, experiment, rng):
        first = new_trial(visitor, experiment, rng=rng).choose()
        second = new_trial(visitor, experiment, rng=rng).choose()

        assert first == second
        assert visitor.get("link_color") == first.name
        assert experiment.participant_count == 1

    def test_metadata(self, visitor, experiment):
        trial = new_trial(visitor, experiment)
        alternative = trial.choose()
        assert trial.metadata == experiment.metadata[alternative.name]

    def test_override_is_recorded(self, visitor, experiment):
        alternative = new_trial(visitor, experiment).choose(override="red")

        assert alternative.name == "red"
        assert visitor.get("link_color") == "red"
        assert experiment.alternatives[1].participant_count == 1

    def test_override_replaces_without_counting(self, visitor, experiment):
        visitor.set("link_color", "blue")
        alternative = new_trial(visitor, experiment).choose(override="red")

        assert alternative.name == "red"
        assert visitor.get("link_color") == "blue"
        assert experiment.participant_count == 0

    def test_override_not_stored(self, visitor, catalog, connection):
        catalog.config.store_override = False
        experiment = catalog.find_or_create("link_color")

        alternative = new_trial(visitor, experiment).choose(override="red")

        assert alternative.name == "red"
        assert visitor.get("link_color") is None
        assert experiment.participant_count == 0

    def test_invalid_override_ignored(self, visitor, experiment):
        alternative = new_trial(visitor, experiment).choose(override="green")
        assert alternative.name in ("blue", "red")
        assert experiment.participant_count == 1

    def test_disabled_returns_control(self, visitor, catalog):
        events = []
        catalog.config.enabled = False
        catalog.config.hooks = SplitHooks(on_trial=events.append)
        experiment = catalog.find_or_create("link_color")

        assert new_trial(visitor, experiment).choose().name == "blue"
        assert visitor.keys() == set()
        assert events == []

    def test_robot_gets_control(self, visitor, experiment):
        context = TrialContext(user_agent="Googlebot")
        assert new_trial(visitor, experiment, context).choose().name == "blue"
        assert visitor.keys() == set()
        assert experiment.participant_count == 0

    def test_unstarted_experiment_gets_control(self, visitor, catalog):
        catalog.config.start_manually = True
        experiment = catalog.find_or_create("link_color")

        assert new_trial(visitor, experiment).choose().name == "blue"
        assert experiment.participant_count == 0

    def test_winner_is_sticky(self, visitor, experiment):
        experiment.set_winner("red")
        for _ in range(5):
            assert new_trial(visitor, experiment).choose().name == "red"
        assert visitor.get("link_color") is None
        assert experiment.participant_count == 0

    def test_max_experiments_reached(self, visitor, catalog):
        catalog.find_or_create("button_size")
        visitor.set("button_size", "big")
        experiment = catalog.find_or_create("link_color")

        assert new_trial(visitor, experiment).choose().name == "blue"
        assert visitor.get("link_color") is None

    def test_adopts_concurrent_assignment(self, visitor, experiment):
        trial = new_trial(visitor, experiment)
        assert trial.alternative is None
        # 別リクエストが先に割り当てを記録
        visitor.set("link_color", "red")

        assert trial.choose().name == "red"
        assert experiment.participant_count == 0

    def test_cleans_old_versions(self, visitor, experiment):
        visitor.set("link_color", "blue")
        visitor.flag("link_color:finished")
        experiment.reset()

        alternative = new_trial(visitor, experiment).choose()

        assert visitor.keys() == {"link_color:1"}
        assert visitor.get("link_color:1") == alternative.name

    def test_hooks(self, visitor, catalog):
        events = []
        catalog.config.hooks = SplitHooks(
            on_trial=lambda trial: events.append("trial"),
            on_trial_choose=lambda trial: events.append(("choose", trial.alternative.name)),
        )
        experiment = catalog.find_or_create("link_color")

        chosen = new_trial(visitor, experiment).choose()
        new_trial(visitor, experiment).choose()

        assert events == [("choose", chosen.name), "trial", "trial"]

    def test_context_hooks_take_precedence(self, visitor, catalog, experiment):
        config_events, context_events = [], []
        catalog.config.hooks = SplitHooks(on_trial=config_events.append)
        context = TrialContext(hooks=SplitHooks(on_trial=context_events.append))

        new_trial(visitor, experiment, context).choose()

        assert config_events == []
        assert len(context_events) == 1


# =============================================================================
# 完了
# =============================================================================


class TestTrialComplete:
    """complete のテスト"""

    def test_complete_resettable(self, visitor, experiment):
        alternative = new_trial(visitor, experiment).choose()

        assert new_trial(visitor, experiment).complete() is True

        assert alternative.completed_count() == 1
        assert visitor.get("link_color") is None

    def test_complete_only_once(self, visitor, catalog):
        experiment = catalog.find_or_create("button_size")
        alternative = new_trial(visitor, experiment).choose()

        assert new_trial(visitor, experiment).complete() is True
        assert new_trial(visitor, experiment).complete() is None

        assert alternative.completed_count() == 1
        assert visitor.is_flagged("button_size:finished")
        assert visitor.get("button_size") == alternative.name

    def test_explicit_reset_completes_again(self, visitor, catalog):
        experiment = catalog.find_or_create("button_size")
        alternative = new_trial(visitor, experiment).choose()
        new_trial(visitor, experiment).complete()

        assert new_trial(visitor, experiment).complete(reset=True) is True

        assert alternative.completed_count() == 2
        assert visitor.keys() == set()

    def test_goal_completion(self, visitor, experiment):
        alternative = new_trial(visitor, experiment).choose()

        assert new_trial(visitor, experiment).complete(goal="signup", reset=False) is True

        assert alternative.completed_count("signup") == 1
        assert alternative.completed_count() == 0

    def test_unknown_goal(self, visitor, experiment):
        new_trial(visitor, experiment).choose()
        assert new_trial(visitor, experiment).complete(goal="purchase") is None

    def test_unassigned_visitor(self, visitor, experiment):
        assert new_trial(visitor, experiment).complete() is None
        assert all(c.completed_count == 0 for c in experiment.alternative_counts())

    def test_complete_hook(self, visitor, catalog, experiment):
        events = []
        new_trial(visitor, experiment).choose()
        catalog.config.hooks = SplitHooks(on_trial_complete=events.append)

        new_trial(visitor, experiment).complete()

        assert len(events) == 1


# =============================================================================
# スコア
# =============================================================================


class TestTrialScore:
    """score のテスト"""

    def test_score_once(self, visitor, experiment):
        alternative = new_trial(visitor, experiment).choose()

        assert new_trial(visitor, experiment).score("revenue", 120) is True
        assert new_trial(visitor, experiment).score("revenue", 50) is None

        assert alternative.score("revenue") == 120
        assert visitor.is_flagged("link_color:scored:revenue")

    def test_unknown_score(self, visitor, experiment):
        new_trial(visitor, experiment).choose()
        assert new_trial(visitor, experiment).score("clicks") is None

    def test_unassigned(self, visitor, experiment):
        assert new_trial(visitor, experiment).score("revenue") is None

    def test_reset_clears_all_flags(self, visitor, experiment):
        new_trial(visitor, experiment).choose()
        trial = new_trial(visitor, experiment)
        trial.score("revenue", 10)
        visitor.flag(experiment.finished_key)

        trial.reset()

        assert visitor.keys() == set()
        assert trial.alternative is None

    def test_failed_transaction_applies_neither_score_nor_flag(
        self, stored_visitor, experiment, fail_transactions
    ):
        alternative = new_trial(stored_visitor, experiment).choose()
        fail_transactions()

        with pytest.raises(redis.exceptions.ConnectionError):
            new_trial(stored_visitor, experiment).score("revenue", 120)

        assert alternative.score("revenue") == 0
        assert not stored_visitor.is_flagged(experiment.scored_key("revenue"))
