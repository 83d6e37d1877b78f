# SplitConfig の単体テスト

import os
import re
from unittest.mock import MagicMock, patch

import pytest

from split_engine.config.split_config import (
    ALLOCATION_ALGORITHMS,
    BOTS,
    DEFAULT_VISITOR_EXPIRE_SECONDS,
    SplitConfig,
    SplitHooks,
    build_robot_regex,
    normalize_alternatives,
    split_config,
)
from split_engine.exceptions import ConfigurationError


class TestSplitConfigDefaults:
    """デフォルト値のテスト"""

    def test_enabled_by_default(self):
        config = SplitConfig()
        assert config.enabled is True
        assert config.disabled is False

    def test_default_algorithm(self):
        assert SplitConfig().algorithm == "weighted_sample"
        assert "weighted_sample" in ALLOCATION_ALGORITHMS
        assert "whiplash" in ALLOCATION_ALGORITHMS

    def test_default_multiple_experiments(self):
        assert SplitConfig().allow_multiple_experiments is False

    def test_default_simulations(self):
        assert SplitConfig().beta_probability_simulations == 2000

    def test_default_visitor_expiry(self):
        """訪問者キーの保持期間は30日"""
        assert SplitConfig().visitor_expire_seconds == DEFAULT_VISITOR_EXPIRE_SECONDS == 2592000

    def test_redis_url_from_environment(self):
        """環境変数REDIS_URLから接続URLを取得できる"""
        with patch.dict(os.environ, {"REDIS_URL": "redis://env-host:6379/3"}):
            assert SplitConfig().redis_url == "redis://env-host:6379/3"

    def test_explicit_redis_url_wins(self):
        with patch.dict(os.environ, {"REDIS_URL": "redis://env-host:6379/3"}):
            assert SplitConfig(redis_url="redis://other:6379/0").redis_url == "redis://other:6379/0"

    def test_module_default_instance(self):
        assert isinstance(split_config, SplitConfig)


class TestSplitConfigValidation:
    """設定値の検証テスト"""

    def test_invalid_multiple_experiments_mode(self):
        with pytest.raises(ConfigurationError):
            SplitConfig(allow_multiple_experiments="sometimes")

    @pytest.mark.parametrize("mode", [True, False, "control"])
    def test_valid_multiple_experiments_modes(self, mode):
        assert SplitConfig(allow_multiple_experiments=mode).allow_multiple_experiments == mode

    def test_cleanup_probability_out_of_range(self):
        with pytest.raises(ConfigurationError):
            SplitConfig(cleanup_probability=1.5)

    def test_simulations_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            SplitConfig(beta_probability_simulations=0)


class TestRobotRegex:
    """ロボット判定の正規表現のテスト"""

    @pytest.mark.parametrize("user_agent", [
        "Googlebot/2.1 (+http://www.google.com/bot.html)",
        "Mozilla/5.0 (compatible; bingbot/2.0)",
        "curl/8.4.0",
        "",
        "   ",
    ])
    def test_matches_bots_and_empty_agents(self, user_agent):
        assert SplitConfig().robot_regex.search(user_agent)

    def test_does_not_match_browser(self):
        browser = (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        )
        assert SplitConfig().robot_regex.search(browser) is None

    def test_case_insensitive(self):
        assert build_robot_regex(BOTS).search("GOOGLEBOT")

    def test_custom_regex(self):
        config = SplitConfig(robot_regex=re.compile("internal-probe"))
        assert config.robot_regex.search("internal-probe/1.0")
        assert config.robot_regex.search("Googlebot") is None


class TestNormalizeAlternatives:
    """代替案の正規化のテスト"""

    def test_plain_names_split_equally(self):
        result = normalize_alternatives(["a", "b", "c", "d"])
        assert [name for name, _ in result] == ["a", "b", "c", "d"]
        assert all(weight == pytest.approx(0.25) for _, weight in result)

    def test_mixed_percent_and_names(self):
        """percent 指定のない代替案に残りを均等配分する"""
        result = normalize_alternatives([
            {"name": "control_opt", "percent": 34},
            "second_opt",
            {"name": "third_opt", "percent": 23},
            "fourth_opt",
        ])
        assert [name for name, _ in result] == ["control_opt", "second_opt", "third_opt", "fourth_opt"]
        assert [weight for _, weight in result] == pytest.approx([0.34, 0.215, 0.23, 0.215])

    def test_mapping_form(self):
        result = normalize_alternatives({"blue": 70, "red": 30})
        assert result == [("blue", pytest.approx(0.7)), ("red", pytest.approx(0.3))]

    def test_weights_sum_to_one(self):
        for raw in (["x", "y", "z"], [{"name": "x", "percent": 10}, "y", "z"], {"x": 50, "y": 50}):
            assert sum(weight for _, weight in normalize_alternatives(raw)) == pytest.approx(1.0)

    def test_unknown_shape_returns_empty(self):
        assert normalize_alternatives(None) == []
        assert normalize_alternatives("blue") == []
        assert normalize_alternatives([]) == []

    def test_non_numeric_percent(self):
        with pytest.raises(ConfigurationError):
            normalize_alternatives([{"name": "blue", "percent": "half"}, "red"])


class TestExperimentFor:
    """experiment_for のテスト"""

    def test_missing_experiment(self):
        assert SplitConfig().experiment_for("nothing") is None

    def test_normalized_definition(self):
        config = SplitConfig(experiments={
            "link_color": {
                "alternatives": ["blue", "red"],
                "goals": ["signup"],
                "scores": ["revenue"],
                "metadata": {"blue": "#00f", "red": "#f00"},
                "resettable": False,
                "algorithm": "whiplash",
            },
        })
        definition = config.experiment_for("link_color")

        assert definition["alternatives"] == [("blue", 0.5), ("red", 0.5)]
        assert definition["goals"] == ["signup"]
        assert definition["scores"] == ["revenue"]
        assert definition["metadata"] == {"blue": "#00f", "red": "#f00"}
        assert definition["resettable"] is False
        assert definition["algorithm"] == "whiplash"

    def test_defaults_for_missing_fields(self):
        config = SplitConfig(experiments={"e": {"alternatives": ["a", "b"]}}, algorithm="whiplash")
        definition = config.experiment_for("e")

        assert definition["goals"] == []
        assert definition["scores"] == []
        assert definition["metadata"] is None
        assert definition["resettable"] is True
        assert definition["algorithm"] == "whiplash"

    def test_scores_index(self):
        config = SplitConfig(experiments={
            "experiment1": {"alternatives": ["a", "b"], "scores": ["score1", "score2"]},
            "experiment2": {"alternatives": ["a", "b"], "scores": ["score1", "score3"]},
        })
        assert config.scores == {
            "score1": ["experiment1", "experiment2"],
            "score2": ["experiment1"],
            "score3": ["experiment2"],
        }


class TestSplitHooks:
    """フックのテスト"""

    def test_run_calls_hook(self):
        hook = MagicMock()
        hooks = SplitHooks(on_trial=hook)
        hooks.run("on_trial", "trial")
        hook.assert_called_once_with("trial")

    def test_missing_hook_is_noop(self):
        SplitHooks().run("on_experiment_reset", object())


class TestFromYaml:
    """YAMLからの設定作成のテスト"""

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "experiments.yaml"
        path.write_text(
            "experiments:\n"
            "  link_color:\n"
            "    alternatives: [blue, red]\n"
            "    goals: [signup]\n",
            encoding="utf-8",
        )
        config = SplitConfig.from_yaml(str(path), allow_multiple_experiments=True)

        assert config.allow_multiple_experiments is True
        assert config.experiment_for("link_color")["goals"] == ["signup"]
