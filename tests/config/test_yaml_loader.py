# 実験定義YAMLローダーのテスト

import pytest

from split_engine.config.yaml_loader import (
    load_experiments,
    load_yaml,
    validate_experiment_definition,
)
from split_engine.exceptions import ConfigurationError


@pytest.fixture
def write_yaml(tmp_path):
    def _write(content: str):
        path = tmp_path / "experiments.yaml"
        path.write_text(content, encoding="utf-8")
        return str(path)
    return _write


class TestLoadYaml:
    """load_yaml のテスト"""

    def test_empty_file(self, write_yaml):
        assert load_yaml(write_yaml("")) == {}

    def test_root_must_be_mapping(self, write_yaml):
        with pytest.raises(ConfigurationError):
            load_yaml(write_yaml("- a\n- b\n"))

    def test_invalid_yaml(self, write_yaml):
        with pytest.raises(ConfigurationError):
            load_yaml(write_yaml("experiments: [unclosed\n"))


class TestLoadExperiments:
    """load_experiments のテスト"""

    def test_with_experiments_key(self, write_yaml):
        path = write_yaml(
            "experiments:\n"
            "  link_color:\n"
            "    alternatives:\n"
            "      - name: blue\n"
            "        percent: 70\n"
            "      - red\n"
            "    scores: [revenue]\n"
        )
        experiments = load_experiments(path)
        assert list(experiments) == ["link_color"]
        assert experiments["link_color"]["scores"] == ["revenue"]

    def test_bare_mapping(self, write_yaml):
        path = write_yaml("button_size:\n  alternatives: {small: 50, large: 50}\n")
        assert "button_size" in load_experiments(path)

    def test_invalid_definition_raises(self, write_yaml):
        path = write_yaml("experiments:\n  broken:\n    goals: [a]\n")
        with pytest.raises(ConfigurationError, match="alternatives"):
            load_experiments(path)


class TestValidateExperimentDefinition:
    """validate_experiment_definition のテスト"""

    def test_valid(self):
        validate_experiment_definition("e", {
            "alternatives": ["a", "b"],
            "goals": ["g"],
            "scores": ["s"],
            "metadata": {"a": 1, "b": 2},
            "resettable": False,
            "algorithm": "whiplash",
        })

    @pytest.mark.parametrize("definition", [
        "not a mapping",
        {"alternatives": []},
        {"alternatives": "blue"},
        {"alternatives": ["a"], "goals": "signup"},
        {"alternatives": ["a"], "metadata": ["a"]},
        {"alternatives": ["a"], "resettable": "yes"},
        {"alternatives": ["a"], "algorithm": 3},
        {"alternatives": ["a"], "colour": "blue"},
    ])
    def test_invalid(self, definition):
        with pytest.raises(ConfigurationError):
            validate_experiment_definition("e", definition)
