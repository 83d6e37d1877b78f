"""YAML loading and minimal schema validation for experiment definitions."""

from __future__ import annotations

from typing import Any, Dict, List

import yaml

from split_engine.exceptions import ConfigurationError

EXPERIMENT_FIELDS = {"alternatives", "goals", "scores", "metadata", "resettable", "algorithm"}


def load_yaml(path: str) -> Dict[str, Any]:
    """Load YAML file and return data."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"YAMLの解析に失敗しました: {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("YAMLのルートはオブジェクトである必要があります")
    return data


def load_experiments(path: str) -> Dict[str, Dict[str, Any]]:
    """Load experiment definitions from YAML.

    Accepts either ``{experiments: {name: {...}}}`` or a bare mapping of
    experiment name to definition.
    """
    data = load_yaml(path)
    experiments = data.get("experiments", data)
    if not isinstance(experiments, dict):
        raise ConfigurationError("experiments はオブジェクトで指定してください")

    result: Dict[str, Dict[str, Any]] = {}
    for name, definition in experiments.items():
        validate_experiment_definition(str(name), definition)
        result[str(name)] = definition
    return result


def validate_experiment_definition(name: str, data: Any) -> None:
    """Validate a single experiment definition (structure only).

    Semantic checks (unique names, metadata keys, algorithm) are done by
    Experiment.validate at save time.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"{name}: 実験定義はオブジェクトで指定してください")

    _require_fields(data, ["alternatives"], prefix=name)

    unknown = sorted(set(data) - EXPERIMENT_FIELDS)
    if unknown:
        raise ConfigurationError(f"{name}: 未知のフィールドがあります: {', '.join(unknown)}")

    alternatives = data["alternatives"]
    if not isinstance(alternatives, (list, dict)) or not alternatives:
        raise ConfigurationError(f"{name}: alternatives は配列またはオブジェクトで指定してください")

    for key in ("goals", "scores"):
        if key in data and data[key] is not None and not isinstance(data[key], list):
            raise ConfigurationError(f"{name}: {key} は配列で指定してください")

    if "metadata" in data and data["metadata"] is not None and not isinstance(data["metadata"], dict):
        raise ConfigurationError(f"{name}: metadata はオブジェクトで指定してください")

    if "resettable" in data and not isinstance(data["resettable"], bool):
        raise ConfigurationError(f"{name}: resettable は true/false で指定してください")

    if "algorithm" in data and not isinstance(data["algorithm"], str):
        raise ConfigurationError(f"{name}: algorithm は文字列で指定してください")


def _require_fields(data: Dict[str, Any], fields: List[str], prefix: str | None = None) -> None:
    missing = [field for field in fields if field not in data]
    if missing:
        label = f"{prefix}: " if prefix else ""
        raise ConfigurationError(f"{label}必須フィールドがありません: {', '.join(missing)}")
