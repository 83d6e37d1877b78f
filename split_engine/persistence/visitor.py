# 訪問者状態
"""
訪問者状態モジュール

永続化アダプターを包み、実験キーの文法（バージョン接尾辞・完了フラグ・
スコア済みフラグ）に基づく掃除と、同時参加数の判定を行う。

キーの形式:
    "<実験名>"                       バージョン0の割り当て
    "<実験名>:<バージョン>"          バージョン1以降の割り当て
    "<実験キー>:finished"            完了フラグ
    "<実験キー>:scored:<スコア名>"   スコア済みフラグ
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from split_engine.db.connection import Transaction
from split_engine.persistence.adapters import PersistenceAdapter, TRUE_VALUE


logger = logging.getLogger(__name__)

VERSION_SUFFIX = re.compile(r":\d+$")
FINISHED_SUFFIX = ":finished"
SCORED_INFIX = ":scored:"
FALSE_VALUES = {"", "false", "False", "0"}


def finished_key(key: str) -> str:
    """完了フラグのキー"""
    return f"{key}{FINISHED_SUFFIX}"


def scored_key(key: str, score_name: str) -> str:
    """スコア済みフラグのキー"""
    return f"{key}{SCORED_INFIX}{score_name}"


def base_key(key: str) -> str:
    """フラグの接尾辞を除いた実験キー"""
    if key.endswith(FINISHED_SUFFIX):
        return key[: -len(FINISHED_SUFFIX)]
    if SCORED_INFIX in key:
        return key.split(SCORED_INFIX, 1)[0]
    return key


def is_assignment_key(key: str) -> bool:
    """割り当てキー（フラグではない）かどうか"""
    return base_key(key) == key


def key_without_version(key: str) -> str:
    """実験キーからバージョン接尾辞を除いた実験名"""
    return VERSION_SUFFIX.sub("", key)


class Visitor:
    """1人の訪問者の状態

    使用例:
        visitor = Visitor(RequestScopedAdapter(session), catalog)
        visitor.set("link_color", "blue")
        visitor.active_experiments()  # {"link_color": "blue"}

    Attributes:
        adapter: 永続化アダプター
        catalog: 実験カタログ（キーに対応する実験の検索に使用）
    """

    def __init__(self, adapter: PersistenceAdapter, catalog: Any):
        """Visitorを初期化

        Args:
            adapter: 永続化アダプター
            catalog: ExperimentCatalog インスタンス
        """
        self.adapter = adapter
        self.catalog = catalog
        self._cleaned_up = False

    # === アダプターへの委譲 ===

    def get(self, key: str) -> Optional[str]:
        return self.adapter.get(key)

    def __getitem__(self, key: str) -> Optional[str]:
        return self.adapter.get(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.adapter.set(key, value)

    def multi_get(self, keys: Sequence[str]) -> List[Optional[str]]:
        return self.adapter.multi_get(keys)

    def set(self, key: str, value: Any, transaction: Optional[Transaction] = None) -> None:
        self.adapter.set(key, value, transaction=transaction)

    def set_if_absent(self, key: str, value: Any) -> bool:
        return self.adapter.set_if_absent(key, value)

    def delete(self, *keys: str) -> None:
        self.adapter.delete(*keys)

    def keys(self) -> Set[str]:
        return self.adapter.keys()

    # === フラグ ===

    def is_flagged(self, key: str) -> bool:
        """フラグキーが立っているか"""
        value = self.adapter.get(key)
        return value is not None and value not in FALSE_VALUES

    def flag(self, key: str, transaction: Optional[Transaction] = None) -> None:
        """フラグキーを立てる"""
        self.adapter.set(key, TRUE_VALUE, transaction=transaction)

    # === 掃除 ===

    def keys_for(self, experiment_key: str) -> List[str]:
        """実験キーに属するすべてのキー（割り当て・完了・スコア済み）"""
        return [key for key in self.keys() if base_key(key) == experiment_key]

    def cleanup_old_experiments(self) -> None:
        """存在しない・勝者確定済み・未開始の実験のキーを削除

        同一インスタンスでは1回だけ実行する。
        """
        if self._cleaned_up:
            return

        for key in [k for k in self.keys() if is_assignment_key(k)]:
            experiment = self.catalog.find(key_without_version(key))
            if experiment is None or experiment.has_winner or experiment.start_time is None:
                stale = self.keys_for(key)
                logger.debug(f"古い実験キーを削除: keys={stale}")
                self.delete(*stale)

        self._cleaned_up = True

    def cleanup_old_versions(self, experiment: Any) -> None:
        """実験の古いバージョンのキーを削除

        Args:
            experiment: 現在の Experiment
        """
        stale = [
            key
            for key in self.keys()
            if key_without_version(base_key(key)) == experiment.name
            and base_key(key) != experiment.key
        ]
        if stale:
            logger.debug(f"旧バージョンのキーを削除: experiment={experiment.name}, keys={stale}")
            self.delete(*stale)

    # === 参加状況 ===

    def _active_assignments(self) -> List[Tuple[str, Optional[str], Any]]:
        """(実験名, 代替案名, Experiment) のリスト（勝者未確定の実験のみ）"""
        keys = sorted(k for k in self.keys() if is_assignment_key(k))
        values = self.multi_get(keys)

        assignments = []
        for key, value in zip(keys, values):
            name = key_without_version(key)
            experiment = self.catalog.find(name)
            if experiment is not None and not experiment.has_winner:
                assignments.append((name, value, experiment))
        return assignments

    def active_experiments(self) -> Dict[str, Optional[str]]:
        """参加中の実験: 実験名 → 代替案名"""
        return {name: value for name, value, _ in self._active_assignments()}

    def max_experiments_reached(self, experiment_key: str) -> bool:
        """同時参加数の上限に達しているか

        allow_multiple_experiments:
            True:      上限なし
            False:     他の実験のキーを1つでも持っていれば上限
            "control": 他の実験で非コントロールに割り当て済みなら上限

        Args:
            experiment_key: 参加しようとしている実験のキー

        Returns:
            上限に達している場合 True
        """
        mode = self.catalog.config.allow_multiple_experiments

        if mode is True:
            return False

        if mode == "control":
            current = key_without_version(experiment_key)
            for name, value, experiment in self._active_assignments():
                if name == current:
                    continue
                control = experiment.control
                if control is None or value != control.name:
                    return True
            return False

        return any(base_key(key) != experiment_key for key in self.keys())
