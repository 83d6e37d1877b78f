# A/Bテスト エンジン設定
# 共有ストア・訪問者ストア・割り当て・勝者推定のパラメータを集約する

import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple, Union

from split_engine.exceptions import ConfigurationError


# === 割り当てアルゴリズム ===
ALLOCATION_ALGORITHMS: Dict[str, str] = {
    "weighted_sample": "重み付きランダムサンプリング（静的配分）",
    "whiplash": "多腕バンディット（Thompsonサンプリングによる適応配分）",
}

# === ロボット判定に使うユーザーエージェント ===
BOTS: Dict[str, str] = {
    "Baidu": "Chinese search engine",
    "Gigabot": "Gigabot spider",
    "Googlebot": "Google spider",
    "AdsBot-Google": "Google Adwords",
    "Mediapartners-Google": "Google AdSense",
    "APIs-Google": "Google APIs",
    "bingbot": "Microsoft bing bot",
    "DuckDuckBot": "DuckDuckGo search engine",
    "YandexBot": "Yandex search engine",
    "Slurp": "Yahoo spider",
    "facebookexternalhit": "facebook bot",
    "Twitterbot": "Twitter URL expander",
    "LinkedInBot": "LinkedIn bot",
    "Slackbot": "Slack link expander",
    "Discordbot": "Discord link expander",
    "WhatsApp": "WhatsApp link preview",
    "TelegramBot": "Telegram link preview",
    "curl": "curl command line tool",
    "Wget": "wget command line tool",
    "python-requests": "python requests library",
    "HeadlessChrome": "headless Chrome browser",
    "Pingdom": "Pingdom monitoring",
    "UptimeRobot": "Uptime monitoring",
    "spider": "generic web spider",
    "crawler": "generic web crawler",
}

# 訪問者キーの保持期間（30日）
DEFAULT_VISITOR_EXPIRE_SECONDS = 60 * 60 * 24 * 30

# 遅延スコアのデフォルトTTL（1日）
DEFAULT_DELAYED_SCORE_TTL = 60 * 60 * 24

VALID_MULTIPLE_EXPERIMENTS_MODES = (True, False, "control")


def build_robot_regex(bots: Dict[str, str]) -> Pattern[str]:
    """ボット名一覧からユーザーエージェント判定用の正規表現を作成

    空のユーザーエージェント（記号のみを含む）もロボット扱いとする。
    """
    escaped = "|".join(re.escape(name) for name in bots)
    return re.compile(rf"\b(?:{escaped})\b|\A\W*\Z", re.IGNORECASE)


def normalize_alternatives(raw: Any) -> List[Tuple[Any, float]]:
    """alternatives 設定を (名前, 重み) のリストに正規化

    対応形式:
        ["blue", "red"]
        [{"name": "blue", "percent": 70}, "red"]
        {"blue": 70, "red": 30}

    percent 指定のある代替案は percent / 100、残りの確率は
    指定のない代替案に均等配分する。

    Args:
        raw: 設定の alternatives 値

    Returns:
        (代替案名, 重み) のリスト。形式が不明な場合は空リスト。

    Raises:
        ConfigurationError: percent が数値でない場合
    """
    if isinstance(raw, dict):
        items: List[Any] = [{"name": name, "percent": percent} for name, percent in raw.items()]
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        return []

    if not items:
        return []

    entries: List[Tuple[Any, Optional[float]]] = []
    for item in items:
        if isinstance(item, dict):
            percent = item.get("percent")
            if percent is not None and (
                isinstance(percent, bool) or not isinstance(percent, (int, float))
            ):
                raise ConfigurationError(
                    f"Alternative percent must be a number, got {percent!r}"
                )
            entries.append((item.get("name"), percent))
        else:
            entries.append((item, None))

    given = sum(percent for _, percent in entries if percent is not None)
    without = sum(1 for _, percent in entries if percent is None)

    # percent 指定が一つもない場合は均等分割
    if without == len(entries):
        return [(name, 1.0 / len(entries)) for name, _ in entries]

    unassigned = (100.0 - given) / without / 100.0 if without else 0.0
    return [
        (name, percent / 100.0 if percent is not None else unassigned)
        for name, percent in entries
    ]


@dataclass
class SplitHooks:
    """フック（コールバック）設定

    すべて任意。未設定（None）のフックは呼び出されない。

    Trial を受け取るフック:
        on_trial, on_trial_choose, on_trial_complete
    Experiment を受け取るフック:
        on_before_experiment_reset, on_experiment_reset,
        on_before_experiment_delete, on_experiment_delete
    例外を受け取るフック:
        on_db_failover
    """

    on_trial: Optional[Callable[[Any], None]] = None
    """choose 完了時（全体無効時を除く）"""

    on_trial_choose: Optional[Callable[[Any], None]] = None
    """新しい割り当てを記録した時"""

    on_trial_complete: Optional[Callable[[Any], None]] = None
    """完了を記録する直前"""

    on_before_experiment_reset: Optional[Callable[[Any], None]] = None
    on_experiment_reset: Optional[Callable[[Any], None]] = None
    on_before_experiment_delete: Optional[Callable[[Any], None]] = None
    on_experiment_delete: Optional[Callable[[Any], None]] = None

    on_db_failover: Optional[Callable[[BaseException], None]] = None
    """共有ストア障害でフェイルオーバーした時"""

    def run(self, hook_name: str, argument: Any) -> None:
        """名前でフックを呼び出す（未設定なら何もしない）"""
        hook = getattr(self, hook_name, None)
        if hook is not None:
            hook(argument)


@dataclass
class SplitConfig:
    """A/Bテスト エンジン設定

    プロセス全体の既定インスタンス（split_config）は境界層
    （SplitClient・CLI）でのみ使用し、コアのクラスには
    コンストラクタ経由で明示的に渡す。

    環境変数:
        REDIS_URL: 共有ストアの接続URL（オプション）

    使用例:
        config = SplitConfig(
            experiments={
                "link_color": {"alternatives": ["blue", "red"], "goals": ["signup"]},
            },
            allow_multiple_experiments="control",
        )
        definition = config.experiment_for("link_color")
    """

    # === 全体設定 ===
    enabled: bool = True
    """False の場合は常にコントロールを返し、何も記録しない"""

    experiments: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    """実験定義: 実験名 → {alternatives, goals, scores, metadata, resettable, algorithm}"""

    algorithm: str = "weighted_sample"
    """実験に algorithm 指定がない場合の割り当てアルゴリズム"""

    start_manually: bool = False
    """True の場合、初回保存時に開始時刻を記録しない"""

    allow_multiple_experiments: Union[bool, str] = False
    """同時参加の制限: False（1つのみ）/ True（無制限）/ "control"（非コントロールは1つまで）"""

    store_override: bool = True
    """明示的なオーバーライドを訪問者の割り当てとして記録するか"""

    # === 除外設定 ===
    robot_regex: Optional[Pattern[str]] = None
    """ロボット判定用の正規表現（None の場合は BOTS から生成）"""

    ignore_ip_addresses: List[Union[str, Pattern[str]]] = field(default_factory=list)
    """除外するIPアドレス（完全一致の文字列、または正規表現）"""

    ignore_filter: Callable[[Any], bool] = field(default=lambda context: False, repr=False)
    """TrialContext を受け取り、除外する場合 True を返す関数"""

    # === フェイルオーバー ===
    db_failover: bool = False
    """共有ストア障害時にコントロールへフェイルオーバーするか"""

    db_failover_allow_parameter_override: bool = False
    """フェイルオーバー時も明示的なオーバーライドを優先するか"""

    # === 勝者推定 ===
    beta_probability_simulations: int = 2000
    """モンテカルロ試行回数"""

    # === 訪問者ストア ===
    cleanup_probability: float = 0.05
    """choose 時に古い訪問者キーを掃除する確率"""

    visitor_expire_seconds: int = DEFAULT_VISITOR_EXPIRE_SECONDS
    """永続訪問者ストアの有効期限（秒）"""

    visitor_namespace: str = "users"
    """永続訪問者ストアのキー接頭辞"""

    visitor_lookup_by: Callable[[Any], str] = field(default=str, repr=False)
    """外部IDからストアキーを導出する関数"""

    # === 遅延スコア ===
    delayed_score_ttl: int = DEFAULT_DELAYED_SCORE_TTL
    """遅延スコアのデフォルト有効期限（秒）"""

    # === 共有ストア ===
    redis_url: Optional[str] = None
    """共有ストア（Redis）の接続URL"""

    hooks: SplitHooks = field(default_factory=SplitHooks)
    """フック設定"""

    def __post_init__(self) -> None:
        """初期化後の処理: 環境変数と既定値の補完、設定値の検証"""
        if self.redis_url is None:
            self.redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")

        if self.robot_regex is None:
            self.robot_regex = build_robot_regex(BOTS)

        if self.allow_multiple_experiments not in VALID_MULTIPLE_EXPERIMENTS_MODES:
            raise ConfigurationError(
                "allow_multiple_experiments must be True, False or 'control', "
                f"got {self.allow_multiple_experiments!r}"
            )

        if not 0.0 <= self.cleanup_probability <= 1.0:
            raise ConfigurationError(
                f"cleanup_probability must be between 0 and 1, got {self.cleanup_probability}"
            )

        if self.beta_probability_simulations <= 0:
            raise ConfigurationError("beta_probability_simulations must be positive")

    @property
    def disabled(self) -> bool:
        """全体が無効化されているか"""
        return not self.enabled

    def experiment_for(self, name: Any) -> Optional[Dict[str, Any]]:
        """実験名から正規化済みの定義を取得

        Args:
            name: 実験名

        Returns:
            正規化済み定義。設定に存在しない場合は None。
            {
                "alternatives": [(名前, 重み), ...],
                "goals": [...],
                "scores": [...],
                "metadata": {...} または None,
                "resettable": bool,
                "algorithm": str,
            }
        """
        raw = self.experiments.get(str(name))
        if raw is None:
            return None

        goals = raw.get("goals")
        scores = raw.get("scores")
        metadata = raw.get("metadata")
        resettable = raw.get("resettable")
        algorithm = raw.get("algorithm")

        return {
            "alternatives": normalize_alternatives(raw.get("alternatives")),
            "goals": list(goals) if isinstance(goals, (list, tuple)) else [],
            "scores": list(scores) if isinstance(scores, (list, tuple)) else [],
            "metadata": (
                {str(k): v for k, v in metadata.items()} if isinstance(metadata, dict) else None
            ),
            "resettable": resettable if isinstance(resettable, bool) else True,
            "algorithm": algorithm if isinstance(algorithm, str) else self.algorithm,
        }

    @property
    def scores(self) -> Dict[str, List[str]]:
        """スコア名 → そのスコアを持つ実験名のリスト"""
        result: Dict[str, List[str]] = {}
        for experiment_name, raw in self.experiments.items():
            for score_name in raw.get("scores") or []:
                result.setdefault(score_name, []).append(str(experiment_name))
        return result

    @classmethod
    def from_yaml(cls, path: str, **overrides: Any) -> "SplitConfig":
        """YAMLファイルの実験定義から設定を作成

        Args:
            path: 実験定義YAMLファイルのパス
            **overrides: その他の設定値

        Returns:
            SplitConfig インスタンス
        """
        from split_engine.config.yaml_loader import load_experiments

        return cls(experiments=load_experiments(path), **overrides)


# デフォルト設定のインスタンス（境界層でのみ使用）
split_config = SplitConfig()
