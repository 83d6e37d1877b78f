# A/Bテスト例外定義
"""
split_engine 共通の例外クラス

分類:
- ConfigurationError: 実験定義の不備（操作を中断する致命的エラー）
- ExperimentNotFoundError: 設定にも共有ストアにも存在しない実験
- StoreUnavailableError: 共有ストアへの接続失敗（フェイルオーバー対象）

冪等性ガード（完了済み・スコア済み・勝者固定）は例外ではなく、
None を返す no-op として扱う。
"""


class SplitError(Exception):
    """split_engine の基底例外"""
    pass


class ConfigurationError(SplitError):
    """実験定義が不正な場合のエラー"""
    pass


class ExperimentNotFoundError(SplitError):
    """実験が見つからない場合のエラー"""
    pass


class StoreUnavailableError(SplitError):
    """共有ストアに接続できない場合のエラー"""
    pass
