# CLI コマンド
from split_engine.cli.commands.manage import manage_commands

__all__ = ["manage_commands"]
