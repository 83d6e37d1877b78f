# CLI ユーティリティ
from split_engine.cli.utils.output import (
    echo_error,
    echo_json,
    echo_table,
    format_percent,
    format_table,
    format_time,
)

__all__ = [
    "echo_error",
    "echo_json",
    "echo_table",
    "format_percent",
    "format_table",
    "format_time",
]
