"""Output formatting helpers for the split-admin CLI."""

from __future__ import annotations

import json
from datetime import datetime
from numbers import Number
from typing import Any, Iterable, List, Optional, Sequence

import click


def _is_numeric(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Format rows as a padded table; numeric columns are right-aligned."""
    raw_rows: List[Sequence[Any]] = [list(row) for row in rows]
    columns = len(headers)
    widths = [len(str(header)) for header in headers]
    numeric = [bool(raw_rows) for _ in headers]

    for row in raw_rows:
        for idx in range(columns):
            cell = row[idx] if idx < len(row) else ""
            widths[idx] = max(widths[idx], len(str(cell)))
            numeric[idx] = numeric[idx] and _is_numeric(cell)

    def render(cells: Sequence[Any], align_numbers: bool) -> str:
        parts = []
        for idx in range(columns):
            text = str(cells[idx]) if idx < len(cells) else ""
            if align_numbers and numeric[idx]:
                parts.append(text.rjust(widths[idx]))
            else:
                parts.append(text.ljust(widths[idx]))
        return " ".join(parts).rstrip()

    header_line = render(headers, align_numbers=False)
    lines = [header_line, "-" * sum(widths, columns - 1)]
    lines.extend(render(row, align_numbers=True) for row in raw_rows)
    return "\n".join(lines)


def format_percent(value: Optional[float]) -> str:
    """Format a 0..1 ratio as a percentage ("-" when missing)."""
    if value is None:
        return "-"
    return f"{value * 100:.1f}%"


def format_time(value: Optional[datetime]) -> str:
    """Format a start time ("未開始" when missing)."""
    if value is None:
        return "未開始"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    """Print a table to stdout."""
    click.echo(format_table(headers, rows))


def echo_json(data: Any) -> None:
    """Print JSON (non-ASCII kept as is; datetimes via str)."""
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def echo_error(message: str) -> None:
    """Echo an error line to stderr."""
    click.echo(f"[エラー] {message}", err=True)
