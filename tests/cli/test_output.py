from datetime import datetime

from split_engine.cli.utils.output import format_percent, format_table, format_time


def test_format_table_aligns_numbers_right():
    table = format_table(["name", "count"], [["blue", 5], ["red", 120]])
    lines = table.splitlines()

    assert lines[0] == "name count"
    assert lines[1] == "----------"
    assert lines[2] == "blue     5"
    assert lines[3] == "red    120"


def test_format_table_mixed_column_is_left_aligned():
    table = format_table(["alt", "winner"], [["blue", 1], ["red", "-"]])
    assert table.splitlines()[2] == "blue 1"


def test_format_table_without_rows():
    assert format_table(["name", "count"], []) == "name count\n----------"


def test_format_percent():
    assert format_percent(0.1234) == "12.3%"
    assert format_percent(None) == "-"


def test_format_time():
    assert format_time(datetime(2024, 5, 1, 9, 30)) == "2024-05-01 09:30:00"
    assert format_time(None) == "未開始"
