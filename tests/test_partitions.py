"""Tests for Hive partition path helpers."""

import datetime

import polars as pl
import pytest

from pondkit.partitions import (
    HIVE_NULL,
    format_partition_value,
    layout_columns,
    list_files,
    list_partitions,
    parse_partition_path,
    partition_of,
    partition_path,
    split_by_partition,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        pytest.param(2024, "2024", id="int"),
        pytest.param("north", "north", id="plain"),
        pytest.param("a/b", "a%2Fb", id="slash"),
        pytest.param("x=y", "x%3Dy", id="equals"),
        pytest.param("New York", "New%20York", id="space"),
        pytest.param(None, HIVE_NULL, id="null"),
        pytest.param(True, "true", id="bool"),
        pytest.param(datetime.date(2024, 3, 1), "2024-03-01", id="date"),
    ],
)
def test_format_partition_value(value, expected):
    assert format_partition_value(value) == expected


def test_partition_path_round_trip():
    path = partition_path({"region": "a/b", "year": 2024, "tag": None})

    assert path == f"region=a%2Fb/year=2024/tag={HIVE_NULL}"
    assert parse_partition_path(path) == [("region", "a/b"), ("year", "2024"), ("tag", None)]


@pytest.mark.parametrize(
    "file_path, expected",
    [
        pytest.param("data_1.parquet", "", id="root"),
        pytest.param("year=2024/data_1.parquet", "year=2024", id="one_level"),
        pytest.param("year=2024/month=1/data_1.parquet", "year=2024/month=1", id="two_levels"),
    ],
)
def test_partition_of(file_path, expected):
    assert partition_of(file_path) == expected


def test_layout_columns():
    files = ["year=2024/month=1/a.parquet", "year=2025/month=2/b.parquet"]

    assert layout_columns(files) == {("year", "month")}
    assert layout_columns(["a.parquet"]) == {()}
    assert list_partitions(files + ["c.parquet"]) == ["year=2024/month=1", "year=2025/month=2"]


def test_list_files(tmp_path):
    (tmp_path / "year=2024").mkdir()
    (tmp_path / "year=2024" / "a.parquet").write_bytes(b"")
    (tmp_path / "b.parquet").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("ignored")

    assert list_files(tmp_path) == ["b.parquet", "year=2024/a.parquet"]
    assert list_files(tmp_path / "missing") == []


def test_split_by_partition_drops_keys():
    df = pl.DataFrame({"year": [2025, 2024, 2025], "value": [1, 2, 3]})

    parts = split_by_partition(df, ["year"])

    assert [path for path, _ in parts] == ["year=2025", "year=2024"]
    assert parts[0][1].columns == ["value"]
    assert parts[0][1]["value"].to_list() == [1, 3]
