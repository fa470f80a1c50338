"""Hive-style partition paths: encoding values and inspecting dataset trees.

A partitioned dataset looks like::

    <dataset>/year=2024/month=1/data_<token>.parquet

Values are percent-encoded so that separators inside values cannot create
extra directory levels. Nulls use the ``__HIVE_DEFAULT_PARTITION__`` marker
that Hive readers (including polars) recognize.
"""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Any, Sequence
from urllib.parse import quote, unquote

import polars as pl

HIVE_NULL = "__HIVE_DEFAULT_PARTITION__"


def format_partition_value(value: Any) -> str:
    """Render a partition value as a directory-name fragment."""
    if value is None:
        return HIVE_NULL
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, datetime):
        text = value.isoformat(sep=" ")
    elif isinstance(value, date):
        text = value.isoformat()
    else:
        text = str(value)
    return quote(text, safe="")


def partition_path(values: dict[str, Any]) -> str:
    """Build ``col1=val1/col2=val2`` from an ordered column -> value dict."""
    return "/".join(f"{col}={format_partition_value(val)}" for col, val in values.items())


def parse_partition_path(path: str) -> list[tuple[str, str | None]]:
    """Split ``col1=val1/col2=val2`` into ``[(col, raw_value), ...]``."""
    parts = []
    for segment in path.split("/"):
        if "=" not in segment:
            continue
        col, raw = segment.split("=", 1)
        parts.append((col, None if raw == HIVE_NULL else unquote(raw)))
    return parts


def partition_of(file_path: str) -> str:
    """Partition directory of a file path relative to the dataset root."""
    parent = Path(file_path).parent.as_posix()
    return "" if parent == "." else parent


def list_files(dataset_dir: Path) -> list[str]:
    """All parquet files under a dataset directory, relative and sorted."""
    if not dataset_dir.is_dir():
        return []
    return sorted(p.relative_to(dataset_dir).as_posix() for p in dataset_dir.rglob("*.parquet"))


def list_partitions(files: Sequence[str]) -> list[str]:
    """Distinct non-root partition directories among dataset files."""
    return sorted({partition_of(f) for f in files} - {""})


def layout_columns(files: Sequence[str]) -> set[tuple[str, ...]]:
    """Partition column sequences used by the files on disk.

    An unpartitioned file contributes the empty tuple.
    """
    return {
        tuple(col for col, _ in parse_partition_path(partition_of(f))) for f in files
    }


def split_by_partition(
    df: pl.DataFrame, partition_by: Sequence[str]
) -> list[tuple[str, pl.DataFrame]]:
    """Split a frame into ``(partition_path, rows_without_key_columns)`` pairs.

    Order follows first appearance in ``df``.
    """
    keys = list(partition_by)
    groups = df.partition_by(keys, maintain_order=True, include_key=False, as_dict=True)
    result = []
    for key_values, group in groups.items():
        values = dict(zip(keys, key_values))
        result.append((partition_path(values), group))
    return result
