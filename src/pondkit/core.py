"""Core pondkit entry points: connect to a folder lake or a DuckLake catalog."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import structlog

from pondkit.catalog import LakeSession
from pondkit.config import HiveConfig, LakeConfig, load_config
from pondkit.exceptions import ValidationError
from pondkit.sinks.hive import HiveSink
from pondkit.sinks.lake import LakeSink
from pondkit.snapshots import SnapshotManager

log = structlog.get_logger(__name__)


class Lake:
    """A DuckLake catalog handle: writes, upserts and history in one place.

    Wraps a ``LakeSession`` together with the ``LakeSink`` and the
    ``SnapshotManager`` that share it. Use as a context manager or call
    ``close()``.
    """

    def __init__(self, session: LakeSession):
        self.session = session
        self.sink = LakeSink(session)
        self.snapshots = SnapshotManager(session)

    @property
    def catalog(self) -> str:
        return self.session.catalog

    def write(self, df, table: str, **kwargs):
        return self.sink.write(df, table, **kwargs)

    def preview_write(self, df, table: str, **kwargs):
        return self.sink.preview_write(df, table, **kwargs)

    def upsert(self, df, table: str, match_keys, **kwargs):
        return self.sink.upsert(df, table, match_keys, **kwargs)

    def preview_upsert(self, df, table: str, match_keys, **kwargs):
        return self.sink.preview_upsert(df, table, match_keys, **kwargs)

    def read(self, table: str, **kwargs):
        return self.sink.read(table, **kwargs)

    def query(self, sql: str):
        return self.sink.query(sql)

    def set_partitioning(self, table: str, partition_by, **kwargs):
        return self.sink.set_partitioning(table, partition_by, **kwargs)

    def get_partitioning(self, table: str, schema: str = "main"):
        return self.sink.get_partitioning(table, schema)

    def list_tables(self, schema: str = "main") -> list[str]:
        return self.sink.list_tables(schema)

    def list_snapshots(self):
        return self.snapshots.list_snapshots()

    def diff(self, table: str, **kwargs):
        return self.snapshots.diff(table, **kwargs)

    def rollback(self, table: str, **kwargs):
        return self.snapshots.rollback(table, **kwargs)

    def vacuum(self, **kwargs):
        return self.snapshots.vacuum(**kwargs)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "Lake":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def connect_hive(
    path: str | Path | None = None,
    config: Optional[HiveConfig] = None,
    config_file: str | Path | None = None,
) -> HiveSink:
    """Open a folder lake.

    Args:
        path: Lake root directory
        config: Full settings; overrides ``path``
        config_file: YAML file with a ``hive:`` section
    """
    if config is None and config_file is not None:
        config = load_config(config_file).hive
        if config is None:
            raise ValidationError(f"Config file {config_file} has no 'hive' section")
    if config is None:
        config = HiveConfig(data_path=path) if path is not None else HiveConfig()
    log.info("hive_connected", data_path=str(config.data_path))
    return HiveSink(config)


def connect_lake(
    metadata_path: Optional[str] = None,
    data_path: Optional[str] = None,
    config: Optional[LakeConfig] = None,
    config_file: str | Path | None = None,
    **options: Any,
) -> Lake:
    """Attach a DuckLake catalog.

    Args:
        metadata_path: Catalog file (duckdb/sqlite) or libpq string (postgres)
        data_path: Directory where DuckLake keeps parquet files
        config: Full settings; overrides the other arguments
        config_file: YAML file with a ``lake:`` section
        **options: Any other ``LakeConfig`` field, e.g. ``catalog_type``,
            ``threads`` or ``max_commit_retries``

    Example:
        with pondkit.connect_lake("meta.ducklake", "./lake_data") as lake:
            lake.write(df, "imports", partition_by=["year"])
            lake.diff("imports", from_version=1)
    """
    if config is None and config_file is not None:
        config = load_config(config_file).lake
        if config is None:
            raise ValidationError(f"Config file {config_file} has no 'lake' section")
    if config is None:
        if metadata_path is not None:
            options["metadata_path"] = metadata_path
        if data_path is not None:
            options["data_path"] = data_path
        if "extensions" in options:
            options["extensions"] = tuple(options["extensions"] or ())
        config = LakeConfig(**options)
    return Lake(LakeSession(config))
