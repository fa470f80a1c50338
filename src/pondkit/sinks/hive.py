"""Folder sink: Hive-partitioned parquet datasets under a lake root."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional, Sequence

import polars as pl
import structlog

from pondkit import partitions
from pondkit.config import HiveConfig, validate_compression
from pondkit.exceptions import NotFoundError, PartialFailureError, ValidationError
from pondkit.locations import HiveLocation
from pondkit.plan import (
    FileWrite,
    HiveMode,
    HiveState,
    Ignore,
    Overwrite,
    Plan,
    ReplacePartitions,
    build_plan,
    parse_mode,
)
from pondkit.utils import validate_name

from .base import Sink, WriteResult


class HiveSink(Sink):
    """Local filesystem sink with Hive-style partitioning.

    Datasets live at ``<data_path>/<section>/<dataset>`` as parquet files,
    optionally below ``col=value`` partition directories. Four write modes:

    - ``overwrite``: remove everything, then write
    - ``append``: add new uniquely named files
    - ``ignore``: write only if the dataset does not exist yet
    - ``replace_partitions``: rewrite only the partitions present in the data

    There are no multi-file transactions on a filesystem. ``replace_partitions``
    deletes and rewrites one partition at a time and reports a mid-way failure
    as ``PartialFailureError``.

    Args:
        config: Lake root and write defaults.
        path: Shortcut for ``HiveConfig(data_path=path)``.

    Example:
        sink = HiveSink(path="./lake")
        sink.write(df, "Trade", "Imports", mode="replace_partitions",
                   partition_by=["year", "month"])
        sink.read("Trade", "Imports", partition_filter={"year": 2024}).collect()
    """

    def __init__(self, config: Optional[HiveConfig] = None, path: str | Path | None = None):
        if config is None:
            config = HiveConfig(data_path=path) if path is not None else HiveConfig()
        self.config = config
        self.base_path = Path(config.data_path)
        self._log = structlog.get_logger(__name__)

    def dataset_path(self, section: str, dataset: str) -> Path:
        return HiveLocation(section, dataset).resolve(self.base_path)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def preview_write(
        self,
        df: pl.DataFrame,
        section: str,
        dataset: str,
        mode: str | HiveMode = "overwrite",
        partition_by: Optional[Sequence[str] | str] = None,
        compression: Optional[str] = None,
        filename_pattern: Optional[str] = None,
    ) -> Plan:
        """Plan a write without touching the filesystem.

        Raises exactly the errors ``write`` would raise for the same input.
        """
        location = HiveLocation(section, dataset)
        validate_compression(compression or self.config.compression)
        write_mode = parse_mode(
            mode,
            partition_by=partition_by,
            filename_pattern=filename_pattern or self.config.filename_pattern,
        )
        state = HiveState.probe(location.resolve(self.base_path))
        plan = build_plan(
            state,
            df,
            write_mode,
            required_partitions=self.config.required_partitions(section, dataset),
        )
        self._log.debug(
            "hive_write_planned",
            destination=str(location),
            mode=write_mode.name,
            files_to_write=len(plan.files_to_write),
            files_to_delete=len(plan.files_to_delete),
            skipped=plan.skipped,
        )
        return plan

    def write(
        self,
        df: pl.DataFrame,
        section: str,
        dataset: str,
        mode: str | HiveMode = "overwrite",
        partition_by: Optional[Sequence[str] | str] = None,
        compression: Optional[str] = None,
        filename_pattern: Optional[str] = None,
        dry_run: bool = False,
    ) -> WriteResult | Plan:
        """Write a DataFrame to ``<section>/<dataset>``.

        Args:
            df: Data to write
            section: Top-level folder (e.g. a subject area)
            dataset: Dataset folder inside the section
            mode: "overwrite", "append", "ignore" or "replace_partitions"
            partition_by: Columns to partition by (Hive-style)
            compression: Parquet codec, defaults to the config's
            filename_pattern: File name pattern, ``{uuid}`` becomes a random token
            dry_run: If True, return the plan without executing

        Returns:
            WriteResult on actual write, Plan on dry_run=True
        """
        plan = self.preview_write(
            df,
            section,
            dataset,
            mode=mode,
            partition_by=partition_by,
            compression=compression,
            filename_pattern=filename_pattern,
        )
        if dry_run:
            return plan
        return self.execute(plan, compression=compression)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _write_file(self, dataset_dir: Path, item: FileWrite, compression: str) -> None:
        target = dataset_dir / item.path
        target.parent.mkdir(parents=True, exist_ok=True)
        # Readers glob *.parquet, so a half-written temp file is never scanned.
        tmp = target.with_name(f".{target.name}.tmp")
        try:
            item.data.write_parquet(tmp, compression=compression)
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def execute(self, plan: Plan, compression: Optional[str] = None) -> WriteResult:
        """Carry out a plan built by ``preview_write``. A plan runs only once."""
        if plan.backend != "hive":
            raise ValidationError(f"HiveSink cannot execute a {plan.backend} plan")
        plan.mark_consumed()
        codec = validate_compression(compression or self.config.compression)
        dataset_dir = Path(plan.destination)

        if plan.skipped or (plan.mode == Ignore.name and dataset_dir.exists()):
            self._log.info("hive_write_skipped", destination=plan.destination, mode=plan.mode)
            return WriteResult(
                destination=plan.destination,
                rows_written=0,
                operation=plan.mode,
                skipped=True,
                actions=list(plan.actions) if plan.skipped else [
                    "SKIPPED: target appeared after planning"
                ],
            )

        if plan.mode == ReplacePartitions.name:
            deleted = self._replace_partitions(plan, dataset_dir, codec)
        else:
            deleted = 0
            if plan.mode == Overwrite.name and dataset_dir.exists():
                deleted = len(plan.files_to_delete)
                shutil.rmtree(dataset_dir)
            dataset_dir.mkdir(parents=True, exist_ok=True)
            for item in plan.files_to_write:
                self._write_file(dataset_dir, item, codec)

        result = WriteResult(
            destination=plan.destination,
            rows_written=sum(item.rows for item in plan.files_to_write),
            operation=plan.mode,
            files_written=len(plan.files_to_write),
            files_deleted=deleted,
            partitions_affected=list(plan.partitions_affected),
            actions=list(plan.actions),
        )
        self._log.info(
            "hive_write_completed",
            destination=plan.destination,
            mode=plan.mode,
            rows_written=result.rows_written,
            files_written=result.files_written,
            files_deleted=result.files_deleted,
        )
        return result

    def _replace_partitions(self, plan: Plan, dataset_dir: Path, codec: str) -> int:
        """Delete-then-add, one partition at a time."""
        by_partition: dict[str, list[FileWrite]] = {}
        for item in plan.files_to_write:
            by_partition.setdefault(item.partition, []).append(item)
        order = list(by_partition)
        replaced = set(plan.partitions_to_replace)

        completed: list[str] = []
        deleted = 0
        for index, partition in enumerate(order):
            try:
                if partition in replaced:
                    stale = [
                        f for f in plan.files_to_delete if partitions.partition_of(f) == partition
                    ]
                    shutil.rmtree(dataset_dir / partition)
                    deleted += len(stale)
                for item in by_partition[partition]:
                    self._write_file(dataset_dir, item, codec)
            except Exception as exc:
                pending = order[index + 1:]
                self._log.error(
                    "hive_partial_failure",
                    destination=plan.destination,
                    completed=len(completed),
                    failed=partition,
                    pending=len(pending),
                    error=str(exc),
                )
                raise PartialFailureError(
                    f"replace_partitions failed at partition '{partition}': {exc}",
                    completed=completed,
                    failed=partition,
                    pending=pending,
                ) from exc
            completed.append(partition)
            self._log.debug("hive_partition_replaced", partition=partition)
        return deleted

    # ------------------------------------------------------------------
    # Reading and discovery
    # ------------------------------------------------------------------

    def read(
        self,
        section: str,
        dataset: str,
        partition_filter: Optional[dict] = None,
    ) -> pl.LazyFrame:
        """Read a dataset as LazyFrame.

        Partition columns come back from the directory names through
        Polars' hive_partitioning.

        Args:
            section: Section folder
            dataset: Dataset folder
            partition_filter: Dict of column -> value to filter partitions

        Returns:
            LazyFrame of the dataset
        """
        dataset_dir = self.dataset_path(section, dataset)
        if not partitions.list_files(dataset_dir):
            raise NotFoundError(f"Dataset '{section}/{dataset}' not found at {dataset_dir}")

        lf = pl.scan_parquet(
            str(dataset_dir / "**" / "*.parquet"),
            hive_partitioning=True,
            missing_columns="insert",
        )
        if partition_filter:
            for col, value in partition_filter.items():
                lf = lf.filter(pl.col(col) == value)
        return lf

    def exists(self, section: str, dataset: str) -> bool:
        """Check if the dataset directory exists."""
        return self.dataset_path(section, dataset).is_dir()

    def list_partitions(self, section: str, dataset: str) -> list[str]:
        """List Hive-style partition paths for a dataset."""
        return partitions.list_partitions(
            partitions.list_files(self.dataset_path(section, dataset))
        )

    def list_sections(self) -> list[str]:
        if not self.base_path.is_dir():
            return []
        return sorted(p.name for p in self.base_path.iterdir() if p.is_dir())

    def list_datasets(self, section: str) -> list[str]:
        section_dir = self.base_path / validate_name(section, "section")
        if not section_dir.is_dir():
            return []
        return sorted(p.name for p in section_dir.iterdir() if p.is_dir())
