"""Plan builder: decide what a write or upsert would do, without doing it.

Every write and upsert goes through two steps:

1. A read-only probe captures the current state of the target
   (``HiveState``, ``LakeState``, ``UpsertState``).
2. A pure builder turns ``(state, data, mode)`` into a ``Plan`` (or an
   ``UpsertPlan``), raising ``ValidationError`` for bad input.

Previews stop after step 2 and show the plan. Real writes hand the very same
plan to a sink, which executes it once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Optional, Sequence, Union

import polars as pl

from pondkit import partitions
from pondkit.exceptions import NotFoundError, PartitionSchemaError, ValidationError
from pondkit.report import render_plan, render_upsert_plan
from pondkit.schema import (
    SchemaChange,
    detect_changes,
    duckdb_schema_strings,
    polars_schema_strings,
)
from pondkit.utils import format_count, unique_token, validate_columns

_PATTERN_RE = re.compile(r"^[A-Za-z0-9_{}.-]+$")
_COLUMN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRANSFORM_RE = re.compile(r"^([A-Za-z_]+)\(\s*([A-Za-z_][A-Za-z0-9_]*)\s*\)$")


# =============================================================================
# Write modes
# =============================================================================


def _check_pattern(pattern: str, require_uuid: bool, mode: str) -> None:
    if not isinstance(pattern, str) or not _PATTERN_RE.match(pattern):
        raise ValidationError(
            "filename_pattern may only contain letters, digits, '_', '-', '.' and '{uuid}'",
            {"filename_pattern": pattern},
        )
    if require_uuid and "{uuid}" not in pattern:
        raise ValidationError(
            f"mode = '{mode}' needs unique file names: filename_pattern must contain '{{uuid}}'",
            {"filename_pattern": pattern},
        )


@dataclass(frozen=True)
class Overwrite:
    """Replace everything at the target."""

    name: ClassVar[str] = "overwrite"
    partition_by: tuple[str, ...] = ()
    filename_pattern: str = "data_{uuid}"

    def __post_init__(self):
        _check_pattern(self.filename_pattern, False, self.name)


@dataclass(frozen=True)
class Append:
    """Add new uniquely named files, never delete."""

    name: ClassVar[str] = "append"
    partition_by: tuple[str, ...] = ()
    filename_pattern: str = "data_{uuid}"

    def __post_init__(self):
        _check_pattern(self.filename_pattern, True, self.name)


@dataclass(frozen=True)
class Ignore:
    """Write only if the target does not exist yet (best-effort, race-prone)."""

    name: ClassVar[str] = "ignore"
    partition_by: tuple[str, ...] = ()
    filename_pattern: str = "data_{uuid}"

    def __post_init__(self):
        _check_pattern(self.filename_pattern, False, self.name)


@dataclass(frozen=True)
class ReplacePartitions:
    """Delete only the partitions present in the data, then add them back."""

    name: ClassVar[str] = "replace_partitions"
    partition_by: tuple[str, ...] = ()
    filename_pattern: str = "data_{uuid}"

    def __post_init__(self):
        if not self.partition_by:
            raise ValidationError(
                "mode = 'replace_partitions' requires partition_by (so we know what to replace)."
            )
        _check_pattern(self.filename_pattern, True, self.name)


@dataclass(frozen=True)
class LakeOverwrite:
    """Replace the table's content in one commit.

    ``partition_by=None`` keeps whatever partitioning the table already has.
    """

    name: ClassVar[str] = "overwrite"
    partition_by: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class LakeAppend:
    """Insert rows in one commit; partitioning cannot change here."""

    name: ClassVar[str] = "append"


HiveMode = Union[Overwrite, Append, Ignore, ReplacePartitions]
LakeMode = Union[LakeOverwrite, LakeAppend]

HIVE_MODES = {cls.name: cls for cls in (Overwrite, Append, Ignore, ReplacePartitions)}
LAKE_MODES = {cls.name: cls for cls in (LakeOverwrite, LakeAppend)}


def parse_mode(
    mode: str | HiveMode,
    partition_by: Optional[Sequence[str] | str] = None,
    filename_pattern: str = "data_{uuid}",
) -> HiveMode:
    """Map a mode name onto a Hive mode variant."""
    if isinstance(mode, (Overwrite, Append, Ignore, ReplacePartitions)):
        return mode
    if mode not in HIVE_MODES:
        raise ValidationError(
            f"Unknown mode '{mode}'. Allowed: {', '.join(HIVE_MODES)}"
        )
    keys = validate_columns(partition_by, "partition_by") if partition_by else ()
    return HIVE_MODES[mode](partition_by=keys, filename_pattern=filename_pattern)


def parse_lake_mode(
    mode: str | LakeMode, partition_by: Optional[Sequence[str] | str] = None
) -> LakeMode:
    """Map a mode name onto a Lake mode variant."""
    if isinstance(mode, (LakeOverwrite, LakeAppend)):
        return mode
    if mode not in LAKE_MODES:
        raise ValidationError(
            f"Unknown mode '{mode}'. Allowed: {', '.join(LAKE_MODES)}"
        )
    if mode == "append":
        if partition_by:
            raise ValidationError(
                "Partitioning cannot change on append. "
                "Use mode = 'overwrite' or set_partitioning() instead."
            )
        return LakeAppend()
    keys = (
        validate_columns(partition_by, "partition_by", allow_empty=True)
        if partition_by is not None
        else None
    )
    if keys is not None:
        for key in keys:
            partition_key_column(key)
    return LakeOverwrite(partition_by=keys)


def partition_key_column(expression: str) -> str:
    """Column referenced by a partition key such as ``region`` or ``year(date)``."""
    if _COLUMN_RE.match(expression):
        return expression
    match = _TRANSFORM_RE.match(expression)
    if match:
        return match.group(2)
    raise ValidationError(
        "Partition keys must be column names or single-column transforms like 'year(date)'",
        {"partition_key": expression},
    )


# =============================================================================
# State snapshots (read-only probes)
# =============================================================================


@dataclass(frozen=True)
class HiveState:
    """What exists at a Hive dataset location right now."""

    location: str
    exists: bool
    files: tuple[str, ...] = ()
    existing_schema: Optional[dict[str, str]] = None
    existing_rows: Optional[int] = None

    @classmethod
    def probe(cls, dataset_dir: Path) -> "HiveState":
        """Inspect a dataset directory without modifying it."""
        dataset_dir = Path(dataset_dir)
        exists = dataset_dir.is_dir()
        files = tuple(partitions.list_files(dataset_dir)) if exists else ()
        if not files:
            return cls(location=str(dataset_dir), exists=exists, files=files)

        lf = pl.scan_parquet(
            str(dataset_dir / "**" / "*.parquet"),
            hive_partitioning=True,
            missing_columns="insert",
        )
        schema = polars_schema_strings(lf.collect_schema())
        rows = lf.select(pl.len()).collect().item()
        return cls(
            location=str(dataset_dir),
            exists=exists,
            files=files,
            existing_schema=schema,
            existing_rows=rows,
        )


@dataclass(frozen=True)
class LakeState:
    """What exists for a Lake table right now."""

    qualified_name: str
    exists: bool
    columns: Optional[dict[str, str]] = None
    row_count: Optional[int] = None
    partition_keys: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class UpsertState:
    """Lake table state plus the target keys that match the incoming keys."""

    qualified_name: str
    exists: bool
    columns: Optional[dict[str, str]] = None
    row_count: Optional[int] = None
    matched_keys: Optional[pl.DataFrame] = None


# =============================================================================
# Plans
# =============================================================================


@dataclass
class FileWrite:
    """One file a plan intends to write."""

    path: str
    partition: str
    rows: int
    data: pl.DataFrame = field(repr=False, compare=False)


@dataclass
class Plan:
    """Intended effect of a write: what gets deleted and what gets added."""

    backend: str
    mode: str
    destination: str
    target_exists: bool
    rows_to_write: int
    existing_rows: Optional[int] = None
    partition_by: tuple[str, ...] = ()
    files_to_delete: list[str] = field(default_factory=list)
    files_to_write: list[FileWrite] = field(default_factory=list)
    partitions_affected: list[str] = field(default_factory=list)
    partition_operations: dict[str, str] = field(default_factory=dict)
    partitions_to_replace: list[str] = field(default_factory=list)
    delete_all: bool = False
    skipped: bool = False
    partition_config: Optional[tuple[str, ...]] = None
    schema_changes: SchemaChange = field(default_factory=SchemaChange)
    actions: list[str] = field(default_factory=list)
    data: Optional[pl.DataFrame] = field(default=None, repr=False, compare=False)
    consumed: bool = field(default=False, repr=False, compare=False)

    def summary(self) -> dict[str, Any]:
        """Structured preview summary."""
        return {
            "backend": self.backend,
            "mode": self.mode,
            "destination": self.destination,
            "target_exists": self.target_exists,
            "skipped": self.skipped,
            "rows_to_write": self.rows_to_write,
            "existing_rows": self.existing_rows,
            "files_to_delete": len(self.files_to_delete),
            "files_to_write": len(self.files_to_write),
            "partitions_affected": len(self.partitions_affected),
            "partitions_to_replace": len(self.partitions_to_replace),
            "partition_config": list(self.partition_config) if self.partition_config else None,
            "schema_changes": self.schema_changes.to_dict(),
        }

    def report(self) -> str:
        """Human-readable preview report."""
        return render_plan(self)

    def mark_consumed(self) -> None:
        if self.consumed:
            raise ValidationError(
                "This plan was already executed; build a new plan for another write.",
                {"destination": self.destination},
            )
        self.consumed = True


@dataclass
class UpsertPlan:
    """Intended effect of an upsert: which rows insert and which update."""

    destination: str
    match_keys: tuple[str, ...]
    update_cols: tuple[str, ...]
    rows_incoming: int
    inserts: int
    matched: int
    existing_rows: Optional[int] = None
    insert_keys: Optional[pl.DataFrame] = field(default=None, repr=False)
    matched_keys: Optional[pl.DataFrame] = field(default=None, repr=False)
    actions: list[str] = field(default_factory=list)
    data: Optional[pl.DataFrame] = field(default=None, repr=False, compare=False)
    consumed: bool = field(default=False, repr=False, compare=False)

    @property
    def insert_only(self) -> bool:
        return not self.update_cols

    @property
    def updates(self) -> int:
        """Rows that will be changed in place (zero for insert-only)."""
        return 0 if self.insert_only else self.matched

    def summary(self) -> dict[str, Any]:
        return {
            "destination": self.destination,
            "match_keys": list(self.match_keys),
            "update_cols": list(self.update_cols),
            "insert_only": self.insert_only,
            "rows_incoming": self.rows_incoming,
            "existing_rows": self.existing_rows,
            "inserts": self.inserts,
            "updates": self.updates,
            "matched": self.matched,
        }

    def report(self) -> str:
        return render_upsert_plan(self)

    def mark_consumed(self) -> None:
        if self.consumed:
            raise ValidationError(
                "This plan was already executed; build a new plan for another upsert.",
                {"destination": self.destination},
            )
        self.consumed = True


# =============================================================================
# Builders
# =============================================================================


def coerce_frame(data: Any) -> pl.DataFrame:
    if isinstance(data, pl.LazyFrame):
        return data.collect()
    if isinstance(data, pl.DataFrame):
        return data
    raise ValidationError(
        f"data must be a polars DataFrame or LazyFrame, got {type(data).__name__}"
    )


def _check_partition_columns(df: pl.DataFrame, partition_by: Sequence[str]) -> None:
    missing = [c for c in partition_by if c not in df.columns]
    if missing:
        raise ValidationError(
            f"Partition columns not in DataFrame: {missing}",
            {"columns": df.columns},
        )
    if partition_by and len(partition_by) >= len(df.columns):
        raise ValidationError(
            "partition_by cannot cover every column; no data columns would remain."
        )


def _file_name(pattern: str, partition: str, taken: set[str]) -> str:
    """Generate a file path that is not in ``taken`` and reserve it."""
    while True:
        name = pattern.replace("{uuid}", unique_token())
        if not name.endswith(".parquet"):
            name = f"{name}.parquet"
        rel = f"{partition}/{name}" if partition else name
        if rel not in taken:
            taken.add(rel)
            return rel
        if "{uuid}" not in pattern:
            raise ValidationError(
                f"File name '{rel}' is already taken; add '{{uuid}}' to filename_pattern",
                {"filename_pattern": pattern},
            )


def build_plan(
    state: HiveState,
    data: Any,
    mode: HiveMode,
    required_partitions: Optional[Sequence[str]] = None,
) -> Plan:
    """Plan a Hive write. Pure: reads only ``state`` and ``data``.

    Args:
        state: Probe result for the target dataset directory.
        data: Frame to write.
        mode: One of the Hive mode variants.
        required_partitions: Governance rule for this dataset, if any.

    Raises:
        ValidationError: Missing partition columns, governance violations.
        PartitionSchemaError: Append/replace onto a different partition layout.
    """
    df = coerce_frame(data)
    partition_by = tuple(mode.partition_by)
    _check_partition_columns(df, partition_by)

    if required_partitions is not None and partition_by != tuple(required_partitions):
        raise PartitionSchemaError(
            f"Partition governance: this dataset requires partition_by = {list(required_partitions)}",
            {"supplied": list(partition_by)},
        )

    incoming_schema = polars_schema_strings(df.schema)
    changes = detect_changes(state.existing_schema, incoming_schema)
    for col in partition_by:
        changes.type_changes.pop(col, None)

    plan = Plan(
        backend="hive",
        mode=mode.name,
        destination=state.location,
        target_exists=state.exists,
        rows_to_write=len(df),
        existing_rows=state.existing_rows,
        partition_by=partition_by,
        schema_changes=changes,
        data=df,
    )

    if isinstance(mode, Ignore) and state.exists:
        plan.skipped = True
        plan.rows_to_write = 0
        plan.actions.append("Will SKIP (target already exists)")
        return plan

    if isinstance(mode, (Append, ReplacePartitions)) and state.files:
        on_disk = partitions.layout_columns(state.files)
        if on_disk != {partition_by}:
            raise PartitionSchemaError(
                "Partition layout on disk does not match partition_by; "
                "use mode = 'overwrite' to rewrite the dataset.",
                {
                    "on_disk": sorted(list(cols) for cols in on_disk),
                    "partition_by": list(partition_by),
                },
            )

    if partition_by:
        groups = partitions.split_by_partition(df, partition_by)
    elif len(df) or not isinstance(mode, Append):
        groups = [("", df)]
    else:
        groups = []

    existing_partitions = set(partitions.list_partitions(state.files))

    if isinstance(mode, Overwrite):
        plan.delete_all = state.exists
        plan.files_to_delete = list(state.files)
        taken: set[str] = set()
    elif isinstance(mode, ReplacePartitions):
        incoming = [p for p, _ in groups]
        plan.partitions_to_replace = [p for p in incoming if p in existing_partitions]
        replaced = set(plan.partitions_to_replace)
        plan.files_to_delete = [
            f for f in state.files if partitions.partition_of(f) in replaced
        ]
        taken = set(state.files)
    else:
        taken = set(state.files)

    for partition, group in groups:
        rel = _file_name(mode.filename_pattern, partition, taken)
        plan.files_to_write.append(
            FileWrite(path=rel, partition=partition, rows=len(group), data=group)
        )
        if partition:
            plan.partitions_affected.append(partition)
            exists = partition in existing_partitions
            if isinstance(mode, ReplacePartitions):
                op = "replace" if exists else "create"
            elif isinstance(mode, Overwrite):
                op = "overwrite" if state.exists else "create"
            else:
                op = "append" if exists else "create"
            plan.partition_operations[partition] = op

    plan.actions.extend(_hive_actions(plan, mode))
    return plan


def _hive_actions(plan: Plan, mode: HiveMode) -> list[str]:
    rows = format_count(plan.rows_to_write)
    files = len(plan.files_to_write)
    if isinstance(mode, Overwrite):
        if plan.target_exists:
            head = (
                f"Will REPLACE {format_count(plan.existing_rows)} existing rows "
                f"({len(plan.files_to_delete)} file(s)) with {rows} new rows in {files} file(s)"
            )
        else:
            head = f"Will CREATE new dataset with {rows} rows in {files} file(s)"
    elif isinstance(mode, Append):
        head = (
            f"Will ADD {rows} rows in {files} new file(s) to existing "
            f"{format_count(plan.existing_rows)} rows"
        )
    elif isinstance(mode, Ignore):
        head = f"Will CREATE new dataset with {rows} rows in {files} file(s)"
    else:
        head = (
            f"Will REPLACE {len(plan.partitions_to_replace)} partition(s) "
            f"with {rows} rows in {files} file(s)"
        )
    actions = [head]
    for partition, op in plan.partition_operations.items():
        actions.append(f"  {op:<9} {partition}")
    return actions


def build_lake_plan(state: LakeState, data: Any, mode: LakeMode) -> Plan:
    """Plan a Lake overwrite or append. Pure: reads only ``state`` and ``data``.

    Raises:
        ValidationError: Bad partition keys, columns unknown to the table.
        NotFoundError: Append onto a table that does not exist.
    """
    df = coerce_frame(data)

    incoming_schema = duckdb_schema_strings(df.schema)
    changes = detect_changes(state.columns if state.exists else None, incoming_schema)

    plan = Plan(
        backend="lake",
        mode=mode.name,
        destination=state.qualified_name,
        target_exists=state.exists,
        rows_to_write=len(df),
        existing_rows=state.row_count,
        schema_changes=changes,
        data=df,
    )

    if isinstance(mode, LakeAppend):
        if not state.exists:
            raise NotFoundError(
                f"Table '{state.qualified_name}' does not exist. "
                "Use mode = 'overwrite' to create it first."
            )
        if changes.added_columns:
            raise ValidationError(
                "Data has columns not present in target table",
                {"columns": changes.added_columns},
            )
        plan.partition_config = state.partition_keys
        total = (state.row_count or 0) + len(df)
        plan.actions.append(
            f"Will ADD {format_count(len(df))} rows (total: {format_count(total)})"
        )
    else:
        if mode.partition_by is not None:
            for key in mode.partition_by:
                column = partition_key_column(key)
                if column not in df.columns:
                    raise ValidationError(
                        f"Partition key '{key}' refers to column '{column}' not in DataFrame",
                        {"columns": df.columns},
                    )
            plan.partition_config = mode.partition_by or None
        else:
            plan.partition_config = state.partition_keys
            for key in state.partition_keys or ():
                if partition_key_column(key) not in df.columns:
                    raise ValidationError(
                        f"Table is partitioned by '{key}' but the data lacks that column; "
                        "pass partition_by=[] to drop partitioning.",
                        {"columns": df.columns},
                    )
        plan.partition_by = plan.partition_config or ()
        if state.exists:
            plan.delete_all = True
            plan.actions.append(
                f"Will REPLACE table ({format_count(state.row_count)} -> "
                f"{format_count(len(df))} rows)"
            )
        else:
            plan.actions.append(f"Will CREATE new table with {format_count(len(df))} rows")
        if plan.partition_config:
            plan.actions.append(f"Partitioned by: {', '.join(plan.partition_config)}")

    plan.actions.append("A new snapshot will be created.")
    return plan


def build_upsert_plan(
    state: UpsertState,
    data: Any,
    match_keys: Sequence[str] | str,
    update_cols: Optional[Sequence[str]] = None,
) -> UpsertPlan:
    """Plan an upsert: split incoming rows into inserts and matched updates.

    Args:
        state: Probe result, including the target keys matching the data.
        data: Incoming rows.
        match_keys: Columns that identify a row.
        update_cols: ``None`` updates every non-key column, an empty sequence
            means insert-only, otherwise only the named columns update.

    Raises:
        ValidationError: Bad keys or columns, duplicate keys in ``data``.
        NotFoundError: Target table does not exist.
    """
    df = coerce_frame(data)
    keys = validate_columns(match_keys, "match_keys")

    missing_keys = [k for k in keys if k not in df.columns]
    if missing_keys:
        raise ValidationError(f"Key columns not found in data: {missing_keys}")

    if not state.exists:
        raise NotFoundError(f"Table '{state.qualified_name}' does not exist.")

    target_cols = set(state.columns or {})
    extra = [c for c in df.columns if c not in target_cols]
    if extra:
        raise ValidationError(
            "Data has columns not present in target table",
            {"columns": extra},
        )

    if update_cols is None:
        resolved = tuple(c for c in df.columns if c not in keys)
    else:
        resolved = validate_columns(update_cols, "update_cols", allow_empty=True)
        unknown = [c for c in resolved if c not in df.columns]
        if unknown:
            raise ValidationError(f"update_cols not found in data: {unknown}")
        overlap = [c for c in resolved if c in keys]
        if overlap:
            raise ValidationError(f"update_cols cannot include key columns: {overlap}")

    key_frame = df.select(keys)
    duplicated = key_frame.filter(key_frame.is_duplicated())
    if len(duplicated):
        sample = duplicated.unique(maintain_order=True).head(5).to_dicts()
        raise ValidationError(
            "match_keys do not uniquely identify rows: duplicate keys in data",
            {"duplicate_keys": sample},
        )

    if state.matched_keys is not None and len(state.matched_keys):
        target_keys = state.matched_keys.select(keys).cast(
            {k: df.schema[k] for k in keys}
        ).unique()
        matched = key_frame.join(target_keys, on=list(keys), how="semi")
        inserts = key_frame.join(target_keys, on=list(keys), how="anti")
    else:
        matched = key_frame.clear()
        inserts = key_frame

    plan = UpsertPlan(
        destination=state.qualified_name,
        match_keys=keys,
        update_cols=resolved,
        rows_incoming=len(df),
        inserts=len(inserts),
        matched=len(matched),
        existing_rows=state.row_count,
        insert_keys=inserts,
        matched_keys=matched,
        data=df,
    )
    plan.actions.append(f"Rows to INSERT: {format_count(plan.inserts)}")
    if plan.insert_only:
        plan.actions.append(
            f"Rows matched: {format_count(plan.matched)} (left untouched, INSERT-ONLY)"
        )
    else:
        plan.actions.append(f"Rows to UPDATE: {format_count(plan.updates)}")
        plan.actions.append(f"Columns to update: {', '.join(resolved)}")
    plan.actions.append("A new snapshot will be created.")
    return plan
