"""Schema comparison between incoming frames and existing datasets."""

from dataclasses import dataclass, field
from typing import Mapping

import polars as pl


@dataclass
class SchemaChange:
    """Represents detected schema changes between stored and incoming schema"""

    added_columns: list[str] = field(default_factory=list)
    removed_columns: list[str] = field(default_factory=list)
    type_changes: dict[str, tuple[str, str]] = field(
        default_factory=dict
    )  # col -> (old_type, new_type)

    @property
    def has_changes(self) -> bool:
        return bool(self.added_columns or self.removed_columns or self.type_changes)

    def to_dict(self) -> dict:
        return {
            "added_columns": list(self.added_columns),
            "removed_columns": list(self.removed_columns),
            "type_changes": {k: list(v) for k, v in self.type_changes.items()},
        }

    def __str__(self) -> str:
        parts = []
        if self.added_columns:
            parts.append(f"added={self.added_columns}")
        if self.removed_columns:
            parts.append(f"removed={self.removed_columns}")
        if self.type_changes:
            type_strs = [
                f"{col}: {old}->{new}" for col, (old, new) in self.type_changes.items()
            ]
            parts.append(f"type_changes=[{', '.join(type_strs)}]")
        return ", ".join(parts) if parts else "no changes"


def dtype_to_string(dtype: pl.DataType) -> str:
    """Convert Polars dtype to human-readable string"""
    type_map = {
        pl.String: "String",
        pl.Int8: "Int8",
        pl.Int16: "Int16",
        pl.Int32: "Int32",
        pl.Int64: "Int64",
        pl.UInt8: "UInt8",
        pl.UInt16: "UInt16",
        pl.UInt32: "UInt32",
        pl.UInt64: "UInt64",
        pl.Float32: "Float32",
        pl.Float64: "Float64",
        pl.Boolean: "Boolean",
        pl.Date: "Date",
        pl.Time: "Time",
        pl.Null: "Null",
    }

    for pl_type, name in type_map.items():
        if dtype == pl_type:
            return name

    if isinstance(dtype, pl.Datetime):
        tz = dtype.time_zone
        return f"Datetime({tz})" if tz else "Datetime"
    if isinstance(dtype, pl.Duration):
        return "Duration"
    if isinstance(dtype, pl.List):
        inner = dtype_to_string(dtype.inner)
        return f"List[{inner}]"
    if isinstance(dtype, pl.Struct):
        return "Struct"

    return str(dtype)


def dtype_to_duckdb(dtype: pl.DataType) -> str:
    """Name DuckDB gives a column created from a Polars dtype."""
    type_map = {
        pl.String: "VARCHAR",
        pl.Int8: "TINYINT",
        pl.Int16: "SMALLINT",
        pl.Int32: "INTEGER",
        pl.Int64: "BIGINT",
        pl.UInt8: "UTINYINT",
        pl.UInt16: "USMALLINT",
        pl.UInt32: "UINTEGER",
        pl.UInt64: "UBIGINT",
        pl.Float32: "FLOAT",
        pl.Float64: "DOUBLE",
        pl.Boolean: "BOOLEAN",
        pl.Date: "DATE",
        pl.Time: "TIME",
        pl.Null: "INTEGER",
    }

    for pl_type, name in type_map.items():
        if dtype == pl_type:
            return name

    if isinstance(dtype, pl.Datetime):
        return "TIMESTAMP WITH TIME ZONE" if dtype.time_zone else "TIMESTAMP"
    if isinstance(dtype, pl.Duration):
        return "INTERVAL"
    if isinstance(dtype, pl.Decimal):
        return f"DECIMAL({dtype.precision},{dtype.scale})"
    if isinstance(dtype, pl.List):
        return f"{dtype_to_duckdb(dtype.inner)}[]"
    if isinstance(dtype, pl.Struct):
        return "STRUCT"

    return str(dtype).upper()


def polars_schema_strings(schema: Mapping[str, pl.DataType]) -> dict[str, str]:
    return {name: dtype_to_string(dtype) for name, dtype in schema.items()}


def duckdb_schema_strings(schema: Mapping[str, pl.DataType]) -> dict[str, str]:
    return {name: dtype_to_duckdb(dtype) for name, dtype in schema.items()}


def detect_changes(
    existing: Mapping[str, str] | None, incoming: Mapping[str, str]
) -> SchemaChange:
    """Compare incoming column types against the existing ones.

    Both sides map column name to a type string in the same vocabulary.
    ``existing=None`` means there is nothing to compare against yet.
    """
    if existing is None:
        return SchemaChange()

    stored = {name: str(t).upper() for name, t in existing.items()}
    current = {name: str(t).upper() for name, t in incoming.items()}

    added = [name for name in incoming if name not in stored]
    removed = [name for name in existing if name not in current]
    type_changes = {
        name: (existing[name], incoming[name])
        for name in incoming
        if name in stored and stored[name] != current[name]
    }

    return SchemaChange(
        added_columns=added, removed_columns=removed, type_changes=type_changes
    )
