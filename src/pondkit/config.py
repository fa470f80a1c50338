"""Configuration for pondkit sessions.

Settings can be given directly as dataclasses or loaded from a YAML file with
optional ``hive:`` and ``lake:`` sections::

    hive:
      data_path: /mnt/lake
      compression: zstd
      partition_rules:
        Trade/Imports: [year, month]
    lake:
      catalog: lake
      catalog_type: sqlite
      metadata_path: /mnt/lake/catalog.sqlite
      data_path: /mnt/lake/data

Environment variables override file values so that shared configuration
files can be pointed at per-user locations:

- ``PONDKIT_DATA_PATH``: ``hive.data_path``
- ``PONDKIT_LAKE_METADATA``: ``lake.metadata_path``
- ``PONDKIT_LAKE_DATA``: ``lake.data_path``
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from pondkit.exceptions import ValidationError
from pondkit.utils import validate_columns, validate_name

CATALOG_TYPES = ("duckdb", "sqlite", "postgres")

# Codecs accepted by polars.DataFrame.write_parquet
COMPRESSIONS = ("zstd", "snappy", "gzip", "brotli", "lz4", "uncompressed")

ENV_OVERRIDES = {
    "PONDKIT_DATA_PATH": ("hive", "data_path"),
    "PONDKIT_LAKE_METADATA": ("lake", "metadata_path"),
    "PONDKIT_LAKE_DATA": ("lake", "data_path"),
}


def validate_compression(compression: Optional[str]) -> str:
    """Normalize a parquet compression codec name."""
    if compression is None:
        return "zstd"
    if not isinstance(compression, str) or not compression.strip():
        raise ValidationError("compression must be None or a non-empty string.")
    comp = compression.strip().lower()
    if comp not in COMPRESSIONS:
        raise ValidationError(
            f"Unsupported compression: '{compression}'. Allowed: {', '.join(COMPRESSIONS)}"
        )
    return comp


@dataclass(frozen=True)
class HiveConfig:
    """Settings for the folder-based (Hive-partitioned parquet) backend.

    Args:
        data_path: Root directory of the lake. Datasets live at
            ``<data_path>/<section>/<dataset>``.
        compression: Default parquet codec.
        filename_pattern: Default file name pattern; ``{uuid}`` is replaced
            by a fresh random token per file.
        partition_rules: Optional governance rules mapping
            ``"section/dataset"`` to the partition columns every write to
            that dataset must use.
    """

    data_path: str | Path = "./lake"
    compression: str = "zstd"
    filename_pattern: str = "data_{uuid}"
    partition_rules: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "compression", validate_compression(self.compression))
        rules = {}
        for key, cols in dict(self.partition_rules).items():
            rules[key] = validate_columns(cols, f"partition_rules[{key!r}]")
        object.__setattr__(self, "partition_rules", rules)

    def required_partitions(self, section: str, dataset: str) -> Optional[tuple[str, ...]]:
        """Partition columns a governance rule demands, if any."""
        return self.partition_rules.get(f"{section}/{dataset}")


@dataclass(frozen=True)
class LakeConfig:
    """Settings for the catalog-backed (DuckLake) backend.

    ``catalog_type`` decides the concurrency model of the metadata store:

    - ``duckdb``: single client, metadata in a ``.ducklake`` file
    - ``sqlite``: many readers, one writer at a time with retry
    - ``postgres``: full concurrent access; ``metadata_path`` is a libpq
      connection string
    """

    catalog: str = "lake"
    catalog_type: str = "duckdb"
    metadata_path: str = "metadata.ducklake"
    data_path: str = "./lake_data"
    duckdb_path: str = ":memory:"
    snapshot_version: Optional[int] = None
    snapshot_time: Optional[str] = None
    threads: Optional[int] = None
    memory_limit: Optional[str] = None
    extensions: tuple[str, ...] = ()
    max_commit_retries: int = 3
    retry_base_delay_seconds: float = 0.5

    def __post_init__(self):
        validate_name(self.catalog, "catalog")
        if self.catalog_type not in CATALOG_TYPES:
            raise ValidationError(
                f"Unknown catalog_type: '{self.catalog_type}'. "
                f"Allowed: {', '.join(CATALOG_TYPES)}"
            )
        for ext in self.extensions:
            validate_name(ext, "extension")
        if self.max_commit_retries < 0:
            raise ValidationError("max_commit_retries cannot be negative.")
        if self.retry_base_delay_seconds < 0:
            raise ValidationError("retry_base_delay_seconds cannot be negative.")

    @property
    def dsn(self) -> str:
        """DuckLake connection string for ``ATTACH``."""
        if self.catalog_type == "duckdb":
            return f"ducklake:{self.metadata_path}"
        return f"ducklake:{self.catalog_type}:{self.metadata_path}"

    @property
    def metadata_schema(self) -> str:
        """Name under which DuckLake attaches its metadata database."""
        return f"__ducklake_metadata_{self.catalog}"


@dataclass(frozen=True)
class PondConfig:
    """Combined configuration as loaded from a YAML file."""

    hive: Optional[HiveConfig] = None
    lake: Optional[LakeConfig] = None


def _build(cls, section: str, raw: Mapping[str, Any]):
    allowed = {f.name for f in fields(cls)}
    unknown = set(raw) - allowed
    if unknown:
        raise ValidationError(
            f"Unknown keys in '{section}' config: {sorted(unknown)}",
            {"allowed": sorted(allowed)},
        )
    values = dict(raw)
    if "extensions" in values:
        values["extensions"] = tuple(values["extensions"] or ())
    return cls(**values)


def load_config(path: str | Path, environ: Optional[Mapping[str, str]] = None) -> PondConfig:
    """Load a ``PondConfig`` from YAML, applying environment overrides."""
    environ = os.environ if environ is None else environ
    path = Path(path)
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    if not isinstance(data, dict):
        raise ValidationError(f"Config file {path} must contain a mapping at top level")

    unknown = set(data) - {"hive", "lake"}
    if unknown:
        raise ValidationError(f"Unknown config sections: {sorted(unknown)}")

    sections: dict[str, dict[str, Any]] = {
        name: dict(data[name] or {}) for name in ("hive", "lake") if name in data
    }
    for env_key, (section, key) in ENV_OVERRIDES.items():
        if env_key in environ:
            sections.setdefault(section, {})[key] = environ[env_key]

    return PondConfig(
        hive=_build(HiveConfig, "hive", sections["hive"]) if "hive" in sections else None,
        lake=_build(LakeConfig, "lake", sections["lake"]) if "lake" in sections else None,
    )
