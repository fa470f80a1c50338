"""Base classes and interfaces for pondkit sinks."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import polars as pl

from pondkit.plan import Plan


@dataclass
class WriteResult:
    """Result of a write or upsert operation."""

    destination: str
    rows_written: int
    operation: str = "write"  # "overwrite", "append", "ignore", "replace_partitions", "upsert"
    files_written: int = 0
    files_deleted: int = 0
    partitions_affected: list[str] = field(default_factory=list)
    skipped: bool = False
    actions: list[str] = field(default_factory=list)
    snapshot_id: Optional[int] = None
    rows_inserted: Optional[int] = None
    rows_updated: Optional[int] = None


class Sink(ABC):
    """Abstract base class for pondkit sinks.

    A sink plans writes with the plan builder and executes the plans against
    its storage. ``preview_write`` and ``write(..., dry_run=True)`` return the
    plan without touching storage.
    """

    @abstractmethod
    def preview_write(self, df: pl.DataFrame, *args, **kwargs) -> Plan:
        """Build the write plan without executing it."""
        pass

    @abstractmethod
    def write(self, df: pl.DataFrame, *args, **kwargs) -> WriteResult | Plan:
        """Write data, or return the plan when ``dry_run=True``."""
        pass

    @abstractmethod
    def read(self, *args, **kwargs) -> pl.LazyFrame:
        """Read a dataset or table as a LazyFrame."""
        pass

    @abstractmethod
    def exists(self, *args) -> bool:
        """Check whether the target exists."""
        pass
