"""Addresses of datasets (Hive backend) and tables (Lake backend)."""

from dataclasses import dataclass
from pathlib import Path

from pondkit.utils import quote_ident, validate_name


@dataclass(frozen=True)
class HiveLocation:
    """``<data_path>/<section>/<dataset>`` on the folder backend."""

    section: str
    dataset: str

    def __post_init__(self):
        validate_name(self.section, "section")
        validate_name(self.dataset, "dataset")

    def resolve(self, data_path: str | Path) -> Path:
        return Path(data_path) / self.section / self.dataset

    def __str__(self) -> str:
        return f"{self.section}/{self.dataset}"


@dataclass(frozen=True)
class LakeLocation:
    """``catalog.schema.table`` on the catalog backend."""

    catalog: str
    schema: str
    table: str

    def __post_init__(self):
        validate_name(self.catalog, "catalog")
        validate_name(self.schema, "schema")
        validate_name(self.table, "table")

    @property
    def qualified(self) -> str:
        return ".".join(quote_ident(p) for p in (self.catalog, self.schema, self.table))

    def __str__(self) -> str:
        return f"{self.catalog}.{self.schema}.{self.table}"
