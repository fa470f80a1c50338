"""Tests for the folder (Hive) sink."""

import datetime
from pathlib import Path

import polars as pl
import pytest

from pondkit import HiveConfig, HiveSink
from pondkit.exceptions import (
    NotFoundError,
    PartialFailureError,
    PartitionSchemaError,
    ValidationError,
)
from pondkit.partitions import list_files
from pondkit.plan import Plan


def _ids(sink: HiveSink, section: str = "Trade", dataset: str = "Imports") -> list[int]:
    return sorted(sink.read(section, dataset).collect()["id"].to_list())


# =============================================================================
# Parameterized tests for various data types and shapes
# =============================================================================

DATAFRAME_CASES = [
    pytest.param(
        pl.DataFrame({"id": [1, 2, 3], "name": ["a", "b", "c"]}),
        id="int_and_str",
    ),
    pytest.param(
        pl.DataFrame({"x": [1.5, 2.5, 3.5], "y": [True, False, True]}),
        id="float_and_bool",
    ),
    pytest.param(
        pl.DataFrame({
            "dt": [datetime.date(2025, 1, 1), datetime.date(2025, 1, 2)],
            "val": [100, 200],
        }),
        id="date_and_int",
    ),
    pytest.param(
        pl.DataFrame({"single": [42]}),
        id="single_row",
    ),
    pytest.param(
        pl.DataFrame({"a": list(range(1000)), "b": list(range(1000))}),
        id="large_1000_rows",
    ),
]


@pytest.mark.parametrize("df", DATAFRAME_CASES)
def test_write_read_various_schemas(hive: HiveSink, df: pl.DataFrame):
    """Write and read back DataFrames with various schemas."""
    hive.write(df, "Test", "table")
    result = hive.read("Test", "table").collect()

    assert len(result) == len(df)
    assert set(result.columns) == set(df.columns)


PARTITION_CASES = [
    pytest.param(
        pl.DataFrame({
            "id": [1, 2, 3, 4],
            "date": [
                datetime.date(2025, 1, 1),
                datetime.date(2025, 1, 1),
                datetime.date(2025, 1, 2),
                datetime.date(2025, 1, 2),
            ],
        }),
        ["date"],
        2,
        id="single_date_partition",
    ),
    pytest.param(
        pl.DataFrame({
            "id": [1, 2, 3, 4],
            "year": [2024, 2024, 2025, 2025],
            "month": [1, 2, 1, 2],
        }),
        ["year", "month"],
        4,
        id="two_column_partition",
    ),
    pytest.param(
        pl.DataFrame({
            "id": [1, 2, 3],
            "category": ["a", "b", "c"],
        }),
        ["category"],
        3,
        id="string_partition",
    ),
]


@pytest.mark.parametrize("df,partition_by,expected_partitions", PARTITION_CASES)
def test_partitioning_configurations(
    hive: HiveSink, df: pl.DataFrame, partition_by: list[str], expected_partitions: int
):
    """Test various partitioning configurations."""
    hive.write(df, "Trade", "Imports", partition_by=partition_by)

    partitions = hive.list_partitions("Trade", "Imports")
    assert len(partitions) == expected_partitions
    for col in partition_by:
        assert all(f"{col}=" in p for p in partitions)

    result = hive.read("Trade", "Imports").collect()
    assert len(result) == len(df)


def test_partition_values_are_encoded(hive: HiveSink):
    """Separators inside values never create extra directory levels."""
    df = pl.DataFrame({"id": [1, 2], "region": ["north/east", None]})
    hive.write(df, "Geo", "regions", partition_by=["region"])

    assert hive.list_partitions("Geo", "regions") == [
        "region=__HIVE_DEFAULT_PARTITION__",
        "region=north%2Feast",
    ]


def test_partition_filter_read(hive: HiveSink, imports_df: pl.DataFrame):
    hive.write(imports_df, "Trade", "Imports", partition_by=["year"])

    result = hive.read("Trade", "Imports", partition_filter={"year": 2024}).collect()
    assert sorted(result["id"].to_list()) == [1, 2]


# =============================================================================
# Mode semantics
# =============================================================================


class TestOverwrite:
    def test_replaces_everything(self, hive: HiveSink, imports_df: pl.DataFrame):
        hive.write(imports_df, "Trade", "Imports", partition_by=["year"])
        result = hive.write(
            pl.DataFrame({"id": [9], "year": [2030], "month": [1], "value": [1.0]}),
            "Trade",
            "Imports",
            partition_by=["year"],
        )

        assert _ids(hive) == [9]
        assert hive.list_partitions("Trade", "Imports") == ["year=2030"]
        assert result.files_deleted == 2
        assert result.operation == "overwrite"

    def test_idempotent(self, hive: HiveSink, imports_df: pl.DataFrame):
        hive.write(imports_df, "Trade", "Imports", partition_by=["year"])
        first = hive.read("Trade", "Imports").collect().sort("id")
        hive.write(imports_df, "Trade", "Imports", partition_by=["year"])
        second = hive.read("Trade", "Imports").collect().sort("id")

        assert first.equals(second)
        assert len(list_files(hive.dataset_path("Trade", "Imports"))) == 2

    def test_may_change_layout(self, hive: HiveSink, imports_df: pl.DataFrame):
        hive.write(imports_df, "Trade", "Imports", partition_by=["year"])
        hive.write(imports_df, "Trade", "Imports", partition_by=["year", "month"])
        assert len(hive.list_partitions("Trade", "Imports")) == 4


class TestAppend:
    def test_doubles_rows_and_files(self, hive: HiveSink, imports_df: pl.DataFrame):
        dataset_dir = hive.dataset_path("Trade", "Imports")
        hive.write(imports_df, "Trade", "Imports", mode="append", partition_by=["year"])
        first_files = set(list_files(dataset_dir))

        hive.write(imports_df, "Trade", "Imports", mode="append", partition_by=["year"])
        second_files = set(list_files(dataset_dir))

        assert len(hive.read("Trade", "Imports").collect()) == 2 * len(imports_df)
        assert len(second_files) == 2 * len(first_files)
        assert first_files < second_files

    def test_preview_probes_existing_dataset(self, hive: HiveSink, imports_df: pl.DataFrame):
        hive.write(imports_df, "Trade", "Imports", partition_by=["year"])

        plan = hive.preview_write(imports_df, "Trade", "Imports", mode="append", partition_by=["year"])

        assert plan.target_exists is True
        assert plan.existing_rows == len(imports_df)
        assert not plan.schema_changes.has_changes

    def test_unpartitioned(self, hive: HiveSink):
        df = pl.DataFrame({"id": [1, 2]})
        hive.write(df, "Trade", "Imports", mode="append")
        hive.write(df, "Trade", "Imports", mode="append")
        assert _ids(hive) == [1, 1, 2, 2]

    def test_layout_drift(self, hive: HiveSink, imports_df: pl.DataFrame):
        hive.write(imports_df, "Trade", "Imports", partition_by=["year"])
        with pytest.raises(PartitionSchemaError):
            hive.write(imports_df, "Trade", "Imports", mode="append", partition_by=["month"])

    def test_custom_filename_pattern(self, hive: HiveSink):
        hive.write(
            pl.DataFrame({"id": [1]}),
            "Trade",
            "Imports",
            mode="append",
            filename_pattern="batch_{uuid}",
        )
        files = list_files(hive.dataset_path("Trade", "Imports"))
        assert len(files) == 1
        assert files[0].startswith("batch_")


class TestIgnore:
    def test_writes_when_missing(self, hive: HiveSink, imports_df: pl.DataFrame):
        result = hive.write(imports_df, "Trade", "Imports", mode="ignore")
        assert result.skipped is False
        assert result.rows_written == 4

    def test_skips_existing(self, hive: HiveSink, imports_df: pl.DataFrame):
        hive.write(imports_df, "Trade", "Imports")
        result = hive.write(pl.DataFrame({"id": [99]}), "Trade", "Imports", mode="ignore")

        assert result.skipped is True
        assert result.rows_written == 0
        assert _ids(hive) == [1, 2, 3, 4]

    def test_rechecks_before_writing(self, hive: HiveSink, imports_df: pl.DataFrame):
        """A target created between planning and execution is left alone."""
        plan = hive.preview_write(imports_df, "Trade", "Imports", mode="ignore")
        assert plan.skipped is False

        hive.write(pl.DataFrame({"id": [99]}), "Trade", "Imports")
        result = hive.execute(plan)

        assert result.skipped is True
        assert _ids(hive) == [99]


class TestReplacePartitions:
    def test_union_of_untouched_and_new(self, hive: HiveSink, imports_df: pl.DataFrame):
        hive.write(imports_df, "Trade", "Imports", partition_by=["year", "month"])
        incoming = pl.DataFrame({
            "id": [20, 21],
            "year": [2024, 2026],
            "month": [2, 1],
            "value": [0.0, 0.0],
        })

        result = hive.write(
            incoming, "Trade", "Imports", mode="replace_partitions", partition_by=["year", "month"]
        )

        # untouched: ids 1, 3, 4; replaced year=2024/month=2 (id 2 -> 20); new 21
        assert _ids(hive) == [1, 3, 4, 20, 21]
        assert result.files_deleted == 1
        assert result.partitions_affected == ["year=2024/month=2", "year=2026/month=1"]

    def test_requires_partition_by(self, hive: HiveSink, imports_df: pl.DataFrame):
        with pytest.raises(ValidationError, match="requires partition_by"):
            hive.write(imports_df, "Trade", "Imports", mode="replace_partitions")

    def test_partial_failure(self, hive: HiveSink, monkeypatch):
        df = pl.DataFrame({"id": [1, 2, 3], "region": ["a", "b", "c"]})
        hive.write(df, "Geo", "sales", partition_by=["region"])

        original = HiveSink._write_file

        def flaky(self, dataset_dir, item, compression):
            if item.partition == "region=b":
                raise OSError("disk full")
            return original(self, dataset_dir, item, compression)

        monkeypatch.setattr(HiveSink, "_write_file", flaky)
        with pytest.raises(PartialFailureError) as exc_info:
            hive.write(df, "Geo", "sales", mode="replace_partitions", partition_by=["region"])

        err = exc_info.value
        assert err.completed == ["region=a"]
        assert err.failed == "region=b"
        assert err.pending == ["region=c"]
        # the failed partition was deleted and never rewritten
        assert hive.list_partitions("Geo", "sales") == ["region=a", "region=c"]


def test_failed_file_write_leaves_no_temp_file(hive: HiveSink, monkeypatch):
    def half_written(self, file, **kwargs):
        Path(file).write_bytes(b"PAR1")
        raise OSError("disk full")

    monkeypatch.setattr(pl.DataFrame, "write_parquet", half_written)
    with pytest.raises(OSError, match="disk full"):
        hive.write(pl.DataFrame({"id": [1]}), "Trade", "Imports")

    dataset_dir = hive.dataset_path("Trade", "Imports")
    assert list(dataset_dir.rglob("*.tmp")) == []
    assert list_files(dataset_dir) == []


# =============================================================================
# Previews and validation
# =============================================================================


def test_dry_run_returns_plan_without_writing(hive: HiveSink, imports_df: pl.DataFrame):
    plan = hive.write(imports_df, "Trade", "Imports", partition_by=["year"], dry_run=True)

    assert isinstance(plan, Plan)
    assert plan.rows_to_write == 4
    assert all(op == "create" for op in plan.partition_operations.values())
    assert hive.exists("Trade", "Imports") is False


def test_preview_raises_same_errors(hive: HiveSink, imports_df: pl.DataFrame):
    with pytest.raises(ValidationError):
        hive.preview_write(imports_df, "Trade", "Imports", partition_by=["missing"])
    with pytest.raises(ValidationError):
        hive.write(imports_df, "Trade", "Imports", partition_by=["missing"])
    assert hive.exists("Trade", "Imports") is False


def test_plan_executes_once(hive: HiveSink, imports_df: pl.DataFrame):
    plan = hive.preview_write(imports_df, "Trade", "Imports")
    hive.execute(plan)
    with pytest.raises(ValidationError, match="already executed"):
        hive.execute(plan)


@pytest.mark.parametrize(
    "section,dataset",
    [
        pytest.param("..", "etc", id="parent_dir"),
        pytest.param("Trade", "a/b", id="slash"),
        pytest.param("", "x", id="empty"),
    ],
)
def test_invalid_names(hive: HiveSink, section: str, dataset: str):
    with pytest.raises(ValidationError):
        hive.write(pl.DataFrame({"id": [1]}), section, dataset)


def test_invalid_compression(hive: HiveSink):
    with pytest.raises(ValidationError, match="Unsupported compression"):
        hive.write(pl.DataFrame({"id": [1]}), "Trade", "Imports", compression="zip")


def test_governance_rules(tmp_path: Path, imports_df: pl.DataFrame):
    sink = HiveSink(HiveConfig(data_path=tmp_path, partition_rules={"Trade/Imports": ["year"]}))

    with pytest.raises(PartitionSchemaError):
        sink.write(imports_df, "Trade", "Imports", partition_by=["month"])
    sink.write(imports_df, "Trade", "Imports", partition_by=["year"])


def test_read_missing_dataset(hive: HiveSink):
    with pytest.raises(NotFoundError):
        hive.read("Trade", "Nothing")


def test_discovery(hive: HiveSink, imports_df: pl.DataFrame):
    hive.write(imports_df, "Trade", "Imports")
    hive.write(imports_df, "Trade", "Exports")
    hive.write(imports_df, "Labour", "Employment")

    assert hive.list_sections() == ["Labour", "Trade"]
    assert hive.list_datasets("Trade") == ["Exports", "Imports"]
    assert hive.exists("Trade", "Imports") is True
    assert hive.exists("Trade", "Nothing") is False
