"""Tests for MERGE-based upserts on the catalog backend."""

import polars as pl
import pytest

from pondkit.exceptions import NotFoundError, ValidationError
from pondkit.plan import UpsertPlan


@pytest.fixture
def products(lake):
    """Catalog with a three-row products table."""
    lake.write(
        pl.DataFrame({"id": [1, 2, 3], "name": ["a", "b", "c"], "price": [1.0, 2.0, 3.0]}),
        "products",
    )
    return lake


@pytest.fixture
def changes() -> pl.DataFrame:
    return pl.DataFrame({"id": [2, 3, 4], "name": ["B", "C", "D"], "price": [20.0, 30.0, 40.0]})


def _table(lake) -> pl.DataFrame:
    return lake.read("products").collect().sort("id")


def test_inserts_and_updates(products, changes):
    result = products.upsert(changes, "products", match_keys=["id"])

    assert result.rows_inserted == 1
    assert result.rows_updated == 2
    assert result.operation == "upsert"

    table = _table(products)
    assert table["id"].to_list() == [1, 2, 3, 4]
    assert table["name"].to_list() == ["a", "B", "C", "D"]
    assert table["price"].to_list() == [1.0, 20.0, 30.0, 40.0]


def test_one_snapshot_per_upsert(products, changes):
    before = products.list_snapshots()
    result = products.upsert(changes, "products", match_keys="id")

    after = products.list_snapshots()
    assert len(after) == len(before) + 1
    assert after[-1].snapshot_id == result.snapshot_id > before[-1].snapshot_id


@pytest.mark.parametrize(
    "ids",
    [
        pytest.param([4, 5], id="all_new"),
        pytest.param([1, 2, 3], id="all_matched"),
        pytest.param([3, 4, 5, 1], id="mixed"),
    ],
)
def test_inserted_plus_updated_is_row_count(products, ids):
    df = pl.DataFrame({"id": ids, "name": ["x"] * len(ids), "price": [0.0] * len(ids)})
    result = products.upsert(df, "products", match_keys=["id"])

    assert result.rows_inserted + result.rows_updated == len(df)
    assert len(_table(products)) == len({1, 2, 3} | set(ids))


def test_preview_matches_execution(products, changes):
    before = len(products.list_snapshots())
    plan = products.preview_upsert(changes, "products", match_keys=["id"])

    assert isinstance(plan, UpsertPlan)
    assert plan.summary()["inserts"] == 1
    assert plan.summary()["updates"] == 2
    assert "Rows to UPDATE: 2" in plan.report()
    assert len(products.list_snapshots()) == before

    result = products.upsert(changes, "products", match_keys=["id"])
    assert (result.rows_inserted, result.rows_updated) == (plan.inserts, plan.updates)


def test_dry_run(products, changes):
    plan = products.upsert(changes, "products", match_keys=["id"], dry_run=True)
    assert isinstance(plan, UpsertPlan)
    assert len(_table(products)) == 3


def test_insert_only_leaves_matches(products, changes):
    result = products.upsert(changes, "products", match_keys=["id"], update_cols=[])

    assert result.rows_inserted == 1
    assert result.rows_updated == 0
    table = _table(products)
    assert table["name"].to_list() == ["a", "b", "c", "D"]


def test_update_subset_of_columns(products, changes):
    products.upsert(changes, "products", match_keys=["id"], update_cols=["price"])

    table = _table(products)
    assert table["name"].to_list() == ["a", "b", "c", "D"]
    assert table["price"].to_list() == [1.0, 20.0, 30.0, 40.0]


def test_duplicate_keys_rejected_before_commit(products):
    before = len(products.list_snapshots())
    df = pl.DataFrame({"id": [5, 5], "name": ["x", "y"], "price": [1.0, 2.0]})

    with pytest.raises(ValidationError, match="duplicate keys"):
        products.upsert(df, "products", match_keys=["id"])

    assert len(products.list_snapshots()) == before
    assert len(_table(products)) == 3


def test_missing_table(lake, changes):
    with pytest.raises(NotFoundError):
        lake.upsert(changes, "products", match_keys=["id"])


def test_column_not_in_target(products, changes):
    with pytest.raises(ValidationError, match="not present in target"):
        products.upsert(changes.with_columns(pl.lit(1).alias("qty")), "products", match_keys=["id"])


def test_key_not_in_data(products, changes):
    with pytest.raises(ValidationError, match="Key columns not found"):
        products.upsert(changes, "products", match_keys=["sku"])
