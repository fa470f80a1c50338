"""Shared fixtures for pondkit tests."""

from pathlib import Path

import duckdb
import polars as pl
import pytest

from pondkit import HiveSink, connect_lake


def _ducklake_loads() -> bool:
    conn = duckdb.connect()
    try:
        try:
            conn.execute("INSTALL ducklake")
        except duckdb.Error:
            pass
        conn.execute("LOAD ducklake")
        return True
    except duckdb.Error:
        return False
    finally:
        conn.close()


@pytest.fixture(scope="session")
def ducklake_available() -> bool:
    """Whether the ducklake extension can be loaded on this machine."""
    return _ducklake_loads()


@pytest.fixture
def hive(tmp_path: Path) -> HiveSink:
    """HiveSink rooted in a temporary directory."""
    return HiveSink(path=tmp_path / "lake")


@pytest.fixture
def lake(tmp_path: Path, ducklake_available: bool):
    """Fresh DuckLake catalog in a temporary directory."""
    if not ducklake_available:
        pytest.skip("ducklake extension not available")
    handle = connect_lake(
        metadata_path=str(tmp_path / "meta.ducklake"),
        data_path=str(tmp_path / "lake_data"),
        retry_base_delay_seconds=0,
    )
    yield handle
    handle.close()


@pytest.fixture
def imports_df() -> pl.DataFrame:
    """Small trade-imports table."""
    return pl.DataFrame(
        {
            "id": [1, 2, 3, 4],
            "year": [2024, 2024, 2025, 2025],
            "month": [1, 2, 1, 2],
            "value": [10.0, 20.0, 30.0, 40.0],
        }
    )
