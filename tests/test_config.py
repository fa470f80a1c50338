"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from pondkit import HiveSink, connect_hive
from pondkit.config import HiveConfig, LakeConfig, load_config, validate_compression
from pondkit.exceptions import ValidationError

CONFIG_YAML = """
hive:
  data_path: /mnt/lake
  compression: SNAPPY
  partition_rules:
    Trade/Imports: [year, month]
lake:
  catalog: trade
  catalog_type: sqlite
  metadata_path: /mnt/lake/catalog.sqlite
  data_path: /mnt/lake/data
  extensions: [httpfs]
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "pondkit.yml"
    path.write_text(CONFIG_YAML)
    return path


def test_load_config(config_file):
    config = load_config(config_file, environ={})

    assert config.hive.data_path == "/mnt/lake"
    assert config.hive.compression == "snappy"
    assert config.hive.required_partitions("Trade", "Imports") == ("year", "month")
    assert config.hive.required_partitions("Trade", "Exports") is None
    assert config.lake.catalog == "trade"
    assert config.lake.extensions == ("httpfs",)
    assert config.lake.dsn == "ducklake:sqlite:/mnt/lake/catalog.sqlite"
    assert config.lake.metadata_schema == "__ducklake_metadata_trade"


def test_env_overrides(config_file):
    config = load_config(
        config_file,
        environ={"PONDKIT_DATA_PATH": "/home/me/lake", "PONDKIT_LAKE_DATA": "/home/me/data"},
    )

    assert config.hive.data_path == "/home/me/lake"
    assert config.lake.data_path == "/home/me/data"
    assert config.lake.metadata_path == "/mnt/lake/catalog.sqlite"


def test_env_without_file(tmp_path):
    config = load_config(tmp_path / "missing.yml", environ={"PONDKIT_DATA_PATH": "/x"})

    assert config.hive.data_path == "/x"
    assert config.lake is None


@pytest.mark.parametrize(
    "text, match",
    [
        pytest.param("hive:\n  root: /x\n", "Unknown keys", id="unknown_key"),
        pytest.param("storage:\n  a: 1\n", "Unknown config sections", id="unknown_section"),
        pytest.param("- a\n- b\n", "mapping", id="not_a_mapping"),
        pytest.param("lake:\n  catalog_type: mysql\n", "catalog_type", id="catalog_type"),
    ],
)
def test_invalid_files(tmp_path, text, match):
    path = tmp_path / "pondkit.yml"
    path.write_text(text)
    with pytest.raises(ValidationError, match=match):
        load_config(path, environ={})


class TestLakeConfig:
    def test_duckdb_dsn(self):
        assert LakeConfig(metadata_path="meta.ducklake").dsn == "ducklake:meta.ducklake"

    def test_postgres_dsn(self):
        config = LakeConfig(catalog_type="postgres", metadata_path="dbname=lake host=db")
        assert config.dsn == "ducklake:postgres:dbname=lake host=db"

    @pytest.mark.parametrize(
        "kwargs",
        [
            pytest.param({"catalog": "my lake"}, id="catalog_name"),
            pytest.param({"max_commit_retries": -1}, id="retries"),
            pytest.param({"retry_base_delay_seconds": -1}, id="delay"),
            pytest.param({"extensions": ("../evil",)}, id="extension"),
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError):
            LakeConfig(**kwargs)


class TestHiveConfig:
    @pytest.mark.parametrize(
        "value, expected",
        [
            pytest.param(None, "zstd", id="default"),
            pytest.param(" LZ4 ", "lz4", id="normalized"),
        ],
    )
    def test_compression(self, value, expected):
        assert validate_compression(value) == expected

    def test_bad_compression(self):
        with pytest.raises(ValidationError, match="Unsupported compression"):
            HiveConfig(compression="zip")

    def test_bad_rule(self):
        with pytest.raises(ValidationError):
            HiveConfig(partition_rules={"Trade/Imports": []})

    def test_connect_hive_from_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PONDKIT_DATA_PATH", raising=False)
        path = tmp_path / "pondkit.yml"
        path.write_text(f"hive:\n  data_path: {tmp_path / 'lake'}\n")

        sink = connect_hive(config_file=path)

        assert isinstance(sink, HiveSink)
        assert sink.dataset_path("Trade", "Imports") == tmp_path / "lake" / "Trade" / "Imports"
