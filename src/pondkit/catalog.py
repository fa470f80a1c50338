"""DuckLake catalog session: one DuckDB connection with the lake attached.

A ``LakeSession`` is an explicit handle. Sinks and the snapshot manager take it
as an argument; there is no module-level connection.
"""

from __future__ import annotations

import random
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional, Sequence, TypeVar

import duckdb
import polars as pl
import structlog

from pondkit.config import LakeConfig
from pondkit.exceptions import ConflictError, SessionError
from pondkit.locations import LakeLocation
from pondkit.utils import quote_ident, sql_quote, temp_name, validate_name

T = TypeVar("T")

_CATALOG_EXTENSIONS = {"sqlite": "sqlite", "postgres": "postgres"}


def is_conflict(exc: BaseException) -> bool:
    """Whether a DuckDB error is a commit conflict worth retrying."""
    if isinstance(exc, duckdb.TransactionException):
        return True
    return isinstance(exc, duckdb.Error) and "conflict" in str(exc).lower()


def epoch_to_datetime(micros: Optional[int]) -> Optional[datetime]:
    """UTC datetime from microseconds since the epoch."""
    if micros is None:
        return None
    return datetime.fromtimestamp(micros / 1_000_000, tz=timezone.utc)


class LakeSession:
    """DuckDB connection with a DuckLake catalog attached as ``config.catalog``.

    Args:
        config: Catalog location and connection settings.

    Example:
        session = LakeSession(LakeConfig(metadata_path="meta.ducklake",
                                         data_path="./lake_data"))
        with session:
            session.table_exists("main", "imports")
    """

    def __init__(self, config: LakeConfig):
        self.config = config
        self._log = structlog.get_logger(__name__).bind(catalog=config.catalog)
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(config.duckdb_path)
        try:
            self._configure()
            self._attach()
        except duckdb.Error as exc:
            self.close()
            raise SessionError(
                f"Could not attach DuckLake catalog '{config.catalog}': {exc}",
                {"dsn": config.dsn},
            ) from exc

    # ------------------------------------------------------------------
    # Connection setup
    # ------------------------------------------------------------------

    def _load_extension(self, name: str) -> None:
        conn = self.connection
        try:
            conn.execute(f"INSTALL {name}")
        except duckdb.Error as exc:
            # Offline machines may have the extension cached already; LOAD decides.
            self._log.debug("extension_install_failed", extension=name, error=str(exc))
        conn.execute(f"LOAD {name}")

    def _configure(self) -> None:
        conn = self.connection
        if self.config.threads is not None:
            conn.execute(f"SET threads={int(self.config.threads)}")
        if self.config.memory_limit is not None:
            conn.execute(f"SET memory_limit={sql_quote(self.config.memory_limit)}")

        self._load_extension("ducklake")
        if self.config.catalog_type in _CATALOG_EXTENSIONS:
            self._load_extension(_CATALOG_EXTENSIONS[self.config.catalog_type])
        for ext in self.config.extensions:
            self._load_extension(ext)

    def _attach(self) -> None:
        options = [f"DATA_PATH {sql_quote(str(self.config.data_path))}"]
        if self.config.snapshot_version is not None:
            options.append(f"SNAPSHOT_VERSION {int(self.config.snapshot_version)}")
        if self.config.snapshot_time is not None:
            options.append(f"SNAPSHOT_TIME {sql_quote(str(self.config.snapshot_time))}")

        self.connection.execute(
            f"ATTACH {sql_quote(self.config.dsn)} AS {quote_ident(self.catalog)} "
            f"({', '.join(options)})"
        )
        self.connection.execute(f"USE {quote_ident(self.catalog)}")
        self._log.info(
            "catalog_attached",
            catalog_type=self.config.catalog_type,
            data_path=str(self.config.data_path),
        )

    # ------------------------------------------------------------------
    # Basics
    # ------------------------------------------------------------------

    @property
    def catalog(self) -> str:
        return self.config.catalog

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise SessionError("Lake session is closed.", {"catalog": self.catalog})
        return self._conn

    @property
    def closed(self) -> bool:
        return self._conn is None

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None):
        if params is None:
            return self.connection.execute(sql)
        return self.connection.execute(sql, list(params))

    def fetch_frame(self, sql: str, params: Optional[Sequence[Any]] = None) -> pl.DataFrame:
        return self.execute(sql, params).pl()

    def qualified(self, schema: str, table: str) -> str:
        """Quoted ``catalog.schema.table`` name."""
        return LakeLocation(self.catalog, schema, table).qualified

    def table_exists(self, schema: str, table: str) -> bool:
        row = self.execute(
            "SELECT 1 FROM information_schema.tables "
            "WHERE table_catalog = ? AND table_schema = ? AND table_name = ?",
            [self.catalog, schema, table],
        ).fetchone()
        return row is not None

    def columns(self, schema: str, table: str) -> dict[str, str]:
        """Column name -> DuckDB type, in table order."""
        rows = self.execute(
            "SELECT column_name, data_type FROM information_schema.columns "
            "WHERE table_catalog = ? AND table_schema = ? AND table_name = ? "
            "ORDER BY ordinal_position",
            [self.catalog, schema, table],
        ).fetchall()
        return {name: dtype for name, dtype in rows}

    def row_count(self, qualified_name: str, version: Optional[int] = None) -> int:
        at = f" AT (VERSION => {int(version)})" if version is not None else ""
        return self.execute(f"SELECT count(*) FROM {qualified_name}{at}").fetchone()[0]

    def ensure_schema(self, schema: str) -> None:
        validate_name(schema, "schema")
        self.execute(
            f"CREATE SCHEMA IF NOT EXISTS {quote_ident(self.catalog)}.{quote_ident(schema)}"
        )

    @contextmanager
    def registered(self, df: pl.DataFrame) -> Iterator[str]:
        """Expose a polars frame to SQL under a temporary view name."""
        name = temp_name()
        self.connection.register(name, df.to_arrow())
        try:
            yield name
        finally:
            if self._conn is not None:
                self._conn.unregister(name)

    # ------------------------------------------------------------------
    # Snapshots and partitioning metadata
    # ------------------------------------------------------------------

    def current_snapshot_id(self) -> Optional[int]:
        row = self.execute(
            f"SELECT max(snapshot_id) FROM ducklake_snapshots({sql_quote(self.catalog)})"
        ).fetchone()
        return row[0] if row else None

    def snapshot_rows(self) -> list[tuple]:
        """Raw snapshot rows: id, time (epoch micros), schema version, changes,
        author, commit message."""
        return self.execute(
            "SELECT snapshot_id, epoch_us(snapshot_time), schema_version, changes, "
            "author, commit_message "
            f"FROM ducklake_snapshots({sql_quote(self.catalog)}) ORDER BY snapshot_id"
        ).fetchall()

    def partition_keys(self, schema: str, table: str) -> Optional[tuple[str, ...]]:
        """Current partition keys of a table, ``None`` if unpartitioned."""
        meta = quote_ident(self.config.metadata_schema)
        rows = self.execute(
            f"""
            SELECT c.column_name, pc.transform
            FROM {meta}.ducklake_partition_column pc
            JOIN {meta}.ducklake_partition_info pi
              ON pc.partition_id = pi.partition_id AND pi.end_snapshot IS NULL
            JOIN {meta}.ducklake_table t
              ON pc.table_id = t.table_id AND t.end_snapshot IS NULL
            JOIN {meta}.ducklake_schema s
              ON t.schema_id = s.schema_id AND s.end_snapshot IS NULL
            JOIN {meta}.ducklake_column c
              ON pc.column_id = c.column_id AND c.table_id = t.table_id
             AND c.end_snapshot IS NULL
            WHERE s.schema_name = ? AND t.table_name = ?
            ORDER BY pc.partition_key_index
            """,
            [schema, table],
        ).fetchall()
        if not rows:
            return None
        keys = []
        for column, transform in rows:
            if transform and transform != "identity":
                keys.append(f"{transform}({column})")
            else:
                keys.append(column)
        return tuple(keys)

    def apply_partitioning(self, qualified_name: str, keys: Optional[Sequence[str]]) -> None:
        """``SET`` or ``RESET PARTITIONED BY`` on a table (caller owns the commit)."""
        if keys:
            self.execute(
                f"ALTER TABLE {qualified_name} SET PARTITIONED BY ({', '.join(keys)})"
            )
        else:
            self.execute(f"ALTER TABLE {qualified_name} RESET PARTITIONED BY")

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def set_commit_message(self, author: Optional[str], message: Optional[str]) -> None:
        author_sql = sql_quote(author) if author else "NULL"
        message_sql = sql_quote(message) if message else "NULL"
        self.execute(
            f"CALL ducklake_set_commit_message({sql_quote(self.catalog)}, "
            f"{author_sql}, {message_sql})"
        )

    def _rollback(self) -> None:
        try:
            self.execute("ROLLBACK")
        except duckdb.Error as exc:
            # Nothing open to roll back after a failed COMMIT.
            self._log.debug("rollback_skipped", error=str(exc))

    def _retry_delay(self, attempt: int) -> float:
        base = self.config.retry_base_delay_seconds * (2 ** (attempt - 1))
        return base + random.uniform(0, base * 0.25)

    def commit(
        self,
        work: Callable[["LakeSession"], T],
        *,
        author: Optional[str] = None,
        message: Optional[str] = None,
        operation: str = "commit",
    ) -> tuple[T, Optional[int]]:
        """Run ``work`` inside one transaction and commit it as one snapshot.

        Commit conflicts roll back and retry with exponential backoff, up to
        ``config.max_commit_retries`` times after the first attempt. Any other error rolls back and
        propagates.

        Returns:
            ``(work result, new snapshot id)``

        Raises:
            ConflictError: Conflicts persisted through every attempt.
        """
        attempts = self.config.max_commit_retries + 1
        for attempt in range(1, attempts + 1):
            self.execute("BEGIN TRANSACTION")
            try:
                if author or message:
                    self.set_commit_message(author, message)
                result = work(self)
                self.execute("COMMIT")
            except Exception as exc:
                self._rollback()
                if not is_conflict(exc):
                    self._log.error("lake_commit_failed", operation=operation, error=str(exc))
                    raise
                if attempt == attempts:
                    raise ConflictError(
                        f"{operation} kept conflicting with concurrent writers",
                        retry_count=attempt - 1,
                        details={"catalog": self.catalog, "error": str(exc)},
                    ) from exc
                delay = self._retry_delay(attempt)
                self._log.warning(
                    "lake_commit_conflict",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=attempts,
                    delay_seconds=round(delay, 3),
                )
                time.sleep(delay)
                continue

            snapshot_id = self.current_snapshot_id()
            self._log.info(
                "lake_commit_completed",
                operation=operation,
                snapshot_id=snapshot_id,
                attempts=attempt,
            )
            return result, snapshot_id

        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the connection. Safe to call twice."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._log.info("session_closed")

    def __enter__(self) -> "LakeSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
