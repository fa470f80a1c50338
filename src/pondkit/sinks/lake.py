"""Catalog sink: DuckLake tables with snapshot-per-commit writes and upserts."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

import duckdb
import polars as pl
import structlog

from pondkit.catalog import LakeSession
from pondkit.exceptions import NotFoundError, ValidationError
from pondkit.locations import LakeLocation
from pondkit.plan import (
    LakeMode,
    LakeOverwrite,
    LakeState,
    Plan,
    UpsertPlan,
    UpsertState,
    build_lake_plan,
    build_upsert_plan,
    coerce_frame,
    parse_lake_mode,
    partition_key_column,
)
from pondkit.snapshots import SnapshotManager
from pondkit.utils import quote_ident, validate_columns

from .base import Sink, WriteResult

# DESCRIBE, SHOW, SUMMARIZE and FROM-first queries all parse as SELECT.
_READ_ONLY_STATEMENTS = (duckdb.StatementType.SELECT,)


class LakeSink(Sink):
    """Writes and upserts into DuckLake tables.

    Every successful write, upsert or partitioning change is one DuckLake
    commit and therefore exactly one new snapshot. Failed commits roll back
    and leave no snapshot behind.

    Args:
        session: Attached catalog session.

    Example:
        with LakeSession(LakeConfig(...)) as session:
            sink = LakeSink(session)
            sink.write(df, "imports", mode="overwrite", partition_by=["year(date)"])
            sink.upsert(changes, "imports", match_keys=["id"])
    """

    def __init__(self, session: LakeSession):
        self.session = session
        self._log = structlog.get_logger(__name__).bind(catalog=session.catalog)

    def location(self, table: str, schema: str = "main") -> LakeLocation:
        return LakeLocation(self.session.catalog, schema, table)

    def _probe(self, location: LakeLocation) -> LakeState:
        if not self.session.table_exists(location.schema, location.table):
            return LakeState(qualified_name=str(location), exists=False)
        return LakeState(
            qualified_name=str(location),
            exists=True,
            columns=self.session.columns(location.schema, location.table),
            row_count=self.session.row_count(location.qualified),
            partition_keys=self.session.partition_keys(location.schema, location.table),
        )

    # ------------------------------------------------------------------
    # Overwrite / append
    # ------------------------------------------------------------------

    def preview_write(
        self,
        df: pl.DataFrame,
        table: str,
        schema: str = "main",
        mode: str | LakeMode = "overwrite",
        partition_by: Optional[Sequence[str] | str] = None,
    ) -> Plan:
        """Plan a write without committing anything."""
        location = self.location(table, schema)
        write_mode = parse_lake_mode(mode, partition_by)
        plan = build_lake_plan(self._probe(location), df, write_mode)
        self._log.debug(
            "lake_write_planned",
            destination=str(location),
            mode=write_mode.name,
            rows=plan.rows_to_write,
        )
        return plan

    def write(
        self,
        df: pl.DataFrame,
        table: str,
        schema: str = "main",
        mode: str | LakeMode = "overwrite",
        partition_by: Optional[Sequence[str] | str] = None,
        commit_author: Optional[str] = None,
        commit_message: Optional[str] = None,
        dry_run: bool = False,
    ) -> WriteResult | Plan:
        """Write a DataFrame to a DuckLake table in one commit.

        Args:
            df: Data to write
            table: Table name
            schema: Schema name (created on first overwrite)
            mode: "overwrite" or "append"
            partition_by: Partition keys for overwrite; column names or
                transforms like ``year(date)``. ``None`` keeps the table's
                current partitioning, ``[]`` removes it.
            commit_author: Author recorded on the snapshot
            commit_message: Message recorded on the snapshot
            dry_run: If True, return the plan without executing

        Returns:
            WriteResult on actual write, Plan on dry_run=True
        """
        plan = self.preview_write(df, table, schema, mode=mode, partition_by=partition_by)
        if dry_run:
            return plan
        return self.execute(
            plan, self.location(table, schema), commit_author, commit_message
        )

    def execute(
        self,
        plan: Plan,
        location: LakeLocation,
        commit_author: Optional[str] = None,
        commit_message: Optional[str] = None,
    ) -> WriteResult:
        """Commit a plan built by ``preview_write``. A plan runs only once."""
        if plan.backend != "lake":
            raise ValidationError(f"LakeSink cannot execute a {plan.backend} plan")
        plan.mark_consumed()
        target = location.qualified

        with self.session.registered(plan.data) as source:

            def overwrite(session: LakeSession) -> None:
                session.ensure_schema(location.schema)
                if plan.partition_config:
                    session.execute(
                        f"CREATE OR REPLACE TABLE {target} AS SELECT * FROM {source} LIMIT 0"
                    )
                    session.apply_partitioning(target, plan.partition_config)
                    session.execute(f"INSERT INTO {target} SELECT * FROM {source}")
                else:
                    session.execute(f"CREATE OR REPLACE TABLE {target} AS SELECT * FROM {source}")

            def append(session: LakeSession) -> None:
                session.execute(f"INSERT INTO {target} BY NAME SELECT * FROM {source}")

            work = overwrite if plan.mode == LakeOverwrite.name else append
            _, snapshot_id = self.session.commit(
                work,
                author=commit_author,
                message=commit_message,
                operation=f"write_{plan.mode}",
            )

        self._log.info(
            "lake_write_completed",
            destination=plan.destination,
            mode=plan.mode,
            rows_written=plan.rows_to_write,
            snapshot_id=snapshot_id,
        )
        return WriteResult(
            destination=plan.destination,
            rows_written=plan.rows_to_write,
            operation=plan.mode,
            actions=list(plan.actions),
            snapshot_id=snapshot_id,
        )

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    def _probe_upsert(
        self, location: LakeLocation, df: pl.DataFrame, keys: tuple[str, ...]
    ) -> UpsertState:
        base = self._probe(location)
        if not base.exists:
            return UpsertState(qualified_name=base.qualified_name, exists=False)

        matched = None
        if set(keys) <= set(df.columns) and set(keys) <= set(base.columns or {}):
            on = " AND ".join(f"t.{quote_ident(k)} = s.{quote_ident(k)}" for k in keys)
            cols = ", ".join(f"s.{quote_ident(k)}" for k in keys)
            with self.session.registered(df.select(keys)) as source:
                matched = self.session.fetch_frame(
                    f"SELECT DISTINCT {cols} FROM {source} s "
                    f"JOIN {location.qualified} t ON {on}"
                )
        return UpsertState(
            qualified_name=base.qualified_name,
            exists=True,
            columns=base.columns,
            row_count=base.row_count,
            matched_keys=matched,
        )

    def preview_upsert(
        self,
        df: pl.DataFrame,
        table: str,
        match_keys: Sequence[str] | str,
        schema: str = "main",
        update_cols: Optional[Sequence[str]] = None,
    ) -> UpsertPlan:
        """Plan an upsert: how many rows would insert and how many update."""
        location = self.location(table, schema)
        keys = validate_columns(match_keys, "match_keys")
        df = coerce_frame(df)
        state = self._probe_upsert(location, df, keys)
        plan = build_upsert_plan(state, df, keys, update_cols)
        self._log.debug(
            "upsert_planned",
            destination=str(location),
            inserts=plan.inserts,
            updates=plan.updates,
        )
        return plan

    def upsert(
        self,
        df: pl.DataFrame,
        table: str,
        match_keys: Sequence[str] | str,
        schema: str = "main",
        update_cols: Optional[Sequence[str]] = None,
        commit_author: Optional[str] = None,
        commit_message: Optional[str] = None,
        dry_run: bool = False,
    ) -> WriteResult | UpsertPlan:
        """Insert new rows and update matched rows with one ``MERGE INTO``.

        Args:
            df: Incoming rows; ``match_keys`` must be unique within it
            table: Existing table name
            match_keys: Columns that identify a row
            schema: Schema name
            update_cols: ``None`` updates all non-key columns, ``[]`` is
                insert-only, otherwise only the listed columns update
            commit_author: Author recorded on the snapshot
            commit_message: Message recorded on the snapshot
            dry_run: If True, return the plan without executing

        Returns:
            WriteResult on actual upsert, UpsertPlan on dry_run=True
        """
        plan = self.preview_upsert(df, table, match_keys, schema, update_cols)
        if dry_run:
            return plan
        return self.execute_upsert(
            plan, self.location(table, schema), commit_author, commit_message
        )

    def execute_upsert(
        self,
        plan: UpsertPlan,
        location: LakeLocation,
        commit_author: Optional[str] = None,
        commit_message: Optional[str] = None,
    ) -> WriteResult:
        plan.mark_consumed()
        target = location.qualified
        columns = list(plan.data.columns)

        on = " AND ".join(f"t.{quote_ident(k)} = s.{quote_ident(k)}" for k in plan.match_keys)
        insert_cols = ", ".join(quote_ident(c) for c in columns)
        insert_vals = ", ".join(f"s.{quote_ident(c)}" for c in columns)

        with self.session.registered(plan.data) as source:
            clauses = [f"MERGE INTO {target} AS t USING {source} AS s ON ({on})"]
            if not plan.insert_only:
                assignments = ", ".join(
                    f"{quote_ident(c)} = s.{quote_ident(c)}" for c in plan.update_cols
                )
                clauses.append(f"WHEN MATCHED THEN UPDATE SET {assignments}")
            clauses.append(f"WHEN NOT MATCHED THEN INSERT ({insert_cols}) VALUES ({insert_vals})")
            merge_sql = "\n".join(clauses)

            _, snapshot_id = self.session.commit(
                lambda session: session.execute(merge_sql),
                author=commit_author,
                message=commit_message,
                operation="upsert",
            )

        self._log.info(
            "upsert_completed",
            destination=plan.destination,
            inserted=plan.inserts,
            updated=plan.updates,
            snapshot_id=snapshot_id,
        )
        return WriteResult(
            destination=plan.destination,
            rows_written=plan.inserts + plan.updates,
            operation="upsert",
            actions=list(plan.actions),
            snapshot_id=snapshot_id,
            rows_inserted=plan.inserts,
            rows_updated=plan.updates,
        )

    # ------------------------------------------------------------------
    # Partitioning
    # ------------------------------------------------------------------

    def set_partitioning(
        self,
        table: str,
        partition_by: Optional[Sequence[str] | str],
        schema: str = "main",
        commit_author: Optional[str] = None,
        commit_message: Optional[str] = None,
    ) -> Optional[int]:
        """Change partition keys for future writes; existing files stay as they are.

        ``None`` or ``[]`` removes partitioning. Returns the new snapshot id.
        """
        location = self.location(table, schema)
        if not self.session.table_exists(schema, table):
            raise NotFoundError(f"Table '{location}' does not exist.")

        keys = validate_columns(partition_by, "partition_by", allow_empty=True) if partition_by else ()
        columns = self.session.columns(schema, table)
        for key in keys:
            column = partition_key_column(key)
            if column not in columns:
                raise ValidationError(
                    f"Partition key '{key}' refers to unknown column '{column}'",
                    {"columns": list(columns)},
                )

        _, snapshot_id = self.session.commit(
            lambda session: session.apply_partitioning(location.qualified, keys),
            author=commit_author,
            message=commit_message,
            operation="set_partitioning",
        )
        self._log.info(
            "partitioning_changed",
            destination=str(location),
            partition_by=list(keys),
            snapshot_id=snapshot_id,
        )
        return snapshot_id

    def get_partitioning(self, table: str, schema: str = "main") -> Optional[tuple[str, ...]]:
        """Current partition keys, or ``None`` if the table is unpartitioned."""
        location = self.location(table, schema)
        if not self.session.table_exists(schema, table):
            raise NotFoundError(f"Table '{location}' does not exist.")
        return self.session.partition_keys(schema, table)

    # ------------------------------------------------------------------
    # Reading and discovery
    # ------------------------------------------------------------------

    def read(
        self,
        table: str,
        schema: str = "main",
        version: Optional[int] = None,
        timestamp: Optional[datetime | str] = None,
    ) -> pl.LazyFrame:
        """Read a table, optionally as of a snapshot version or time.

        Returns:
            LazyFrame of the table data
        """
        location = self.location(table, schema)
        sql = f"SELECT * FROM {location.qualified}"
        if version is not None or timestamp is not None:
            snapshot = SnapshotManager(self.session).resolve(version=version, timestamp=timestamp)
            sql += f" AT (VERSION => {snapshot.snapshot_id})"
        elif not self.session.table_exists(schema, table):
            raise NotFoundError(f"Table '{location}' does not exist.")

        try:
            return self.session.fetch_frame(sql).lazy()
        except (duckdb.CatalogException, duckdb.InvalidInputException) as exc:
            raise NotFoundError(f"Table '{location}' does not exist at that snapshot.") from exc

    def query(self, sql: str) -> pl.DataFrame:
        """Run a single read-only SQL statement against the attached catalog."""
        if not isinstance(sql, str):
            raise ValidationError("query() expects a SQL string.")
        try:
            statements = self.session.connection.extract_statements(sql)
        except duckdb.ParserException as exc:
            raise ValidationError(f"Cannot parse query: {exc}") from exc
        if len(statements) != 1 or statements[0].type not in _READ_ONLY_STATEMENTS:
            raise ValidationError(
                "query() only runs a single read-only statement (SELECT, WITH, FROM, DESCRIBE, ...).",
                {"statements": len(statements)},
            )
        return self.session.fetch_frame(sql)

    def exists(self, table: str, schema: str = "main") -> bool:
        return self.session.table_exists(schema, table)

    def list_tables(self, schema: str = "main") -> list[str]:
        rows = self.session.execute(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_catalog = ? AND table_schema = ? ORDER BY table_name",
            [self.session.catalog, schema],
        ).fetchall()
        return [row[0] for row in rows]
