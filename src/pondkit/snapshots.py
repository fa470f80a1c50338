"""Snapshot lifecycle for DuckLake catalogs: list, resolve, diff, rollback, vacuum.

Snapshot ids are catalog-wide and only move forward. Rollback never rewrites
history; it commits a new snapshot whose content equals an older one. Vacuum
expires old snapshots and deletes the files that only they referenced.
"""

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

import duckdb
import polars as pl
import structlog

from pondkit.catalog import LakeSession, epoch_to_datetime
from pondkit.exceptions import NotFoundError, ValidationError
from pondkit.locations import LakeLocation
from pondkit.report import render_vacuum
from pondkit.utils import coerce_datetime, quote_ident, resolve_cutoff, sql_quote, validate_columns


@dataclass(frozen=True)
class SnapshotInfo:
    """One entry of a catalog's history."""

    snapshot_id: int
    snapshot_time: datetime
    schema_version: Optional[int] = None
    changes: dict[str, Any] = field(default_factory=dict)
    author: Optional[str] = None
    commit_message: Optional[str] = None


@dataclass
class DiffResult:
    """Rows that differ between two snapshots of a table.

    ``modified`` holds the newer version of rows whose key appears in both
    ``added`` and ``removed``; it is only computed when key columns are given.
    """

    table: str
    from_version: int
    to_version: int
    added: pl.DataFrame
    removed: pl.DataFrame
    modified: Optional[pl.DataFrame] = None
    key_cols: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return self.added.is_empty() and self.removed.is_empty()

    def summary(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "added": len(self.added),
            "removed": len(self.removed),
            "modified": None if self.modified is None else len(self.modified),
        }


@dataclass(frozen=True)
class FileRecord:
    """A data or delete file and the snapshot range in which it is live.

    A file is visible in snapshot ``s`` when
    ``begin_snapshot <= s < end_snapshot`` (``end_snapshot=None`` means still live).
    """

    path: str
    size_bytes: int
    begin_snapshot: int
    end_snapshot: Optional[int] = None
    kind: str = "data"


@dataclass
class VacuumResult:
    """Outcome of a vacuum run, or what a dry run would do."""

    catalog: str
    cutoff: Optional[datetime]
    keep_last: Optional[int]
    dry_run: bool
    expired_snapshots: list[int] = field(default_factory=list)
    retained_snapshots: list[int] = field(default_factory=list)
    files: list[FileRecord] = field(default_factory=list)
    pending_files: list[str] = field(default_factory=list)

    @property
    def bytes_reclaimable(self) -> int:
        return sum(f.size_bytes for f in self.files)

    def summary(self) -> dict[str, Any]:
        return {
            "catalog": self.catalog,
            "dry_run": self.dry_run,
            "cutoff": self.cutoff.isoformat() if self.cutoff else None,
            "keep_last": self.keep_last,
            "snapshots_expired": len(self.expired_snapshots),
            "snapshots_retained": len(self.retained_snapshots),
            "files": len(self.files),
            "bytes": self.bytes_reclaimable,
            "pending_files": len(self.pending_files),
        }

    def report(self) -> str:
        return render_vacuum(self)


def plan_vacuum(
    snapshots: Sequence[SnapshotInfo],
    files: Sequence[FileRecord],
    cutoff: Optional[datetime],
    keep_last: Optional[int] = None,
) -> tuple[list[int], list[int], list[FileRecord]]:
    """Split snapshots into expired and retained and find reclaimable files.

    A snapshot is retained when it is at or after ``cutoff``, among the
    ``keep_last`` newest, or the newest of all. With both thresholds given a
    snapshot must fail both to expire. A file is reclaimable only if some
    expired snapshot references it and no retained snapshot does.

    Returns:
        ``(expired_ids, retained_ids, reclaimable_files)``
    """
    ordered = sorted(snapshots, key=lambda s: s.snapshot_id)
    if not ordered:
        return [], [], []

    protected = {ordered[-1].snapshot_id}
    if keep_last:
        protected.update(s.snapshot_id for s in ordered[-keep_last:])

    expired, retained = [], []
    for snap in ordered:
        too_old = cutoff is None or snap.snapshot_time < cutoff
        if too_old and snap.snapshot_id not in protected:
            expired.append(snap.snapshot_id)
        else:
            retained.append(snap.snapshot_id)

    def referenced_by(ids: list[int], f: FileRecord) -> bool:
        # ids is sorted; find the first id at or after the file's begin
        i = bisect_left(ids, f.begin_snapshot)
        return i < len(ids) and (f.end_snapshot is None or ids[i] < f.end_snapshot)

    reclaimable = [
        f for f in files if referenced_by(expired, f) and not referenced_by(retained, f)
    ]
    return expired, retained, reclaimable


class SnapshotManager:
    """History operations on an attached DuckLake catalog.

    Args:
        session: Attached catalog session.

    Example:
        manager = SnapshotManager(session)
        diff = manager.diff("imports", from_version=3)
        manager.rollback("imports", version=3, commit_author="ops")
        print(manager.vacuum(older_than="30 days").report())
    """

    def __init__(self, session: LakeSession):
        self.session = session
        self._log = structlog.get_logger(__name__).bind(catalog=session.catalog)

    # =========================================================================
    # Listing and resolving
    # =========================================================================

    def list_snapshots(self) -> list[SnapshotInfo]:
        """All snapshots of the catalog, oldest first."""
        snapshots = [
            SnapshotInfo(
                snapshot_id=row[0],
                snapshot_time=epoch_to_datetime(row[1]),
                schema_version=row[2],
                changes=dict(row[3] or {}),
                author=row[4],
                commit_message=row[5],
            )
            for row in self.session.snapshot_rows()
        ]
        self._log.debug("snapshots_listed", snapshot_count=len(snapshots))
        return snapshots

    def resolve(
        self,
        version: Optional[int] = None,
        timestamp: Optional[datetime | str] = None,
    ) -> SnapshotInfo:
        """Find a snapshot by id or by time; the current one if neither is given.

        A timestamp resolves to the latest snapshot taken at or before it.
        Naive datetimes are read as UTC.

        Raises:
            ValidationError: Both version and timestamp given.
            NotFoundError: No such snapshot.
        """
        if version is not None and timestamp is not None:
            raise ValidationError("Use either version or timestamp, not both.")

        snapshots = self.list_snapshots()
        if not snapshots:
            raise NotFoundError("Catalog has no snapshots.", {"catalog": self.session.catalog})

        if version is not None:
            if isinstance(version, bool) or not isinstance(version, int):
                raise ValidationError("version must be an integer snapshot id.")
            for snap in snapshots:
                if snap.snapshot_id == version:
                    return snap
            raise NotFoundError(
                f"Snapshot version {version} does not exist.",
                {"available": f"{snapshots[0].snapshot_id}..{snapshots[-1].snapshot_id}"},
            )

        if timestamp is not None:
            point = coerce_datetime(timestamp, "timestamp")
            candidates = [s for s in snapshots if s.snapshot_time <= point]
            if not candidates:
                raise NotFoundError(
                    f"No snapshot at or before {point.isoformat()}.",
                    {"earliest": snapshots[0].snapshot_time.isoformat()},
                )
            return candidates[-1]

        return snapshots[-1]

    def _table(self, table: str, schema: str) -> LakeLocation:
        return LakeLocation(self.session.catalog, schema, table)

    def _read_at(self, location: LakeLocation, version: int) -> str:
        return f"SELECT * FROM {location.qualified} AT (VERSION => {int(version)})"

    def _require_table_at(self, location: LakeLocation, version: int) -> None:
        try:
            self.session.row_count(location.qualified, version=version)
        except (
            duckdb.CatalogException,
            duckdb.BinderException,
            duckdb.InvalidInputException,
        ) as exc:
            raise NotFoundError(
                f"Table '{location}' does not exist at snapshot {version}."
            ) from exc

    # =========================================================================
    # Diff
    # =========================================================================

    def diff(
        self,
        table: str,
        schema: str = "main",
        from_version: Optional[int] = None,
        to_version: Optional[int] = None,
        from_timestamp: Optional[datetime | str] = None,
        to_timestamp: Optional[datetime | str] = None,
        key_cols: Optional[Sequence[str] | str] = None,
    ) -> DiffResult:
        """Rows added and removed between two snapshots of a table.

        Comparison is set-based on whole rows. Omitting ``to_*`` compares
        against the current snapshot.

        Args:
            table: Table name
            schema: Schema name
            from_version: Older snapshot id (or use ``from_timestamp``)
            to_version: Newer snapshot id (or use ``to_timestamp``)
            key_cols: Columns identifying a row, enables ``modified``

        Returns:
            DiffResult with added, removed and optionally modified frames
        """
        if from_version is None and from_timestamp is None:
            raise ValidationError("diff needs from_version or from_timestamp.")
        keys = validate_columns(key_cols, "key_cols") if key_cols is not None else ()

        location = self._table(table, schema)
        start = self.resolve(version=from_version, timestamp=from_timestamp)
        end = self.resolve(version=to_version, timestamp=to_timestamp)

        self._require_table_at(location, start.snapshot_id)
        self._require_table_at(location, end.snapshot_id)

        old_sql = self._read_at(location, start.snapshot_id)
        new_sql = self._read_at(location, end.snapshot_id)
        try:
            added = self.session.fetch_frame(f"{new_sql} EXCEPT {old_sql}")
            removed = self.session.fetch_frame(f"{old_sql} EXCEPT {new_sql}")
        except duckdb.BinderException as exc:
            raise ValidationError(
                f"Cannot diff '{location}': columns differ between the snapshots.",
                {"from": start.snapshot_id, "to": end.snapshot_id},
            ) from exc

        modified = None
        if keys:
            missing = [k for k in keys if k not in added.columns]
            if missing:
                raise ValidationError(f"key_cols not found in table: {missing}")
            modified = added.join(removed.select(keys).unique(), on=list(keys), how="semi")

        self._log.info(
            "diff_computed",
            table=str(location),
            from_version=start.snapshot_id,
            to_version=end.snapshot_id,
            added=len(added),
            removed=len(removed),
        )
        return DiffResult(
            table=str(location),
            from_version=start.snapshot_id,
            to_version=end.snapshot_id,
            added=added,
            removed=removed,
            modified=modified,
            key_cols=keys,
        )

    # =========================================================================
    # Rollback
    # =========================================================================

    def rollback(
        self,
        table: str,
        schema: str = "main",
        version: Optional[int] = None,
        timestamp: Optional[datetime | str] = None,
        commit_author: Optional[str] = None,
        commit_message: Optional[str] = None,
    ) -> tuple[str, Optional[int]]:
        """Restore a table's content as of an older snapshot.

        Non-destructive: the restore is committed as a new snapshot and the
        intermediate history stays available. The table keeps its current
        partitioning.

        Returns:
            ``(qualified table name, new snapshot id)``
        """
        if version is None and timestamp is None:
            raise ValidationError("rollback needs a version or a timestamp.")
        location = self._table(table, schema)
        target = self.resolve(version=version, timestamp=timestamp)

        self._require_table_at(location, target.snapshot_id)

        keys = None
        if self.session.table_exists(schema, table):
            keys = self.session.partition_keys(schema, table)
        source = self._read_at(location, target.snapshot_id)
        qualified = location.qualified

        def restore(session: LakeSession) -> None:
            if keys:
                session.execute(f"CREATE OR REPLACE TABLE {qualified} AS {source} LIMIT 0")
                session.apply_partitioning(qualified, keys)
                session.execute(f"INSERT INTO {qualified} {source}")
            else:
                session.execute(f"CREATE OR REPLACE TABLE {qualified} AS {source}")

        message = commit_message or f"Rollback to version {target.snapshot_id}"
        _, snapshot_id = self.session.commit(
            restore, author=commit_author, message=message, operation="rollback"
        )
        self._log.info(
            "rollback_completed",
            table=str(location),
            restored_version=target.snapshot_id,
            snapshot_id=snapshot_id,
        )
        return str(location), snapshot_id

    # =========================================================================
    # Vacuum
    # =========================================================================

    def scheduled_files(self) -> list[str]:
        """Files earlier expirations queued for deletion but never cleaned up."""
        meta = quote_ident(self.session.config.metadata_schema)
        rows = self.session.execute(
            f"SELECT path FROM {meta}.ducklake_files_scheduled_for_deletion ORDER BY path"
        ).fetchall()
        return [row[0] for row in rows]

    def list_files(self) -> list[FileRecord]:
        """Every data and delete file the catalog metadata still tracks."""
        meta = quote_ident(self.session.config.metadata_schema)
        rows = self.session.execute(
            f"""
            SELECT path, file_size_bytes, begin_snapshot, end_snapshot, 'data'
            FROM {meta}.ducklake_data_file
            UNION ALL
            SELECT path, file_size_bytes, begin_snapshot, end_snapshot, 'delete'
            FROM {meta}.ducklake_delete_file
            """
        ).fetchall()
        return [
            FileRecord(
                path=path,
                size_bytes=size or 0,
                begin_snapshot=begin,
                end_snapshot=end,
                kind=kind,
            )
            for path, size, begin, end, kind in rows
        ]

    def vacuum(
        self,
        older_than: Optional[timedelta | datetime | str] = "30 days",
        keep_last: Optional[int] = None,
        dry_run: bool = True,
        now: Optional[datetime] = None,
    ) -> VacuumResult:
        """Expire old snapshots and delete files only they reference.

        Defaults to a dry run that only reports. The newest snapshot is never
        expired, so the current state of every table is always kept.

        Cleanup also removes files that earlier expirations already queued;
        those are listed in ``pending_files``. The catalog does not track
        their sizes, so they are not part of ``bytes_reclaimable``.

        Args:
            older_than: Age (``"30 days"``, timedelta) or absolute datetime;
                ``None`` to rely on ``keep_last`` alone
            keep_last: Always keep this many newest snapshots
            dry_run: Report only (default True)
            now: Reference time for relative ages

        Returns:
            VacuumResult with expired ids and the reclaimable files
        """
        if older_than is None and keep_last is None:
            raise ValidationError("vacuum needs older_than, keep_last, or both.")
        if keep_last is not None and (
            isinstance(keep_last, bool) or not isinstance(keep_last, int) or keep_last < 1
        ):
            raise ValidationError("keep_last must be a positive integer.")

        cutoff = resolve_cutoff(older_than, now) if older_than is not None else None
        snapshots = self.list_snapshots()
        expired, retained, files = plan_vacuum(
            snapshots, self.list_files(), cutoff, keep_last
        )

        result = VacuumResult(
            catalog=self.session.catalog,
            cutoff=cutoff,
            keep_last=keep_last,
            dry_run=dry_run,
            expired_snapshots=expired,
            retained_snapshots=retained,
            files=files,
            pending_files=self.scheduled_files(),
        )

        if dry_run:
            self._log.info(
                "vacuum_dry_run",
                snapshots_expired=len(expired),
                files=len(files),
                bytes=result.bytes_reclaimable,
                pending_files=len(result.pending_files),
            )
            return result

        catalog = sql_quote(self.session.catalog)
        if expired:
            versions = ", ".join(str(v) for v in expired)
            self.session.execute(
                f"CALL ducklake_expire_snapshots({catalog}, versions => [{versions}])"
            )
        self.session.execute(f"CALL ducklake_cleanup_old_files({catalog}, cleanup_all => true)")
        self._log.info(
            "vacuum_completed",
            snapshots_expired=len(expired),
            files_deleted=len(files),
            bytes=result.bytes_reclaimable,
            pending_files=len(result.pending_files),
        )
        return result
