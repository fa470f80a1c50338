"""pondkit - safe, previewable writes and versioning for file-based data lakes"""

from pondkit.catalog import LakeSession
from pondkit.config import HiveConfig, LakeConfig, load_config
from pondkit.core import Lake, connect_hive, connect_lake
from pondkit.exceptions import (
    ConflictError,
    NotFoundError,
    PartialFailureError,
    PartitionSchemaError,
    PondError,
    SessionError,
    ValidationError,
)
from pondkit.logs import configure_logging
from pondkit.plan import Plan, UpsertPlan
from pondkit.sinks import HiveSink, LakeSink, WriteResult
from pondkit.snapshots import DiffResult, SnapshotInfo, SnapshotManager, VacuumResult

__all__ = [
    "connect_hive",
    "connect_lake",
    "configure_logging",
    "load_config",
    "HiveConfig",
    "LakeConfig",
    "Lake",
    "LakeSession",
    "HiveSink",
    "LakeSink",
    "SnapshotManager",
    "Plan",
    "UpsertPlan",
    "WriteResult",
    "DiffResult",
    "SnapshotInfo",
    "VacuumResult",
    "PondError",
    "ValidationError",
    "PartitionSchemaError",
    "NotFoundError",
    "ConflictError",
    "PartialFailureError",
    "SessionError",
]
