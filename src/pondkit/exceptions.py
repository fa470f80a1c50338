"""Custom exceptions for pondkit."""

from typing import Any, Optional


class PondError(Exception):
    """Base exception for pondkit.

    Carries a human-readable message plus an optional ``details`` mapping
    that is appended to ``str()`` for context.
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationError(PondError):
    """Raised when a write, upsert or maintenance call has invalid arguments.

    Always raised before any side effect. Previews raise exactly the same
    errors as the real operation.
    """

    pass


class PartitionSchemaError(ValidationError):
    """Raised when partition configuration differs from the existing dataset.

    This error occurs when:
    - an append or replace_partitions write uses partition columns that
      differ from the directory layout already on disk
    - a governance rule requires other partition columns

    Resolution:
    - Use mode="overwrite" to rewrite the dataset with the new layout
    - Or explicitly migrate the data
    """

    pass


class NotFoundError(PondError):
    """Raised when a table, dataset, version or snapshot does not exist."""

    pass


class ConflictError(PondError):
    """Raised when a catalog commit keeps conflicting with concurrent writers.

    Attributes:
        retry_count: Number of attempts made before giving up.
    """

    def __init__(
        self,
        message: str,
        retry_count: int = 0,
        details: Optional[dict[str, Any]] = None,
    ):
        details = dict(details or {})
        details["retry_count"] = retry_count
        super().__init__(message, details)
        self.retry_count = retry_count


class PartialFailureError(PondError):
    """Raised when replace_partitions fails between delete and add.

    The folder backend has no multi-file transaction, so partitions that were
    already rewritten stay rewritten and the failed partition may be empty or
    partially written. Nothing is rolled back automatically.

    Attributes:
        completed: Partitions fully replaced before the failure.
        failed: The partition being processed when the failure happened.
        pending: Partitions that were never touched.
    """

    def __init__(
        self,
        message: str,
        completed: list[str],
        failed: str,
        pending: list[str],
    ):
        super().__init__(
            message,
            {"completed": completed, "failed": failed, "pending": pending},
        )
        self.completed = completed
        self.failed = failed
        self.pending = pending


class SessionError(PondError):
    """Raised when a session is closed or a catalog cannot be attached."""

    pass
