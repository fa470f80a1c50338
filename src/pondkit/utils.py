"""Utility helpers for pondkit internals."""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

from pondkit.exceptions import ValidationError

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_INTERVAL_PART_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(second|sec|minute|min|hour|day|week|month|year)s?\b",
    re.IGNORECASE,
)

# Calendar units are approximated; retention thresholds do not need more.
_INTERVAL_UNITS = {
    "second": timedelta(seconds=1),
    "sec": timedelta(seconds=1),
    "minute": timedelta(minutes=1),
    "min": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


def validate_name(value: Any, label: str) -> str:
    """Validate a section/dataset/schema/table name.

    Only letters, digits, underscore and dash are allowed so names can never
    escape the lake root (``../``) or break SQL identifiers.
    """
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{label} must be a single, non-empty string.")
    if not _NAME_RE.match(value):
        raise ValidationError(
            f"{label} contains invalid characters. Allowed: A-Z a-z 0-9 _ -",
            {label: value},
        )
    return value


def validate_columns(value: Any, label: str, allow_empty: bool = False) -> tuple[str, ...]:
    """Normalize a column list argument to a tuple of non-empty strings."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{label} must be a string or a list of strings.")
    if not value and not allow_empty:
        raise ValidationError(f"{label} must be a non-empty list of column names.")
    for col in value:
        if not isinstance(col, str) or not col:
            raise ValidationError(f"{label} cannot contain empty or non-string entries.")
    if len(set(value)) != len(value):
        raise ValidationError(f"{label} contains duplicate entries.", {label: list(value)})
    return tuple(value)


def coerce_datetime(value: Any, label: str = "value") -> datetime:
    """Turn a datetime or ISO-8601 string into a timezone-aware UTC datetime.

    Naive values are interpreted as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace(" ", "T"))
        except ValueError as exc:
            raise ValidationError(f"{label} must be an ISO-8601 datetime string") from exc
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        raise ValidationError(f"{label} must be a datetime or ISO-8601 string")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_interval(value: str) -> timedelta:
    """Parse interval strings such as ``"30 days"`` or ``"1 week 2 hours"``."""
    text = value.strip()
    parts = list(_INTERVAL_PART_RE.finditer(text))
    leftover = _INTERVAL_PART_RE.sub("", text).strip()
    if not parts or leftover:
        raise ValidationError(
            f"Cannot parse interval '{value}'. Use forms like '30 days' or '12 hours'."
        )

    total = timedelta()
    for match in parts:
        amount = float(match.group(1))
        total += _INTERVAL_UNITS[match.group(2).lower()] * amount
    return total


def resolve_cutoff(older_than: Any, now: datetime | None = None) -> datetime:
    """Turn a retention threshold into an absolute UTC cutoff.

    Accepts a timedelta (age), an interval string, or an absolute datetime.
    """
    now = coerce_datetime(now, "now") if now is not None else datetime.now(timezone.utc)
    if isinstance(older_than, timedelta):
        return now - older_than
    if isinstance(older_than, datetime):
        return coerce_datetime(older_than, "older_than")
    if isinstance(older_than, str):
        return now - parse_interval(older_than)
    raise ValidationError(
        "older_than must be a timedelta, datetime, or interval string like '30 days'."
    )


def unique_token() -> str:
    """Fresh random token for file and temp-view names."""
    return uuid.uuid4().hex


def temp_name(prefix: str = "pond_tmp_") -> str:
    """Unique name for a frame registered on a DuckDB connection."""
    return f"{prefix}{unique_token()[:16]}"


def quote_ident(name: str) -> str:
    """Quote a SQL identifier."""
    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def sql_quote(value: str) -> str:
    """Quote a SQL string literal."""
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def format_count(n: int | None) -> str:
    """Render a row count with thousands separators."""
    return f"{n or 0:,}"
