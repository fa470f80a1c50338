"""Plain-text rendering of plans and maintenance results."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pondkit.utils import format_count

if TYPE_CHECKING:
    from pondkit.plan import Plan, UpsertPlan
    from pondkit.snapshots import VacuumResult

_RULE = "-" * 60


def _section(title: str) -> list[str]:
    return ["", title, _RULE]


def render_plan(plan: "Plan") -> str:
    """Render a write plan as a preview report."""
    lines = [f"Write preview ({plan.backend}, mode = {plan.mode})", _RULE]
    lines.append(f"Target:   {plan.destination}")
    lines.append(f"Exists:   {'yes' if plan.target_exists else 'no'}")
    lines.append(f"Incoming: {format_count(plan.rows_to_write)} rows")
    if plan.target_exists and plan.existing_rows is not None:
        lines.append(f"Existing: {format_count(plan.existing_rows)} rows")

    changes = plan.schema_changes
    if changes.has_changes:
        lines.extend(_section("Schema changes"))
        for col in changes.added_columns:
            lines.append(f"  + {col}")
        for col in changes.removed_columns:
            lines.append(f"  - {col}")
        for col, (old, new) in changes.type_changes.items():
            lines.append(f"  ~ {col}: {old} -> {new}")

    if plan.partition_operations:
        lines.extend(_section("Partition impact"))
        counts: dict[str, int] = {}
        for op in plan.partition_operations.values():
            counts[op] = counts.get(op, 0) + 1
        lines.append(
            "  " + ", ".join(f"{op}: {n}" for op, n in sorted(counts.items()))
        )
    elif plan.partition_config:
        lines.extend(_section("Partitioning"))
        lines.append(f"  {', '.join(plan.partition_config)}")

    if plan.files_to_delete or plan.files_to_write:
        lines.extend(_section("Files"))
        lines.append(f"  delete: {len(plan.files_to_delete)}")
        lines.append(f"  write:  {len(plan.files_to_write)}")

    lines.extend(_section("Action"))
    lines.extend(f"  {action}" for action in plan.actions)
    return "\n".join(lines)


def render_upsert_plan(plan: "UpsertPlan") -> str:
    """Render an upsert plan as a preview report."""
    mode = "INSERT-ONLY" if plan.insert_only else "UPSERT"
    lines = [f"Upsert preview ({mode})", _RULE]
    lines.append(f"Target:     {plan.destination}")
    lines.append(f"Match keys: {', '.join(plan.match_keys)}")
    lines.append(f"Incoming:   {format_count(plan.rows_incoming)} rows")
    if plan.existing_rows is not None:
        lines.append(f"Existing:   {format_count(plan.existing_rows)} rows")

    lines.extend(_section("Action"))
    lines.extend(f"  {action}" for action in plan.actions)
    return "\n".join(lines)


def render_vacuum(result: "VacuumResult") -> str:
    """Render a vacuum result (dry run or executed)."""
    title = "Vacuum preview" if result.dry_run else "Vacuum"
    lines = [f"{title} ({result.catalog})", _RULE]
    if result.cutoff is not None:
        lines.append(f"Cutoff:              {result.cutoff.isoformat()}")
    if result.keep_last is not None:
        lines.append(f"Keep last:           {result.keep_last}")
    lines.append(f"Snapshots expired:   {len(result.expired_snapshots)}")
    lines.append(f"Snapshots retained:  {len(result.retained_snapshots)}")
    lines.append(f"Files reclaimable:   {format_count(len(result.files))}")
    lines.append(f"Bytes reclaimable:   {format_count(result.bytes_reclaimable)}")
    if result.pending_files:
        lines.append(f"Pending deletions:   {format_count(len(result.pending_files))}")
    if result.dry_run:
        lines.append("")
        lines.append("Dry run: nothing deleted. Run with dry_run=False to apply.")
    return "\n".join(lines)
