"""Reconcile report formatting functions.

- ``format_reconcile_report`` -- human-readable pass summary.
- ``format_request_details`` -- rendered request preview (``render``).
- ``report_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from .models import ResourceState

if TYPE_CHECKING:
    from .models import ReconcileReport, RequestDetails

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_reconcile_report(report: ReconcileReport) -> str:
    """Format a reconcile pass as human-readable text.

    Sections are only included when they contain at least one result.

    Args:
        report: The completed report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = "Reconcile report"
    if report.dry_run:
        header += " (DRY RUN)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    if report.dry_run:
        changes = f"{len(report.planned)} would send"
    else:
        changes = (
            f"{len(report.created)} created, {len(report.updated)} updated, "
            f"{len(report.deleted)} deleted"
        )
    lines.append(
        f"Reconciled {len(report.results)} resources: "
        f"{len(report.synced)} synced, {changes}, {len(report.errors)} errors"
    )
    lines.append("")

    verb = "Would send" if report.dry_run else "Sent"
    acted = [r for r in report.results if r.action is not None and r.success]
    if acted:
        lines.append(f"{verb}:")
        for r in acted:
            lines.append(f"  [{r.action.value}] {r.name} ({r.kind})")
        lines.append("")

    pending = [
        r
        for r in report.results
        if r.success and r.action is None and r.state != ResourceState.SYNCED
    ]
    if pending:
        lines.append("Pending:")
        for r in pending:
            lines.append(f"  {r.name}: {r.state.value}")
        lines.append("")

    if report.errors:
        lines.append("Errors:")
        for r in report.errors:
            lines.append(f"  {r.name}: {r.error}")
        lines.append("")

    return "\n".join(lines).rstrip()


def format_request_details(details: RequestDetails) -> str:
    """Format rendered request details for display."""
    lines = [f"URL: {details.url}"]
    if details.headers:
        lines.append("Headers:")
        for name, values in sorted(details.headers.items()):
            lines.append(f"  {name}: {', '.join(values)}")
    if details.body:
        lines.append("Body:")
        try:
            lines.append(json.dumps(json.loads(details.body), indent=2, sort_keys=True))
        except json.JSONDecodeError:
            lines.append(details.body)
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: ReconcileReport) -> dict:
    """Convert a report to a structured dict for JSON serialisation.

    Args:
        report: The reconcile report.

    Returns:
        Dict with timestamps, counts, and per-resource details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "name": r.name,
            "kind": r.kind,
            "state": r.state.value,
            "action": r.action.value if r.action else None,
            "success": r.success,
        }
        if r.error:
            entry["error"] = r.error
        if r.status is not None:
            entry["failed"] = r.status.failed
        results_list.append(entry)

    return {
        "dry_run": report.dry_run,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "counts": {
            "total": len(report.results),
            "synced": len(report.synced),
            "created": len(report.created),
            "updated": len(report.updated),
            "deleted": len(report.deleted),
            "planned": len(report.planned),
            "errors": len(report.errors),
        },
        "results": results_list,
    }
