"""
Human-readable output formatting for CLI.
"""

from __future__ import annotations

from typing import Any

from ..core.changes import ChangeDetectionResult
from ..store.models import Flow, IndexStats


def format_stats(stats: IndexStats) -> str:
    """Format index stats for display."""
    lines = [
        f"Files:        {stats.total_files}",
        f"Definitions:  {stats.total_definitions}",
        f"Imports:      {stats.total_imports} ({stats.total_symbols} symbols, {stats.total_usages} usages)",
        f"Modules:      {stats.total_modules}",
        f"Interactions: {stats.total_interactions}",
        f"Flows:        {stats.total_flows}",
        f"Features:     {stats.total_features}",
    ]
    if stats.indexed_at:
        lines.append(f"Indexed at:   {stats.indexed_at}")
    return "\n".join(lines)


def format_changes(changes: ChangeDetectionResult) -> str:
    if not changes.changes:
        return f"Index is up to date ({changes.unchanged_count} files unchanged)."
    markers = {"new": "+", "modified": "~", "deleted": "-"}
    lines = [f"Changes ({len(changes.changes)}, {changes.unchanged_count} unchanged):"]
    for c in changes.changes:
        lines.append(f"  {markers.get(c.status, '?')} {c.path}")
    return "\n".join(lines)


def format_sync(report: Any) -> str:
    """Format a SyncReport after changes were applied."""
    r = report.result
    lines = [
        f"Files:       {r.files_added} added, {r.files_modified} modified, {r.files_deleted} deleted",
        f"Definitions: {r.definitions_added} added, {r.definitions_updated} updated, "
        f"{r.definitions_removed} removed",
    ]
    if r.dependent_files_re_resolved:
        lines.append(f"Dependents re-resolved: {r.dependent_files_re_resolved}")
    if r.dangling_refs_cleaned or r.ghost_rows_cleaned:
        lines.append(f"Repaired: {r.dangling_refs_cleaned} dangling refs, {r.ghost_rows_cleaned} ghost rows")
    if r.parse_failures:
        lines.append(f"Parse failures ({len(r.parse_failures)}):")
        lines.extend(f"  {path}" for path in r.parse_failures)
    if report.decision:
        lines.append(f"Strategy:    {report.decision.strategy} ({report.decision.reason})")
    return "\n".join(lines)


def format_pipeline(result: Any) -> str:
    """Format an enrichment PipelineResult."""
    if result.strategy == "none":
        return "Enrichment: nothing to do."
    lines = [f"Enrichment ({result.strategy}):"]
    lines.append(f"  Modules assigned:     {result.modules_assigned}")
    lines.append(f"  Interactions synced:  {result.interactions_created} created, "
                 f"{result.interactions_updated} updated")
    if result.flows:
        f = result.flows
        lines.append(f"  Flows persisted:      {f.persisted} ({f.gap_flows} gap, {f.journeys} journeys)")
    return "\n".join(lines)


def format_dirty(summary: dict[str, int]) -> str:
    total = sum(summary.values())
    if not total:
        return "Dirty: none"
    lines = [f"Dirty ({total}):"]
    for layer, count in summary.items():
        if count:
            lines.append(f"  {layer:14s} {count}")
    return "\n".join(lines)


def format_check_result(result: Any) -> str:
    if not result.issues:
        return "All checks passed."
    lines = [f"Issues ({len(result.issues)}):"]
    for issue in result.issues:
        marker = {"error": "E", "warning": "W"}.get(issue.severity, "?")
        fix = f" [fix: {issue.fix_action}]" if issue.fix_action else ""
        lines.append(f"  [{marker}] {issue.category}: {issue.message}{fix}")
    lines.append("Passed." if result.passed else "Failed.")
    return "\n".join(lines)


def format_flows(flows: list[Flow]) -> str:
    if not flows:
        return "No flows."
    lines = [f"Flows ({len(flows)}):"]
    for f in flows:
        lines.append(f"  T{f.tier} {f.slug:40s} {f.stakeholder:10s} {f.entry_path}")
    return "\n".join(lines)
