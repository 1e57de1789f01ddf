"""
Deterministic validation of flow suggestions before they are persisted.

Errors remove a flow from the persisted set; warnings are reported only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

ERROR = "error"
WARNING = "warning"


@dataclass
class FlowIssue:
    code: str  # invalid_entry_point, invalid_interaction_id, max_steps_exceeded, duplicate_slug, no_steps, missing_description
    severity: str
    slug: str
    message: str


@dataclass
class ValidationReport:
    valid: list = field(default_factory=list)
    issues: list[FlowIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[FlowIssue]:
        return [i for i in self.issues if i.severity == ERROR]

    @property
    def warnings(self) -> list[FlowIssue]:
        return [i for i in self.issues if i.severity == WARNING]


def _check(flow, interaction_ids: set[int], module_members: dict[int, set[int]],
           max_steps: int) -> list[FlowIssue]:
    issues = []

    def add(code: str, severity: str, message: str):
        issues.append(FlowIssue(code, severity, flow.slug, message))

    if flow.entry_point_id is not None:
        members = module_members.get(flow.entry_point_module_id, set())
        if flow.entry_point_id not in members:
            add("invalid_entry_point", ERROR,
                f"Entry point {flow.entry_point_id} is not a member of module {flow.entry_point_module_id}")

    missing = [i for i in dict.fromkeys(flow.interaction_ids) if i not in interaction_ids]
    if missing:
        add("invalid_interaction_id", ERROR,
            f"References unknown interactions: {', '.join(str(i) for i in missing)}")

    if flow.tier <= 1 and len(flow.definition_steps) > max_steps:
        add("max_steps_exceeded", ERROR,
            f"Flow has {len(flow.definition_steps)} definition steps, exceeds maximum {max_steps}")

    if not flow.interaction_ids and not flow.subflow_ids:
        add("no_steps", WARNING, f"Flow '{flow.name}' has no steps")
    if not flow.description:
        add("missing_description", WARNING, f"Flow '{flow.name}' has no description")
    return issues


def validate_flows(
    flows: Iterable,
    interaction_ids: Iterable[int],
    module_members: dict[int, set[int]],
    max_steps: int = 20,
    truncated_slugs: Optional[Iterable[str]] = None,
) -> ValidationReport:
    """Check each flow against the interaction set and module membership.

    A slug repeated after its first use is a ``duplicate_slug`` error on the
    later flow. Slugs in ``truncated_slugs`` were cut by the tracer and are
    reported as ``max_steps_exceeded`` warnings.
    """
    known = set(interaction_ids)
    truncated = set(truncated_slugs or ())
    report = ValidationReport()
    seen: set[str] = set()

    for flow in flows:
        issues = _check(flow, known, module_members, max_steps)
        if flow.slug in seen:
            issues.append(FlowIssue("duplicate_slug", ERROR, flow.slug, f"Slug '{flow.slug}' already used"))
        if flow.slug in truncated:
            issues.append(FlowIssue(
                "max_steps_exceeded", WARNING, flow.slug, f"Trace truncated at {max_steps} steps",
            ))
        report.issues.extend(issues)
        if not any(i.severity == ERROR for i in issues):
            seen.add(flow.slug)
            report.valid.append(flow)
    return report
