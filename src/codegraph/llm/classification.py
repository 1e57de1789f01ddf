"""
Entry-point classification results and their CSV wire format.

The model answers with CSV rows
``module_id,member_name,is_entry_point,action_type,target_entity,stakeholder,reason``.
Rows that do not parse or name no known candidate are ignored; candidates
without a usable row become ``NotEntryPoint``.
"""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Union

ACTION_TYPES = ("view", "create", "update", "delete", "process")
STAKEHOLDERS = ("user", "admin", "system", "developer", "external")

CSV_HEADER = "module_id,member_name,is_entry_point,action_type,target_entity,stakeholder,reason"

_FENCE_RE = re.compile(r"```(?:csv)?\n(.*?)\n```", re.DOTALL)


@dataclass(frozen=True)
class Candidate:
    """A module member that might start a flow."""
    module_id: int
    module_path: str
    definition_id: int
    member_name: str
    kind: str


@dataclass(frozen=True)
class EntryPoint:
    module_id: int
    definition_id: int
    member_name: str
    action_type: Optional[str] = None
    target_entity: Optional[str] = None
    stakeholder: Optional[str] = None
    kind: str = "entry_point"


@dataclass(frozen=True)
class NotEntryPoint:
    module_id: int
    definition_id: int
    member_name: str
    reason: str = ""
    kind: str = "not_entry_point"


Classification = Union[EntryPoint, NotEntryPoint]


def not_entry_points(candidates: Sequence[Candidate], reason: str) -> list[Classification]:
    return [NotEntryPoint(c.module_id, c.definition_id, c.member_name, reason) for c in candidates]


def build_classification_prompt(candidates: Sequence[Candidate]) -> tuple[str, str]:
    """(system prompt, user prompt) asking for one CSV row per candidate."""
    system = (
        "Classify which module members are entry points that start a user or system action. "
        f"Answer with CSV only, header: {CSV_HEADER}. "
        f"action_type is one of {', '.join(ACTION_TYPES)}; "
        f"stakeholder is one of {', '.join(STAKEHOLDERS)}."
    )
    lines = []
    current = None
    for c in candidates:
        if c.module_id != current:
            lines.append(f"## Module {c.module_id}: {c.module_path}")
            current = c.module_id
        lines.append(f"  - {c.member_name} ({c.kind})")
    return system, "\n".join(lines)


def _clean(value: str) -> str:
    return value.strip().strip('"').strip()


def parse_classifications(text: str, candidates: Sequence[Candidate]) -> list[Classification]:
    """Parse a CSV response. A member may appear on several entry-point rows."""
    match = _FENCE_RE.search(text)
    body = match.group(1) if match else text
    by_key = {(c.module_id, c.member_name): c for c in candidates}
    found: dict[tuple[int, str], list[Classification]] = {}

    for fields in csv.reader(io.StringIO(body)):
        if len(fields) < 7 or fields[0].strip() == "module_id":
            continue
        try:
            module_id = int(fields[0].strip())
        except ValueError:
            continue
        key = (module_id, _clean(fields[1]))
        candidate = by_key.get(key)
        if candidate is None:
            continue

        if _clean(fields[2]).lower() == "true":
            action = _clean(fields[3]).lower()
            stakeholder = _clean(fields[5]).lower()
            result: Classification = EntryPoint(
                module_id=candidate.module_id,
                definition_id=candidate.definition_id,
                member_name=candidate.member_name,
                action_type=action if action in ACTION_TYPES else None,
                target_entity=_clean(fields[4]) or None,
                stakeholder=stakeholder if stakeholder in STAKEHOLDERS else None,
            )
        else:
            result = NotEntryPoint(
                candidate.module_id, candidate.definition_id, candidate.member_name,
                _clean(",".join(fields[6:])),
            )
        found.setdefault(key, []).append(result)

    results: list[Classification] = []
    for c in candidates:
        rows = found.get((c.module_id, c.member_name))
        if rows is None:
            rows = [NotEntryPoint(c.module_id, c.definition_id, c.member_name, "missing from response")]
        results.extend(rows)
    return results
