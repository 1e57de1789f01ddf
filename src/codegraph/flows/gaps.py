"""
Gap flows: one tier-0 internal flow per source module whose outgoing
interactions no other flow covers.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional

from ..store.models import Interaction
from .types import FlowSuggestion, slugify, unique_slug

MAX_NAMED_TARGETS = 3


def _short(path: str, default: str) -> str:
    return path.rsplit(".", 1)[-1] if path else default


def create_gap_flows(
    covered_ids: Iterable[int],
    interactions: list[Interaction],
    used_slugs: Optional[set[str]] = None,
) -> list[FlowSuggestion]:
    """After this, every interaction in ``interactions`` belongs to a flow."""
    covered = set(covered_ids)
    used = used_slugs if used_slugs is not None else set()

    by_source: dict[int, list[Interaction]] = defaultdict(list)
    for i in interactions:
        if i.interaction_id not in covered:
            by_source[i.from_module_id].append(i)

    flows = []
    for group in by_source.values():
        from_path = group[0].from_module_path
        from_short = _short(from_path, "module")
        targets = list(dict.fromkeys(_short(i.to_module_path, "?") for i in group))
        summary = ", ".join(targets[:MAX_NAMED_TARGETS])
        extra = len(targets) - MAX_NAMED_TARGETS
        suffix = f" (+{extra} more)" if extra > 0 else ""

        name = f"{from_short} calls {summary}{suffix}"
        flows.append(FlowSuggestion(
            name=name,
            slug=unique_slug(slugify(name, "internal"), used),
            entry_path=f"Internal: {from_path}",
            stakeholder="system",
            description=f"Internal interactions from {from_short} to {summary}{suffix}",
            interaction_ids=[i.interaction_id for i in group],
            tier=0,
        ))
    return flows
