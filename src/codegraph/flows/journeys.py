"""
Journey builder: composes tier-2 flows out of related tier-1 flows.

Flows sharing a target entity form an entity journey. Flows left over that
share an entry module form a page journey. A journey needs at least two
constituents and references them by arena ID.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Optional

from .types import FlowSuggestion, slugify, unique_slug

MIN_JOURNEY_FLOWS = 2


@dataclass
class JourneyGroup:
    key: str
    name: str
    description: str
    flows: list[FlowSuggestion]


def normalize_entity(entity: str) -> str:
    lower = entity.lower()
    for suffix in ("-list", "-detail"):
        if lower.endswith(suffix):
            return lower[:-len(suffix)]
    return lower


def group_by_entity(flows: list[FlowSuggestion]) -> list[JourneyGroup]:
    by_entity: dict[str, list[FlowSuggestion]] = {}
    for flow in flows:
        if flow.target_entity:
            by_entity.setdefault(normalize_entity(flow.target_entity), []).append(flow)

    groups = []
    for entity, members in by_entity.items():
        if len(members) < MIN_JOURNEY_FLOWS:
            continue
        actions = list(dict.fromkeys(f.action_type for f in members if f.action_type))
        groups.append(JourneyGroup(
            key=f"entity:{entity}",
            name=f"{entity} {'/'.join(actions) or 'management'} journey",
            description=f"Complete {entity} lifecycle: {', '.join(actions) or 'various operations'}",
            flows=members,
        ))
    return groups


def group_by_entry_point(flows: list[FlowSuggestion]) -> list[JourneyGroup]:
    by_module: dict[int, list[FlowSuggestion]] = {}
    for flow in flows:
        if flow.entry_point_module_id is not None:
            by_module.setdefault(flow.entry_point_module_id, []).append(flow)

    groups = []
    for module_id, members in by_module.items():
        if len(members) < MIN_JOURNEY_FLOWS:
            continue
        # entry_path is "<module path>.<member>"; the module's last segment names the page
        module_path = members[0].entry_path.rsplit(".", 1)[0]
        short = module_path.rsplit(".", 1)[-1] or "page"
        actions = ", ".join(f.action_type or f.name for f in members)
        groups.append(JourneyGroup(
            key=f"page:{module_id}",
            name=f"{short} page journey",
            description=f"User actions on {short}: {actions}",
            flows=members,
        ))
    return groups


def _build_journey(group: JourneyGroup, used_slugs: set[str]) -> FlowSuggestion:
    seen: set[int] = set()
    constituents = []
    for f in group.flows:
        if f.arena_id not in seen:
            seen.add(f.arena_id)
            constituents.append(f)
    primary = constituents[0]
    stakeholder = Counter(f.stakeholder for f in constituents).most_common(1)[0][0]

    return FlowSuggestion(
        name=group.name,
        slug=unique_slug(slugify(group.name, "unnamed-journey"), used_slugs),
        entry_point_module_id=primary.entry_point_module_id,
        entry_point_id=primary.entry_point_id,
        entry_path=primary.entry_path,
        stakeholder=stakeholder,
        description=group.description,
        interaction_ids=list(dict.fromkeys(i for f in constituents for i in f.interaction_ids)),
        definition_steps=[s for f in constituents for s in f.definition_steps],
        action_type=None,
        target_entity=normalize_entity(primary.target_entity) if primary.target_entity else None,
        tier=2,
        subflow_ids=[f.arena_id for f in constituents],
    )


def build_journeys(
    tier1_flows: list[FlowSuggestion],
    used_slugs: Optional[set[str]] = None,
) -> list[FlowSuggestion]:
    """Tier-2 journeys over ``tier1_flows``, which must already sit in a FlowArena."""
    if len(tier1_flows) < MIN_JOURNEY_FLOWS:
        return []
    unregistered = [f.slug for f in tier1_flows if f.arena_id is None]
    if unregistered:
        raise ValueError(f"flows not registered in an arena: {', '.join(unregistered)}")

    groups = group_by_entity(tier1_flows)
    in_entity_journey = {f.arena_id for g in groups for f in g.flows}
    groups += group_by_entry_point([f for f in tier1_flows if f.arena_id not in in_entity_journey])

    used = used_slugs if used_slugs is not None else set()
    return [_build_journey(g, used) for g in groups]
