"""
Flow deduplication by interaction set.

Quality order when two flows compete (first difference decides):

1. a flow with both action type and target entity beats one without
2. higher tier
3. more definition steps
4. fewer interaction IDs (a focused flow beats a catch-all)
5. the earlier flow
"""

from __future__ import annotations

from .types import FlowSuggestion


def quality_key(flow: FlowSuggestion) -> tuple[bool, int, int, int]:
    """Larger is better."""
    return (
        flow.signature is not None,
        flow.tier,
        len(flow.definition_steps),
        -len(set(flow.interaction_ids)),
    )


def pick_flow_to_drop(a: FlowSuggestion, b: FlowSuggestion, idx_a: int, idx_b: int) -> int:
    """Index of the flow to drop; ties drop the later one."""
    key_a, key_b = quality_key(a), quality_key(b)
    if key_a == key_b:
        return max(idx_a, idx_b)
    return idx_b if key_a > key_b else idx_a


def deduplicate_by_interaction_set(flows: list[FlowSuggestion]) -> list[FlowSuggestion]:
    """Collapse flows with identical interaction-ID sets to the best one."""
    best: dict[tuple[int, ...], int] = {}
    dropped: set[int] = set()
    for idx, flow in enumerate(flows):
        if not flow.interaction_ids:
            continue
        key = tuple(sorted(set(flow.interaction_ids)))
        kept = best.get(key)
        if kept is None:
            best[key] = idx
            continue
        loser = pick_flow_to_drop(flows[kept], flow, kept, idx)
        dropped.add(loser)
        best[key] = idx if loser == kept else kept
    return [f for i, f in enumerate(flows) if i not in dropped]


def overlap_ratio(a: set[int], b: set[int]) -> float:
    """|A ∩ B| / min(|A|, |B|); zero when either side is empty."""
    if not a or not b:
        return 0.0
    return len(a & b) / min(len(a), len(b))


def deduplicate_by_interaction_overlap(
    flows: list[FlowSuggestion],
    threshold: float = 0.75,
) -> list[FlowSuggestion]:
    """Drop the weaker flow of every pair overlapping above ``threshold``.

    Flows with empty interaction sets are never compared. Two flows whose
    action/entity signatures are both known and differ are never compared.
    """
    sets = [set(f.interaction_ids) for f in flows]
    dropped: set[int] = set()

    for i, a in enumerate(flows):
        if i in dropped or not sets[i]:
            continue
        for j in range(i + 1, len(flows)):
            if j in dropped or not sets[j]:
                continue
            b = flows[j]
            if a.signature and b.signature and a.signature != b.signature:
                continue
            if overlap_ratio(sets[i], sets[j]) > threshold:
                loser = pick_flow_to_drop(a, b, i, j)
                dropped.add(loser)
                if loser == i:
                    break

    return [f for i, f in enumerate(flows) if i not in dropped]
