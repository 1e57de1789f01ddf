"""
In-memory flow types shared by the tracer, gap generator, journey builder,
deduplicator, validator and generator.

Flows never embed other flows. A journey lists its constituents by arena ID,
and the arena resolves IDs back to suggestions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterator, Optional


@dataclass
class DefinitionStep:
    """A cross-module call edge walked by the tracer."""
    from_definition_id: int
    to_definition_id: int
    from_module_id: Optional[int] = None
    to_module_id: Optional[int] = None


@dataclass
class InferredStep:
    from_module_id: int
    to_module_id: int
    source: str = "llm-inferred"


@dataclass
class FlowSuggestion:
    """A flow before it is persisted."""
    name: str
    slug: str
    entry_point_module_id: Optional[int] = None
    entry_point_id: Optional[int] = None
    entry_path: str = ""
    stakeholder: str = "user"
    description: str = ""
    interaction_ids: list[int] = field(default_factory=list)
    definition_steps: list[DefinitionStep] = field(default_factory=list)
    inferred_steps: list[InferredStep] = field(default_factory=list)
    action_type: Optional[str] = None
    target_entity: Optional[str] = None
    tier: int = 1  # 0 gap, 1 traced, 2 journey
    subflow_ids: list[int] = field(default_factory=list)  # arena IDs
    arena_id: Optional[int] = None
    truncated: bool = False

    @property
    def signature(self) -> Optional[tuple[str, str]]:
        """(action_type, target_entity) when both are known."""
        if self.action_type and self.target_entity:
            return (self.action_type, self.target_entity)
        return None


class FlowArena:
    """Owns flow suggestions and hands out stable integer IDs."""

    def __init__(self):
        self._flows: dict[int, FlowSuggestion] = {}
        self._next_id = 1

    def add(self, flow: FlowSuggestion) -> int:
        if flow.arena_id is not None and self._flows.get(flow.arena_id) is flow:
            return flow.arena_id
        flow.arena_id = self._next_id
        self._flows[flow.arena_id] = flow
        self._next_id += 1
        return flow.arena_id

    def add_all(self, flows: list[FlowSuggestion]) -> list[int]:
        return [self.add(f) for f in flows]

    def get(self, arena_id: int) -> Optional[FlowSuggestion]:
        return self._flows.get(arena_id)

    def subflows(self, flow: FlowSuggestion) -> list[FlowSuggestion]:
        return [self._flows[i] for i in flow.subflow_ids if i in self._flows]

    def __contains__(self, arena_id: int) -> bool:
        return arena_id in self._flows

    def __iter__(self) -> Iterator[FlowSuggestion]:
        return iter(self._flows.values())

    def __len__(self) -> int:
        return len(self._flows)


_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, default: str = "") -> str:
    """Lowercase, runs of other characters collapsed to '-'."""
    return _NON_SLUG_RE.sub("-", text.lower()).strip("-") or default


def unique_slug(slug: str, used: set[str]) -> str:
    """Append -2, -3, ... until the slug is unused, then reserve it."""
    candidate = slug
    counter = 2
    while candidate in used:
        candidate = f"{slug}-{counter}"
        counter += 1
    used.add(candidate)
    return candidate
