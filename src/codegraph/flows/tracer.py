"""
Flow tracer: walks the definition call graph from each entry point and
records the cross-module calls it passes through.

The walk is a depth-first search bounded by ``max_depth``. Interaction IDs
are derived from the module pair of each recorded step, then the flow is
extended breadth-first through ``llm-inferred`` interactions so a trace
continues past boundaries the static call graph cannot see.
"""

from __future__ import annotations

import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Optional

import structlog

from ..core.graph import get_definition_call_graph
from ..store.db import Database
from ..store.models import Interaction
from .entry_points import EntryMember, EntryPointModule
from .types import DefinitionStep, FlowSuggestion, InferredStep, unique_slug

logger = structlog.get_logger()

ACTION_VERBS = {
    "view": "View",
    "create": "Create",
    "update": "Update",
    "delete": "Delete",
    "process": "Process",
}

# Checked in order; first keyword found in the module path wins
STAKEHOLDER_KEYWORDS = (
    (("admin",), "admin"),
    (("api", "route"), "external"),
    (("cron", "job", "worker"), "system"),
    (("cli", "command"), "developer"),
)

_CAMEL_BOUNDARY_RE = re.compile(r"([a-z])([A-Z])")


@dataclass
class TracingContext:
    """Lookups the tracer needs, built once per generation run."""
    call_graph: dict[int, list[int]] = field(default_factory=dict)
    def_to_module: dict[int, tuple[int, str]] = field(default_factory=dict)
    interaction_by_pair: dict[tuple[int, int], int] = field(default_factory=dict)
    inferred_from_module: dict[int, list[Interaction]] = field(default_factory=dict)
    all_from_module: dict[int, list[Interaction]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        call_graph: dict[int, list[int]],
        modules: list[tuple[int, str, list[int]]],
        interactions: list[Interaction],
    ) -> "TracingContext":
        """``modules`` holds (module_id, full_path, member definition IDs)."""
        ctx = cls(call_graph=call_graph)
        for module_id, path, member_ids in modules:
            for def_id in member_ids:
                ctx.def_to_module[def_id] = (module_id, path)

        inferred: dict[int, list[Interaction]] = defaultdict(list)
        outgoing: dict[int, list[Interaction]] = defaultdict(list)
        for i in interactions:
            ctx.interaction_by_pair[(i.from_module_id, i.to_module_id)] = i.interaction_id
            outgoing[i.from_module_id].append(i)
            if i.source == "llm-inferred":
                inferred[i.from_module_id].append(i)
        ctx.inferred_from_module = dict(inferred)
        ctx.all_from_module = dict(outgoing)
        return ctx

    @classmethod
    def from_db(cls, db: Database) -> "TracingContext":
        return cls.build(
            get_definition_call_graph(db),
            [(m.module_id, m.full_path, m.member_ids) for m in db.get_modules_with_members()],
            db.list_interactions(),
        )


def action_verb(action_type: Optional[str]) -> str:
    return ACTION_VERBS.get(action_type or "", "")


def flow_name(member: EntryMember) -> str:
    """``CreateOrderFlow`` for classified members, else a cleaned member name."""
    if member.action_type and member.target_entity:
        entity = member.target_entity[:1].upper() + member.target_entity[1:]
        return f"{action_verb(member.action_type)}{entity}Flow"

    name = member.name.rsplit(".", 1)[-1]
    name = re.sub(r"^handle", "", name)
    name = re.sub(r"Handler$", "", name)
    name = re.sub(r"Controller$", "", name)
    name = re.sub(r"^on", "", name)
    if member.action_type:
        name = f"{action_verb(member.action_type)}{name}"
    if not name.endswith("Flow"):
        name = f"{name}Flow"
    return name


def flow_slug(name: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub(r"\1-\2", name).lower()


def infer_stakeholder(module_path: str) -> str:
    path = module_path.lower()
    for keywords, stakeholder in STAKEHOLDER_KEYWORDS:
        if any(k in path for k in keywords):
            return stakeholder
    return "user"


class FlowTracer:
    """Builds tier-1 flow suggestions from classified entry points."""

    def __init__(self, context: TracingContext, max_depth: int = 15, max_steps: int = 20):
        self.context = context
        self.max_depth = max_depth
        self.max_steps = max_steps
        self.truncated: list[str] = []  # slugs of flows cut at max_steps

    def trace_flows_from_entry_points(self, entry_modules: list[EntryPointModule]) -> list[FlowSuggestion]:
        suggestions = []
        used_slugs: set[str] = set()
        for module in entry_modules:
            for member in module.members:
                flow = self._trace_member(module, member, used_slugs)
                if flow is not None:
                    suggestions.append(flow)
        return suggestions

    def _trace_member(
        self, module: EntryPointModule, member: EntryMember, used_slugs: set[str],
    ) -> Optional[FlowSuggestion]:
        steps = self.trace_definition_flow(member.definition_id)
        truncated = len(steps) > self.max_steps
        if truncated:
            steps = steps[:self.max_steps]

        extended_ids, inferred_steps = self.extend_with_inferred(steps)
        if not steps and not inferred_steps:
            return None

        name = flow_name(member)
        flow = FlowSuggestion(
            name=name,
            slug=unique_slug(flow_slug(name), used_slugs),
            entry_point_module_id=module.module_id,
            entry_point_id=member.definition_id,
            entry_path=f"{module.module_path}.{member.name}",
            stakeholder=member.stakeholder or infer_stakeholder(module.module_path),
            description=f"Flow starting from {member.name} in {module.module_path}",
            interaction_ids=self.derive_interaction_ids(steps) + extended_ids,
            definition_steps=steps,
            inferred_steps=inferred_steps,
            action_type=member.action_type,
            target_entity=member.target_entity,
            tier=1,
            truncated=truncated,
        )
        if truncated:
            self.truncated.append(flow.slug)
            logger.warning("flow_truncated", flow=flow.slug, max_steps=self.max_steps)
        return flow

    def trace_definition_flow(self, start_definition_id: int) -> list[DefinitionStep]:
        visited: set[int] = set()
        steps: list[DefinitionStep] = []

        def walk(def_id: int, depth: int):
            if depth >= self.max_depth or def_id in visited:
                return
            visited.add(def_id)
            from_module = self.context.def_to_module.get(def_id)
            for callee in self.context.call_graph.get(def_id, []):
                to_module = self.context.def_to_module.get(callee)
                if from_module and to_module and from_module[0] != to_module[0]:
                    steps.append(DefinitionStep(def_id, callee, from_module[0], to_module[0]))
                walk(callee, depth + 1)

        walk(start_definition_id, 0)
        return steps

    def derive_interaction_ids(self, steps: list[DefinitionStep]) -> list[int]:
        seen: set[int] = set()
        result = []
        for step in steps:
            interaction_id = self.context.interaction_by_pair.get((step.from_module_id, step.to_module_id))
            if interaction_id is not None and interaction_id not in seen:
                seen.add(interaction_id)
                result.append(interaction_id)
        return result

    def extend_with_inferred(self, steps: list[DefinitionStep]) -> tuple[list[int], list[InferredStep]]:
        """Follow inferred edges out of traced modules, then every edge of
        modules only reachable through inference."""
        added = set(self.derive_interaction_ids(steps))
        traced_modules: set[int] = set()
        for step in steps:
            traced_modules.update(m for m in (step.from_module_id, step.to_module_id) if m is not None)

        extended: list[int] = []
        inferred_steps: list[InferredStep] = []
        visited: set[int] = set()
        queue = deque(sorted(traced_modules))

        def take(interaction: Interaction):
            if interaction.interaction_id in added:
                return
            added.add(interaction.interaction_id)
            extended.append(interaction.interaction_id)
            inferred_steps.append(InferredStep(interaction.from_module_id, interaction.to_module_id))
            if interaction.to_module_id not in visited:
                queue.append(interaction.to_module_id)

        while queue:
            module_id = queue.popleft()
            if module_id in visited:
                continue
            visited.add(module_id)
            for interaction in self.context.inferred_from_module.get(module_id, []):
                take(interaction)
            if module_id not in traced_modules:
                for interaction in self.context.all_from_module.get(module_id, []):
                    take(interaction)

        return extended, inferred_steps
