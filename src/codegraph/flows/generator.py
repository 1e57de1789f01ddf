"""
Flow generation: entry points -> traces -> dedup -> validation -> gap flows ->
journeys -> persistence.

Persistence replaces every flow in one transaction. Feature memberships are
remembered by flow slug and re-linked to the new rows with the same slug.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

import structlog

from ..config import ProjectConfig
from ..llm.service import LLMService
from ..store.db import Database
from ..store.models import Flow
from .dedup import deduplicate_by_interaction_overlap, deduplicate_by_interaction_set
from .entry_points import detect_entry_point_modules
from .gaps import create_gap_flows
from .journeys import build_journeys
from .tracer import FlowTracer, TracingContext
from .types import FlowArena, FlowSuggestion
from .validator import FlowIssue, validate_flows

logger = structlog.get_logger()


@dataclass
class FlowGenerationResult:
    entry_point_modules: int = 0
    traced: int = 0
    removed_by_set_dedup: int = 0
    removed_by_overlap_dedup: int = 0
    gap_flows: int = 0
    journeys: int = 0
    persisted: int = 0
    affected_feature_ids: list[int] = field(default_factory=list)
    issues: list[FlowIssue] = field(default_factory=list)


class FlowGenerator:
    """Regenerates the persisted flow set from the current graph."""

    def __init__(self, db: Database, llm: LLMService, config: Optional[ProjectConfig] = None):
        self.db = db
        self.llm = llm
        self.config = config or ProjectConfig()

    async def generate(self) -> FlowGenerationResult:
        result = FlowGenerationResult()
        flow_config = self.config.flows

        entry_modules = await detect_entry_point_modules(self.db, self.llm, self.config.llm)
        result.entry_point_modules = len(entry_modules)

        tracer = FlowTracer(
            TracingContext.from_db(self.db),
            max_depth=flow_config.max_depth,
            max_steps=flow_config.max_steps,
        )
        traced = tracer.trace_flows_from_entry_points(entry_modules)
        result.traced = len(traced)

        flows = deduplicate_by_interaction_set(traced)
        result.removed_by_set_dedup = len(traced) - len(flows)
        before_overlap = len(flows)
        flows = deduplicate_by_interaction_overlap(flows, flow_config.overlap_threshold)
        result.removed_by_overlap_dedup = before_overlap - len(flows)

        interactions = self.db.list_interactions()
        interaction_ids = {i.interaction_id for i in interactions}
        members = {m.module_id: set(m.member_ids) for m in self.db.get_modules_with_members()}

        # Gap flows must cover what the persisted traces do not, so traces
        # are validated before coverage is computed.
        traced_report = validate_flows(
            flows,
            interaction_ids,
            members,
            max_steps=flow_config.max_steps,
            truncated_slugs=tracer.truncated,
        )
        flows = traced_report.valid

        arena = FlowArena()
        arena.add_all(flows)
        used_slugs = {f.slug for f in flows}

        covered = {i for f in flows for i in f.interaction_ids}
        gaps = create_gap_flows(covered, interactions, used_slugs)
        arena.add_all(gaps)
        result.gap_flows = len(gaps)

        journeys = build_journeys([f for f in flows if f.tier == 1], used_slugs)
        arena.add_all(journeys)
        result.journeys = len(journeys)

        derived_report = validate_flows(gaps + journeys, interaction_ids, members, max_steps=flow_config.max_steps)
        result.issues = traced_report.issues + derived_report.issues
        for issue in traced_report.errors + derived_report.errors:
            logger.warning("flow_rejected", flow=issue.slug, code=issue.code, message=issue.message)

        persisted = flows + derived_report.valid
        result.persisted, result.affected_feature_ids = persist_flows(self.db, persisted, arena)
        logger.info(
            "flows_generated",
            traced=result.traced,
            gap_flows=result.gap_flows,
            journeys=result.journeys,
            persisted=result.persisted,
        )
        return result


def persist_flows(
    db: Database,
    flows: list[FlowSuggestion],
    arena: FlowArena,
) -> tuple[int, list[int]]:
    """Replace all flows with ``flows``.

    Returns the persisted count and the IDs of features whose flows were rewritten.
    """
    with db.atomic():
        memberships: dict[str, list[int]] = defaultdict(list)
        for feature_id, slug in db.get_feature_flow_slugs():
            memberships[slug].append(feature_id)
        db.delete_all_flows()

        flow_ids: dict[int, int] = {}  # arena ID -> flow_id
        slug_ids: dict[str, int] = {}
        for flow in sorted(flows, key=lambda f: f.tier):
            row = db.insert_flow(Flow(
                name=flow.name,
                slug=flow.slug,
                entry_point_module_id=flow.entry_point_module_id,
                entry_point_id=flow.entry_point_id,
                entry_path=flow.entry_path,
                stakeholder=flow.stakeholder,
                description=flow.description,
                action_type=flow.action_type,
                target_entity=flow.target_entity,
                tier=flow.tier,
            ))
            slug_ids[flow.slug] = row.flow_id
            if flow.arena_id is not None:
                flow_ids[flow.arena_id] = row.flow_id

            db.add_flow_steps(row.flow_id, list(dict.fromkeys(flow.interaction_ids)))
            db.add_flow_definition_steps(
                row.flow_id,
                [(s.from_definition_id, s.to_definition_id) for s in flow.definition_steps],
            )
            subflows = [flow_ids[s.arena_id] for s in arena.subflows(flow) if s.arena_id in flow_ids]
            db.add_subflow_steps(row.flow_id, subflows)

        for slug, feature_ids in memberships.items():
            if slug in slug_ids:
                for feature_id in feature_ids:
                    db.add_feature_flow(feature_id, slug_ids[slug])

    return len(flows), sorted({f for ids in memberships.values() for f in ids})
