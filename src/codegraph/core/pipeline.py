"""
Enrichment pipeline: re-derives the layers a sync left dirty.

Steps run in layer dependency order. A step reads its upstream dirty set
before that set is drained, and a layer is drained only after the step
consuming it has finished:

    definition layers -> modules -> interactions -> flows -> features
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog

from ..config import ProjectConfig
from ..flows.generator import FlowGenerationResult, FlowGenerator
from ..llm.service import LLMService, NullLLMService
from ..store.db import Database
from .dirty import DirtyTracker
from .graph import sync_from_call_graph
from .indexer import DEFINITION_LAYERS
from .modules import assign_modules_from_paths

logger = structlog.get_logger()

STRATEGIES = ("none", "incremental", "full")


@dataclass
class PipelineResult:
    strategy: str
    modules_assigned: int = 0
    interaction_module_ids: list[int] = field(default_factory=list)  # modules the interaction step consumed
    interactions_created: int = 0
    interactions_updated: int = 0
    flows: Optional[FlowGenerationResult] = None
    drained: dict[str, int] = field(default_factory=dict)


class EnrichmentPipeline:
    """Runs the enrichment steps a sync strategy calls for."""

    def __init__(
        self,
        db: Database,
        tracker: Optional[DirtyTracker] = None,
        llm: Optional[LLMService] = None,
        config: Optional[ProjectConfig] = None,
    ):
        self.db = db
        self.tracker = tracker or DirtyTracker(db)
        self.llm = llm or NullLLMService()
        self.config = config or ProjectConfig()

    async def run(self, strategy: str) -> PipelineResult:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown sync strategy '{strategy}'")
        result = PipelineResult(strategy=strategy)
        if strategy == "incremental":
            await self._run_incremental(result)
        elif strategy == "full":
            await self._run_full(result)
        logger.info("pipeline_finished", strategy=strategy, drained=result.drained)
        return result

    def _drain(self, layer: str, result: PipelineResult):
        result.drained[layer] = result.drained.get(layer, 0) + self.tracker.drain(layer)

    async def _run_incremental(self, result: PipelineResult):
        tracker = self.tracker

        # Definition-level layers have no derived rows to rebuild here
        for layer in DEFINITION_LAYERS:
            logger.info("pipeline_layer_pending", layer=layer, count=tracker.count(layer))
            self._drain(layer, result)

        result.modules_assigned = assign_modules_from_paths(self.db, tracker).assigned

        # ── Interactions (reads modules before it is drained) ──
        module_ids = tracker.get_dirty_ids("modules")
        result.interaction_module_ids = module_ids
        if module_ids:
            synced = sync_from_call_graph(self.db, module_ids)
            result.interactions_created = len(synced.created_ids)
            result.interactions_updated = len(synced.updated_ids)
            tracker.mark_many("interactions", synced.created_ids, "added")
            tracker.mark_many("interactions", synced.updated_ids, "parent_dirty")
            touched = set(synced.created_ids) | set(synced.updated_ids)
            tracker.mark_many("flows", self.db.flow_ids_for_interactions(touched), "parent_dirty")
        self._drain("modules", result)

        # ── Flows ──
        if tracker.count("interactions") or tracker.count("flows"):
            result.flows = await FlowGenerator(self.db, self.llm, self.config).generate()
            tracker.mark_many("features", result.flows.affected_feature_ids, "parent_dirty")
        self._drain("interactions", result)
        self._drain("flows", result)

        # ── Features ──
        self._drain("features", result)

    async def _run_full(self, result: PipelineResult):
        result.drained["all"] = self.tracker.clear()
        result.modules_assigned = assign_modules_from_paths(self.db, self.tracker).assigned
        synced = sync_from_call_graph(self.db)
        result.interactions_created = len(synced.created_ids)
        result.interactions_updated = len(synced.updated_ids)
        result.flows = await FlowGenerator(self.db, self.llm, self.config).generate()
        result.drained["all"] += self.tracker.clear()
