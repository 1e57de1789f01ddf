"""
Sync strategy selection: none, incremental or full re-enrichment.

Pure decision over database counts, the sync result and the thresholds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from ..config import SyncThresholds
from ..store.db import Database
from .dirty import DirtyTracker

if TYPE_CHECKING:
    from .indexer import SyncResult


@dataclass
class StrategyMetrics:
    total_definitions: int = 0
    changed_definitions: int = 0
    change_ratio: float = 0.0
    total_modules: int = 0
    affected_modules: int = 0
    module_ratio: float = 0.0
    total_interactions: int = 0
    affected_interactions: int = 0
    interaction_ratio: float = 0.0


@dataclass
class StrategyDecision:
    strategy: str  # none, incremental, full
    reason: str
    metrics: StrategyMetrics


def _pct(ratio: float) -> str:
    return f"{ratio * 100:.1f}%"


def select_strategy(
    db: Database,
    sync_result: "SyncResult",
    thresholds: Optional[SyncThresholds] = None,
) -> StrategyDecision:
    """Decide how much re-enrichment a sync needs. First matching rule wins."""
    thresholds = thresholds or SyncThresholds()
    tracker = DirtyTracker(db)

    total_definitions = db.count_definitions()
    changed = len(sync_result.added_definition_ids) + len(sync_result.updated_definition_ids)
    metrics = StrategyMetrics(total_definitions=total_definitions, changed_definitions=changed)

    if changed == 0:
        return StrategyDecision("none", "No definition changes", metrics)

    metrics.change_ratio = changed / total_definitions if total_definitions > 0 else 1.0

    metrics.total_modules = db.count_modules()
    if metrics.total_modules == 0:
        return StrategyDecision("full", "No modules exist", metrics)

    metrics.affected_modules = tracker.count("modules")
    metrics.module_ratio = metrics.affected_modules / metrics.total_modules

    metrics.total_interactions = db.count_interactions()
    metrics.affected_interactions = tracker.count("interactions")
    if metrics.total_interactions > 0:
        metrics.interaction_ratio = metrics.affected_interactions / metrics.total_interactions

    if metrics.change_ratio > thresholds.defs_changed_ratio:
        return StrategyDecision(
            "full",
            f"Definition change ratio {_pct(metrics.change_ratio)} exceeds "
            f"threshold {_pct(thresholds.defs_changed_ratio)}",
            metrics,
        )
    if metrics.module_ratio > thresholds.modules_affected_ratio:
        return StrategyDecision(
            "full",
            f"Module affected ratio {_pct(metrics.module_ratio)} exceeds "
            f"threshold {_pct(thresholds.modules_affected_ratio)}",
            metrics,
        )
    if metrics.interaction_ratio > thresholds.interactions_affected_ratio:
        return StrategyDecision(
            "full",
            f"Interaction affected ratio {_pct(metrics.interaction_ratio)} exceeds "
            f"threshold {_pct(thresholds.interactions_affected_ratio)}",
            metrics,
        )

    return StrategyDecision(
        "incremental",
        f"Change ratio {_pct(metrics.change_ratio)}, module ratio {_pct(metrics.module_ratio)} "
        f"within incremental thresholds",
        metrics,
    )
