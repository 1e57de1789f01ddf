"""
Built-in quality checks over interactions, plus the integrity checks that
look for rows pointing at missing parents.

Each check returns ``QualityIssue`` findings; none of them raise on bad data.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..core.cascade import GHOST_QUERIES
from ..core.graph import get_enriched_module_call_graph
from ..store.db import Database
from ..store.models import Interaction

# Tukey far-outlier fence on inferred fan-in, with an absolute floor
FAN_IN_IQR_FACTOR = 3
FAN_IN_MIN = 8


@dataclass
class QualityIssue:
    severity: str  # error, warning
    category: str
    message: str
    fix_action: Optional[str] = None  # remove-interaction, set-direction-uni, rebuild-symbols, remove-ghost
    entity_id: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)


def _label(i: Interaction) -> str:
    return f"Interaction #{i.interaction_id} ({i.from_module_path} -> {i.to_module_path})"


@dataclass
class CheckContext:
    """Lookups shared by the interaction checks."""
    interactions: list[Interaction]
    call_edges: set[tuple[int, int]]
    member_names: dict[int, set[str]]

    @classmethod
    def from_db(cls, db: Database) -> "CheckContext":
        member_names: dict[int, set[str]] = {}
        for row in db.execute(
            """SELECT mm.module_id, d.name FROM module_members mm
               JOIN definitions d ON mm.definition_id = d.definition_id"""
        ):
            member_names.setdefault(row[0], set()).add(row[1])
        return cls(
            interactions=db.list_interactions(),
            call_edges={(e.from_module_id, e.to_module_id) for e in get_enriched_module_call_graph(db)},
            member_names=member_names,
        )


def check_self_loops(db: Database, ctx: CheckContext) -> list[QualityIssue]:
    return [
        QualityIssue(
            severity="error",
            category="self-loop-interaction",
            message=f"{_label(i)} is a self-loop",
            fix_action="remove-interaction",
            entity_id=i.interaction_id,
        )
        for i in ctx.interactions
        if i.from_module_id == i.to_module_id
    ]


def check_false_bidirectional(db: Database, ctx: CheckContext) -> list[QualityIssue]:
    return [
        QualityIssue(
            severity="warning",
            category="false-bidirectional",
            message=f"{_label(i)} is 'bi' but no reverse call edge exists",
            fix_action="set-direction-uni",
            entity_id=i.interaction_id,
        )
        for i in ctx.interactions
        if i.direction == "bi" and i.from_module_id != i.to_module_id
        and (i.to_module_id, i.from_module_id) not in ctx.call_edges
    ]


def check_ungrounded_inferred(db: Database, ctx: CheckContext) -> list[QualityIssue]:
    issues = []
    for i in ctx.interactions:
        if i.source != "llm-inferred" or i.from_module_id == i.to_module_id:
            continue
        if (i.from_module_id, i.to_module_id) in ctx.call_edges:
            continue
        if db.has_module_import_path(i.from_module_id, i.to_module_id):
            continue
        issues.append(QualityIssue(
            severity="warning",
            category="ungrounded-inferred",
            message=f"{_label(i)} is 'llm-inferred' with no import path and no call edge",
            fix_action="remove-interaction",
            entity_id=i.interaction_id,
        ))
    return issues


def check_symbol_mismatch(db: Database, ctx: CheckContext) -> list[QualityIssue]:
    issues = []
    for i in ctx.interactions:
        members = ctx.member_names.get(i.to_module_id)
        if not i.symbols or members is None or i.from_module_id == i.to_module_id:
            continue
        if all(s not in members for s in i.symbols):
            issues.append(QualityIssue(
                severity="warning",
                category="interaction-symbol-mismatch",
                message=f"{_label(i)}: none of its {len(i.symbols)} symbols are members of the target module",
                fix_action="rebuild-symbols",
                entity_id=i.interaction_id,
            ))
    return issues


def check_fan_in(db: Database, ctx: CheckContext) -> list[QualityIssue]:
    inferred = Counter(i.to_module_id for i in ctx.interactions if i.source == "llm-inferred")
    if not inferred:
        return []
    ast = Counter(i.to_module_id for i in ctx.interactions if i.source in ("ast", "ast-import"))

    values = sorted(inferred.values())
    q1 = values[int(len(values) * 0.25)]
    q3 = values[int(len(values) * 0.75)]
    fence = q3 + FAN_IN_IQR_FACTOR * (q3 - q1)

    issues = []
    for module_id, fan_in in sorted(inferred.items()):
        if fan_in <= fence or fan_in < FAN_IN_MIN or ast[module_id]:
            continue
        for i in ctx.interactions:
            if i.to_module_id == module_id and i.source == "llm-inferred":
                issues.append(QualityIssue(
                    severity="warning",
                    category="fan-in-anomaly",
                    message=(f"{_label(i)} targets a fan-in anomaly "
                             f"({fan_in} inferred inbound, 0 AST inbound)"),
                    entity_id=i.interaction_id,
                    details={"module_id": module_id, "fan_in": fan_in},
                ))
    return issues


def check_ghost_rows(db: Database, ctx: CheckContext) -> list[QualityIssue]:
    issues = []
    for query in GHOST_QUERIES:
        for row in db.execute(query.select_sql):
            issues.append(QualityIssue(
                severity="error",
                category=query.category,
                message=f"{query.table} row {row[0]} points at a missing parent ({row[1]})",
                fix_action="remove-ghost",
                entity_id=row[0],
                details={"table": query.table},
            ))
    return issues


Check = Callable[[Database, CheckContext], list[QualityIssue]]

BUILTIN_CHECKS: list[Check] = [
    check_self_loops,
    check_false_bidirectional,
    check_ungrounded_inferred,
    check_symbol_mismatch,
    check_fan_in,
    check_ghost_rows,
]
