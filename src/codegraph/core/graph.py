"""
Call graph: definition-level call edges, their module-level aggregation,
interaction sync, and inheritance relationship edges.
"""

from __future__ import annotations

from bisect import bisect_right
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from ..store.db import Database

logger = structlog.get_logger()

INHERITANCE_SEMANTIC = "PENDING_LLM_ANNOTATION"

# Utility-pattern thresholds
HIGH_FREQUENCY_WEIGHT = 10
MIN_UTILITY_CALLERS = 3
MIN_UTILITY_AVG_CALLS = 3


@dataclass
class CalledSymbol:
    name: str
    kind: str
    call_count: int = 0


@dataclass
class ModuleCallEdge:
    """Calls from one module into another, aggregated."""
    from_module_id: int
    to_module_id: int
    from_module_path: str = ""
    to_module_path: str = ""
    weight: int = 0
    called_symbols: list[CalledSymbol] = field(default_factory=list)
    distinct_callers: int = 0
    avg_calls_per_symbol: float = 0.0
    is_high_frequency: bool = False
    pattern: str = "business"


@dataclass
class CallGraphSyncResult:
    created_ids: list[int] = field(default_factory=list)
    updated_ids: list[int] = field(default_factory=list)


class _Containment:
    """Innermost-definition lookup by line for one file."""

    def __init__(self, spans: list[tuple[int, int, int]]):
        self._spans = sorted(spans)  # (line_start, line_end, definition_id)
        self._starts = [s[0] for s in self._spans]

    def innermost(self, line: int) -> Optional[int]:
        containing = [
            (start, -end, def_id)
            for start, end, def_id in self._spans[:bisect_right(self._starts, line)]
            if line <= end
        ]
        return max(containing)[2] if containing else None


def _call_edges(db: Database) -> dict[tuple[int, int], int]:
    """(caller, callee) -> number of call usages."""
    spans: dict[int, list[tuple[int, int, int]]] = defaultdict(list)
    for row in db.execute("SELECT definition_id, file_id, line_start, line_end FROM definitions"):
        spans[row["file_id"]].append((row["line_start"], row["line_end"], row["definition_id"]))
    lookups = {file_id: _Containment(s) for file_id, s in spans.items()}

    edges: dict[tuple[int, int], int] = defaultdict(int)
    rows = db.execute(
        """SELECT s.file_id, s.definition_id AS callee_id, u.line_no
           FROM usages u JOIN symbols s ON u.symbol_id = s.symbol_id
           WHERE u.context = 'call' AND s.definition_id IS NOT NULL"""
    )
    for row in rows:
        lookup = lookups.get(row["file_id"])
        caller = lookup.innermost(row["line_no"]) if lookup else None
        if caller is None or caller == row["callee_id"]:
            continue
        edges[(caller, row["callee_id"])] += 1
    return dict(edges)


def get_definition_call_graph(db: Database) -> dict[int, list[int]]:
    """Map caller definition -> sorted callee definitions."""
    graph: dict[int, set[int]] = defaultdict(set)
    for caller, callee in _call_edges(db):
        graph[caller].add(callee)
    return {caller: sorted(callees) for caller, callees in graph.items()}


def classify_edge(
    weight: int,
    distinct_callers: int,
    symbols: list[CalledSymbol],
    from_is_test: bool,
    to_is_test: bool,
) -> str:
    if from_is_test and to_is_test:
        return "test-internal"
    avg = weight / len(symbols) if symbols else 0
    has_class = any(s.kind == "class" for s in symbols)
    if (weight > HIGH_FREQUENCY_WEIGHT and distinct_callers >= MIN_UTILITY_CALLERS
            and avg > MIN_UTILITY_AVG_CALLS and not has_class):
        return "utility"
    return "business"


def get_enriched_module_call_graph(
    db: Database, module_ids: Optional[Iterable[int]] = None,
) -> list[ModuleCallEdge]:
    """Aggregate definition call edges by module pair, heaviest first.

    With ``module_ids``, only edges touching one of those modules are returned.
    """
    scope = set(module_ids) if module_ids is not None else None
    member_of: dict[int, int] = {}
    for row in db.execute("SELECT definition_id, module_id FROM module_members"):
        member_of[row[0]] = row[1]
    modules = {m.module_id: m for m in db.list_modules()}
    defs = {
        row["definition_id"]: (row["name"], row["kind"])
        for row in db.execute("SELECT definition_id, name, kind FROM definitions")
    }

    edges: dict[tuple[int, int], ModuleCallEdge] = {}
    symbols: dict[tuple[int, int], dict[str, CalledSymbol]] = defaultdict(dict)
    callers: dict[tuple[int, int], set[int]] = defaultdict(set)

    for (caller, callee), count in sorted(_call_edges(db).items()):
        from_mod, to_mod = member_of.get(caller), member_of.get(callee)
        if from_mod is None or to_mod is None or from_mod == to_mod:
            continue
        if scope is not None and from_mod not in scope and to_mod not in scope:
            continue

        key = (from_mod, to_mod)
        edge = edges.get(key)
        if edge is None:
            edge = edges[key] = ModuleCallEdge(
                from_module_id=from_mod,
                to_module_id=to_mod,
                from_module_path=modules[from_mod].full_path,
                to_module_path=modules[to_mod].full_path,
            )
        edge.weight += count
        callers[key].add(caller)
        name, kind = defs[callee]
        sym = symbols[key].setdefault(name, CalledSymbol(name=name, kind=kind))
        sym.call_count += count

    result = []
    for key, edge in edges.items():
        called = sorted(symbols[key].values(), key=lambda s: (-s.call_count, s.name))
        edge.called_symbols = called
        edge.distinct_callers = len(callers[key])
        edge.avg_calls_per_symbol = edge.weight / len(called) if called else 0.0
        edge.is_high_frequency = edge.weight > HIGH_FREQUENCY_WEIGHT
        edge.pattern = classify_edge(
            edge.weight, edge.distinct_callers, called,
            modules[edge.from_module_id].is_test, modules[edge.to_module_id].is_test,
        )
        result.append(edge)

    result.sort(key=lambda e: (-e.weight, e.from_module_path, e.to_module_path))
    return result


def sync_from_call_graph(db: Database, module_ids: Optional[Iterable[int]] = None) -> CallGraphSyncResult:
    """Upsert ``source='ast'`` interactions from the module call graph."""
    result = CallGraphSyncResult()
    with db.atomic():
        for edge in get_enriched_module_call_graph(db, module_ids):
            if edge.from_module_id == edge.to_module_id:
                continue
            interaction_id, created = db.upsert_interaction(
                edge.from_module_id,
                edge.to_module_id,
                weight=edge.weight,
                pattern=edge.pattern,
                symbols=[s.name for s in edge.called_symbols],
                source="ast",
            )
            (result.created_ids if created else result.updated_ids).append(interaction_id)

    logger.debug(
        "call_graph_synced",
        created=len(result.created_ids),
        updated=len(result.updated_ids),
        scoped=module_ids is not None,
    )
    return result


def create_inheritance_relationships(db: Database) -> int:
    """Add extends/implements annotations for classes whose bases resolve."""
    created = 0
    with db.atomic():
        for d in db.get_inheriting_definitions():
            if d.kind != "class":
                continue
            bases = ([("extends", d.extends_name)] if d.extends_name else []) + [
                ("implements", name) for name in d.implements
            ]
            for rel_type, base in bases:
                short = base.rsplit(".", 1)[-1]
                targets = (db.find_definitions(short, file_id=d.file_id, kinds=["class"])
                           or db.find_definitions(short, kinds=["class"]))
                targets = [t for t in targets if t.definition_id != d.definition_id]
                if not targets:
                    continue
                if db.insert_relationship(
                    d.definition_id, targets[0].definition_id, rel_type, INHERITANCE_SEMANTIC,
                ) is not None:
                    created += 1
    return created
