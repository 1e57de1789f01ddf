"""
Cascade deletion and referential repair.

Deletes run leaf-first so foreign keys are satisfied at every statement.
Every function runs inside ``Database.atomic()``: a savepoint when the caller
already holds a transaction, its own transaction otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import structlog

from ..store.db import Database, chunked, placeholders

logger = structlog.get_logger()


def cascade_delete_definitions(db: Database, definition_ids: Sequence[int]) -> None:
    """Delete definitions and every row that references them, in either direction."""
    ids = sorted(set(definition_ids))
    if not ids:
        return

    with db.atomic():
        for chunk in chunked(ids):
            ph = placeholders(chunk)
            db.execute(
                f"""DELETE FROM usages WHERE symbol_id IN
                      (SELECT symbol_id FROM symbols WHERE definition_id IN ({ph}))""",
                chunk,
            )
            db.execute(f"DELETE FROM symbols WHERE definition_id IN ({ph})", chunk)
            db.execute(f"DELETE FROM definition_metadata WHERE definition_id IN ({ph})", chunk)
            db.execute(
                f"""DELETE FROM relationship_annotations
                    WHERE from_definition_id IN ({ph}) OR to_definition_id IN ({ph})""",
                chunk * 2,
            )
            db.execute(f"DELETE FROM module_members WHERE definition_id IN ({ph})", chunk)
            db.execute(
                f"""DELETE FROM flow_definition_steps
                    WHERE from_definition_id IN ({ph}) OR to_definition_id IN ({ph})""",
                chunk * 2,
            )
            db.execute(f"UPDATE flows SET entry_point_id = NULL WHERE entry_point_id IN ({ph})", chunk)
            db.execute(f"DELETE FROM definitions WHERE definition_id IN ({ph})", chunk)


def cascade_delete_file(db: Database, file_id: int) -> None:
    """Delete a file with its definitions, imports, symbols and usages."""
    with db.atomic():
        def_ids = [d.definition_id for d in db.get_file_definitions(file_id)]
        cascade_delete_definitions(db, def_ids)

        db.delete_file_imports(file_id)
        db.execute(
            "DELETE FROM usages WHERE symbol_id IN (SELECT symbol_id FROM symbols WHERE file_id = ?)",
            (file_id,),
        )
        db.execute("DELETE FROM symbols WHERE file_id = ?", (file_id,))
        db.delete_file_row(file_id)


def clean_dangling_symbol_refs(db: Database) -> int:
    """Null out symbols.definition_id pointing at missing definitions. Returns rows fixed."""
    with db.atomic():
        cur = db.execute(
            """UPDATE symbols SET definition_id = NULL
               WHERE definition_id IS NOT NULL
                 AND definition_id NOT IN (SELECT definition_id FROM definitions)"""
        )
    if cur.rowcount:
        logger.info("dangling_refs_cleaned", count=cur.rowcount)
    return cur.rowcount


# ── Ghost rows ──

@dataclass(frozen=True)
class GhostQuery:
    """Rows whose parent is gone. ``select_sql`` yields (entity_id, detail)."""
    category: str
    table: str
    select_sql: str
    repair_sql: tuple[str, ...]


GHOST_QUERIES: list[GhostQuery] = [
    GhostQuery(
        category="ghost-relationship",
        table="relationship_annotations",
        select_sql="""
            SELECT ra.relationship_id, ra.from_definition_id || ' -> ' || ra.to_definition_id
            FROM relationship_annotations ra
            WHERE ra.from_definition_id NOT IN (SELECT definition_id FROM definitions)
               OR ra.to_definition_id NOT IN (SELECT definition_id FROM definitions)
        """,
        repair_sql=("""
            DELETE FROM relationship_annotations
            WHERE from_definition_id NOT IN (SELECT definition_id FROM definitions)
               OR to_definition_id NOT IN (SELECT definition_id FROM definitions)
        """,),
    ),
    GhostQuery(
        category="ghost-member",
        table="module_members",
        select_sql="""
            SELECT mm.definition_id, 'module ' || mm.module_id
            FROM module_members mm
            WHERE mm.definition_id NOT IN (SELECT definition_id FROM definitions)
               OR mm.module_id NOT IN (SELECT module_id FROM modules)
        """,
        repair_sql=("""
            DELETE FROM module_members
            WHERE definition_id NOT IN (SELECT definition_id FROM definitions)
               OR module_id NOT IN (SELECT module_id FROM modules)
        """,),
    ),
    GhostQuery(
        category="ghost-interaction",
        table="interactions",
        select_sql="""
            SELECT i.interaction_id, i.from_module_id || ' -> ' || i.to_module_id
            FROM interactions i
            WHERE i.from_module_id NOT IN (SELECT module_id FROM modules)
               OR i.to_module_id NOT IN (SELECT module_id FROM modules)
        """,
        repair_sql=(
            """
            DELETE FROM flow_steps WHERE interaction_id IN (
                SELECT interaction_id FROM interactions
                WHERE from_module_id NOT IN (SELECT module_id FROM modules)
                   OR to_module_id NOT IN (SELECT module_id FROM modules))
            """,
            """
            DELETE FROM interactions
            WHERE from_module_id NOT IN (SELECT module_id FROM modules)
               OR to_module_id NOT IN (SELECT module_id FROM modules)
            """,
        ),
    ),
    GhostQuery(
        category="ghost-flow-step",
        table="flow_steps",
        select_sql="""
            SELECT fs.flow_id, 'step ' || fs.step_order || ' interaction ' || fs.interaction_id
            FROM flow_steps fs
            WHERE fs.interaction_id NOT IN (SELECT interaction_id FROM interactions)
        """,
        repair_sql=("""
            DELETE FROM flow_steps
            WHERE interaction_id NOT IN (SELECT interaction_id FROM interactions)
        """,),
    ),
    GhostQuery(
        category="ghost-subflow",
        table="flow_subflow_steps",
        select_sql="""
            SELECT fss.flow_id, 'subflow ' || fss.subflow_id
            FROM flow_subflow_steps fss
            WHERE fss.subflow_id NOT IN (SELECT flow_id FROM flows)
               OR fss.flow_id NOT IN (SELECT flow_id FROM flows)
        """,
        repair_sql=("""
            DELETE FROM flow_subflow_steps
            WHERE subflow_id NOT IN (SELECT flow_id FROM flows)
               OR flow_id NOT IN (SELECT flow_id FROM flows)
        """,),
    ),
    GhostQuery(
        category="ghost-feature-link",
        table="feature_flows",
        select_sql="""
            SELECT ff.feature_id, 'flow ' || ff.flow_id
            FROM feature_flows ff
            WHERE ff.flow_id NOT IN (SELECT flow_id FROM flows)
        """,
        repair_sql=("""
            DELETE FROM feature_flows WHERE flow_id NOT IN (SELECT flow_id FROM flows)
        """,),
    ),
    GhostQuery(
        category="ghost-entry-point",
        table="flows",
        select_sql="""
            SELECT f.flow_id, 'definition ' || f.entry_point_id
            FROM flows f
            WHERE f.entry_point_id IS NOT NULL
              AND f.entry_point_id NOT IN (SELECT definition_id FROM definitions)
        """,
        repair_sql=("""
            UPDATE flows SET entry_point_id = NULL
            WHERE entry_point_id IS NOT NULL
              AND entry_point_id NOT IN (SELECT definition_id FROM definitions)
        """,),
    ),
    GhostQuery(
        category="ghost-entry-module",
        table="flows",
        select_sql="""
            SELECT f.flow_id, 'module ' || f.entry_point_module_id
            FROM flows f
            WHERE f.entry_point_module_id IS NOT NULL
              AND f.entry_point_module_id NOT IN (SELECT module_id FROM modules)
        """,
        repair_sql=("""
            UPDATE flows SET entry_point_module_id = NULL
            WHERE entry_point_module_id IS NOT NULL
              AND entry_point_module_id NOT IN (SELECT module_id FROM modules)
        """,),
    ),
]


def clean_ghost_rows(db: Database) -> int:
    """Remove or null rows pointing at missing parents. Returns rows touched."""
    total = 0
    with db.atomic():
        for query in GHOST_QUERIES:
            *pre, main = query.repair_sql
            for sql in pre:
                db.execute(sql)
            total += db.execute(main).rowcount
    if total:
        logger.info("ghost_rows_cleaned", count=total)
    return total
