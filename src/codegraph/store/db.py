"""
SQLite database layer for the code graph.

WAL mode, foreign keys, immediate write transactions with fail-fast lock
detection, savepoints for nested atomic blocks, per-entity repository methods.
"""

from __future__ import annotations

import itertools
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

import structlog

from ..errors import DatabaseLockedError, StoreError
from .models import (
    Definition, Feature, File, Flow, Import, IndexStats, Interaction, Module,
    ModuleWithMembers, RelationshipAnnotation, Symbol, Usage,
)
from .schema import INIT_META_SQL, SCHEMA_SQL, SCHEMA_VERSION

logger = structlog.get_logger()

# SQLite caps bound parameters per statement; IN lists are split into chunks.
CHUNK_SIZE = 500


def chunked(ids: Iterable[int], size: int = CHUNK_SIZE) -> Iterator[list[int]]:
    """Yield lists of at most ``size`` ids."""
    batch: list[int] = []
    for entity_id in ids:
        batch.append(entity_id)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _is_database_locked_error(e: BaseException) -> bool:
    msg = str(e).lower()
    return "database is locked" in msg or "database is busy" in msg


class Database:
    """SQLite code graph database."""

    def __init__(self, db_path: Path | str, busy_timeout: float = 0.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._savepoints = itertools.count(1)
        self._conn = sqlite3.connect(
            str(self.db_path),
            timeout=busy_timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        try:
            self._init_schema()
        except sqlite3.OperationalError as e:
            self._conn.close()
            if _is_database_locked_error(e):
                raise DatabaseLockedError.create(str(self.db_path), str(e)) from e
            raise StoreError.corrupt(str(self.db_path), str(e)) from e
        except sqlite3.DatabaseError as e:
            self._conn.close()
            raise StoreError.corrupt(str(self.db_path), str(e)) from e

    @classmethod
    def open_existing(cls, db_path: Path | str, busy_timeout: float = 0.0) -> "Database":
        """Open a database that must already exist on disk."""
        path = Path(db_path)
        if not path.is_file():
            raise StoreError.missing(str(path))
        return cls(path, busy_timeout=busy_timeout)

    def _init_schema(self):
        self._conn.executescript(SCHEMA_SQL)
        self._conn.execute(INIT_META_SQL, (str(SCHEMA_VERSION),))

    def require_indexed(self) -> None:
        """Raise StoreError.empty when nothing has been indexed yet."""
        if self.count_files() == 0:
            raise StoreError.empty(str(self.db_path))

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    @contextmanager
    def transaction(self):
        """Write transaction. The lock is taken up front with BEGIN IMMEDIATE."""
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if _is_database_locked_error(e):
                logger.warning("database_locked", path=str(self.db_path))
                raise DatabaseLockedError.create(str(self.db_path), str(e)) from e
            raise
        try:
            yield
            self._conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            self._rollback()
            if _is_database_locked_error(e):
                logger.warning("database_locked", path=str(self.db_path))
                raise DatabaseLockedError.create(str(self.db_path), str(e)) from e
            raise
        except BaseException:
            self._rollback()
            raise

    @contextmanager
    def atomic(self):
        """Transaction if none is open, otherwise a savepoint inside the current one."""
        if not self._conn.in_transaction:
            with self.transaction():
                yield
            return

        name = f"sp_{next(self._savepoints)}"
        self._conn.execute(f"SAVEPOINT {name}")
        try:
            yield
            self._conn.execute(f"RELEASE SAVEPOINT {name}")
        except BaseException:
            self._conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self._conn.execute(f"RELEASE SAVEPOINT {name}")
            raise

    def _rollback(self):
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def _now(self) -> str:
        return datetime.now().isoformat()

    def close(self):
        self._conn.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return self._conn.execute(sql, params)

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> sqlite3.Cursor:
        return self._conn.executemany(sql, rows)

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a read query and return rows as dicts."""
        return [dict(r) for r in self._conn.execute(sql, params).fetchall()]

    def _ids_in(self, sql_template: str, ids: Iterable[int], repeat: int = 1) -> set[int]:
        """Collect the first column of ``sql_template`` over chunked id lists.

        The template holds one ``{ids}`` slot per IN list; each gets the chunk.
        """
        result: set[int] = set()
        for chunk in chunked(sorted(set(ids))):
            sql = sql_template.format(ids=placeholders(chunk))
            for row in self._conn.execute(sql, chunk * repeat):
                result.add(row[0])
        return result

    # ── Meta ──

    def get_meta(self, key: str) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT INTO meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    # ── File operations ──

    def insert_file(self, f: File) -> File:
        cur = self._conn.execute(
            """INSERT INTO files (rel_path, language, content_hash, size_bytes, modified_at, indexed_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (f.rel_path, f.language, f.content_hash, f.size_bytes, f.modified_at,
             f.indexed_at or self._now()),
        )
        f.file_id = cur.lastrowid
        return f

    def update_file(self, file_id: int, content_hash: str, size_bytes: int, modified_at: str) -> None:
        self._conn.execute(
            """UPDATE files SET content_hash = ?, size_bytes = ?, modified_at = ?, indexed_at = ?
               WHERE file_id = ?""",
            (content_hash, size_bytes, modified_at, self._now(), file_id),
        )

    def get_file(self, file_id: int) -> Optional[File]:
        row = self._conn.execute("SELECT * FROM files WHERE file_id = ?", (file_id,)).fetchone()
        return self._row_to_file(row) if row else None

    def get_file_by_path(self, rel_path: str) -> Optional[File]:
        row = self._conn.execute(
            "SELECT * FROM files WHERE rel_path = ?", (rel_path,)
        ).fetchone()
        return self._row_to_file(row) if row else None

    def list_files(self) -> list[File]:
        rows = self._conn.execute("SELECT * FROM files ORDER BY rel_path").fetchall()
        return [self._row_to_file(r) for r in rows]

    def file_index(self) -> dict[str, File]:
        """Map rel_path -> File for every indexed file."""
        return {f.rel_path: f for f in self.list_files()}

    def count_files(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]

    def delete_file_row(self, file_id: int) -> bool:
        """Delete only the files row. Dependents must already be gone."""
        cur = self._conn.execute("DELETE FROM files WHERE file_id = ?", (file_id,))
        return cur.rowcount > 0

    def _row_to_file(self, row) -> File:
        return File(
            file_id=row["file_id"],
            rel_path=row["rel_path"],
            language=row["language"],
            content_hash=row["content_hash"],
            size_bytes=row["size_bytes"],
            modified_at=row["modified_at"],
            indexed_at=row["indexed_at"],
        )

    # ── Definition operations ──

    def insert_definition(self, d: Definition) -> Definition:
        cur = self._conn.execute(
            """INSERT INTO definitions
               (file_id, name, kind, is_exported, line_start, col_start, line_end, col_end,
                extends_name, implements_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (d.file_id, d.name, d.kind, 1 if d.is_exported else 0, d.line_start, d.col_start,
             d.line_end, d.col_end, d.extends_name, json.dumps(d.implements)),
        )
        d.definition_id = cur.lastrowid
        return d

    def update_definition(self, d: Definition) -> None:
        """Apply position, export flag and inheritance changes in place."""
        self._conn.execute(
            """UPDATE definitions SET is_exported = ?, line_start = ?, col_start = ?,
                 line_end = ?, col_end = ?, extends_name = ?, implements_json = ?
               WHERE definition_id = ?""",
            (1 if d.is_exported else 0, d.line_start, d.col_start, d.line_end, d.col_end,
             d.extends_name, json.dumps(d.implements), d.definition_id),
        )

    def get_definition(self, definition_id: int) -> Optional[Definition]:
        row = self._conn.execute(
            """SELECT d.*, f.rel_path FROM definitions d
               JOIN files f ON d.file_id = f.file_id
               WHERE d.definition_id = ?""",
            (definition_id,),
        ).fetchone()
        return self._row_to_definition(row) if row else None

    def get_file_definitions(self, file_id: int) -> list[Definition]:
        rows = self._conn.execute(
            """SELECT d.*, f.rel_path FROM definitions d
               JOIN files f ON d.file_id = f.file_id
               WHERE d.file_id = ? ORDER BY d.line_start, d.definition_id""",
            (file_id,),
        ).fetchall()
        return [self._row_to_definition(r) for r in rows]

    def find_definitions(
        self,
        name: str,
        file_id: Optional[int] = None,
        kinds: Optional[Sequence[str]] = None,
    ) -> list[Definition]:
        sql = """SELECT d.*, f.rel_path FROM definitions d
                 JOIN files f ON d.file_id = f.file_id
                 WHERE d.name = ?"""
        params: list[Any] = [name]
        if file_id is not None:
            sql += " AND d.file_id = ?"
            params.append(file_id)
        if kinds:
            sql += f" AND d.kind IN ({placeholders(kinds)})"
            params.extend(kinds)
        sql += " ORDER BY f.rel_path, d.line_start"
        return [self._row_to_definition(r) for r in self._conn.execute(sql, params).fetchall()]

    def get_inheriting_definitions(self) -> list[Definition]:
        rows = self._conn.execute(
            """SELECT d.*, f.rel_path FROM definitions d
               JOIN files f ON d.file_id = f.file_id
               WHERE d.extends_name IS NOT NULL OR d.implements_json != '[]'
               ORDER BY d.definition_id"""
        ).fetchall()
        return [self._row_to_definition(r) for r in rows]

    def count_definitions(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM definitions").fetchone()[0]

    def _row_to_definition(self, row) -> Definition:
        keys = row.keys()
        return Definition(
            definition_id=row["definition_id"],
            file_id=row["file_id"],
            name=row["name"],
            kind=row["kind"],
            is_exported=bool(row["is_exported"]),
            line_start=row["line_start"],
            col_start=row["col_start"],
            line_end=row["line_end"],
            col_end=row["col_end"],
            extends_name=row["extends_name"],
            implements=json.loads(row["implements_json"] or "[]"),
            rel_path=row["rel_path"] if "rel_path" in keys else "",
        )

    # ── Import / symbol / usage operations ──

    def insert_import(self, imp: Import) -> Import:
        cur = self._conn.execute(
            """INSERT INTO imports
               (file_id, to_file_id, kind, source, resolved_path, is_external, line_no, col)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (imp.file_id, imp.to_file_id, imp.kind, imp.source, imp.resolved_path,
             1 if imp.is_external else 0, imp.line_no, imp.col),
        )
        imp.import_id = cur.lastrowid
        return imp

    def get_file_imports(self, file_id: int) -> list[Import]:
        rows = self._conn.execute(
            "SELECT * FROM imports WHERE file_id = ? ORDER BY line_no, import_id", (file_id,)
        ).fetchall()
        return [self._row_to_import(r) for r in rows]

    def _row_to_import(self, row) -> Import:
        return Import(
            import_id=row["import_id"],
            file_id=row["file_id"],
            to_file_id=row["to_file_id"],
            kind=row["kind"],
            source=row["source"],
            resolved_path=row["resolved_path"],
            is_external=bool(row["is_external"]),
            line_no=row["line_no"],
            col=row["col"],
        )

    def insert_symbol(self, s: Symbol) -> Symbol:
        cur = self._conn.execute(
            """INSERT INTO symbols (file_id, import_id, definition_id, name, local_name, kind)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (s.file_id, s.import_id, s.definition_id, s.name, s.local_name, s.kind),
        )
        s.symbol_id = cur.lastrowid
        return s

    def get_import_symbols(self, import_id: int) -> list[Symbol]:
        rows = self._conn.execute(
            "SELECT * FROM symbols WHERE import_id = ? ORDER BY symbol_id", (import_id,)
        ).fetchall()
        return [self._row_to_symbol(r) for r in rows]

    def get_file_symbols(self, file_id: int) -> list[Symbol]:
        rows = self._conn.execute(
            "SELECT * FROM symbols WHERE file_id = ? ORDER BY symbol_id", (file_id,)
        ).fetchall()
        return [self._row_to_symbol(r) for r in rows]

    def _row_to_symbol(self, row) -> Symbol:
        return Symbol(
            symbol_id=row["symbol_id"],
            file_id=row["file_id"],
            import_id=row["import_id"],
            definition_id=row["definition_id"],
            name=row["name"],
            local_name=row["local_name"],
            kind=row["kind"],
        )

    def insert_usages(self, symbol_id: int, usages: Sequence[Usage]) -> int:
        self._conn.executemany(
            """INSERT INTO usages
               (symbol_id, line_no, col, context, argument_count, is_method_call,
                is_constructor_call, receiver_name)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (symbol_id, u.line_no, u.col, u.context, u.argument_count,
                 1 if u.is_method_call else 0, 1 if u.is_constructor_call else 0,
                 u.receiver_name)
                for u in usages
            ],
        )
        return len(usages)

    def get_symbol_usages(self, symbol_id: int) -> list[Usage]:
        rows = self._conn.execute(
            "SELECT * FROM usages WHERE symbol_id = ? ORDER BY line_no, col", (symbol_id,)
        ).fetchall()
        return [
            Usage(
                usage_id=r["usage_id"],
                symbol_id=r["symbol_id"],
                line_no=r["line_no"],
                col=r["col"],
                context=r["context"],
                argument_count=r["argument_count"],
                is_method_call=bool(r["is_method_call"]),
                is_constructor_call=bool(r["is_constructor_call"]),
                receiver_name=r["receiver_name"],
            )
            for r in rows
        ]

    def delete_file_imports(self, file_id: int) -> int:
        """Delete a file's imports with their symbols and usages. Returns imports removed."""
        self._conn.execute(
            """DELETE FROM usages WHERE symbol_id IN (
                 SELECT s.symbol_id FROM symbols s
                 JOIN imports i ON s.import_id = i.import_id
                 WHERE i.file_id = ?)""",
            (file_id,),
        )
        self._conn.execute(
            "DELETE FROM symbols WHERE import_id IN (SELECT import_id FROM imports WHERE file_id = ?)",
            (file_id,),
        )
        cur = self._conn.execute("DELETE FROM imports WHERE file_id = ?", (file_id,))
        return cur.rowcount

    def delete_internal_symbols(self, file_id: int) -> int:
        """Delete a file's same-file symbols (import_id NULL) and their usages."""
        self._conn.execute(
            """DELETE FROM usages WHERE symbol_id IN (
                 SELECT symbol_id FROM symbols WHERE file_id = ? AND import_id IS NULL)""",
            (file_id,),
        )
        cur = self._conn.execute(
            "DELETE FROM symbols WHERE file_id = ? AND import_id IS NULL", (file_id,)
        )
        return cur.rowcount

    def get_dependent_file_ids(self, file_id: int) -> set[int]:
        """Files (other than ``file_id``) with an import resolved to ``file_id``."""
        rows = self._conn.execute(
            "SELECT DISTINCT file_id FROM imports WHERE to_file_id = ? AND file_id != ?",
            (file_id, file_id),
        ).fetchall()
        return {r[0] for r in rows}

    def get_files_importing_path(self, rel_path: str) -> set[int]:
        """Files whose parser resolved an import to ``rel_path``."""
        rows = self._conn.execute(
            "SELECT DISTINCT file_id FROM imports WHERE resolved_path = ?", (rel_path,)
        ).fetchall()
        return {r[0] for r in rows}

    def get_files_with_unresolved_imports(self, sources: Sequence[str]) -> set[int]:
        """Files holding an unresolved import whose source is one of ``sources``."""
        if not sources:
            return set()
        rows = self._conn.execute(
            f"""SELECT DISTINCT file_id FROM imports
                WHERE to_file_id IS NULL AND source IN ({placeholders(sources)})""",
            list(sources),
        ).fetchall()
        return {r[0] for r in rows}

    # ── Definition metadata ──

    def set_definition_metadata(self, definition_id: int, key: str, value: str) -> None:
        self._conn.execute(
            """INSERT INTO definition_metadata (definition_id, key, value) VALUES (?, ?, ?)
               ON CONFLICT(definition_id, key) DO UPDATE SET value = excluded.value""",
            (definition_id, key, value),
        )

    def get_definition_metadata(self, definition_id: int) -> dict[str, str]:
        rows = self._conn.execute(
            "SELECT key, value FROM definition_metadata WHERE definition_id = ? ORDER BY key",
            (definition_id,),
        ).fetchall()
        return {r["key"]: r["value"] for r in rows}

    def clear_definition_metadata(self, definition_id: int) -> int:
        cur = self._conn.execute(
            "DELETE FROM definition_metadata WHERE definition_id = ?", (definition_id,)
        )
        return cur.rowcount

    # ── Relationship annotations ──

    def insert_relationship(
        self,
        from_definition_id: int,
        to_definition_id: int,
        relationship_type: str = "uses",
        semantic: str = "",
    ) -> Optional[int]:
        """Insert an annotation unless the pair already has one. Returns the new id."""
        cur = self._conn.execute(
            """INSERT OR IGNORE INTO relationship_annotations
               (from_definition_id, to_definition_id, relationship_type, semantic, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (from_definition_id, to_definition_id, relationship_type, semantic, self._now()),
        )
        return cur.lastrowid if cur.rowcount else None

    def get_relationships(self, definition_id: int) -> list[RelationshipAnnotation]:
        """Annotations with ``definition_id`` at either end."""
        rows = self._conn.execute(
            """SELECT * FROM relationship_annotations
               WHERE from_definition_id = ? OR to_definition_id = ?
               ORDER BY relationship_id""",
            (definition_id, definition_id),
        ).fetchall()
        return [
            RelationshipAnnotation(
                relationship_id=r["relationship_id"],
                from_definition_id=r["from_definition_id"],
                to_definition_id=r["to_definition_id"],
                relationship_type=r["relationship_type"],
                semantic=r["semantic"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def delete_relationships_for(self, definition_id: int) -> int:
        cur = self._conn.execute(
            """DELETE FROM relationship_annotations
               WHERE from_definition_id = ? OR to_definition_id = ?""",
            (definition_id, definition_id),
        )
        return cur.rowcount

    def count_relationships(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM relationship_annotations").fetchone()[0]

    # ── Modules ──

    def insert_module(
        self,
        slug: str,
        name: str,
        parent_id: Optional[int] = None,
        description: str = "",
        is_test: bool = False,
    ) -> Module:
        full_path, depth = slug, 0
        if parent_id is not None:
            parent = self.get_module(parent_id)
            if parent is None:
                raise ValueError(f"Unknown parent module {parent_id}")
            full_path = f"{parent.full_path}.{slug}"
            depth = parent.depth + 1

        module = Module(
            parent_id=parent_id, slug=slug, full_path=full_path, name=name,
            description=description, depth=depth, is_test=is_test, created_at=self._now(),
        )
        cur = self._conn.execute(
            """INSERT INTO modules
               (parent_id, slug, full_path, name, description, depth, is_test, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (module.parent_id, module.slug, module.full_path, module.name, module.description,
             module.depth, 1 if module.is_test else 0, module.created_at),
        )
        module.module_id = cur.lastrowid
        return module

    def get_module(self, module_id: int) -> Optional[Module]:
        row = self._conn.execute("SELECT * FROM modules WHERE module_id = ?", (module_id,)).fetchone()
        return self._row_to_module(row) if row else None

    def get_module_by_path(self, full_path: str) -> Optional[Module]:
        row = self._conn.execute(
            "SELECT * FROM modules WHERE full_path = ?", (full_path,)
        ).fetchone()
        return self._row_to_module(row) if row else None

    def list_modules(self) -> list[Module]:
        rows = self._conn.execute("SELECT * FROM modules ORDER BY full_path").fetchall()
        return [self._row_to_module(r) for r in rows]

    def count_modules(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM modules").fetchone()[0]

    def _row_to_module(self, row) -> Module:
        return Module(
            module_id=row["module_id"],
            parent_id=row["parent_id"],
            slug=row["slug"],
            full_path=row["full_path"],
            name=row["name"],
            description=row["description"],
            depth=row["depth"],
            is_test=bool(row["is_test"]),
            created_at=row["created_at"],
        )

    def assign_definition(self, definition_id: int, module_id: int) -> None:
        """Place a definition in a module, replacing any previous assignment."""
        self._conn.execute(
            """INSERT INTO module_members (definition_id, module_id, assigned_at) VALUES (?, ?, ?)
               ON CONFLICT(definition_id) DO UPDATE SET
                 module_id = excluded.module_id,
                 assigned_at = excluded.assigned_at""",
            (definition_id, module_id, self._now()),
        )

    def get_definition_module_id(self, definition_id: int) -> Optional[int]:
        row = self._conn.execute(
            "SELECT module_id FROM module_members WHERE definition_id = ?", (definition_id,)
        ).fetchone()
        return row["module_id"] if row else None

    def module_ids_for_definitions(self, definition_ids: Iterable[int]) -> set[int]:
        return self._ids_in(
            "SELECT DISTINCT module_id FROM module_members WHERE definition_id IN ({ids})",
            definition_ids,
        )

    def get_unassigned_definitions(self) -> list[Definition]:
        rows = self._conn.execute(
            """SELECT d.*, f.rel_path FROM definitions d
               JOIN files f ON d.file_id = f.file_id
               LEFT JOIN module_members mm ON mm.definition_id = d.definition_id
               WHERE mm.definition_id IS NULL
               ORDER BY f.rel_path, d.line_start"""
        ).fetchall()
        return [self._row_to_definition(r) for r in rows]

    def get_modules_with_members(self) -> list[ModuleWithMembers]:
        modules: dict[int, ModuleWithMembers] = {}
        for row in self._conn.execute(
            "SELECT module_id, full_path, name, is_test FROM modules ORDER BY full_path"
        ):
            modules[row["module_id"]] = ModuleWithMembers(
                module_id=row["module_id"],
                full_path=row["full_path"],
                name=row["name"],
                is_test=bool(row["is_test"]),
            )
        for row in self._conn.execute(
            "SELECT module_id, definition_id FROM module_members ORDER BY definition_id"
        ):
            if row["module_id"] in modules:
                modules[row["module_id"]].member_ids.append(row["definition_id"])
        return list(modules.values())

    # ── Interactions ──

    def insert_interaction(self, i: Interaction) -> Interaction:
        cur = self._conn.execute(
            """INSERT INTO interactions
               (from_module_id, to_module_id, direction, weight, pattern, symbols_json,
                semantic, source, confidence, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (i.from_module_id, i.to_module_id, i.direction, i.weight, i.pattern,
             json.dumps(i.symbols), i.semantic, i.source, i.confidence,
             i.created_at or self._now()),
        )
        i.interaction_id = cur.lastrowid
        return i

    def upsert_interaction(
        self,
        from_module_id: int,
        to_module_id: int,
        weight: int,
        pattern: Optional[str],
        symbols: list[str],
        source: str = "ast",
    ) -> tuple[int, bool]:
        """Create or refresh the edge for a module pair. Returns (id, created)."""
        existing = self.get_interaction_by_modules(from_module_id, to_module_id)
        if existing:
            self._conn.execute(
                """UPDATE interactions SET weight = ?, pattern = ?, symbols_json = ?
                   WHERE interaction_id = ?""",
                (weight, pattern, json.dumps(symbols), existing.interaction_id),
            )
            return existing.interaction_id, False

        created = self.insert_interaction(Interaction(
            from_module_id=from_module_id, to_module_id=to_module_id, weight=weight,
            pattern=pattern, symbols=symbols, source=source,
        ))
        return created.interaction_id, True

    _INTERACTION_SELECT = """
        SELECT i.*, fm.full_path AS from_module_path, tm.full_path AS to_module_path
        FROM interactions i
        LEFT JOIN modules fm ON i.from_module_id = fm.module_id
        LEFT JOIN modules tm ON i.to_module_id = tm.module_id
    """

    def get_interaction(self, interaction_id: int) -> Optional[Interaction]:
        row = self._conn.execute(
            self._INTERACTION_SELECT + " WHERE i.interaction_id = ?", (interaction_id,)
        ).fetchone()
        return self._row_to_interaction(row) if row else None

    def get_interaction_by_modules(self, from_module_id: int, to_module_id: int) -> Optional[Interaction]:
        row = self._conn.execute(
            self._INTERACTION_SELECT + " WHERE i.from_module_id = ? AND i.to_module_id = ?",
            (from_module_id, to_module_id),
        ).fetchone()
        return self._row_to_interaction(row) if row else None

    def list_interactions(self) -> list[Interaction]:
        rows = self._conn.execute(
            self._INTERACTION_SELECT + " ORDER BY i.interaction_id"
        ).fetchall()
        return [self._row_to_interaction(r) for r in rows]

    def count_interactions(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM interactions").fetchone()[0]

    def interaction_ids_touching_modules(self, module_ids: Iterable[int]) -> set[int]:
        return self._ids_in(
            """SELECT DISTINCT interaction_id FROM interactions
               WHERE from_module_id IN ({ids}) OR to_module_id IN ({ids})""",
            module_ids,
            repeat=2,
        )

    def set_interaction_direction(self, interaction_id: int, direction: str) -> bool:
        cur = self._conn.execute(
            "UPDATE interactions SET direction = ? WHERE interaction_id = ?",
            (direction, interaction_id),
        )
        return cur.rowcount > 0

    def set_interaction_symbols(self, interaction_id: int, symbols: list[str]) -> bool:
        cur = self._conn.execute(
            "UPDATE interactions SET symbols_json = ? WHERE interaction_id = ?",
            (json.dumps(symbols), interaction_id),
        )
        return cur.rowcount > 0

    def has_module_import_path(self, from_module_id: int, to_module_id: int) -> bool:
        """Whether a file with members in one module imports a file with members in the other."""
        row = self._conn.execute(
            """SELECT 1 FROM imports im
               JOIN definitions fd ON fd.file_id = im.file_id
               JOIN module_members fm ON fm.definition_id = fd.definition_id
               JOIN definitions td ON td.file_id = im.to_file_id
               JOIN module_members tm ON tm.definition_id = td.definition_id
               WHERE fm.module_id = ? AND tm.module_id = ?
               LIMIT 1""",
            (from_module_id, to_module_id),
        ).fetchone()
        return row is not None

    def delete_interaction(self, interaction_id: int) -> bool:
        """Delete an interaction and the flow steps that reference it."""
        self._conn.execute("DELETE FROM flow_steps WHERE interaction_id = ?", (interaction_id,))
        cur = self._conn.execute(
            "DELETE FROM interactions WHERE interaction_id = ?", (interaction_id,)
        )
        return cur.rowcount > 0

    def _row_to_interaction(self, row) -> Interaction:
        return Interaction(
            interaction_id=row["interaction_id"],
            from_module_id=row["from_module_id"],
            to_module_id=row["to_module_id"],
            direction=row["direction"],
            weight=row["weight"],
            pattern=row["pattern"],
            symbols=json.loads(row["symbols_json"] or "[]"),
            semantic=row["semantic"],
            source=row["source"],
            confidence=row["confidence"],
            created_at=row["created_at"],
            from_module_path=row["from_module_path"] or "",
            to_module_path=row["to_module_path"] or "",
        )

    # ── Flows ──

    def insert_flow(self, flow: Flow) -> Flow:
        cur = self._conn.execute(
            """INSERT INTO flows
               (name, slug, entry_point_module_id, entry_point_id, entry_path, stakeholder,
                description, action_type, target_entity, tier, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (flow.name, flow.slug, flow.entry_point_module_id, flow.entry_point_id,
             flow.entry_path, flow.stakeholder, flow.description, flow.action_type,
             flow.target_entity, flow.tier, flow.created_at or self._now()),
        )
        flow.flow_id = cur.lastrowid
        return flow

    def add_flow_steps(self, flow_id: int, interaction_ids: Sequence[int]) -> None:
        self._conn.executemany(
            "INSERT INTO flow_steps (flow_id, step_order, interaction_id) VALUES (?, ?, ?)",
            [(flow_id, order, iid) for order, iid in enumerate(interaction_ids, start=1)],
        )

    def add_flow_definition_steps(self, flow_id: int, steps: Sequence[tuple[int, int]]) -> None:
        self._conn.executemany(
            """INSERT INTO flow_definition_steps
               (flow_id, step_order, from_definition_id, to_definition_id) VALUES (?, ?, ?, ?)""",
            [(flow_id, order, a, b) for order, (a, b) in enumerate(steps, start=1)],
        )

    def add_subflow_steps(self, flow_id: int, subflow_ids: Sequence[int]) -> None:
        self._conn.executemany(
            "INSERT INTO flow_subflow_steps (flow_id, step_order, subflow_id) VALUES (?, ?, ?)",
            [(flow_id, order, sid) for order, sid in enumerate(subflow_ids, start=1)],
        )

    def get_flow(self, flow_id: int) -> Optional[Flow]:
        row = self._conn.execute("SELECT * FROM flows WHERE flow_id = ?", (flow_id,)).fetchone()
        return self._row_to_flow(row) if row else None

    def get_flow_by_slug(self, slug: str) -> Optional[Flow]:
        row = self._conn.execute("SELECT * FROM flows WHERE slug = ?", (slug,)).fetchone()
        return self._row_to_flow(row) if row else None

    def list_flows(self) -> list[Flow]:
        rows = self._conn.execute("SELECT * FROM flows ORDER BY tier, flow_id").fetchall()
        return [self._row_to_flow(r) for r in rows]

    def count_flows(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM flows").fetchone()[0]

    def get_flow_interaction_ids(self, flow_id: int) -> list[int]:
        rows = self._conn.execute(
            "SELECT interaction_id FROM flow_steps WHERE flow_id = ? ORDER BY step_order",
            (flow_id,),
        ).fetchall()
        return [r[0] for r in rows]

    def get_flow_definition_steps(self, flow_id: int) -> list[tuple[int, int]]:
        rows = self._conn.execute(
            """SELECT from_definition_id, to_definition_id FROM flow_definition_steps
               WHERE flow_id = ? ORDER BY step_order""",
            (flow_id,),
        ).fetchall()
        return [(r[0], r[1]) for r in rows]

    def get_subflow_ids(self, flow_id: int) -> list[int]:
        rows = self._conn.execute(
            "SELECT subflow_id FROM flow_subflow_steps WHERE flow_id = ? ORDER BY step_order",
            (flow_id,),
        ).fetchall()
        return [r[0] for r in rows]

    def flow_ids_for_interactions(self, interaction_ids: Iterable[int]) -> set[int]:
        return self._ids_in(
            "SELECT DISTINCT flow_id FROM flow_steps WHERE interaction_id IN ({ids})",
            interaction_ids,
        )

    def delete_all_flows(self) -> int:
        """Delete every flow; step tables and feature links cascade."""
        cur = self._conn.execute("DELETE FROM flows")
        return cur.rowcount

    def _row_to_flow(self, row) -> Flow:
        return Flow(
            flow_id=row["flow_id"],
            name=row["name"],
            slug=row["slug"],
            entry_point_module_id=row["entry_point_module_id"],
            entry_point_id=row["entry_point_id"],
            entry_path=row["entry_path"],
            stakeholder=row["stakeholder"],
            description=row["description"],
            action_type=row["action_type"],
            target_entity=row["target_entity"],
            tier=row["tier"],
            created_at=row["created_at"],
        )

    # ── Features ──

    def insert_feature(self, name: str, slug: str, description: str = "") -> Feature:
        feature = Feature(name=name, slug=slug, description=description, created_at=self._now())
        cur = self._conn.execute(
            "INSERT INTO features (name, slug, description, created_at) VALUES (?, ?, ?, ?)",
            (feature.name, feature.slug, feature.description, feature.created_at),
        )
        feature.feature_id = cur.lastrowid
        return feature

    def add_feature_flow(self, feature_id: int, flow_id: int) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO feature_flows (feature_id, flow_id) VALUES (?, ?)",
            (feature_id, flow_id),
        )

    def list_features(self) -> list[Feature]:
        rows = self._conn.execute("SELECT * FROM features ORDER BY feature_id").fetchall()
        return [
            Feature(
                feature_id=r["feature_id"], name=r["name"], slug=r["slug"],
                description=r["description"], created_at=r["created_at"],
            )
            for r in rows
        ]

    def get_feature_flow_ids(self, feature_id: int) -> list[int]:
        rows = self._conn.execute(
            "SELECT flow_id FROM feature_flows WHERE feature_id = ? ORDER BY flow_id", (feature_id,)
        ).fetchall()
        return [r[0] for r in rows]

    def get_feature_flow_slugs(self) -> list[tuple[int, str]]:
        """(feature_id, flow slug) for every feature membership."""
        rows = self._conn.execute(
            """SELECT ff.feature_id, f.slug FROM feature_flows ff
               JOIN flows f ON ff.flow_id = f.flow_id
               ORDER BY ff.feature_id, f.slug"""
        ).fetchall()
        return [(r[0], r[1]) for r in rows]

    def feature_ids_for_flows(self, flow_ids: Iterable[int]) -> set[int]:
        return self._ids_in(
            "SELECT DISTINCT feature_id FROM feature_flows WHERE flow_id IN ({ids})",
            flow_ids,
        )

    # ── Stats ──

    def get_stats(self) -> IndexStats:
        def count(table: str) -> int:
            return self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

        return IndexStats(
            total_files=count("files"),
            total_definitions=count("definitions"),
            total_imports=count("imports"),
            total_symbols=count("symbols"),
            total_usages=count("usages"),
            total_modules=count("modules"),
            total_interactions=count("interactions"),
            total_flows=count("flows"),
            total_features=count("features"),
            indexed_at=self.get_meta("indexed_at"),
        )
