"""
Incremental indexer: apply detected file changes to the database.

Each changed file is parsed outside any transaction, then written inside
its own transaction: file row, definitions (matched by name and kind for
modified files), imports, symbols, usages, dirty marks and the re-resolution
of files that import it. A failure rolls back that file only; files already
written stay committed. A post pass repairs dangling references, rebuilds
inheritance edges and interactions, removes ghost rows and propagates dirty
marks to interactions, flows and features.
"""

from __future__ import annotations

import hashlib
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

import structlog

from ..config import ProjectConfig
from ..errors import ParseError
from ..parsers.base import ParsedDefinition, ParsedFile
from ..parsers.registry import get_parser
from ..store.db import Database
from ..store.models import Definition, File
from .cascade import cascade_delete_definitions, cascade_delete_file, clean_dangling_symbol_refs, clean_ghost_rows
from .changes import ChangeDetectionResult, FileChange, check_source_directory, detect_changes, discover_files
from .dirty import DirtyTracker
from .graph import create_inheritance_relationships, sync_from_call_graph
from .resolver import insert_file_references, insert_internal_usages, re_resolve_file
from .strategy import StrategyDecision, select_strategy

logger = structlog.get_logger()

LogFn = Callable[[str], None]

# Layers that record a changed definition itself
DEFINITION_LAYERS = ("metadata", "relationships", "contracts")


@dataclass
class SyncResult:
    files_added: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    definitions_added: int = 0
    definitions_removed: int = 0
    definitions_updated: int = 0
    imports_refreshed: int = 0
    stale_metadata_count: int = 0
    unassigned_count: int = 0
    interactions_recalculated: bool = False
    dependent_files_re_resolved: int = 0
    dangling_refs_cleaned: int = 0
    ghost_rows_cleaned: int = 0
    inheritance_created: int = 0
    added_definition_ids: list[int] = field(default_factory=list)
    removed_definition_ids: list[int] = field(default_factory=list)
    updated_definition_ids: list[int] = field(default_factory=list)
    parse_failures: list[str] = field(default_factory=list)


@dataclass
class _Parsed:
    parsed: ParsedFile
    content_hash: str
    size_bytes: int
    modified_at: str


def _new_definition(file_id: int, pd: ParsedDefinition, definition_id: int = 0) -> Definition:
    return Definition(
        definition_id=definition_id,
        file_id=file_id,
        name=pd.name,
        kind=pd.kind,
        is_exported=pd.is_exported,
        line_start=pd.line_start,
        col_start=pd.col_start,
        line_end=pd.line_end,
        col_end=pd.col_end,
        extends_name=pd.extends_name,
        implements=list(pd.implements),
    )


def _module_names(rel_path: str) -> list[str]:
    """Dotted names an absolute import could use to reach ``rel_path``."""
    parts = rel_path[: -len(".py")].split("/") if rel_path.endswith(".py") else rel_path.split("/")
    if parts[-1] == "__init__":
        parts = parts[:-1]
    return [".".join(parts[i:]) for i in range(len(parts))]


class IncrementalIndexer:
    """Applies one batch of file changes. Use ``apply_sync`` rather than this directly."""

    def __init__(
        self,
        db: Database,
        root: Path,
        tracker: Optional[DirtyTracker] = None,
        ignore: Iterable[str] = (),
        verbose: bool = False,
        log_fn: Optional[LogFn] = None,
    ):
        self.db = db
        self.root = Path(root).resolve()
        self.tracker = tracker or DirtyTracker(db)
        self.ignore = list(ignore)
        self.verbose = verbose
        self.log_fn = log_fn or (lambda msg: None)
        self.result = SyncResult()
        self.known_paths: set[str] = set()
        self._pending_ids: set[int] = set()
        self._deleted_ids: set[int] = set()
        self._re_resolved: set[int] = set()

    def _log(self, msg: str):
        if self.verbose:
            self.log_fn(msg)

    def run(self, changes: list[FileChange]) -> SyncResult:
        deleted = [c for c in changes if c.status == "deleted"]
        modified = [c for c in changes if c.status == "modified"]
        added = [c for c in changes if c.status == "new"]

        r = self.result
        r.files_added, r.files_modified, r.files_deleted = len(added), len(modified), len(deleted)
        if not changes:
            return r

        check_source_directory(self.root)
        self.known_paths = {rel for _, rel in discover_files(self.root, self.ignore)}
        self._deleted_ids = {c.file_id for c in deleted if c.file_id is not None}
        self._pending_ids = {c.file_id for c in modified if c.file_id is not None}
        logger.info("sync_started", new=len(added), modified=len(modified), deleted=len(deleted))

        if deleted:
            self._log(f"  Deleting {len(deleted)} removed file(s)...")
        for change in deleted:
            self._apply_deleted(change)

        if modified or added:
            self._log(f"  Parsing {len(modified) + len(added)} file(s)...")
        for change in modified:
            self._pending_ids.discard(change.file_id)
            parsed = self._parse(change)
            if parsed is not None:
                self._apply_modified(change, parsed)

        for change in added:
            parsed = self._parse(change)
            if parsed is not None:
                self._apply_new(change, parsed)

        r.dependent_files_re_resolved = len(self._re_resolved)
        if self._re_resolved:
            logger.info("dependents_reresolved", count=len(self._re_resolved))
        self._finish()
        return r

    # ── Parsing (outside transactions) ──

    def _parse(self, change: FileChange) -> Optional[_Parsed]:
        parser = get_parser(change.path)
        if parser is None:
            return None
        try:
            raw = change.absolute_path.read_bytes()
            stat = change.absolute_path.stat()
            parsed = parser.parse(raw.decode("utf-8", errors="replace"), change.path, self.known_paths)
        except (OSError, ParseError) as e:
            logger.warning("parse_failed", path=change.path, error=str(e))
            self.log_fn(f"  Warning: Failed to parse {change.path}: {e}")
            self.result.parse_failures.append(change.path)
            return None

        return _Parsed(
            parsed=parsed,
            content_hash=hashlib.sha256(raw).hexdigest(),
            size_bytes=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime).isoformat(),
        )

    # ── Per-file transactions ──

    def _apply_deleted(self, change: FileChange):
        db, r = self.db, self.result
        with db.transaction():
            dependents = db.get_dependent_file_ids(change.file_id)
            def_ids = [d.definition_id for d in db.get_file_definitions(change.file_id)]
            module_ids = db.module_ids_for_definitions(def_ids)

            cascade_delete_file(db, change.file_id)

            r.definitions_removed += len(def_ids)
            r.removed_definition_ids.extend(def_ids)
            self._mark_removed(def_ids)
            self.tracker.mark_many("modules", module_ids, "parent_dirty")
            self._re_resolve(dependents)

        logger.debug("file_synced", path=change.path, status="deleted", removed=len(def_ids))

    def _apply_new(self, change: FileChange, p: _Parsed):
        db, r = self.db, self.result
        with db.transaction():
            f = db.insert_file(File(
                rel_path=change.path,
                language=p.parsed.language,
                content_hash=p.content_hash,
                size_bytes=p.size_bytes,
                modified_at=p.modified_at,
            ))
            new_ids = [
                db.insert_definition(_new_definition(f.file_id, pd)).definition_id
                for pd in p.parsed.definitions
            ]
            r.definitions_added += len(new_ids)
            r.unassigned_count += len(new_ids)
            r.added_definition_ids.extend(new_ids)
            for layer in DEFINITION_LAYERS:
                self.tracker.mark_many(layer, new_ids, "added")

            insert_file_references(db, f.file_id, p.parsed)
            insert_internal_usages(db, f.file_id, p.parsed)
            waiting = db.get_files_with_unresolved_imports(_module_names(change.path))
            self._re_resolve((db.get_files_importing_path(change.path) | waiting) - {f.file_id})

        logger.debug("file_synced", path=change.path, status="new", added=len(new_ids))

    def _apply_modified(self, change: FileChange, p: _Parsed):
        db, r = self.db, self.result
        file_id = change.file_id
        with db.transaction():
            old_by_identity: dict[tuple[str, str], deque[Definition]] = defaultdict(deque)
            for d in db.get_file_definitions(file_id):
                old_by_identity[(d.name, d.kind)].append(d)

            updated_ids: list[int] = []
            added_ids: list[int] = []
            for pd in p.parsed.definitions:
                queue = old_by_identity.get((pd.name, pd.kind))
                if queue:
                    old = queue.popleft()
                    db.update_definition(_new_definition(file_id, pd, old.definition_id))
                    if db.clear_definition_metadata(old.definition_id):
                        r.stale_metadata_count += 1
                    db.delete_relationships_for(old.definition_id)
                    updated_ids.append(old.definition_id)
                else:
                    added_ids.append(db.insert_definition(_new_definition(file_id, pd)).definition_id)

            removed_ids = [d.definition_id for q in old_by_identity.values() for d in q]
            module_ids = db.module_ids_for_definitions(updated_ids + removed_ids)
            cascade_delete_definitions(db, removed_ids)

            r.definitions_updated += len(updated_ids)
            r.definitions_added += len(added_ids)
            r.definitions_removed += len(removed_ids)
            r.unassigned_count += len(added_ids)
            r.updated_definition_ids.extend(updated_ids)
            r.added_definition_ids.extend(added_ids)
            r.removed_definition_ids.extend(removed_ids)

            for layer in DEFINITION_LAYERS:
                self.tracker.mark_many(layer, added_ids, "added")
                self.tracker.mark_many(layer, updated_ids, "modified")
            self._mark_removed(removed_ids)
            self.tracker.mark_many("modules", module_ids, "parent_dirty")

            db.delete_file_imports(file_id)
            db.delete_internal_symbols(file_id)
            r.imports_refreshed += 1
            db.update_file(file_id, p.content_hash, p.size_bytes, p.modified_at)

            insert_file_references(db, file_id, p.parsed)
            insert_internal_usages(db, file_id, p.parsed)
            self._re_resolve(db.get_dependent_file_ids(file_id))

        logger.debug(
            "file_synced", path=change.path, status="modified",
            updated=len(updated_ids), added=len(added_ids), removed=len(removed_ids),
        )

    def _mark_removed(self, definition_ids: list[int]):
        """Removed definitions stay dirty for relationships only; other layers forget them."""
        for layer in DEFINITION_LAYERS:
            if layer != "relationships":
                self.tracker.forget(layer, definition_ids)
        self.tracker.mark_many("relationships", definition_ids, "removed")

    def _re_resolve(self, file_ids: Iterable[int]):
        """Rebuild imports of files that depend on the file just written."""
        for dep_id in sorted(set(file_ids) - self._pending_ids - self._deleted_ids):
            if re_resolve_file(self.db, dep_id, self.root, self.known_paths):
                self._re_resolved.add(dep_id)

    # ── Post pass ──

    def _finish(self):
        db, r = self.db, self.result
        with db.transaction():
            r.dangling_refs_cleaned = clean_dangling_symbol_refs(db)

            self._log("  Recreating inheritance relationships...")
            r.inheritance_created = create_inheritance_relationships(db)

            if db.count_modules() > 0:
                self._log("  Syncing interactions from call graph...")
                synced = sync_from_call_graph(db)
                self.tracker.mark_many("interactions", synced.created_ids, "added")
                r.interactions_recalculated = True

            self._log("  Cleaning ghost rows...")
            r.ghost_rows_cleaned = clean_ghost_rows(db)

            self._log("  Propagating dirty sets...")
            propagate_dirty(db, self.tracker)


def propagate_dirty(db: Database, tracker: DirtyTracker) -> None:
    """Mark interactions, flows and features downstream of dirty modules."""
    module_ids = tracker.get_dirty_ids("modules")
    if not module_ids:
        return
    interaction_ids = db.interaction_ids_touching_modules(module_ids)
    tracker.mark_many("interactions", interaction_ids, "parent_dirty")
    if not interaction_ids:
        return
    flow_ids = db.flow_ids_for_interactions(interaction_ids)
    tracker.mark_many("flows", flow_ids, "parent_dirty")
    if not flow_ids:
        return
    tracker.mark_many("features", db.feature_ids_for_flows(flow_ids), "parent_dirty")


def apply_sync(
    changes: list[FileChange] | ChangeDetectionResult,
    directory: Path,
    db: Database,
    verbose: bool = False,
    log_fn: Optional[LogFn] = None,
    tracker: Optional[DirtyTracker] = None,
    ignore: Iterable[str] = (),
) -> SyncResult:
    """Apply detected changes. Raises DatabaseLockedError when another writer holds the lock."""
    if isinstance(changes, ChangeDetectionResult):
        changes = changes.changes
    indexer = IncrementalIndexer(db, directory, tracker, ignore, verbose, log_fn)
    return indexer.run(changes)


@dataclass
class SyncReport:
    changes: ChangeDetectionResult
    result: Optional[SyncResult] = None
    decision: Optional[StrategyDecision] = None

    @property
    def has_changes(self) -> bool:
        return bool(self.changes.changes)


def run_sync(
    directory: Path,
    db: Database,
    config: Optional[ProjectConfig] = None,
    check_only: bool = False,
    verbose: bool = False,
    log_fn: Optional[LogFn] = None,
) -> SyncReport:
    """Detect and apply changes, then pick the enrichment strategy.

    Fatal preconditions (unreadable directory, empty database) raise before
    anything is written.
    """
    config = config or ProjectConfig()
    directory = Path(directory).resolve()
    check_source_directory(directory)
    db.require_indexed()

    changes = detect_changes(directory, db, config.ignore)
    report = SyncReport(changes=changes)
    if check_only:
        return report

    report.result = apply_sync(changes, directory, db, verbose, log_fn, ignore=config.ignore)
    report.decision = select_strategy(db, report.result, config.sync.thresholds)
    logger.info(
        "strategy_selected",
        strategy=report.decision.strategy,
        reason=report.decision.reason,
    )
    with db.transaction():
        db.set_meta("indexed_at", datetime.now().isoformat())
    return report


def index_project(
    directory: Path,
    db: Database,
    config: Optional[ProjectConfig] = None,
    verbose: bool = False,
    log_fn: Optional[LogFn] = None,
) -> SyncResult:
    """Index every file of a project into an empty database."""
    config = config or ProjectConfig()
    directory = Path(directory).resolve()
    changes = detect_changes(directory, db, config.ignore)
    result = apply_sync(changes, directory, db, verbose, log_fn, ignore=config.ignore)
    with db.transaction():
        db.set_meta("indexed_at", datetime.now().isoformat())
    return result
