"""
Reference resolution: write a parsed file's imports, symbols and usages,
linking each symbol to the definition it names.

Named symbols resolve by name in the target file. When the target does not
define the name itself, its own imports are followed (a re-export chain) up
to ``MAX_REEXPORT_DEPTH`` hops, with cycle detection.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

import structlog

from ..errors import ParseError
from ..parsers.base import ParsedFile, SymbolUsage
from ..parsers.registry import get_parser
from ..store.db import Database
from ..store.models import Import, Symbol, Usage

logger = structlog.get_logger()

MAX_REEXPORT_DEPTH = 5


def resolve_symbol(
    db: Database,
    file_id: int,
    name: str,
    depth: int = 0,
    seen: Optional[set[int]] = None,
) -> Optional[int]:
    """Return the definition ``name`` refers to when imported from ``file_id``."""
    defs = db.find_definitions(name, file_id=file_id)
    if defs:
        return defs[0].definition_id

    seen = set() if seen is None else seen
    if depth >= MAX_REEXPORT_DEPTH or file_id in seen:
        return None
    seen.add(file_id)

    for imp in db.get_file_imports(file_id):
        if imp.to_file_id is None:
            continue
        if imp.kind == "import-all":
            found = resolve_symbol(db, imp.to_file_id, name, depth + 1, seen)
            if found is not None:
                return found
            continue
        for sym in db.get_import_symbols(imp.import_id):
            if sym.kind == "named" and sym.local_name == name:
                found = resolve_symbol(db, imp.to_file_id, sym.name, depth + 1, seen)
                if found is not None:
                    return found
    return None


def _to_usage(u: SymbolUsage) -> Usage:
    return Usage(
        line_no=u.line,
        col=u.col,
        context=u.context,
        argument_count=u.argument_count,
        is_method_call=u.is_method_call,
        is_constructor_call=u.is_constructor_call,
        receiver_name=u.receiver_name,
    )


def insert_file_references(db: Database, file_id: int, parsed: ParsedFile) -> int:
    """Insert imports, import-linked symbols and usages. Returns imports written."""
    for ref in parsed.references:
        target = db.get_file_by_path(ref.resolved_path) if ref.resolved_path else None
        to_file_id = target.file_id if target else None
        imp = db.insert_import(Import(
            file_id=file_id,
            to_file_id=to_file_id,
            kind=ref.type,
            source=ref.source,
            resolved_path=ref.resolved_path,
            is_external=ref.is_external,
            line_no=ref.line,
            col=ref.col,
        ))

        for imported in ref.imports:
            definition_id = None
            if to_file_id is not None and imported.kind != "import-all" and imported.name != "*":
                definition_id = resolve_symbol(db, to_file_id, imported.name)
            sym = db.insert_symbol(Symbol(
                file_id=file_id,
                import_id=imp.import_id,
                definition_id=definition_id,
                name=imported.name,
                local_name=imported.local_name,
                kind=imported.kind,
            ))
            db.insert_usages(sym.symbol_id, [_to_usage(u) for u in imported.usages])

    return len(parsed.references)


def insert_internal_usages(db: Database, file_id: int, parsed: ParsedFile) -> int:
    """Insert same-file symbols for the file's own definitions."""
    by_name = {d.name: d.definition_id for d in db.get_file_definitions(file_id)}
    written = 0
    for internal in parsed.internal_usages:
        definition_id = by_name.get(internal.definition_name)
        if definition_id is None:
            continue
        sym = db.insert_symbol(Symbol(
            file_id=file_id,
            import_id=None,
            definition_id=definition_id,
            name=internal.definition_name,
            local_name=internal.definition_name,
            kind="internal",
        ))
        db.insert_usages(sym.symbol_id, [_to_usage(u) for u in internal.usages])
        written += 1
    return written


def re_resolve_file(db: Database, file_id: int, root: Path, known_paths: Iterable[str]) -> bool:
    """Re-parse an unchanged file from disk and rebuild its imports.

    Used for files that import a file changed in this sync. A file that can
    no longer be read or parsed keeps its previous rows.
    """
    f = db.get_file(file_id)
    if f is None:
        return False
    parser = get_parser(f.rel_path)
    if parser is None:
        return False

    try:
        content = (root / f.rel_path).read_text(encoding="utf-8", errors="replace")
        parsed = parser.parse(content, f.rel_path, known_paths)
    except (OSError, ParseError) as e:
        logger.warning("dependent_reparse_failed", path=f.rel_path, error=str(e))
        return False

    db.delete_file_imports(file_id)
    insert_file_references(db, file_id, parsed)
    return True
