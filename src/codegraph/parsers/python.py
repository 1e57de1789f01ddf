"""
Python parser using the stdlib ast module.

Extracts: top-level functions, classes and their methods, module-level
assignments, import references resolved against the known file set, and
call/reference usages of imported and same-file names.
"""

from __future__ import annotations

import ast
import posixpath
from dataclasses import dataclass
from typing import Iterable, Optional

from ..errors import ParseError
from .base import (
    FileReference, ImportedSymbol, InternalUsage, LanguageParser, ParsedDefinition,
    ParsedFile, SymbolUsage,
)


class PythonParser(LanguageParser):
    """Python source parser."""

    @property
    def language(self) -> str:
        return "python"

    @property
    def extensions(self) -> tuple[str, ...]:
        return (".py",)

    def parse(self, content: str, file_path: str, known_file_paths: Iterable[str] = ()) -> ParsedFile:
        try:
            tree = ast.parse(content, filename=file_path)
        except SyntaxError as e:
            raise ParseError.syntax(file_path, e.lineno, e.msg) from e
        except ValueError as e:
            # null bytes in source
            raise ParseError.syntax(file_path, None, str(e)) from e

        known = set(known_file_paths)
        visitor = _OccurrenceVisitor()
        visitor.visit(tree)

        definitions = _collect_definitions(tree)
        references, bound_names = _collect_references(tree, file_path, known, visitor.occurrences)
        internal = _collect_internal_usages(definitions, visitor.occurrences, bound_names)

        return ParsedFile(
            language=self.language,
            definitions=definitions,
            references=references,
            internal_usages=internal,
        )


# ── Definitions ──

def _collect_definitions(tree: ast.Module) -> list[ParsedDefinition]:
    all_names = _literal_all(tree)
    definitions: list[ParsedDefinition] = []

    def exported(name: str) -> bool:
        return not name.startswith("_") or name in all_names

    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            definitions.append(_definition(node, node.name, "function", exported(node.name)))

        elif isinstance(node, ast.ClassDef):
            bases = [_dotted(b) for b in node.bases]
            bases = [b for b in bases if b and b != "object"]
            cls_def = _definition(node, node.name, "class", exported(node.name))
            if bases:
                cls_def.extends_name = bases[0]
                cls_def.implements = bases[1:]
            definitions.append(cls_def)

            for item in node.body:
                if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    definitions.append(_definition(
                        item, f"{node.name}.{item.name}", "method",
                        cls_def.is_exported and not item.name.startswith("_"),
                    ))

        elif isinstance(node, (ast.Assign, ast.AnnAssign)):
            targets = node.targets if isinstance(node, ast.Assign) else [node.target]
            for target in targets:
                if not isinstance(target, ast.Name):
                    continue
                name = target.id
                if name.startswith("__") and name.endswith("__"):
                    continue
                kind = "const" if name.isupper() else "variable"
                definitions.append(_definition(node, name, kind, exported(name)))

    return definitions


def _definition(node: ast.AST, name: str, kind: str, is_exported: bool) -> ParsedDefinition:
    return ParsedDefinition(
        name=name,
        kind=kind,
        is_exported=is_exported,
        line_start=node.lineno,
        col_start=node.col_offset,
        line_end=node.end_lineno or node.lineno,
        col_end=node.end_col_offset or 0,
    )


def _literal_all(tree: ast.Module) -> set[str]:
    """Names listed in a literal module-level ``__all__``."""
    for node in tree.body:
        if not isinstance(node, ast.Assign):
            continue
        if not any(isinstance(t, ast.Name) and t.id == "__all__" for t in node.targets):
            continue
        if isinstance(node.value, (ast.List, ast.Tuple)):
            return {
                elt.value for elt in node.value.elts
                if isinstance(elt, ast.Constant) and isinstance(elt.value, str)
            }
    return set()


# ── Occurrences ──

@dataclass
class _Occurrence:
    """A name-rooted attribute chain read somewhere in the file."""
    chain: list[str]
    line: int
    col: int
    is_call: bool
    argument_count: Optional[int]
    enclosing_class: Optional[str]


class _OccurrenceVisitor(ast.NodeVisitor):
    def __init__(self):
        self.occurrences: list[_Occurrence] = []
        self._class_stack: list[str] = []

    def _record(self, chain: list[str], node: ast.AST, is_call: bool, argument_count: Optional[int] = None):
        self.occurrences.append(_Occurrence(
            chain=chain,
            line=node.lineno,
            col=node.col_offset,
            is_call=is_call,
            argument_count=argument_count,
            enclosing_class=self._class_stack[-1] if self._class_stack else None,
        ))

    def visit_ClassDef(self, node):
        for expr in [*node.decorator_list, *node.bases, *node.keywords]:
            self.visit(expr)
        self._class_stack.append(node.name)
        for stmt in node.body:
            self.visit(stmt)
        self._class_stack.pop()

    def visit_Call(self, node):
        chain = _attribute_chain(node.func)
        if chain:
            self._record(chain, node.func, is_call=True,
                         argument_count=len(node.args) + len(node.keywords))
        else:
            self.visit(node.func)
        for arg in node.args:
            self.visit(arg)
        for kw in node.keywords:
            self.visit(kw)

    def visit_Attribute(self, node):
        chain = _attribute_chain(node)
        if chain is None:
            self.generic_visit(node)
        elif isinstance(node.ctx, ast.Load):
            self._record(chain, node, is_call=False)

    def visit_Name(self, node):
        if isinstance(node.ctx, ast.Load):
            self._record([node.id], node, is_call=False)


def _to_usage(occ: _Occurrence, matched_len: int) -> SymbolUsage:
    """Usage of the symbol spelled by the first ``matched_len`` chain segments."""
    is_method = len(occ.chain) > matched_len
    return SymbolUsage(
        line=occ.line,
        col=occ.col,
        context="call" if occ.is_call else "reference",
        argument_count=occ.argument_count if occ.is_call else None,
        is_method_call=occ.is_call and is_method,
        is_constructor_call=occ.is_call and not is_method and occ.chain[-1][:1].isupper(),
        receiver_name=".".join(occ.chain[:-1]) if occ.is_call and is_method else None,
    )


# ── References ──

def _collect_references(
    tree: ast.Module,
    file_path: str,
    known: set[str],
    occurrences: list[_Occurrence],
) -> tuple[list[FileReference], set[str]]:
    """Build file references. Also returns the local names bound by imports."""
    nodes = sorted(
        (n for n in ast.walk(tree) if isinstance(n, (ast.Import, ast.ImportFrom))),
        key=lambda n: (n.lineno, n.col_offset),
    )
    references: list[FileReference] = []
    bound: set[str] = set()

    for node in nodes:
        if isinstance(node, ast.Import):
            for alias in node.names:
                local = alias.asname or alias.name
                bound.add(local.split(".")[0])
                resolved = _resolve_module(alias.name, 0, file_path, known)
                references.append(FileReference(
                    type="import",
                    source=alias.name,
                    resolved_path=resolved,
                    is_external=resolved is None,
                    imports=_namespace_symbols(local, occurrences),
                    line=node.lineno,
                    col=node.col_offset,
                ))
            continue

        module = node.module or ""
        level = node.level or 0
        source = "." * level + module
        resolved = _resolve_module(module, level, file_path, known)
        is_external = resolved is None and level == 0

        if any(alias.name == "*" for alias in node.names):
            references.append(FileReference(
                type="import-all",
                source=source,
                resolved_path=resolved,
                is_external=is_external,
                imports=[ImportedSymbol(name="*", local_name="*", kind="import-all")],
                line=node.lineno,
                col=node.col_offset,
            ))
            continue

        named: list[ImportedSymbol] = []
        for alias in node.names:
            local = alias.asname or alias.name
            bound.add(local)
            submodule = f"{module}.{alias.name}" if module else alias.name
            sub_resolved = _resolve_module(submodule, level, file_path, known)
            if sub_resolved and sub_resolved != resolved:
                references.append(FileReference(
                    type="import",
                    source=f"{source}.{alias.name}" if module else f"{source}{alias.name}",
                    resolved_path=sub_resolved,
                    is_external=False,
                    imports=_namespace_symbols(local, occurrences),
                    line=node.lineno,
                    col=node.col_offset,
                ))
                continue

            named.append(ImportedSymbol(
                name=alias.name,
                local_name=local,
                kind="named",
                usages=[_to_usage(o, 1) for o in occurrences if o.chain[0] == local],
            ))

        if named:
            references.append(FileReference(
                type="from-import",
                source=source,
                resolved_path=resolved,
                is_external=is_external,
                imports=named,
                line=node.lineno,
                col=node.col_offset,
            ))

    return references, bound


def _namespace_symbols(local: str, occurrences: list[_Occurrence]) -> list[ImportedSymbol]:
    """One symbol per ``local.attr`` accessed; a bare ``*`` symbol when none are."""
    prefix = local.split(".")
    n = len(prefix)
    by_attr: dict[str, ImportedSymbol] = {}
    bare: list[SymbolUsage] = []

    for occ in occurrences:
        if occ.chain[:n] != prefix:
            continue
        if len(occ.chain) == n:
            bare.append(_to_usage(occ, n))
            continue
        attr = occ.chain[n]
        sym = by_attr.setdefault(attr, ImportedSymbol(
            name=attr, local_name=f"{local}.{attr}", kind="namespace",
        ))
        sym.usages.append(_to_usage(occ, n + 1))

    if not by_attr:
        return [ImportedSymbol(name="*", local_name=local, kind="namespace", usages=bare)]
    return list(by_attr.values())


def _resolve_module(module: str, level: int, file_path: str, known: set[str]) -> Optional[str]:
    """Map a dotted module name to a known file path, or None."""
    if level > 0:
        base = posixpath.dirname(file_path)
        for _ in range(level - 1):
            base = posixpath.dirname(base)
        if module:
            rel = posixpath.join(base, *module.split("."))
            candidates = [f"{rel}.py", posixpath.join(rel, "__init__.py")]
        else:
            candidates = [posixpath.join(base, "__init__.py")]
        return next((c for c in candidates if c in known), None)

    if not module:
        return None
    parts = "/".join(module.split("."))
    matches = []
    for cand in (f"{parts}.py", f"{parts}/__init__.py"):
        matches.extend(p for p in known if p == cand or p.endswith("/" + cand))
    if not matches:
        return None
    return min(matches, key=lambda p: (len(p), p))


# ── Internal usages ──

def _collect_internal_usages(
    definitions: list[ParsedDefinition],
    occurrences: list[_Occurrence],
    bound_names: set[str],
) -> list[InternalUsage]:
    top_level = {d.name for d in definitions if d.kind != "method"}
    methods = {d.name for d in definitions if d.kind == "method"}
    found: dict[str, InternalUsage] = {}

    def add(name: str, occ: _Occurrence, matched_len: int):
        entry = found.setdefault(name, InternalUsage(definition_name=name))
        entry.usages.append(_to_usage(occ, matched_len))

    for occ in occurrences:
        head = occ.chain[0]
        if head in ("self", "cls"):
            if occ.enclosing_class and len(occ.chain) >= 2:
                qualified = f"{occ.enclosing_class}.{occ.chain[1]}"
                if qualified in methods:
                    add(qualified, occ, 2)
            continue

        if head not in top_level or head in bound_names:
            continue
        if len(occ.chain) >= 2 and f"{head}.{occ.chain[1]}" in methods:
            add(f"{head}.{occ.chain[1]}", occ, 2)
        else:
            add(head, occ, 1)

    order = {d.name: i for i, d in enumerate(definitions)}
    return sorted(found.values(), key=lambda u: order.get(u.definition_name, len(order)))


def _attribute_chain(node) -> Optional[list[str]]:
    parts = []
    current = node
    while isinstance(current, ast.Attribute):
        parts.append(current.attr)
        current = current.value
    if isinstance(current, ast.Name):
        parts.append(current.id)
        parts.reverse()
        return parts
    return None


def _dotted(node: ast.AST) -> str:
    chain = _attribute_chain(node)
    return ".".join(chain) if chain else ast.unparse(node)
