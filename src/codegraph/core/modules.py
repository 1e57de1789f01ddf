"""
Deterministic module assignment from file paths.

``shop/api/orders.py`` belongs to ``project.shop.api.orders``; a package's
``__init__.py`` belongs to the package module. Missing ancestors are created.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath

from ..store.db import Database
from ..store.models import Module
from .dirty import DirtyTracker

ROOT_SLUG = "project"


@dataclass
class ModuleAssignmentResult:
    assigned: int = 0
    created_module_ids: list[int] = field(default_factory=list)
    touched_module_ids: list[int] = field(default_factory=list)


def module_segments(rel_path: str) -> list[str]:
    parts = list(PurePosixPath(rel_path).with_suffix("").parts)
    if parts and parts[-1] == "__init__":
        parts.pop()
    return [ROOT_SLUG, *parts]


def is_test_segment(segment: str) -> bool:
    return segment == "tests" or segment.startswith("test")


def _ensure_chain(
    db: Database,
    segments: list[str],
    cache: dict[str, Module],
    created: list[int],
) -> Module:
    parent = None
    for i, slug in enumerate(segments):
        full_path = ".".join(segments[:i + 1])
        module = cache.get(full_path)
        if module is None:
            module = db.insert_module(
                slug,
                slug,
                parent_id=parent.module_id if parent else None,
                is_test=any(is_test_segment(s) for s in segments[1:i + 1]),
            )
            cache[full_path] = module
            created.append(module.module_id)
        parent = module
    return parent


def assign_modules_from_paths(db: Database, tracker: DirtyTracker) -> ModuleAssignmentResult:
    """Assign every unassigned definition to the module for its file path."""
    result = ModuleAssignmentResult()
    with db.atomic():
        cache = {m.full_path: m for m in db.list_modules()}
        touched: set[int] = set()
        for d in db.get_unassigned_definitions():
            module = _ensure_chain(db, module_segments(d.rel_path), cache, result.created_module_ids)
            db.assign_definition(d.definition_id, module.module_id)
            touched.add(module.module_id)
            result.assigned += 1

        created = set(result.created_module_ids)
        result.touched_module_ids = sorted(touched)
        tracker.mark_many("modules", created, "added")
        tracker.mark_many("modules", touched - created, "parent_dirty")
    return result
