"""
Change detection: compare files on disk against the indexed file records.

Pure scan-and-diff; nothing is written to the database.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import pathspec
import structlog

from ..errors import SourceError
from ..parsers.registry import supported_extensions
from ..store.db import Database

logger = structlog.get_logger()


def compute_file_hash(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


# Directories never walked
ALWAYS_SKIP = {
    "__pycache__", ".git", ".hg", ".svn",
    "node_modules", ".venv", "venv", "env",
    "build", "dist", ".eggs", ".mypy_cache", ".pytest_cache",
    ".tox", ".nox",
}


@dataclass
class FileChange:
    path: str  # relative to the source directory, posix separators
    absolute_path: Path
    status: str  # new, modified, deleted
    file_id: Optional[int] = None  # set for modified and deleted


@dataclass
class ChangeDetectionResult:
    changes: list[FileChange] = field(default_factory=list)
    unchanged_count: int = 0

    def by_status(self, status: str) -> list[FileChange]:
        return [c for c in self.changes if c.status == status]


def build_ignore_spec(root: Path, ignore: Iterable[str] = ()) -> Optional[pathspec.PathSpec]:
    """Build a pathspec from .gitignore plus configured ignore patterns."""
    patterns = list(ignore)

    gitignore = root / ".gitignore"
    if gitignore.exists():
        try:
            patterns.extend(gitignore.read_text(errors="replace").splitlines())
        except OSError as e:
            logger.warning("gitignore_unreadable", path=str(gitignore), error=str(e))

    if patterns:
        return pathspec.PathSpec.from_lines("gitwildmatch", patterns)
    return None


def check_source_directory(root: Path) -> None:
    """Raise SourceError when the source directory cannot be listed."""
    if not root.is_dir():
        raise SourceError.unreadable(str(root), "not a directory")
    try:
        os.listdir(root)
    except OSError as e:
        raise SourceError.unreadable(str(root), str(e)) from e


def discover_files(root: Path, ignore: Iterable[str] = ()) -> list[tuple[Path, str]]:
    """Walk the project, return sorted (abs_path, rel_path) for parseable files."""
    root = root.resolve()
    check_source_directory(root)
    exts = supported_extensions()
    ignore_spec = build_ignore_spec(root, ignore)
    results = []

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [
            d for d in dirnames
            if d not in ALWAYS_SKIP and not d.endswith(".egg-info")
        ]

        rel_dir = Path(dirpath).relative_to(root).as_posix()
        if ignore_spec:
            prefix = "" if rel_dir == "." else f"{rel_dir}/"
            dirnames[:] = [
                d for d in dirnames
                if not ignore_spec.match_file(f"{prefix}{d}/")
            ]

        for fname in filenames:
            if Path(fname).suffix.lower() not in exts:
                continue
            abs_path = Path(dirpath) / fname
            rel_path = abs_path.relative_to(root).as_posix()
            if ignore_spec and ignore_spec.match_file(rel_path):
                continue
            results.append((abs_path, rel_path))

    results.sort(key=lambda item: item[1])
    return results


def detect_changes(directory: Path, db: Database, ignore: Iterable[str] = ()) -> ChangeDetectionResult:
    """Classify every file as new, modified, deleted or unchanged."""
    directory = Path(directory).resolve()
    indexed = {f.rel_path: f for f in db.list_files()}
    result = ChangeDetectionResult()
    seen: set[str] = set()

    for abs_path, rel_path in discover_files(directory, ignore):
        seen.add(rel_path)
        existing = indexed.get(rel_path)
        if existing is None:
            result.changes.append(FileChange(rel_path, abs_path, "new"))
        elif compute_file_hash(abs_path) != existing.content_hash:
            result.changes.append(FileChange(rel_path, abs_path, "modified", existing.file_id))
        else:
            result.unchanged_count += 1

    for rel_path, existing in sorted(indexed.items()):
        if rel_path not in seen:
            result.changes.append(FileChange(
                rel_path, directory / rel_path, "deleted", existing.file_id,
            ))

    logger.debug(
        "changes_detected",
        new=len(result.by_status("new")),
        modified=len(result.by_status("modified")),
        deleted=len(result.by_status("deleted")),
        unchanged=result.unchanged_count,
    )
    return result
