"""
Dirty-set tracker: the persistent ledger of stale derived entities.

One row per (layer, entity). Marking is idempotent and overwrites the
reason. Callers drain a layer only after its consuming step has run, and
only after every downstream step has read it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

import structlog

from ..store.db import Database, chunked, placeholders
from ..store.models import DirtyEntry

logger = structlog.get_logger()

LAYERS = (
    "metadata",
    "relationships",
    "modules",
    "contracts",
    "interactions",
    "flows",
    "features",
)

REASONS = ("added", "modified", "parent_dirty", "removed")


def _check_layer(layer: str) -> None:
    if layer not in LAYERS:
        raise ValueError(f"Unknown dirty layer '{layer}'")


class DirtyTracker:
    """Ledger of stale entities per derived layer, stored in ``sync_dirty``."""

    def __init__(self, db: Database):
        self.db = db

    def mark_dirty(self, layer: str, entity_id: int, reason: str) -> None:
        self.mark_many(layer, [entity_id], reason)

    def mark_many(self, layer: str, entity_ids: Iterable[int], reason: str) -> int:
        _check_layer(layer)
        if reason not in REASONS:
            raise ValueError(f"Unknown dirty reason '{reason}'")
        now = datetime.now().isoformat()
        rows = [(layer, entity_id, reason, now) for entity_id in sorted(set(entity_ids))]
        if rows:
            self.db.executemany(
                "INSERT OR REPLACE INTO sync_dirty (layer, entity_id, reason, marked_at) VALUES (?, ?, ?, ?)",
                rows,
            )
        return len(rows)

    def forget(self, layer: str, entity_ids: Iterable[int]) -> int:
        """Drop ledger rows for entities that no longer exist."""
        _check_layer(layer)
        forgotten = 0
        for chunk in chunked(sorted(set(entity_ids))):
            forgotten += self.db.execute(
                f"DELETE FROM sync_dirty WHERE layer = ? AND entity_id IN ({placeholders(chunk)})",
                [layer, *chunk],
            ).rowcount
        return forgotten

    def get_dirty_ids(self, layer: str) -> list[int]:
        _check_layer(layer)
        rows = self.db.execute(
            "SELECT entity_id FROM sync_dirty WHERE layer = ? ORDER BY entity_id", (layer,)
        ).fetchall()
        return [r[0] for r in rows]

    def get_dirty(self, layer: str) -> list[DirtyEntry]:
        _check_layer(layer)
        rows = self.db.execute(
            "SELECT * FROM sync_dirty WHERE layer = ? ORDER BY entity_id", (layer,)
        ).fetchall()
        return [
            DirtyEntry(
                layer=r["layer"], entity_id=r["entity_id"],
                reason=r["reason"], marked_at=r["marked_at"],
            )
            for r in rows
        ]

    def count(self, layer: str) -> int:
        _check_layer(layer)
        return self.db.execute(
            "SELECT COUNT(*) FROM sync_dirty WHERE layer = ?", (layer,)
        ).fetchone()[0]

    def count_all(self) -> int:
        return self.db.execute("SELECT COUNT(*) FROM sync_dirty").fetchone()[0]

    def get_summary(self) -> dict[str, int]:
        """Per-layer counts, every layer present."""
        summary = {layer: 0 for layer in LAYERS}
        for row in self.db.execute("SELECT layer, COUNT(*) FROM sync_dirty GROUP BY layer"):
            summary[row[0]] = row[1]
        return summary

    def drain(self, layer: str) -> int:
        _check_layer(layer)
        with self.db.atomic():
            drained = self.db.execute("DELETE FROM sync_dirty WHERE layer = ?", (layer,)).rowcount
        logger.debug("pipeline_layer_drained", layer=layer, count=drained)
        return drained

    def clear(self) -> int:
        with self.db.atomic():
            return self.db.execute("DELETE FROM sync_dirty").rowcount
