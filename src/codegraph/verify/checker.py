"""
Quality checker: runs the built-in checks and applies their automatic fixes.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from ..core.cascade import GHOST_QUERIES
from ..core.graph import get_enriched_module_call_graph
from ..store.db import Database
from .checks import BUILTIN_CHECKS, Check, CheckContext, QualityIssue

logger = structlog.get_logger()


@dataclass
class CheckResult:
    passed: bool
    issues: list[QualityIssue] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def errors(self) -> list[QualityIssue]:
        return [i for i in self.issues if i.severity == "error"]


class QualityChecker:
    """Run quality checks against the graph."""

    def __init__(self, db: Database, checks: Optional[list[Check]] = None):
        self.db = db
        self.checks = checks if checks is not None else BUILTIN_CHECKS

    def run(self) -> CheckResult:
        ctx = CheckContext.from_db(self.db)
        issues: list[QualityIssue] = []
        for check in self.checks:
            issues.extend(check(self.db, ctx))

        severities = Counter(i.severity for i in issues)
        return CheckResult(
            passed=severities["error"] == 0,
            issues=issues,
            stats={
                "interactions_checked": len(ctx.interactions),
                "errors": severities["error"],
                "warnings": severities["warning"],
                "fixable": sum(1 for i in issues if i.fix_action),
            },
        )

    def apply_fixes(self, issues: Iterable[QualityIssue]) -> int:
        """Apply supported fix actions. Returns the number applied."""
        applied = 0
        ghost_categories: set[str] = set()
        with self.db.transaction():
            for issue in issues:
                if issue.fix_action == "remove-ghost":
                    ghost_categories.add(issue.category)
                elif issue.entity_id is not None and self._fix_interaction(issue):
                    applied += 1

            for query in GHOST_QUERIES:
                if query.category not in ghost_categories:
                    continue
                *pre, main = query.repair_sql
                for sql in pre:
                    self.db.execute(sql)
                applied += self.db.execute(main).rowcount

        logger.info("quality_fixes_applied", count=applied)
        return applied

    def _fix_interaction(self, issue: QualityIssue) -> bool:
        if issue.fix_action == "remove-interaction":
            return self.db.delete_interaction(issue.entity_id)
        if issue.fix_action == "set-direction-uni":
            return self.db.set_interaction_direction(issue.entity_id, "uni")
        if issue.fix_action == "rebuild-symbols":
            interaction = self.db.get_interaction(issue.entity_id)
            if interaction is None:
                return False
            symbols: list[str] = []
            for edge in get_enriched_module_call_graph(self.db, [interaction.from_module_id]):
                if (edge.from_module_id, edge.to_module_id) == (interaction.from_module_id, interaction.to_module_id):
                    symbols = [s.name for s in edge.called_symbols]
            return self.db.set_interaction_symbols(issue.entity_id, symbols)
        return False
