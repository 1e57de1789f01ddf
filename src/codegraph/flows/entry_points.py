"""
Entry-point detection: collect candidate members, classify them through the
LLM batch runner, and group the entry points by module.

Classification failures never abort detection. A failed batch falls back to
``NotEntryPoint("llm unavailable")`` for each of its candidates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from ..config import LLMConfig
from ..llm.classification import (
    Candidate,
    Classification,
    EntryPoint,
    build_classification_prompt,
    not_entry_points,
    parse_classifications,
)
from ..llm.service import LLMService, run_batches
from ..store.db import Database

logger = structlog.get_logger()

CANDIDATE_KINDS = ("function", "method")


@dataclass
class EntryMember:
    definition_id: int
    name: str
    kind: str
    action_type: Optional[str] = None
    target_entity: Optional[str] = None
    stakeholder: Optional[str] = None


@dataclass
class EntryPointModule:
    module_id: int
    module_path: str
    module_name: str
    members: list[EntryMember] = field(default_factory=list)


def collect_candidates(db: Database) -> list[Candidate]:
    """Function and method members of non-test modules, by module path."""
    rows = db.query(
        """SELECT m.module_id, m.full_path, d.definition_id, d.name, d.kind
           FROM module_members mm
           JOIN modules m ON mm.module_id = m.module_id
           JOIN definitions d ON mm.definition_id = d.definition_id
           WHERE m.is_test = 0 AND d.kind IN ('function', 'method')
           ORDER BY m.full_path, d.line_start, d.definition_id"""
    )
    return [
        Candidate(
            module_id=r["module_id"],
            module_path=r["full_path"],
            definition_id=r["definition_id"],
            member_name=r["name"],
            kind=r["kind"],
        )
        for r in rows
    ]


async def classify_candidates(
    llm: LLMService,
    candidates: Sequence[Candidate],
    config: Optional[LLMConfig] = None,
) -> list[Classification]:
    config = config or LLMConfig()

    async def classify(batch: list[Candidate]) -> list[Classification]:
        system_prompt, user_prompt = build_classification_prompt(batch)
        response = await llm.complete(system_prompt, user_prompt, {"temperature": 0})
        return parse_classifications(response, batch)

    return await run_batches(
        candidates,
        config.batch_size,
        classify,
        lambda batch: not_entry_points(batch, "llm unavailable"),
        timeout=config.timeout,
        retries=config.retries,
    )


def group_entry_points(
    candidates: Sequence[Candidate],
    classifications: Sequence[Classification],
) -> list[EntryPointModule]:
    """Entry-point classifications grouped by module, in candidate order."""
    paths = {c.module_id: c.module_path for c in candidates}
    kinds = {c.definition_id: c.kind for c in candidates}
    modules: dict[int, EntryPointModule] = {}

    for c in classifications:
        if not isinstance(c, EntryPoint):
            continue
        module = modules.get(c.module_id)
        if module is None:
            path = paths.get(c.module_id, "")
            module = modules[c.module_id] = EntryPointModule(
                module_id=c.module_id,
                module_path=path,
                module_name=path.rsplit(".", 1)[-1],
            )
        module.members.append(EntryMember(
            definition_id=c.definition_id,
            name=c.member_name,
            kind=kinds.get(c.definition_id, "function"),
            action_type=c.action_type,
            target_entity=c.target_entity,
            stakeholder=c.stakeholder,
        ))
    return list(modules.values())


async def detect_entry_point_modules(
    db: Database,
    llm: LLMService,
    config: Optional[LLMConfig] = None,
) -> list[EntryPointModule]:
    candidates = collect_candidates(db)
    if not candidates:
        return []
    classifications = await classify_candidates(llm, candidates, config)
    modules = group_entry_points(candidates, classifications)
    logger.info(
        "entry_points_detected",
        candidates=len(candidates),
        modules=len(modules),
        members=sum(len(m.members) for m in modules),
    )
    return modules
