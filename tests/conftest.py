"""
Shared fixtures. The fixture_project/ tree is a small shop codebase with a
predictable module and call structure; mutation scenarios work on a copy.
"""

import asyncio
import logging
import re
import shutil
from pathlib import Path

import pytest
import structlog

from codegraph.core.indexer import index_project
from codegraph.core.pipeline import EnrichmentPipeline
from codegraph.llm.classification import CSV_HEADER
from codegraph.llm.service import LLMService
from codegraph.store.db import Database

FIXTURE_DIR = Path(__file__).parent / "fixture_project"

# fixture_project holds source to index, not tests to collect
collect_ignore = ["fixture_project"]


class ScriptedLLM(LLMService):
    """Answers classification prompts from a member-name table.

    ``entry_points`` maps member name -> (action_type, target_entity, stakeholder);
    every other member listed in the prompt is answered as not an entry point.
    """

    _MODULE_RE = re.compile(r"^## Module (\d+): ")
    _MEMBER_RE = re.compile(r"^\s+- (\S+) \(")

    def __init__(self, entry_points=None):
        self.entry_points = entry_points or {}
        self.calls = 0

    async def complete(self, system_prompt, user_prompt, options=None):
        self.calls += 1
        rows = [CSV_HEADER]
        module_id = None
        for line in user_prompt.splitlines():
            m = self._MODULE_RE.match(line)
            if m:
                module_id = m.group(1)
                continue
            m = self._MEMBER_RE.match(line)
            if not m:
                continue
            name = m.group(1)
            if name in self.entry_points:
                action, entity, stakeholder = self.entry_points[name]
                rows.append(f"{module_id},{name},true,{action},{entity},{stakeholder},entry")
            else:
                rows.append(f"{module_id},{name},false,,,,internal")
        return "```csv\n" + "\n".join(rows) + "\n```"


SHOP_ENTRY_POINTS = {
    "post_order": ("create", "order", "user"),
    "delete_order": ("delete", "order", "user"),
}


def enrich(db, strategy="full", llm=None):
    return asyncio.run(EnrichmentPipeline(db, llm=llm).run(strategy))


@pytest.fixture(autouse=True)
def _restore_logging():
    """CLI tests configure logging globally; drop the installed handler afterwards."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def project(tmp_path):
    """A writable copy of the fixture project."""
    root = tmp_path / "project"
    shutil.copytree(FIXTURE_DIR, root)
    return root


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def indexed_db(db, project):
    """Fixture project indexed and fully enriched without an LLM."""
    index_project(project, db)
    enrich(db)
    return db


@pytest.fixture
def traced_db(db, project):
    """Fixture project indexed and enriched with the order endpoints classified."""
    index_project(project, db)
    enrich(db, llm=ScriptedLLM(SHOP_ENTRY_POINTS))
    return db


def module_id(db, path):
    return db.get_module_by_path(path).module_id


def definition_id(db, name):
    return db.find_definitions(name)[0].definition_id
