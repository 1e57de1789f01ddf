"""
CLI commands: argparse subcommands for codegraph.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from ..config import ProjectConfig
from ..core.changes import check_source_directory
from ..core.dirty import DirtyTracker
from ..core.indexer import index_project, run_sync
from ..core.pipeline import EnrichmentPipeline
from ..errors import CodeGraphError, DatabaseLockedError
from ..logging import configure_logging
from ..store.db import Database
from ..verify.checker import QualityChecker
from . import formatter

DB_NAME = ".codegraph.db"

LOCKED_MESSAGE = "Another codegraph process is writing to the database. Try again shortly."

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_LOCKED = 2


def _root(args) -> Path:
    return Path(args.project).resolve()


def _open_db(args, config: ProjectConfig) -> Database:
    """Open the project's existing database."""
    return Database.open_existing(_root(args) / DB_NAME, busy_timeout=config.sync.busy_timeout)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init(args, config: ProjectConfig) -> int:
    """Build the index from scratch and run full enrichment."""
    root = _root(args)
    check_source_directory(root)
    db_path = root / DB_NAME
    for suffix in ("", "-wal", "-shm"):
        Path(f"{db_path}{suffix}").unlink(missing_ok=True)

    db = Database(db_path, busy_timeout=config.sync.busy_timeout)
    try:
        if not args.json:
            print(f"Indexing {root}...", flush=True)
        result = index_project(root, db, config, verbose=args.verbose, log_fn=print)
        pipeline = asyncio.run(EnrichmentPipeline(db, config=config).run("full"))
        if args.json:
            _print_json({"sync": asdict(result), "enrichment": asdict(pipeline), "stats": asdict(db.get_stats())})
        else:
            print(formatter.format_stats(db.get_stats()))
    finally:
        db.close()
    return EXIT_OK


def cmd_sync(args, config: ProjectConfig) -> int:
    """Apply file changes and re-enrich what they made stale."""
    db = _open_db(args, config)
    try:
        report = run_sync(
            _root(args), db, config,
            check_only=args.check, verbose=args.verbose, log_fn=print,
        )
        if args.check:
            if args.json:
                _print_json(asdict(report.changes))
            else:
                print(formatter.format_changes(report.changes))
            return EXIT_FAILURE if report.has_changes else EXIT_OK

        pipeline = None
        if not args.no_enrich:
            pipeline = asyncio.run(EnrichmentPipeline(db, config=config).run(report.decision.strategy))

        if args.json:
            _print_json({
                "changes": asdict(report.changes),
                "result": asdict(report.result),
                "decision": asdict(report.decision),
                "enrichment": asdict(pipeline) if pipeline else None,
            })
        elif not report.has_changes:
            print(formatter.format_changes(report.changes))
        else:
            print(formatter.format_sync(report))
            if pipeline:
                print(formatter.format_pipeline(pipeline))
    finally:
        db.close()
    return EXIT_OK


def cmd_status(args, config: ProjectConfig) -> int:
    """Show index statistics and the dirty ledger."""
    db = _open_db(args, config)
    try:
        stats = db.get_stats()
        summary = DirtyTracker(db).get_summary()
        if args.json:
            _print_json({"stats": asdict(stats), "dirty": summary})
        else:
            print(formatter.format_stats(stats))
            print(formatter.format_dirty(summary))
    finally:
        db.close()
    return EXIT_OK


def cmd_verify(args, config: ProjectConfig) -> int:
    """Run quality checks, optionally applying fixes."""
    db = _open_db(args, config)
    try:
        checker = QualityChecker(db)
        result = checker.run()
        fixed = checker.apply_fixes(result.issues) if args.fix else 0
        if fixed:
            result = checker.run()

        if args.json:
            _print_json({**asdict(result), "fixed": fixed})
        else:
            if args.fix:
                print(f"Applied {fixed} fixes.")
            print(formatter.format_check_result(result))
    finally:
        db.close()
    return EXIT_OK if result.passed else EXIT_FAILURE


def cmd_flows(args, config: ProjectConfig) -> int:
    """List persisted flows."""
    db = _open_db(args, config)
    try:
        flows = db.list_flows()
        if args.json:
            _print_json([asdict(f) for f in flows])
        else:
            print(formatter.format_flows(flows))
    finally:
        db.close()
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="codegraph",
        description="Incremental code graph indexer",
    )
    parser.add_argument(
        "--project", "-p", default=".",
        help="Project root directory (default: current dir)",
    )
    parser.add_argument(
        "--json", "-j", action="store_true", default=False,
        help="Output as JSON",
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # init
    p = sub.add_parser("init", help="Build the index from scratch")
    p.add_argument("--verbose", "-v", action="store_true", help="Print per-file progress")

    # sync
    p = sub.add_parser("sync", help="Apply file changes incrementally")
    p.add_argument("--check", action="store_true", help="Report changes without writing (exit 1 if any)")
    p.add_argument("--no-enrich", action="store_true", help="Skip re-enrichment after the sync")
    p.add_argument("--verbose", "-v", action="store_true", help="Print per-file progress")

    # status
    sub.add_parser("status", help="Show index statistics and dirty layers")

    # verify
    p = sub.add_parser("verify", help="Run quality checks")
    p.add_argument("--fix", action="store_true", help="Apply automatic fixes")

    # flows
    sub.add_parser("flows", help="List persisted flows")

    return parser


COMMANDS = {
    "init": cmd_init,
    "sync": cmd_sync,
    "status": cmd_status,
    "verify": cmd_verify,
    "flows": cmd_flows,
}


def run_cli(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    cmd = COMMANDS.get(args.command)
    if cmd is None:
        parser.print_help()
        return EXIT_OK

    try:
        config = ProjectConfig.load(_root(args))
        configure_logging(level=config.logging.level, json_format=config.logging.json)
        return cmd(args, config)
    except DatabaseLockedError:
        print(LOCKED_MESSAGE, file=sys.stderr)
        return EXIT_LOCKED
    except CodeGraphError as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILURE
