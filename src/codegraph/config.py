"""
Project configuration: loads .codegraph.yaml and provides defaults.

Supports:
- project name
- ignore patterns (augments .gitignore)
- sync strategy thresholds and lock behaviour
- flow tracing bounds and dedup threshold
- LLM batching, timeout and retries
- logging level and format
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

CONFIG_NAMES = (".codegraph.yaml", ".codegraph.yml")


@dataclass
class SyncThresholds:
    """Ratios above which a sync escalates to a full re-enrichment."""
    defs_changed_ratio: float = 0.40
    modules_affected_ratio: float = 0.60
    interactions_affected_ratio: float = 0.70

    def validate(self) -> None:
        for name in ("defs_changed_ratio", "modules_affected_ratio", "interactions_affected_ratio"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise ConfigError.invalid_value(f"sync.thresholds.{name}", value, "must be between 0 and 1")


@dataclass
class SyncConfig:
    thresholds: SyncThresholds = field(default_factory=SyncThresholds)
    busy_timeout: float = 0.0  # seconds; 0 fails fast on a held write lock


@dataclass
class FlowConfig:
    max_depth: int = 15
    max_steps: int = 20
    overlap_threshold: float = 0.75


@dataclass
class LLMConfig:
    batch_size: int = 20
    timeout: float = 60.0
    retries: int = 0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ConfigError.invalid_value(name, raw, "must be a mapping")
    return raw


def _number(raw: dict[str, Any], section: str, key: str, default: Any, cast: type) -> Any:
    value = raw.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigError.invalid_value(f"{section}.{key}", value, f"expected {cast.__name__}") from None


@dataclass
class ProjectConfig:
    """Project configuration from .codegraph.yaml."""
    name: str = ""
    ignore: list[str] = field(default_factory=list)
    sync: SyncConfig = field(default_factory=SyncConfig)
    flows: FlowConfig = field(default_factory=FlowConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, project_root: Path) -> "ProjectConfig":
        """Load config from the project root, or return defaults."""
        for name in CONFIG_NAMES:
            config_path = project_root / name
            if config_path.exists():
                break
        else:
            return cls()

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError.parse_error(str(config_path), str(e)) from e

        if not isinstance(data, dict):
            raise ConfigError.parse_error(str(config_path), "top level must be a mapping")
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "ProjectConfig":
        project = _section(data, "project")
        sync_raw = _section(data, "sync")
        thresholds_raw = _section(sync_raw, "thresholds")
        flows_raw = _section(data, "flows")
        llm_raw = _section(data, "llm")
        logging_raw = _section(data, "logging")

        defaults = SyncThresholds()
        thresholds = SyncThresholds(
            defs_changed_ratio=_number(
                thresholds_raw, "sync.thresholds", "defs_changed_ratio", defaults.defs_changed_ratio, float,
            ),
            modules_affected_ratio=_number(
                thresholds_raw, "sync.thresholds", "modules_affected_ratio", defaults.modules_affected_ratio, float,
            ),
            interactions_affected_ratio=_number(
                thresholds_raw, "sync.thresholds", "interactions_affected_ratio",
                defaults.interactions_affected_ratio, float,
            ),
        )
        thresholds.validate()

        flow_defaults = FlowConfig()
        llm_defaults = LLMConfig()
        config = cls(
            name=project.get("name", ""),
            ignore=list(data.get("ignore") or []),
            sync=SyncConfig(
                thresholds=thresholds,
                busy_timeout=_number(sync_raw, "sync", "busy_timeout", 0.0, float),
            ),
            flows=FlowConfig(
                max_depth=_number(flows_raw, "flows", "max_depth", flow_defaults.max_depth, int),
                max_steps=_number(flows_raw, "flows", "max_steps", flow_defaults.max_steps, int),
                overlap_threshold=_number(
                    flows_raw, "flows", "overlap_threshold", flow_defaults.overlap_threshold, float,
                ),
            ),
            llm=LLMConfig(
                batch_size=_number(llm_raw, "llm", "batch_size", llm_defaults.batch_size, int),
                timeout=_number(llm_raw, "llm", "timeout", llm_defaults.timeout, float),
                retries=_number(llm_raw, "llm", "retries", llm_defaults.retries, int),
            ),
            logging=LoggingConfig(
                level=str(logging_raw.get("level", "INFO")),
                json=bool(logging_raw.get("json", False)),
            ),
        )
        if config.llm.batch_size < 1:
            raise ConfigError.invalid_value("llm.batch_size", config.llm.batch_size, "must be at least 1")
        if config.flows.max_steps < 1:
            raise ConfigError.invalid_value("flows.max_steps", config.flows.max_steps, "must be at least 1")
        return config

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.name:
            result["project"] = {"name": self.name}
        if self.ignore:
            result["ignore"] = self.ignore

        if self.sync != SyncConfig():
            t = self.sync.thresholds
            result["sync"] = {
                "thresholds": {
                    "defs_changed_ratio": t.defs_changed_ratio,
                    "modules_affected_ratio": t.modules_affected_ratio,
                    "interactions_affected_ratio": t.interactions_affected_ratio,
                },
                "busy_timeout": self.sync.busy_timeout,
            }
        if self.flows != FlowConfig():
            result["flows"] = {
                "max_depth": self.flows.max_depth,
                "max_steps": self.flows.max_steps,
                "overlap_threshold": self.flows.overlap_threshold,
            }
        if self.llm != LLMConfig():
            result["llm"] = {
                "batch_size": self.llm.batch_size,
                "timeout": self.llm.timeout,
                "retries": self.llm.retries,
            }
        if self.logging != LoggingConfig():
            result["logging"] = {"level": self.logging.level, "json": self.logging.json}
        return result
