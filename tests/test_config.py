"""
Tests for project configuration loading, error types and logging setup.
"""

import logging

import pytest

from codegraph.config import ProjectConfig, SyncThresholds
from codegraph.errors import ConfigError, DatabaseLockedError, ErrorCode, StoreError
from codegraph.logging import configure_logging


class TestConfig:
    def test_defaults_without_file(self, tmp_path):
        config = ProjectConfig.load(tmp_path)
        assert config.ignore == []
        assert config.sync.thresholds == SyncThresholds(0.40, 0.60, 0.70)
        assert config.sync.busy_timeout == 0.0
        assert config.flows.max_depth == 15
        assert config.flows.max_steps == 20
        assert config.flows.overlap_threshold == 0.75
        assert config.llm.batch_size == 20

    def test_load_values(self, tmp_path):
        (tmp_path / ".codegraph.yaml").write_text(
            "project:\n  name: shop\n"
            "ignore:\n  - generated/\n"
            "sync:\n  thresholds:\n    defs_changed_ratio: 0.25\n  busy_timeout: 2\n"
            "flows:\n  overlap_threshold: 0.9\n"
            "llm:\n  batch_size: 5\n  retries: 2\n"
            "logging:\n  level: DEBUG\n  json: true\n"
        )
        config = ProjectConfig.load(tmp_path)
        assert config.name == "shop"
        assert config.ignore == ["generated/"]
        assert config.sync.thresholds.defs_changed_ratio == 0.25
        assert config.sync.thresholds.modules_affected_ratio == 0.60
        assert config.sync.busy_timeout == 2.0
        assert config.flows.overlap_threshold == 0.9
        assert config.llm.batch_size == 5
        assert config.llm.retries == 2
        assert config.logging.level == "DEBUG"
        assert config.logging.json is True

    def test_yml_extension(self, tmp_path):
        (tmp_path / ".codegraph.yml").write_text("project:\n  name: alt\n")
        assert ProjectConfig.load(tmp_path).name == "alt"

    def test_empty_file_is_defaults(self, tmp_path):
        (tmp_path / ".codegraph.yaml").write_text("")
        assert ProjectConfig.load(tmp_path) == ProjectConfig()

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / ".codegraph.yaml").write_text("sync: [unclosed\n")
        with pytest.raises(ConfigError) as exc:
            ProjectConfig.load(tmp_path)
        assert exc.value.code == ErrorCode.CONFIG_PARSE_ERROR

    def test_top_level_must_be_mapping(self, tmp_path):
        (tmp_path / ".codegraph.yaml").write_text("- a\n- b\n")
        with pytest.raises(ConfigError) as exc:
            ProjectConfig.load(tmp_path)
        assert exc.value.code == ErrorCode.CONFIG_PARSE_ERROR

    def test_threshold_out_of_range(self, tmp_path):
        (tmp_path / ".codegraph.yaml").write_text(
            "sync:\n  thresholds:\n    modules_affected_ratio: 1.5\n"
        )
        with pytest.raises(ConfigError) as exc:
            ProjectConfig.load(tmp_path)
        assert exc.value.code == ErrorCode.CONFIG_INVALID_VALUE
        assert exc.value.details["field"] == "sync.thresholds.modules_affected_ratio"

    def test_batch_size_must_be_positive(self, tmp_path):
        (tmp_path / ".codegraph.yaml").write_text("llm:\n  batch_size: 0\n")
        with pytest.raises(ConfigError):
            ProjectConfig.load(tmp_path)

    @pytest.mark.parametrize("body, field", [
        ("llm:\n  timeout: soon\n", "llm.timeout"),
        ("flows:\n  max_steps: [1, 2]\n", "flows.max_steps"),
        ("sync:\n  thresholds:\n    defs_changed_ratio: half\n", "sync.thresholds.defs_changed_ratio"),
    ])
    def test_non_numeric_value(self, tmp_path, body, field):
        (tmp_path / ".codegraph.yaml").write_text(body)
        with pytest.raises(ConfigError) as exc:
            ProjectConfig.load(tmp_path)
        assert exc.value.code == ErrorCode.CONFIG_INVALID_VALUE
        assert exc.value.details["field"] == field

    def test_section_must_be_mapping(self, tmp_path):
        (tmp_path / ".codegraph.yaml").write_text("flows: 5\n")
        with pytest.raises(ConfigError) as exc:
            ProjectConfig.load(tmp_path)
        assert exc.value.details["field"] == "flows"

    def test_to_dict_round_trip(self, tmp_path):
        (tmp_path / ".codegraph.yaml").write_text(
            "project:\n  name: shop\nflows:\n  max_steps: 8\nsync:\n  busy_timeout: 1.5\n"
        )
        config = ProjectConfig.load(tmp_path)
        data = config.to_dict()
        assert data["project"] == {"name": "shop"}
        assert data["flows"]["max_steps"] == 8
        assert "llm" not in data
        assert ProjectConfig._from_dict(data) == config


class TestErrors:
    def test_str_and_dict(self):
        err = StoreError.missing("/tmp/x.db")
        assert str(err).startswith("[3002] DATABASE_MISSING:")
        data = err.to_dict()
        assert data["code"] == 3002
        assert data["retryable"] is False

    def test_lock_error_is_retryable_store_error(self):
        err = DatabaseLockedError.create("/tmp/x.db")
        assert isinstance(err, StoreError)
        assert err.retryable
        assert err.error_name == "DATABASE_LOCKED"


class TestLogging:
    def test_configure_installs_single_handler(self):
        configure_logging(level="debug")
        configure_logging(level="WARNING", json_format=True)
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
