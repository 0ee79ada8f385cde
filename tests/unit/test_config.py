"""Tests for config loading, env expansion and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from jml_workflow.core.config import EngineConfig, SLAConfig, load_config


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "jml-workflow.yaml"
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.scheduler.batch_size == 50
        assert config.scheduler.tick_interval_seconds == 60
        assert config.retry.max_retries == 3
        assert config.resume_retry.abandon_after_hours == 24
        assert config.step_errors.retry_delay_minutes == 5

    def test_file_values_override_defaults(self, tmp_path):
        path = _write(tmp_path, """
scheduler:
  batch_size: 10
  concurrency: 4
sla:
  default_warning_hours: 8
  default_breach_hours: 16
storage:
  backend: memory
""")
        config = load_config(path)

        assert config.scheduler.batch_size == 10
        assert config.scheduler.concurrency == 4
        assert config.scheduler.max_item_retries == 3
        assert config.sla.default_breach_hours == 16
        assert config.storage.backend == "memory"

    def test_unchanged_file_is_served_from_cache(self, tmp_path):
        path = _write(tmp_path, "scheduler:\n  batch_size: 7\n")
        assert load_config(path) is load_config(path)

    def test_env_references_expand(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JML_TEST_DATA_DIR", "/srv/jml")
        path = _write(tmp_path, "storage:\n  root: ${JML_TEST_DATA_DIR}\n")

        assert load_config(path).storage.root == Path("/srv/jml")

    def test_unset_env_reference_is_kept(self, tmp_path, monkeypatch):
        monkeypatch.delenv("JML_TEST_UNSET", raising=False)
        path = _write(tmp_path, "storage:\n  root: ${JML_TEST_UNSET}\n")

        assert load_config(path).storage.root == Path("${JML_TEST_UNSET}")

    def test_empty_file(self, tmp_path):
        assert load_config(_write(tmp_path, "")).scheduler.batch_size == 50


class TestValidation:
    def test_warning_must_precede_breach(self):
        with pytest.raises(ValidationError, match="default_warning_hours"):
            SLAConfig(default_warning_hours=48, default_breach_hours=24)

    def test_invalid_file_raises(self, tmp_path):
        path = _write(tmp_path, "sla:\n  default_warning_hours: 10\n  default_breach_hours: 5\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            EngineConfig(storage={"backend": "postgres"})


def test_nested_environment_override(monkeypatch):
    monkeypatch.setenv("JML_SCHEDULER__BATCH_SIZE", "5")
    assert EngineConfig().scheduler.batch_size == 5
