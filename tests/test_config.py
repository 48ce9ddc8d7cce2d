"""Tests for task_scheduler config module."""

import json
import os

import pytest
from pydantic import ValidationError as PydanticValidationError

from task_scheduler.config import (
    ConfigManager,
    DependencyFailurePolicy,
    SchedulerConfig,
    coerce_value,
    env_overrides,
)
from task_scheduler.errors import ValidationError


class TestSchedulerConfig:
    """Tests for SchedulerConfig defaults."""

    def test_defaults(self):
        config = SchedulerConfig()

        assert config.poll_interval_ms == 1000
        assert config.worker_to_cpu_ratio == 1.25
        assert config.pause is False
        assert config.auto_save is True
        assert config.default_collection == "default"
        assert config.dependency_failure_policy == DependencyFailurePolicy.WITHHOLD

    def test_rejects_non_positive_poll_interval(self):
        with pytest.raises(PydanticValidationError):
            SchedulerConfig(poll_interval_ms=0)


class TestCoercion:
    """Tests for string value coercion."""

    @pytest.mark.parametrize("field,raw,expected", [
        ("pause", "true", True),
        ("auto_save", "FALSE", False),
        ("poll_interval_ms", "5", 5),
        ("worker_to_cpu_ratio", "1.5", 1.5),
        ("dependency_failure_policy", "cascade", "cascade"),
        ("name", "2024", "2024"),
        ("tasks_path", "123", "123"),
        ("poll_interval_ms", "soon", "soon"),
        ("poll_interval_ms", 7, 7),
    ])
    def test_coerce_value(self, field, raw, expected):
        assert coerce_value(field, raw) == expected

    def test_env_overrides(self):
        environ = {
            "TASK_SCHEDULER_PAUSE": "true",
            "TASK_SCHEDULER_POLL_INTERVAL_MS": "250",
            "TASK_SCHEDULER_NAME": "2024",
            "TASK_SCHEDULER_UNKNOWN": "x",
            "PATH": "/usr/bin",
        }
        assert env_overrides(environ) == {"pause": True, "poll_interval_ms": 250, "name": "2024"}


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_missing_file_uses_defaults(self, tmp_path):
        manager = ConfigManager(tmp_path / "config.json", use_environment=False)
        assert manager.config == SchedulerConfig()

    def test_loads_file(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"name": "prod", "worker_to_cpu_ratio": 2}))

        manager = ConfigManager(config_file, use_environment=False)

        assert manager.config.name == "prod"
        assert manager.config.worker_to_cpu_ratio == 2.0

    def test_invalid_file_falls_back_to_defaults(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"poll_interval_ms": -5}))

        manager = ConfigManager(config_file, use_environment=False)

        assert manager.config.poll_interval_ms == 1000

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"poll_interval_ms": 2000, "name": "from-file"}))
        monkeypatch.setenv("TASK_SCHEDULER_POLL_INTERVAL_MS", "500")

        manager = ConfigManager(config_file, env_file=tmp_path / "absent.env")

        assert manager.config.poll_interval_ms == 500
        assert manager.config.name == "from-file"

    def test_bad_environment_value_keeps_file(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"poll_interval_ms": 2000, "name": "from-file"}))
        monkeypatch.setenv("TASK_SCHEDULER_POLL_INTERVAL_MS", "-1")
        monkeypatch.setenv("TASK_SCHEDULER_PAUSE", "true")

        manager = ConfigManager(config_file, env_file=tmp_path / "absent.env")

        assert manager.config.poll_interval_ms == 2000
        assert manager.config.name == "from-file"
        assert manager.config.pause is True

    def test_env_file_loaded(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("TASK_SCHEDULER_LOG_LEVEL=DEBUG\n")
        try:
            manager = ConfigManager(tmp_path / "config.json", env_file=env_file)
            assert manager.config.log_level == "DEBUG"
        finally:
            os.environ.pop("TASK_SCHEDULER_LOG_LEVEL", None)

    def test_update_coerces_strings(self):
        manager = ConfigManager.from_config(SchedulerConfig())

        config = manager.update(pause="true", poll_interval_ms="500", dependency_failure_policy="cascade")

        assert config.pause is True
        assert config.poll_interval_ms == 500
        assert config.dependency_failure_policy == DependencyFailurePolicy.CASCADE
        assert manager.config is config

    def test_update_numeric_string_for_text_setting(self):
        manager = ConfigManager.from_config(SchedulerConfig())

        config = manager.update(name="2024", tasks_path="123")

        assert config.name == "2024"
        assert config.tasks_path == "123"

    def test_update_unknown_key(self):
        manager = ConfigManager.from_config(SchedulerConfig())
        with pytest.raises(ValidationError):
            manager.update(not_a_setting=1)

    def test_update_invalid_value_changes_nothing(self):
        manager = ConfigManager.from_config(SchedulerConfig())

        with pytest.raises(ValidationError):
            manager.update(pause="true", poll_interval_ms="soon")

        assert manager.config.pause is False
        assert manager.config.poll_interval_ms == 1000

    def test_save_and_reload(self, tmp_path):
        config_file = tmp_path / "nested" / "config.json"
        manager = ConfigManager(config_file, use_environment=False)
        manager.update(name="saved", pause=True)

        manager.save_config()
        reloaded = ConfigManager(config_file, use_environment=False)

        assert reloaded.config.name == "saved"
        assert reloaded.config.pause is True
        assert json.loads(config_file.read_text())["dependency_failure_policy"] == "withhold"

    def test_from_config_without_file_does_not_save(self, tmp_path):
        manager = ConfigManager.from_config(SchedulerConfig())
        manager.save_config()
        assert manager.config_file is None
