"""
Configuration management for the task scheduler.

Handles loading, validating, updating and saving the scheduler configuration.
Values come from (lowest to highest precedence): model defaults, the JSON
config file, TASK_SCHEDULER_* environment variables (a .env file is loaded
first), and runtime updates through ConfigManager.update().
"""

import os
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from task_scheduler.atomic import AtomicFileWriter
from task_scheduler.errors import ValidationError


# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "task-scheduler"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"

# Environment variable prefix for overrides (TASK_SCHEDULER_POLL_INTERVAL_MS=500)
ENV_PREFIX = "TASK_SCHEDULER_"

logger = logging.getLogger(__name__)


class DependencyFailurePolicy(str, Enum):
    """What a non-zero exit does to tasks declared 'after' the failed one."""
    WITHHOLD = "withhold"   # dependents are simply not triggered
    CASCADE = "cascade"     # dependents are recorded as failed runs, transitively


class SchedulerConfig(BaseModel):
    """Complete scheduler configuration."""

    name: str = Field(default="task-scheduler", description="Instance name")
    port: int = Field(default=8888, description="Port for the control surface")

    # Collection files
    tasks_path: Optional[str] = Field(default=None, description="Directory holding <collection>.tasks.json files")
    auto_save: bool = Field(default=True, description="Save collection files after every task change")
    watch_tasks_path: bool = Field(default=False, description="Reload collection files when they change on disk")
    watch_debounce_ms: int = Field(default=500, ge=0)

    # Logging
    log_path: Optional[str] = Field(default=None, description="JSON-lines log file")
    log_level: str = Field(default="INFO")

    # Dispatch
    poll_interval_ms: int = Field(default=1000, gt=0, description="Dispatcher tick interval")
    worker_to_cpu_ratio: float = Field(default=1.25, gt=0, description="Max workers = cpu_count * ratio")
    pause: bool = Field(default=False, description="Stop dispatching new runs")
    shutdown_poll_interval_ms: int = Field(default=250, gt=0)

    # Tasks
    default_collection: str = Field(default="default", description="Collection for tasks created without one")
    dependency_failure_policy: DependencyFailurePolicy = DependencyFailurePolicy.WITHHOLD


def coerce_value(field_name: str, value: Any) -> Any:
    """
    Convert a string value from a query string or the environment.

    Only bool, int and float settings are converted ("true" -> True,
    "500" -> 500); every other setting keeps the string as given.
    """
    if not isinstance(value, str):
        return value
    annotation = SchedulerConfig.model_fields[field_name].annotation
    text = value.strip()
    if annotation is bool:
        lowered = text.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        return value
    for number_type in (int, float):
        if annotation is number_type:
            try:
                return number_type(text)
            except ValueError:
                return value
    return value


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect TASK_SCHEDULER_<FIELD> overrides for known config fields."""
    environ = os.environ if environ is None else environ
    overrides = {}
    for field_name in SchedulerConfig.model_fields:
        key = ENV_PREFIX + field_name.upper()
        if key in environ:
            overrides[field_name] = coerce_value(field_name, environ[key])
    return overrides


class ConfigManager:
    """
    Manages scheduler configuration.

    Handles loading configuration from disk, making updates,
    and persisting changes atomically.
    """

    def __init__(
        self,
        config_file: Optional[Path] = None,
        env_file: Optional[Path] = None,
        use_environment: bool = True
    ):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to configuration file. Defaults to ~/.config/task-scheduler/config.json
            env_file: Optional .env file loaded before reading overrides
            use_environment: Apply TASK_SCHEDULER_* environment overrides
        """
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE

        if use_environment:
            if env_file:
                load_dotenv(env_file)
            else:
                load_dotenv()

        self.use_environment = use_environment
        self.config = self._load_config()

    @classmethod
    def from_config(cls, config: SchedulerConfig, config_file: Optional[Path] = None) -> "ConfigManager":
        """Wrap an in-memory configuration (nothing is read from disk)."""
        manager = cls.__new__(cls)
        manager.config_file = Path(config_file) if config_file else None
        manager.use_environment = False
        manager.config = config
        return manager

    def _load_config(self) -> SchedulerConfig:
        """Load configuration from file or create default."""
        data = AtomicFileWriter.read_json(self.config_file)

        if data is None:
            data = {}

        try:
            config = SchedulerConfig(**data)
        except PydanticValidationError as e:
            logger.warning(f"Invalid config file {self.config_file}, using defaults: {e}")
            config = SchedulerConfig()

        if self.use_environment:
            # Each override is applied on its own; a bad one is skipped
            for key, value in env_overrides().items():
                try:
                    config = SchedulerConfig(**{**config.model_dump(), key: value})
                except PydanticValidationError as e:
                    logger.warning(f"Ignoring invalid {ENV_PREFIX}{key.upper()}={value!r}: {e}")

        return config

    def save_config(self) -> None:
        """Save configuration atomically."""
        if self.config_file is None:
            return
        AtomicFileWriter.write_json(self.config_file, self.config.model_dump(mode="json"), indent=2)

    def reload(self) -> None:
        """Reload configuration from disk."""
        self.config = self._load_config()

    def update(self, **kwargs) -> SchedulerConfig:
        """
        Update configuration values.

        String values are coerced ("true" -> True, "1.5" -> 1.5). The update is
        validated as a whole; nothing changes if any value is rejected.

        Args:
            **kwargs: Config fields to update

        Returns:
            The new configuration

        Raises:
            ValidationError: Unknown key or invalid value
        """
        unknown = [key for key in kwargs if key not in SchedulerConfig.model_fields]
        if unknown:
            raise ValidationError(f"Unknown setting: {', '.join(sorted(unknown))}")

        data = self.config.model_dump()
        data.update({key: coerce_value(key, value) for key, value in kwargs.items()})

        try:
            self.config = SchedulerConfig(**data)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        return self.config
