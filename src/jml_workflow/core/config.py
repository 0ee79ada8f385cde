"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class SchedulerConfig(BaseModel):
    """Periodic tick settings."""
    batch_size: int = 50  # Max due items / waiting instances per tick
    max_item_retries: int = 3  # Scheduled item marked Failed at this many errors
    concurrency: int = 1  # Worker threads for due-item dispatch
    tick_interval_seconds: int = 60


class SLAConfig(BaseModel):
    """Fallback SLA thresholds for steps that declare none."""
    default_warning_hours: float = 24
    default_breach_hours: float = 48

    @model_validator(mode="after")
    def warning_before_breach(self) -> "SLAConfig":
        if self.default_warning_hours >= self.default_breach_hours:
            raise ValueError("sla.default_warning_hours must be lower than default_breach_hours")
        return self


class RetryConfig(BaseModel):
    """In-call retry options used before an operation is dead-lettered."""
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff_multiplier: float = 2
    jitter: bool = False


class ResumeRetryConfig(BaseModel):
    """Dead-letter sweep options for failed workflow resumes."""
    max_retries: int = 5
    initial_delay_seconds: int = 5
    max_delay_seconds: int = 300
    interval_seconds: int = 60
    max_concurrent_retries: int = 3
    abandon_after_hours: int = 24


class StepErrorDefaults(BaseModel):
    """Default backoff for steps whose error policy is 'retry'."""
    retry_count: int = 3
    retry_delay_minutes: float = 5
    backoff_multiplier: float = 2
    max_delay_minutes: float = 60


class DefinitionCacheConfig(BaseModel):
    ttl_seconds: int = 300
    max_entries: int = 128


class StorageConfig(BaseModel):
    backend: Literal["memory", "file"] = "file"
    root: Path = Field(default=Path(".jml-workflow"))


class EngineConfig(BaseSettings):
    """Main engine configuration."""
    model_config = SettingsConfigDict(
        env_prefix="JML_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="allow",
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    sla: SLAConfig = Field(default_factory=SLAConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    resume_retry: ResumeRetryConfig = Field(default_factory=ResumeRetryConfig)
    step_errors: StepErrorDefaults = Field(default_factory=StepErrorDefaults)
    definition_cache: DefinitionCacheConfig = Field(default_factory=DefinitionCacheConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> EngineConfig:
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    return EngineConfig(**data)


def load_config(config_path: Path = Path("jml-workflow.yaml")) -> EngineConfig:
    """Load engine configuration from a YAML file.

    Returns the cached config when the file's mtime hasn't changed. A missing
    file is not an error: defaults (plus JML_* environment overrides) apply.
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration."
        )
        return EngineConfig()

    resolved = config_path.resolve()
    result = _get_cached_or_load(resolved, _load_config_from_file)
    return result if result is not None else EngineConfig()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ${VAR} values in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for warning messages (e.g., "storage.root")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'})"
            )
            return data
        return value
    return data
