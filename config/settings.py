"""
Configuration loader for the outreach execution engine.
Reads settings from YAML file with environment variable substitution,
then applies environment-variable overrides for the runtime knobs.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./outreach.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                # "sql" | "memory"


@dataclass
class JobsConfig:
    poll_interval_seconds: float = 30.0
    concurrency: int = 5                # jobs claimed and run per tick
    timeout_seconds: float = 300.0      # per-job deadline
    max_attempts: int = 3


@dataclass
class SchedulerConfig:
    interval_seconds: float = 300.0
    batch_size: int = 100
    campaign_step_priority: int = 2     # above background jobs (priority 0)
    initial_delay_seconds: float = 5.0


@dataclass
class CleanupConfig:
    retention_days: int = 30
    interval_seconds: float = 86400.0


@dataclass
class CredentialsConfig:
    encryption_key: str = ""


@dataclass
class Settings:
    app_name: str = "OutreachEngine"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)


_settings: Optional[Settings] = None

# env var → (section, attribute, converter)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "DATABASE_URL": ("database", "url", str),
    "STORE_BACKEND": ("database", "store_backend", str),
    "JOB_POLL_INTERVAL": ("jobs", "poll_interval_seconds", float),
    "JOB_CONCURRENCY": ("jobs", "concurrency", int),
    "JOB_TIMEOUT": ("jobs", "timeout_seconds", float),
    "JOB_MAX_ATTEMPTS": ("jobs", "max_attempts", int),
    "CAMPAIGN_SCHEDULER_INTERVAL": ("scheduler", "interval_seconds", float),
    "CAMPAIGN_SCHEDULER_BATCH_SIZE": ("scheduler", "batch_size", int),
    "CLEANUP_RETENTION_DAYS": ("cleanup", "retention_days", int),
    "ENCRYPTION_KEY": ("credentials", "encryption_key", str),
}


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _apply_section(target: Any, raw: dict[str, Any]) -> None:
    for key, value in raw.items():
        if not hasattr(target, key):
            continue
        current = getattr(target, key)
        # YAML-substituted values arrive as strings; coerce to the field's type.
        if isinstance(current, bool):
            value = value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes")
        elif isinstance(current, (int, float)) and not isinstance(value, type(current)):
            value = type(current)(value)
        setattr(target, key, value)


def _apply_env_overrides(settings: Settings) -> None:
    for env_name, (section, attr, convert) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from e
        setattr(getattr(settings, section), attr, value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "OUTREACH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = bool(raw.get("debug", settings.debug))

        for section in ("database", "jobs", "scheduler", "cleanup", "credentials"):
            if isinstance(raw.get(section), dict):
                _apply_section(getattr(settings, section), raw[section])

    _apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
