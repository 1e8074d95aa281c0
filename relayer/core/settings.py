from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError


@dataclass(frozen=True)
class Settings:
    env: str
    event_names: tuple[str, ...]
    redis_url: Optional[str]
    postgres_dsn: Optional[str]
    log_level: str = "INFO"
    poll_interval_seconds: float = 5.0
    batch_size: int = 25
    maintenance_interval_seconds: float = 30.0
    pending_timeout_minutes: int = 30
    submission_max_attempts: int = 5
    confirmation_max_attempts: int = 20
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    api_port: int = 8000


def _number(section: Dict[str, Any], key: str, default: Any, cast) -> Any:
    raw = section.get(key, default)
    try:
        return cast(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be a valid {cast.__name__}, got: {raw!r}") from e


def validate_settings(s: Settings) -> None:
    if not s.event_names:
        raise ConfigurationError("at least one event name must be configured")
    if any(not n.strip() for n in s.event_names):
        raise ConfigurationError("event names must be non-empty strings")
    if len(set(s.event_names)) != len(s.event_names):
        raise ConfigurationError("event names must be unique")
    if s.poll_interval_seconds <= 0:
        raise ConfigurationError("poll_interval_seconds must be > 0")
    if s.maintenance_interval_seconds <= 0:
        raise ConfigurationError("maintenance_interval_seconds must be > 0")
    if not (1 <= s.batch_size <= 1000):
        raise ConfigurationError("batch_size must be between 1 and 1000")
    if s.pending_timeout_minutes < 5:
        raise ConfigurationError("pending_timeout_minutes must be at least 5 minutes")
    if s.submission_max_attempts < 1:
        raise ConfigurationError("submission_max_attempts must be at least 1")
    if s.confirmation_max_attempts < 1:
        raise ConfigurationError("confirmation_max_attempts must be at least 1")
    if s.backoff_base_seconds <= 0:
        raise ConfigurationError("backoff_base_seconds must be > 0")
    if s.backoff_max_seconds < s.backoff_base_seconds:
        raise ConfigurationError("backoff_max_seconds must be >= backoff_base_seconds")
    if not isinstance(logging.getLevelName(s.log_level), int):
        raise ConfigurationError(f"log_level must be a logging level name, got: {s.log_level}")


def load_settings(path: str | Path = "config/settings.yaml") -> Settings:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"settings file not found: {p}")

    try:
        data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {p}: {e}") from e

    # Env overrides (deployment-specific endpoints and secrets stay out of the file).
    env_redis_url = os.getenv("RELAYER_REDIS_URL")
    env_postgres_dsn = os.getenv("RELAYER_POSTGRES_DSN")
    env_event_names = os.getenv("RELAYER_EVENT_NAMES")
    env_log_level = os.getenv("RELAYER_LOG_LEVEL")

    relay = data.get("relay", {}) or {}
    submission = data.get("submission", {}) or {}

    if env_event_names:
        event_names = tuple(n.strip() for n in env_event_names.split(",") if n.strip())
    else:
        event_names = tuple(str(n) for n in relay.get("event_names", []) or [])

    s = Settings(
        env=data.get("env", "dev"),
        event_names=event_names,
        redis_url=env_redis_url or (data.get("redis", {}) or {}).get("url"),
        postgres_dsn=env_postgres_dsn or (data.get("postgres", {}) or {}).get("dsn"),
        log_level=(env_log_level or data.get("log_level", "INFO")).upper(),
        poll_interval_seconds=_number(relay, "poll_interval_seconds", 5.0, float),
        batch_size=_number(relay, "batch_size", 25, int),
        maintenance_interval_seconds=_number(relay, "maintenance_interval_seconds", 30.0, float),
        pending_timeout_minutes=_number(relay, "pending_timeout_minutes", 30, int),
        submission_max_attempts=_number(submission, "max_attempts", 5, int),
        confirmation_max_attempts=_number(submission, "confirmation_max_attempts", 20, int),
        backoff_base_seconds=_number(submission, "backoff_base_seconds", 0.5, float),
        backoff_max_seconds=_number(submission, "backoff_max_seconds", 30.0, float),
        api_port=_number(data.get("api", {}) or {}, "port", 8000, int),
    )
    validate_settings(s)
    return s
