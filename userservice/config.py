"""Configuration management for the user lifecycle service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from .database import resolve_database_path
from .events import DEFAULT_USER_EVENTS_TOPIC


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EventSettings:
    """Settings for publishing user events to Kafka."""

    enabled: bool = False
    topic: str = DEFAULT_USER_EVENTS_TOPIC
    bootstrap_servers: str = "localhost:9092"
    client_id: str = "userservice"
    acks: str = "all"
    send_timeout: float = 10.0
    max_pending: int = 1000

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "EventSettings":
        """Create :class:`EventSettings` from raw dictionary data."""
        defaults = EventSettings()
        topic = str(data.get("topic", defaults.topic)).strip()
        if not topic:
            raise ValueError("Event topic must not be empty")

        send_timeout = float(data.get("send_timeout", defaults.send_timeout))  # type: ignore[arg-type]
        if send_timeout <= 0:
            raise ValueError("Event send_timeout must be positive")

        max_pending = int(data.get("max_pending", defaults.max_pending))  # type: ignore[arg-type]
        if max_pending < 1:
            raise ValueError("Event max_pending must be at least 1")

        return EventSettings(
            enabled=bool(data.get("enabled", defaults.enabled)),
            topic=topic,
            bootstrap_servers=str(data.get("bootstrap_servers", defaults.bootstrap_servers)),
            client_id=str(data.get("client_id", defaults.client_id)),
            acks=str(data.get("acks", defaults.acks)),
            send_timeout=send_timeout,
            max_pending=max_pending,
        )


@dataclass(frozen=True)
class ServiceSettings:
    database_path: Path
    events: EventSettings = field(default_factory=EventSettings)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "userservice.yaml").resolve(strict=False)
    return candidate


def _apply_env_overrides(events: EventSettings, environ: Mapping[str, str]) -> EventSettings:
    overrides: Dict[str, object] = {}
    if "USERSERVICE_KAFKA_ENABLED" in environ:
        overrides["enabled"] = _env_flag(environ["USERSERVICE_KAFKA_ENABLED"])
    bootstrap = environ.get("USERSERVICE_KAFKA_BOOTSTRAP_SERVERS", "").strip()
    if bootstrap:
        overrides["bootstrap_servers"] = bootstrap
    topic = environ.get("USERSERVICE_KAFKA_TOPIC", "").strip()
    if topic:
        overrides["topic"] = topic
    if not overrides:
        return events
    return replace(events, **overrides)  # type: ignore[arg-type]


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> ServiceSettings:
    """Load settings from an optional YAML file and the environment.

    A missing file is not an error: defaults apply and environment variables
    still override them.
    """
    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("USERSERVICE_CONFIG"))

    raw: Dict[str, object] = {}
    if path.is_file():
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")

    database_raw = raw.get("database") or {}
    events_raw = raw.get("events") or {}
    if not isinstance(database_raw, dict) or not isinstance(events_raw, dict):
        raise ValueError("The 'database' and 'events' sections must be mappings")

    db_value: Optional[str] = env.get("USERSERVICE_DB_PATH") or None
    if db_value is None and database_raw.get("path"):
        file_value = Path(str(database_raw["path"])).expanduser()
        if not file_value.is_absolute():
            file_value = path.parent / file_value
        db_value = str(file_value)
    database_path = resolve_database_path(db_value)

    events = _apply_env_overrides(EventSettings.from_dict(events_raw), env)
    return ServiceSettings(database_path=database_path, events=events)


__all__ = ["EventSettings", "ServiceSettings", "load_settings", "resolve_config_path"]
