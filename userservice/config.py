"""Configuration management for the user record service."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from .counter import resolve_counter_path
from .database import resolve_database_path
from .notifier import DEFAULT_TOPIC

CACHE_BACKENDS = frozenset({"memory", "redis"})
NOTIFIER_BACKENDS = frozenset({"local", "redis"})
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_CACHE_TTL = 300.0


def _resolve_path(raw: object, base_path: Path | None) -> Path:
    candidate = Path(str(raw)).expanduser()
    if candidate.is_absolute() or base_path is None:
        return candidate.resolve(strict=False)
    return (base_path / candidate).resolve(strict=False)


def _parse_ttl(value: object) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"", "none", "unbounded", "0"}:
            return None
        value = lowered
    try:
        ttl = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid cache TTL: {value!r}") from exc
    if ttl < 0:
        raise ValueError("Cache TTL must not be negative")
    return ttl or None


@dataclass(frozen=True)
class ServiceConfig:
    """Runtime settings for the store, cache and event channel."""

    database_path: Path
    counter_path: Path
    cache_backend: str = "memory"
    cache_ttl: Optional[float] = DEFAULT_CACHE_TTL
    notifier_backend: str = "local"
    redis_url: str = DEFAULT_REDIS_URL
    event_topic: str = DEFAULT_TOPIC

    def __post_init__(self) -> None:
        if self.cache_backend not in CACHE_BACKENDS:
            raise ValueError(f"Unknown cache backend '{self.cache_backend}'")
        if self.notifier_backend not in NOTIFIER_BACKENDS:
            raise ValueError(f"Unknown notifier backend '{self.notifier_backend}'")
        if not self.event_topic.strip():
            raise ValueError("Event topic must not be empty")

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "ServiceConfig":
        """Create a :class:`ServiceConfig` from raw dictionary data."""

        database = data.get("database_path")
        counter = data.get("counter_path")
        return ServiceConfig(
            database_path=_resolve_path(database, base_path) if database else resolve_database_path(None),
            counter_path=_resolve_path(counter, base_path) if counter else resolve_counter_path(None),
            cache_backend=str(data.get("cache_backend", "memory")).strip().lower(),
            cache_ttl=_parse_ttl(data.get("cache_ttl", DEFAULT_CACHE_TTL)),
            notifier_backend=str(data.get("notifier_backend", "local")).strip().lower(),
            redis_url=str(data.get("redis_url", DEFAULT_REDIS_URL)).strip(),
            event_topic=str(data.get("event_topic", DEFAULT_TOPIC)).strip(),
        )

    @staticmethod
    def default() -> "ServiceConfig":
        return ServiceConfig.from_dict({})


def load_config(config_path: Path) -> ServiceConfig:
    """Load service settings from a YAML file."""
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")

    section = raw.get("service", raw)
    if not isinstance(section, dict):
        raise ValueError("The 'service' section must be a mapping")
    return ServiceConfig.from_dict(section, base_path=config_path.parent)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "service.yaml").resolve(strict=False)
    return candidate


def config_from_env(
    environ: Optional[Mapping[str, str]] = None,
    *,
    base: ServiceConfig | None = None,
) -> ServiceConfig:
    """Apply ``USERSERVICE_*`` environment overrides on top of ``base``.

    When ``base`` is omitted the file named by ``USERSERVICE_CONFIG`` (or the
    default ``config/service.yaml``) is loaded if it exists.
    """

    env = os.environ if environ is None else environ
    if base is None:
        path = resolve_config_path(env.get("USERSERVICE_CONFIG"))
        base = load_config(path) if path.is_file() else ServiceConfig.default()

    overrides: Dict[str, object] = {}
    if env.get("USERSERVICE_DB_PATH"):
        overrides["database_path"] = resolve_database_path(env["USERSERVICE_DB_PATH"])
    if env.get("USERSERVICE_COUNTER_PATH"):
        overrides["counter_path"] = resolve_counter_path(env["USERSERVICE_COUNTER_PATH"])
    if env.get("USERSERVICE_CACHE_BACKEND"):
        overrides["cache_backend"] = env["USERSERVICE_CACHE_BACKEND"].strip().lower()
    if "USERSERVICE_CACHE_TTL" in env:
        overrides["cache_ttl"] = _parse_ttl(env["USERSERVICE_CACHE_TTL"])
    if env.get("USERSERVICE_NOTIFIER_BACKEND"):
        overrides["notifier_backend"] = env["USERSERVICE_NOTIFIER_BACKEND"].strip().lower()
    if env.get("USERSERVICE_REDIS_URL"):
        overrides["redis_url"] = env["USERSERVICE_REDIS_URL"].strip()
    if env.get("USERSERVICE_EVENT_TOPIC"):
        overrides["event_topic"] = env["USERSERVICE_EVENT_TOPIC"].strip()

    return replace(base, **overrides) if overrides else base


__all__ = [
    "CACHE_BACKENDS",
    "DEFAULT_CACHE_TTL",
    "DEFAULT_REDIS_URL",
    "NOTIFIER_BACKENDS",
    "ServiceConfig",
    "config_from_env",
    "load_config",
    "resolve_config_path",
]
