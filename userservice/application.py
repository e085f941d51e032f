"""Startup and shutdown of the collaborators shared by every request."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .cache import MemoryCache, RecordCache, RedisCache
from .config import ServiceConfig
from .counter import RequestCounter
from .database import Database
from .notifier import LocalNotifier, Notifier, RedisNotifier
from .pipeline import RecordPipeline

logger = logging.getLogger("userservice.application")


@dataclass
class Collaborators:
    """Explicit handles created at startup and released at shutdown."""

    database: Database
    cache: RecordCache
    notifier: Notifier
    counter: RequestCounter
    event_topic: str
    cache_ttl: Optional[float] = None

    def pipeline(self) -> RecordPipeline:
        return RecordPipeline(
            self.database,
            self.cache,
            self.notifier,
            topic=self.event_topic,
            cache_ttl=self.cache_ttl,
        )

    def close(self) -> None:
        self.counter.flush()
        self.notifier.close()
        self.cache.close()
        self.database.close()
        logger.info("Service collaborators released")


def _build_cache(config: ServiceConfig) -> RecordCache:
    if config.cache_backend == "redis":
        logger.info("Using Redis cache at %s", config.redis_url)
        return RedisCache.from_url(config.redis_url)
    return MemoryCache()


def _build_notifier(config: ServiceConfig) -> Notifier:
    if config.notifier_backend == "redis":
        logger.info("Publishing events to Redis channel %s at %s", config.event_topic, config.redis_url)
        return RedisNotifier.from_url(config.redis_url)
    return LocalNotifier()


def build_collaborators(
    config: ServiceConfig,
    *,
    database: Database | None = None,
    cache: RecordCache | None = None,
    notifier: Notifier | None = None,
    counter: RequestCounter | None = None,
) -> Collaborators:
    """Instantiate the store, cache, notifier and counter described by ``config``."""

    db = database if database is not None else Database(config.database_path)
    db.initialize()
    logger.info("Database initialised at %s", db.path)

    return Collaborators(
        database=db,
        cache=cache if cache is not None else _build_cache(config),
        notifier=notifier if notifier is not None else _build_notifier(config),
        counter=counter if counter is not None else RequestCounter(config.counter_path),
        event_topic=config.event_topic,
        cache_ttl=config.cache_ttl,
    )


__all__ = ["Collaborators", "build_collaborators"]
