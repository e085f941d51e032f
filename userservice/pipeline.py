"""Record consistency pipeline coordinating the store, cache and event channel.

Each operation is a short fixed sequence:

* ``create``: store put, then publish.
* ``read``: cache lookup; on a miss, store get, cache fill, then a store
  re-read that drops the entry if a concurrent write landed in between.
* ``update``/``deactivate``/``delete``: store write, then cache invalidation,
  then publish.
* ``list``: store only.

The store is authoritative. Cache failures degrade to store reads and failed
invalidations are logged once; the stale window they leave is bounded by the
cache TTL. Event publication is best-effort and never fails an operation.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional

from .cache import RecordCache
from .database import Database
from .errors import NotFoundError, TransientIOError
from .models import EventKind, Record, RecordEvent, record_from_json, record_to_json
from .notifier import DEFAULT_TOPIC, Notifier

logger = logging.getLogger("userservice.pipeline")


def _generate_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordPipeline:
    """Implements the user lifecycle operations over explicit collaborators."""

    def __init__(
        self,
        store: Database,
        cache: RecordCache,
        notifier: Notifier,
        *,
        topic: str = DEFAULT_TOPIC,
        cache_ttl: Optional[float] = None,
        id_factory: Callable[[], str] = _generate_id,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._notifier = notifier
        self._topic = topic
        self._cache_ttl = cache_ttl
        self._id_factory = id_factory
        self._clock = clock

    @property
    def topic(self) -> str:
        return self._topic

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def create(self, name: str, email: str) -> Record:
        name = name.strip()
        email = email.strip().lower()
        if not name:
            raise ValueError("Name must not be empty")
        if not email:
            raise ValueError("Email must not be empty")

        record = Record(
            id=self._id_factory(),
            name=name,
            email=email,
            created_at=self._clock(),
            active=True,
        )
        self._store.put(record)
        logger.info("Created user %s", record.id)
        self._notify(EventKind.CREATED, record)
        return record

    def read(self, record_id: str) -> Record:
        cached = self._cache_lookup(record_id)
        if cached is not None:
            return cached

        record = self._store.get(record_id)
        try:
            self._cache.set(record_id, record_to_json(record), ttl=self._cache_ttl)
        except TransientIOError:
            logger.warning("Cache fill failed for user %s", record_id, exc_info=True)
            return record
        self._verify_fill(record)
        return record

    def update(self, record_id: str, fields: Mapping[str, object]) -> Record:
        record = self._store.update(record_id, fields)
        if all(value is None for value in fields.values()):
            return record
        self._invalidate(record_id)
        logger.info("Updated user %s (%s)", record_id, ", ".join(sorted(fields)))
        self._notify(EventKind.UPDATED, record)
        return record

    def deactivate(self, record_id: str) -> Record:
        record = self._store.set_active(record_id, False)
        self._invalidate(record_id)
        logger.info("Deactivated user %s", record_id)
        self._notify(EventKind.DEACTIVATED, record)
        return record

    def delete(self, record_id: str) -> Record:
        record = self._store.delete(record_id)
        self._invalidate(record_id)
        logger.info("Deleted user %s", record_id)
        self._notify(EventKind.DELETED, record)
        return record

    def list(self) -> List[Record]:
        return self._store.list_all()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _cache_lookup(self, record_id: str) -> Optional[Record]:
        try:
            raw = self._cache.get(record_id)
        except TransientIOError:
            logger.warning("Cache unavailable, reading user %s from the store", record_id, exc_info=True)
            return None

        if raw is None:
            logger.debug("Cache miss for user %s", record_id)
            return None

        try:
            record = record_from_json(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry for user %s", record_id)
            self._invalidate(record_id)
            return None

        if record.id != record_id:
            logger.warning("Cache entry for user %s references %s; discarding", record_id, record.id)
            self._invalidate(record_id)
            return None

        logger.debug("Cache hit for user %s", record_id)
        return record

    def _verify_fill(self, record: Record) -> None:
        # a write landing between the store read and the fill has already invalidated
        try:
            current: Optional[Record] = self._store.get(record.id)
        except NotFoundError:
            current = None
        except TransientIOError:
            logger.warning("Could not confirm cache fill for user %s", record.id, exc_info=True)
            return
        if current != record:
            logger.debug("User %s changed during cache fill; dropping entry", record.id)
            self._invalidate(record.id)

    def _invalidate(self, record_id: str) -> bool:
        try:
            self._cache.invalidate(record_id)
        except TransientIOError:
            logger.warning(
                "Cache invalidation failed for user %s; entry may be stale until it expires",
                record_id,
                exc_info=True,
            )
            return False
        return True

    def _notify(self, kind: EventKind, record: Record) -> bool:
        return self._notifier.publish_best_effort(self._topic, RecordEvent(kind=kind, record=record))


__all__ = ["RecordPipeline"]
