"""Volatile read-through cache for user records.

Entries are a disposable shadow of the store keyed by record id. A miss is
reported as ``None`` and is never an error; backend failures surface as
:class:`~userservice.errors.TransientIOError` so callers can degrade to the
store.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis

from .errors import TransientIOError

logger = logging.getLogger("userservice.cache")

DEFAULT_KEY_PREFIX = "user:"


class RecordCache(ABC):
    """Key/value contract shared by every cache backend."""

    @abstractmethod
    def get(self, record_id: str) -> Optional[str]:
        """Return the cached value or ``None`` on a miss."""

    @abstractmethod
    def set(self, record_id: str, value: str, ttl: Optional[float] = None) -> None:
        """Store ``value``; ``ttl`` of ``None`` keeps the entry until invalidated."""

    @abstractmethod
    def invalidate(self, record_id: str) -> None:
        """Drop the entry for ``record_id``. Missing keys are ignored."""

    def close(self) -> None:
        return None


@dataclass
class _CacheEntry:
    value: str
    expires_at: Optional[float]


class MemoryCache(RecordCache):
    """Process-local cache guarded by a lock."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, record_id: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(record_id)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= now:
                self._entries.pop(record_id, None)
                return None
            return entry.value

    def set(self, record_id: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = None if ttl is None else self._clock() + ttl
        with self._lock:
            self._entries[record_id] = _CacheEntry(value=value, expires_at=expires_at)

    def invalidate(self, record_id: str) -> None:
        with self._lock:
            self._entries.pop(record_id, None)

    def __contains__(self, record_id: object) -> bool:
        return isinstance(record_id, str) and self.get(record_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCache(RecordCache):
    """Cache backed by a Redis server via ``redis-py``."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> "RedisCache":
        client = redis.Redis.from_url(url, decode_responses=True)
        return cls(client, key_prefix=key_prefix)

    def _key(self, record_id: str) -> str:
        return f"{self._prefix}{record_id}"

    def get(self, record_id: str) -> Optional[str]:
        try:
            value = self._client.get(self._key(record_id))
        except redis.RedisError as exc:
            raise TransientIOError(f"Cache read failed for {record_id}") from exc
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def set(self, record_id: str, value: str, ttl: Optional[float] = None) -> None:
        try:
            if ttl is None:
                self._client.set(self._key(record_id), value)
            else:
                self._client.set(self._key(record_id), value, px=max(1, int(ttl * 1000)))
        except redis.RedisError as exc:
            raise TransientIOError(f"Cache write failed for {record_id}") from exc

    def invalidate(self, record_id: str) -> None:
        try:
            self._client.delete(self._key(record_id))
        except redis.RedisError as exc:
            raise TransientIOError(f"Cache invalidation failed for {record_id}") from exc

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError:
            logger.warning("Error while closing Redis cache connection", exc_info=True)


__all__ = ["DEFAULT_KEY_PREFIX", "MemoryCache", "RecordCache", "RedisCache"]
