"""One-way, best-effort relay of record lifecycle events."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List

import redis

from .errors import TransientIOError
from .models import RecordEvent

logger = logging.getLogger("userservice.notifier")

DEFAULT_TOPIC = "user-events"
_DEFAULT_HISTORY = 1000


@dataclass(frozen=True)
class PublishedMessage:
    topic: str
    payload: str


class Notifier(ABC):
    """Base class for event channels.

    ``publish`` may raise :class:`TransientIOError`. Callers that must not be
    affected by delivery problems use :meth:`publish_best_effort`, which logs
    the failure and reports it through its return value instead. No retries
    are attempted and nothing is rolled back.
    """

    @abstractmethod
    def publish(self, topic: str, event: RecordEvent) -> None:
        """Deliver ``event`` on ``topic`` or raise :class:`TransientIOError`."""

    def publish_best_effort(self, topic: str, event: RecordEvent) -> bool:
        try:
            self.publish(topic, event)
        except TransientIOError:
            logger.warning(
                "Failed to publish %s event for user %s on %s",
                event.kind.value,
                event.record.id,
                topic,
                exc_info=True,
            )
            return False
        logger.debug("Published %s event for user %s on %s", event.kind.value, event.record.id, topic)
        return True

    def close(self) -> None:
        return None


class LocalNotifier(Notifier):
    """In-process channel that keeps a bounded history and fans out to subscribers."""

    def __init__(self, *, history: int = _DEFAULT_HISTORY) -> None:
        self._messages: Deque[PublishedMessage] = deque(maxlen=history)
        self._subscribers: List[Callable[[PublishedMessage], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[PublishedMessage], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, topic: str, event: RecordEvent) -> None:
        message = PublishedMessage(topic=topic, payload=event.to_payload())
        with self._lock:
            self._messages.append(message)
            subscribers = list(self._subscribers)
        logger.info("Event on %s: %s", topic, message.payload)
        for callback in subscribers:
            try:
                callback(message)
            except Exception:  # subscribers never affect the publisher
                logger.exception("Event subscriber raised while handling %s", topic)

    def messages(self, topic: str | None = None) -> List[PublishedMessage]:
        with self._lock:
            snapshot = list(self._messages)
        if topic is None:
            return snapshot
        return [message for message in snapshot if message.topic == topic]


class RedisNotifier(Notifier):
    """Publish events on Redis pub/sub channels named after the topic."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisNotifier":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def publish(self, topic: str, event: RecordEvent) -> None:
        try:
            self._client.publish(topic, event.to_payload())
        except redis.RedisError as exc:
            raise TransientIOError(f"Unable to publish to {topic}") from exc

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError:
            logger.warning("Error while closing Redis notifier connection", exc_info=True)


__all__ = [
    "DEFAULT_TOPIC",
    "LocalNotifier",
    "Notifier",
    "PublishedMessage",
    "RedisNotifier",
]
