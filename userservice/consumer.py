"""Subscriber for record lifecycle events published on Redis."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

import redis

from .errors import TransientIOError
from .models import parse_event_payload
from .notifier import DEFAULT_TOPIC

logger = logging.getLogger("userservice.consumer")

EventHandler = Callable[[str, Dict[str, Any]], None]


def log_event(topic: str, event: Dict[str, Any]) -> None:
    logger.info(
        "Event received on %s: %s user %s (%s <%s>, active=%s)",
        topic,
        event["event"],
        event["id"],
        event["name"],
        event["email"],
        event["active"],
    )


class EventConsumer:
    """Read events from a pub/sub channel and hand them to ``handler``."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        topic: str = DEFAULT_TOPIC,
        handler: EventHandler = log_event,
        poll_interval: float = 1.0,
    ) -> None:
        self._client = client
        self._topic = topic
        self._handler = handler
        self._poll_interval = poll_interval

    def handle_message(self, message: Optional[Dict[str, Any]]) -> bool:
        """Process one raw pub/sub message; returns ``True`` if an event was handled."""

        if not message or message.get("type") != "message":
            return False
        channel = message.get("channel", self._topic)
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        try:
            event = parse_event_payload(message.get("data", ""))
        except ValueError:
            logger.warning("Skipping malformed event on %s: %r", channel, message.get("data"))
            return False
        try:
            self._handler(str(channel), event)
        except Exception:  # handler errors never end the subscription
            logger.exception("Event handler failed for %s event on user %s", event["event"], event["id"])
            return False
        return True

    def run(self, stop: threading.Event, *, max_messages: int | None = None) -> int:
        """Consume until ``stop`` is set; returns the number of handled events."""

        handled = 0
        try:
            pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(self._topic)
        except redis.RedisError as exc:
            raise TransientIOError(f"Unable to subscribe to {self._topic}") from exc

        logger.info("Consumer subscribed to %s", self._topic)
        try:
            while not stop.is_set():
                try:
                    message = pubsub.get_message(timeout=self._poll_interval)
                except redis.RedisError as exc:
                    raise TransientIOError(f"Lost subscription to {self._topic}") from exc
                if self.handle_message(message):
                    handled += 1
                    if max_messages is not None and handled >= max_messages:
                        break
        finally:
            pubsub.close()
        logger.info("Consumer stopped after %s event(s)", handled)
        return handled


__all__ = ["EventConsumer", "EventHandler", "log_event"]
