"""Domain models and text encodings for user records."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

MUTABLE_FIELDS = frozenset({"name", "email"})


@dataclass(frozen=True)
class Record:
    """Represents a user record stored in the service database."""

    id: str
    name: str
    email: str
    created_at: datetime
    active: bool = True


class EventKind(str, Enum):
    """Lifecycle transitions announced on the event channel."""

    CREATED = "created"
    UPDATED = "updated"
    DEACTIVATED = "deactivated"
    DELETED = "deleted"


@dataclass(frozen=True)
class RecordEvent:
    """Point-in-time snapshot of a record after a completed transition."""

    kind: EventKind
    record: Record

    def to_payload(self) -> str:
        """Serialise the event using the flat wire format consumed downstream."""

        payload = {"event": self.kind.value}
        payload.update(_snapshot(self.record))
        return json.dumps(payload, separators=(",", ":"))


def serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _snapshot(record: Record) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "email": record.email,
        "createdAt": serialize_datetime(record.created_at),
        "active": record.active,
    }


def record_to_json(record: Record) -> str:
    """Encode a record as the text value stored in the cache."""

    return json.dumps(_snapshot(record), separators=(",", ":"))


def record_from_json(raw: str) -> Record:
    """Decode a cached record; raises ``ValueError`` for malformed input."""

    try:
        data = json.loads(raw)
        return Record(
            id=str(data["id"]),
            name=str(data["name"]),
            email=str(data["email"]),
            created_at=parse_datetime(str(data["createdAt"])),
            active=bool(data["active"]),
        )
    except (KeyError, TypeError, json.JSONDecodeError) as exc:
        raise ValueError("Cached record could not be decoded") from exc


def parse_event_payload(raw: str | bytes) -> Dict[str, Any]:
    """Parse an event payload received from the channel."""

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Event payload must be a JSON object")
    missing = {"event", "id", "name", "email", "createdAt", "active"} - data.keys()
    if missing:
        raise ValueError(f"Event payload is missing fields: {', '.join(sorted(missing))}")
    return data


__all__ = [
    "EventKind",
    "MUTABLE_FIELDS",
    "Record",
    "RecordEvent",
    "parse_datetime",
    "parse_event_payload",
    "record_from_json",
    "record_to_json",
    "serialize_datetime",
]
