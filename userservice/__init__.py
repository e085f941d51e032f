"""User record service: durable store, read-through cache and event channel."""

from __future__ import annotations

from typing import Any

from .database import Database, resolve_database_path
from .errors import ConflictError, NotFoundError, TransientIOError
from .models import Record
from .pipeline import RecordPipeline


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the HTTP application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "ConflictError",
    "Database",
    "NotFoundError",
    "Record",
    "RecordPipeline",
    "TransientIOError",
    "create_app",
    "resolve_database_path",
]
