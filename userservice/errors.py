"""Exception taxonomy shared by the store, cache and notifier layers."""

from __future__ import annotations


class UserServiceError(Exception):
    """Base class for errors raised by the user record service."""


class NotFoundError(UserServiceError):
    """Raised when the requested record does not exist in the store."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"User '{record_id}' not found")
        self.record_id = record_id


class ConflictError(UserServiceError):
    """Raised when a record with the same identifier already exists."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"User '{record_id}' already exists")
        self.record_id = record_id


class TransientIOError(UserServiceError):
    """Raised when a backing service (store, cache, event channel) is unreachable."""


__all__ = ["ConflictError", "NotFoundError", "TransientIOError", "UserServiceError"]
