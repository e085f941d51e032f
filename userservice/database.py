"""SQLite-backed persistence for user records."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Mapping, Optional

from .errors import ConflictError, NotFoundError, TransientIOError
from .models import MUTABLE_FIELDS, Record, parse_datetime, serialize_datetime

_BUSY_TIMEOUT_SECONDS = 30.0


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the record database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "users.sqlite3").resolve(strict=False)


def _normalise_fields(fields: Mapping[str, object]) -> dict[str, str]:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    cleaned: dict[str, str] = {}
    for key in sorted(fields):
        value = fields[key]
        if value is None:
            continue
        text = str(value).strip()
        if not text:
            raise ValueError(f"{key.capitalize()} must not be empty")
        if key == "email":
            text = text.lower()
        cleaned[key] = text
    return cleaned


class Database:
    """Durable record table; the sole source of truth for user state.

    Every public method opens its own connection and runs inside a single
    transaction, so each call is atomic for the record it touches.
    """

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=_BUSY_TIMEOUT_SECONDS, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise TransientIOError(f"Unable to open database at {self._path}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise TransientIOError(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1
                );

                CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at);
                """
            )

    def close(self) -> None:
        """Connections are opened per call, so there is nothing to release."""

    # ------------------------------------------------------------------
    # Record operations
    # ------------------------------------------------------------------
    def put(self, record: Record) -> Record:
        """Insert a new record, failing if the identifier is already taken."""

        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, name, email, created_at, active)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.name,
                        record.email,
                        serialize_datetime(record.created_at),
                        int(bool(record.active)),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(record.id) from exc
        return record

    def get(self, record_id: str) -> Record:
        with self._transaction() as conn:
            row = self._fetch(conn, record_id)
        return self._row_to_record(row)

    def update(self, record_id: str, fields: Mapping[str, object]) -> Record:
        """Apply ``name``/``email`` changes and return the refreshed record."""

        updates = _normalise_fields(fields)
        with self._transaction() as conn:
            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                cursor = conn.execute(
                    f"UPDATE users SET {assignments} WHERE id = ?",
                    (*updates.values(), record_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(record_id)
            row = self._fetch(conn, record_id)
        return self._row_to_record(row)

    def set_active(self, record_id: str, active: bool) -> Record:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE users SET active = ? WHERE id = ?",
                (int(bool(active)), record_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(record_id)
            row = self._fetch(conn, record_id)
        return self._row_to_record(row)

    def delete(self, record_id: str) -> Record:
        """Remove a record and return the state it had before removal."""

        with self._transaction() as conn:
            row = self._fetch(conn, record_id)
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (record_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(record_id)
        return self._row_to_record(row)

    def list_all(self) -> List[Record]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at, id").fetchall()
        return [self._row_to_record(row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _fetch(conn: sqlite3.Connection, record_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            raise NotFoundError(record_id)
        return row

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            id=str(row["id"]),
            name=str(row["name"]),
            email=str(row["email"]),
            created_at=parse_datetime(str(row["created_at"])),
            active=bool(row["active"]),
        )


__all__ = ["Database", "resolve_database_path"]
