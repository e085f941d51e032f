"""Persisted request counter used for operational visibility."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger("userservice.counter")


def resolve_counter_path(env_value: Optional[str]) -> Path:
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "data" / "counter.txt").resolve(strict=False)


class RequestCounter:
    """Count handled requests in total (persisted) and per operation (in memory)."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._operations: Counter[str] = Counter()
        self._total = self._read()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    def increment(self, operation: str) -> int:
        with self._lock:
            self._total += 1
            self._operations[operation] += 1
            total = self._total
            self._write(total)
        return total

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {"requests": self._total, "operations": dict(self._operations)}

    def flush(self) -> None:
        with self._lock:
            self._write(self._total)

    def _read(self) -> int:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return 0
        except OSError:
            logger.warning("Unable to read request counter at %s", self._path, exc_info=True)
            return 0
        try:
            return max(0, int(raw.strip()))
        except ValueError:
            logger.warning("Ignoring malformed request counter at %s", self._path)
            return 0

    def _write(self, value: int) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(str(value), encoding="utf-8")
        except OSError:
            logger.warning("Unable to persist request counter to %s", self._path, exc_info=True)


__all__ = ["RequestCounter", "resolve_counter_path"]
