"""Consistency tests for the record pipeline across store, cache and notifier."""

from __future__ import annotations

import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from userservice.cache import MemoryCache
from userservice.database import Database
from userservice.errors import ConflictError, NotFoundError, TransientIOError
from userservice.models import Record, record_to_json
from userservice.notifier import LocalNotifier, Notifier
from userservice.pipeline import RecordPipeline


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SpyCache(MemoryCache):
    """Memory cache that records calls and can simulate an unreachable backend."""

    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock=clock)
        self.calls: List[tuple[str, str]] = []
        self.fail_get = False
        self.fail_set = False
        self.fail_invalidate = False

    def get(self, record_id: str) -> Optional[str]:
        self.calls.append(("get", record_id))
        if self.fail_get:
            raise TransientIOError("cache down")
        return super().get(record_id)

    def set(self, record_id: str, value: str, ttl: Optional[float] = None) -> None:
        self.calls.append(("set", record_id))
        if self.fail_set:
            raise TransientIOError("cache down")
        super().set(record_id, value, ttl)

    def invalidate(self, record_id: str) -> None:
        self.calls.append(("invalidate", record_id))
        if self.fail_invalidate:
            raise TransientIOError("cache down")
        super().invalidate(record_id)

    def peek(self, record_id: str) -> Optional[str]:
        return super().get(record_id)


class UnreachableNotifier(Notifier):
    def __init__(self) -> None:
        self.attempts = 0

    def publish(self, topic: str, event) -> None:
        self.attempts += 1
        raise TransientIOError("broker down")


class RecordPipelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.database = Database(Path(self._tempdir.name) / "users.sqlite3")
        self.database.initialize()
        self.clock = FakeClock()
        self.cache = SpyCache(self.clock)
        self.notifier = LocalNotifier()
        self.pipeline = RecordPipeline(self.database, self.cache, self.notifier, cache_ttl=60)

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _events(self) -> List[dict]:
        return [json.loads(message.payload) for message in self.notifier.messages("user-events")]

    # ------------------------------------------------------------------
    # create / read
    # ------------------------------------------------------------------
    def test_create_persists_publishes_and_leaves_cache_empty(self) -> None:
        record = self.pipeline.create("A", "a@x.com")

        self.assertTrue(record.active)
        self.assertEqual(self.database.get(record.id), record)
        self.assertIsNone(self.cache.peek(record.id))
        self.assertEqual(self.cache.calls, [])

        events = self._events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["event"], "created")
        self.assertEqual(events[0]["id"], record.id)
        self.assertEqual(events[0]["email"], "a@x.com")

    def test_create_generates_unique_ids(self) -> None:
        first = self.pipeline.create("A", "a@x.com")
        second = self.pipeline.create("A", "a@x.com")
        self.assertNotEqual(first.id, second.id)

    def test_create_conflict_publishes_nothing(self) -> None:
        pipeline = RecordPipeline(self.database, self.cache, self.notifier, id_factory=lambda: "fixed")
        pipeline.create("A", "a@x.com")

        with self.assertRaises(ConflictError):
            pipeline.create("B", "b@x.com")

        self.assertEqual(self.database.get("fixed").name, "A")
        self.assertEqual(len(self._events()), 1)

    def test_create_rejects_blank_fields(self) -> None:
        with self.assertRaises(ValueError):
            self.pipeline.create("  ", "a@x.com")
        self.assertEqual(self.database.list_all(), [])
        self.assertEqual(self._events(), [])

    def test_read_after_create_returns_equal_view(self) -> None:
        record = self.pipeline.create("A", "a@x.com")

        first = self.pipeline.read(record.id)
        second = self.pipeline.read(record.id)

        self.assertEqual(first, record)
        self.assertEqual(second, record)
        self.assertEqual(self.cache.peek(record.id), record_to_json(record))

    def test_read_populates_cache_only_after_store_hit(self) -> None:
        with self.assertRaises(NotFoundError):
            self.pipeline.read("missing")

        self.assertEqual(self.cache.calls, [("get", "missing")])
        self.assertEqual(len(self.cache), 0)

    def test_read_hit_skips_store(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.pipeline.read(record.id)
        self.cache.calls.clear()

        self.assertEqual(self.pipeline.read(record.id), record)
        self.assertEqual(self.cache.calls, [("get", record.id)])

    def test_read_degrades_to_store_when_cache_unavailable(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.cache.fail_get = True
        self.cache.fail_set = True

        self.assertEqual(self.pipeline.read(record.id), record)

    def test_undecodable_cache_entry_is_replaced(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.cache.set(record.id, "not json")

        self.assertEqual(self.pipeline.read(record.id), record)
        self.assertEqual(self.cache.peek(record.id), record_to_json(record))

    def test_cache_entry_for_other_record_is_ignored(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        impostor = Record(
            id="someone-else",
            name="Z",
            email="z@x.com",
            created_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        )
        self.cache.set(record.id, record_to_json(impostor))

        self.assertEqual(self.pipeline.read(record.id), record)

    def test_fill_racing_an_update_is_dropped(self) -> None:
        pipeline = RecordPipeline(self.database, self.cache, self.notifier, cache_ttl=None)
        record = pipeline.create("A", "a@x.com")
        original_set = self.cache.set

        def late_set(record_id: str, value: str, ttl: Optional[float] = None) -> None:
            self.cache.set = original_set  # type: ignore[method-assign]
            pipeline.update(record_id, {"name": "B"})
            original_set(record_id, value, ttl)

        self.cache.set = late_set  # type: ignore[method-assign]

        self.assertEqual(pipeline.read(record.id).name, "A")
        self.assertIsNone(self.cache.peek(record.id))
        self.assertEqual(pipeline.read(record.id).name, "B")

    def test_fill_racing_a_delete_is_dropped(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        original_set = self.cache.set

        def late_set(record_id: str, value: str, ttl: Optional[float] = None) -> None:
            self.cache.set = original_set  # type: ignore[method-assign]
            self.pipeline.delete(record_id)
            original_set(record_id, value, ttl)

        self.cache.set = late_set  # type: ignore[method-assign]

        self.pipeline.read(record.id)
        self.assertIsNone(self.cache.peek(record.id))
        with self.assertRaises(NotFoundError):
            self.pipeline.read(record.id)

    def test_settled_fill_stays_cached(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.pipeline.read(record.id)

        self.assertEqual(self.cache.calls, [("get", record.id), ("set", record.id)])
        self.assertIsNotNone(self.cache.peek(record.id))

    # ------------------------------------------------------------------
    # update / deactivate / delete
    # ------------------------------------------------------------------
    def test_update_invalidates_after_store_commit(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.pipeline.read(record.id)

        observed: List[str] = []
        original_invalidate = self.cache.invalidate

        def invalidate(record_id: str) -> None:
            observed.append(self.database.get(record_id).email)
            original_invalidate(record_id)

        self.cache.invalidate = invalidate  # type: ignore[method-assign]

        updated = self.pipeline.update(record.id, {"email": "a2@x.com"})

        self.assertEqual(observed, ["a2@x.com"])
        self.assertEqual(updated.email, "a2@x.com")
        self.assertEqual(self.pipeline.read(record.id).email, "a2@x.com")
        self.assertEqual(self._events()[-1]["event"], "updated")
        self.assertEqual(self._events()[-1]["email"], "a2@x.com")

    def test_update_without_changes_skips_invalidation_and_event(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.pipeline.read(record.id)
        self.cache.calls.clear()
        events_before = len(self._events())

        result = self.pipeline.update(record.id, {"name": None, "email": None})

        self.assertEqual(result, record)
        self.assertEqual(self.cache.calls, [])
        self.assertIsNotNone(self.cache.peek(record.id))
        self.assertEqual(len(self._events()), events_before)

    def test_update_without_changes_on_missing_record_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.pipeline.update("ghost", {"name": None})

    def test_failed_store_write_does_not_invalidate(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.pipeline.read(record.id)
        cached = self.cache.peek(record.id)
        self.cache.calls.clear()
        events_before = len(self._events())

        with self.assertRaises(NotFoundError):
            self.pipeline.update("missing", {"name": "X"})
        with self.assertRaises(ValueError):
            self.pipeline.update(record.id, {"name": " "})
        with self.assertRaises(NotFoundError):
            self.pipeline.deactivate("missing")
        with self.assertRaises(NotFoundError):
            self.pipeline.delete("missing")

        self.assertEqual(self.cache.calls, [])
        self.assertEqual(self.cache.peek(record.id), cached)
        self.assertEqual(len(self._events()), events_before)

    def test_transient_store_failure_keeps_cache(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.pipeline.read(record.id)
        self.cache.calls.clear()

        def unavailable(*_args, **_kwargs):
            raise TransientIOError("database locked")

        self.database.update = unavailable  # type: ignore[method-assign]

        with self.assertRaises(TransientIOError):
            self.pipeline.update(record.id, {"name": "B"})
        self.assertEqual(self.cache.calls, [])
        self.assertIsNotNone(self.cache.peek(record.id))

    def test_failed_invalidation_still_succeeds_and_window_closes_on_expiry(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.pipeline.read(record.id)
        self.cache.fail_invalidate = True

        updated = self.pipeline.update(record.id, {"name": "B"})

        self.assertEqual(updated.name, "B")
        self.assertEqual(self.database.get(record.id).name, "B")
        self.assertEqual([call for call in self.cache.calls if call[0] == "invalidate"], [("invalidate", record.id)])

        # Known stale window: the old entry is still served until it expires.
        self.assertEqual(self.pipeline.read(record.id).name, "A")

        self.clock.now += 60
        self.assertEqual(self.pipeline.read(record.id).name, "B")
        self.assertEqual(self.pipeline.read(record.id).name, "B")
        invalidations = [call for call in self.cache.calls if call[0] == "invalidate"]
        self.assertEqual(len(invalidations), 1)

    def test_deactivate_keeps_record_with_active_false(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.pipeline.read(record.id)

        deactivated = self.pipeline.deactivate(record.id)

        self.assertFalse(deactivated.active)
        self.assertIsNone(self.cache.peek(record.id))
        self.assertFalse(self.pipeline.read(record.id).active)
        self.assertEqual(self._events()[-1]["event"], "deactivated")
        self.assertIs(self._events()[-1]["active"], False)

    def test_delete_then_read_is_not_found_even_with_warm_cache(self) -> None:
        record = self.pipeline.create("A", "a@x.com")
        self.pipeline.read(record.id)
        self.assertIsNotNone(self.cache.peek(record.id))

        removed = self.pipeline.delete(record.id)

        self.assertEqual(removed.id, record.id)
        with self.assertRaises(NotFoundError):
            self.pipeline.read(record.id)
        self.assertEqual(self._events()[-1]["event"], "deleted")

    def test_notifier_failure_never_fails_operation(self) -> None:
        notifier = UnreachableNotifier()
        pipeline = RecordPipeline(self.database, self.cache, notifier)

        record = pipeline.create("A", "a@x.com")
        pipeline.update(record.id, {"name": "B"})
        pipeline.deactivate(record.id)
        pipeline.delete(record.id)

        self.assertEqual(notifier.attempts, 4)
        self.assertEqual(self.database.list_all(), [])

    def test_list_bypasses_cache(self) -> None:
        first = self.pipeline.create("A", "a@x.com")
        second = self.pipeline.create("B", "b@x.com")
        self.cache.calls.clear()

        listed = self.pipeline.list()

        self.assertEqual({record.id for record in listed}, {first.id, second.id})
        self.assertEqual(self.cache.calls, [])

    def test_full_lifecycle_scenario(self) -> None:
        created = self.pipeline.create("A", "a@x.com")

        view = self.pipeline.read(created.id)
        self.assertEqual((view.name, view.email, view.active), ("A", "a@x.com", True))

        self.pipeline.update(created.id, {"email": "a2@x.com"})
        self.assertEqual(self.pipeline.read(created.id).email, "a2@x.com")

        self.pipeline.deactivate(created.id)
        view = self.pipeline.read(created.id)
        self.assertEqual(view.email, "a2@x.com")
        self.assertFalse(view.active)

        self.pipeline.delete(created.id)
        with self.assertRaises(NotFoundError):
            self.pipeline.read(created.id)

        kinds = [event["event"] for event in self._events()]
        self.assertEqual(kinds, ["created", "updated", "deactivated", "deleted"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
