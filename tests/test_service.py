"""End-to-end tests for the user record HTTP API."""

from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from userservice.cache import MemoryCache
from userservice.config import ServiceConfig
from userservice.counter import RequestCounter
from userservice.database import Database
from userservice.errors import TransientIOError
from userservice.notifier import LocalNotifier
from userservice.service import create_app


class UserServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        root = Path(self._tempdir.name)
        self.database = Database(root / "users.sqlite3")
        self.cache = MemoryCache()
        self.notifier = LocalNotifier()
        self.counter = RequestCounter(root / "counter.txt")
        self.config = ServiceConfig(
            database_path=root / "users.sqlite3",
            counter_path=root / "counter.txt",
        )

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _app(self):
        return create_app(
            config=self.config,
            database=self.database,
            cache=self.cache,
            notifier=self.notifier,
            counter=self.counter,
        )

    def test_user_lifecycle(self) -> None:
        with TestClient(self._app()) as client:
            created = client.post("/users", json={"name": "A", "email": "a@x.com"})
            self.assertEqual(created.status_code, 201, created.text)
            payload = created.json()
            user_id = payload["id"]
            self.assertEqual(payload["name"], "A")
            self.assertEqual(payload["email"], "a@x.com")
            self.assertTrue(payload["active"])

            fetched = client.get(f"/users/{user_id}")
            self.assertEqual(fetched.status_code, 200, fetched.text)
            self.assertEqual(fetched.json(), payload)

            updated = client.put(f"/users/{user_id}", json={"email": "a2@x.com"})
            self.assertEqual(updated.status_code, 200, updated.text)
            self.assertEqual(client.get(f"/users/{user_id}").json()["email"], "a2@x.com")

            deactivated = client.put(f"/users/{user_id}/status")
            self.assertEqual(deactivated.status_code, 200, deactivated.text)
            fetched = client.get(f"/users/{user_id}")
            self.assertEqual(fetched.status_code, 200)
            self.assertFalse(fetched.json()["active"])
            self.assertEqual(fetched.json()["email"], "a2@x.com")

            deleted = client.delete(f"/users/{user_id}")
            self.assertEqual(deleted.status_code, 204, deleted.text)

            missing = client.get(f"/users/{user_id}")
            self.assertEqual(missing.status_code, 404)

        kinds = [json.loads(message.payload)["event"] for message in self.notifier.messages()]
        self.assertEqual(kinds, ["created", "updated", "deactivated", "deleted"])

    def test_list_users(self) -> None:
        with TestClient(self._app()) as client:
            client.post("/users", json={"name": "A", "email": "a@x.com"})
            client.post("/users", json={"name": "B", "email": "b@x.com"})

            listing = client.get("/users")

        self.assertEqual(listing.status_code, 200, listing.text)
        names = sorted(user["name"] for user in listing.json()["users"])
        self.assertEqual(names, ["A", "B"])

    def test_missing_records_return_404(self) -> None:
        with TestClient(self._app()) as client:
            self.assertEqual(client.get("/users/nope").status_code, 404)
            self.assertEqual(client.put("/users/nope", json={"name": "X"}).status_code, 404)
            self.assertEqual(client.put("/users/nope/status").status_code, 404)
            self.assertEqual(client.delete("/users/nope").status_code, 404)

    def test_validation_errors(self) -> None:
        with TestClient(self._app()) as client:
            self.assertEqual(client.post("/users", json={"name": "A"}).status_code, 422)
            self.assertEqual(client.post("/users", json={"name": "A", "email": "not-an-email"}).status_code, 422)

            created = client.post("/users", json={"name": "A", "email": "a@x.com"}).json()
            self.assertEqual(client.put(f"/users/{created['id']}", json={}).status_code, 422)
            self.assertEqual(client.put(f"/users/{created['id']}", json={"name": "   "}).status_code, 400)

    def test_store_outage_returns_503(self) -> None:
        app = self._app()

        def unavailable(*_args, **_kwargs):
            raise TransientIOError("database is locked")

        self.database.list_all = unavailable  # type: ignore[method-assign]

        with TestClient(app) as client:
            response = client.get("/users")
            self.assertEqual(response.status_code, 503)
            self.assertEqual(client.get("/healthz").status_code, 200)

    def test_request_counter_and_metrics(self) -> None:
        with TestClient(self._app()) as client:
            client.post("/users", json={"name": "A", "email": "a@x.com"})
            client.get("/users")

            counts = client.get("/metric").json()
            self.assertEqual(counts["requests"], 2)
            self.assertEqual(counts["operations"], {"create": 1, "list": 1})

            exposition = client.get("/metrics")
            self.assertEqual(exposition.status_code, 200)
            self.assertIn("api_hits_total", exposition.text)
            self.assertIn('route="/users"', exposition.text)

        self.assertEqual((Path(self._tempdir.name) / "counter.txt").read_text(encoding="utf-8"), "2")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
