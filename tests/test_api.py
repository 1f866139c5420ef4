"""End-to-end tests for the user HTTP API."""

from __future__ import annotations

import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from fastapi.testclient import TestClient

from userservice.api import create_app
from userservice.database import Database
from userservice.events import InMemoryEventChannel, UserEventPublisher


class UserAPITests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        db_path = Path(self._tempdir.name) / "users.sqlite3"
        self.database = Database(db_path)
        self.channel = InMemoryEventChannel()
        self.publisher = UserEventPublisher(self.channel, topic="user-events")
        app = create_app(database=self.database, publisher=self.publisher, initialize_database=True)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        self.client.close()
        self.publisher.stop()
        self._tempdir.cleanup()

    def _create(self, name: str = "John Doe", email: str = "john@example.com", age: int = 30):
        return self.client.post("/api/v1/users", json={"name": name, "email": email, "age": age})

    def test_user_lifecycle_end_to_end(self) -> None:
        created = self._create()
        self.assertEqual(created.status_code, 201, created.text)
        payload = created.json()
        user_id = payload["userId"]
        self.assertGreater(user_id, 0)
        self.assertEqual(payload["name"], "John Doe")
        self.assertEqual(payload["email"], "john@example.com")
        self.assertEqual(payload["age"], 30)
        self.assertTrue(payload["createdAt"])
        datetime.strptime(payload["createdAt"], "%Y-%m-%d %H:%M:%S")
        self.assertEqual(
            payload["_links"]["self"]["href"],
            f"http://testserver/api/v1/users/{user_id}",
        )

        duplicate = self._create(name="Other")
        self.assertEqual(duplicate.status_code, 409, duplicate.text)
        self.assertEqual(
            duplicate.json(),
            {"message": "User with email john@example.com already exists"},
        )

        updated = self.client.put(
            f"/api/v1/users/{user_id}",
            json={"name": "Jane", "email": None, "age": None},
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        updated_payload = updated.json()
        self.assertEqual(updated_payload["name"], "Jane")
        self.assertEqual(updated_payload["email"], "john@example.com")
        self.assertEqual(updated_payload["age"], 30)

        deleted = self.client.delete(f"/api/v1/users/{user_id}")
        self.assertEqual(deleted.status_code, 204, deleted.text)
        self.assertEqual(deleted.content, b"")

        missing = self.client.get(f"/api/v1/users/{user_id}")
        self.assertEqual(missing.status_code, 404, missing.text)
        self.assertEqual(missing.json(), {"message": f"User with id {user_id} not found"})

        self.publisher.flush()
        self.assertEqual(
            [payload["eventType"] for _, _, payload in self.channel.messages],
            ["USER_CREATED", "USER_DELETED"],
        )

    def test_list_users_returns_all_users_with_links(self) -> None:
        self._create(name="User1", email="user1@example.com", age=20)
        self._create(name="User2", email="user2@example.com", age=25)

        response = self.client.get("/api/v1/users")
        self.assertEqual(response.status_code, 200, response.text)
        users = response.json()
        self.assertEqual(len(users), 2)
        self.assertEqual([user["name"] for user in users], ["User1", "User2"])
        for user in users:
            self.assertTrue(user["_links"]["self"]["href"].endswith(f"/api/v1/users/{user['userId']}"))

    def test_get_user_by_id(self) -> None:
        user_id = self._create().json()["userId"]

        response = self.client.get(f"/api/v1/users/{user_id}")
        self.assertEqual(response.status_code, 200, response.text)
        payload = response.json()
        self.assertEqual(payload["userId"], user_id)
        self.assertEqual(payload["name"], "John Doe")
        self.assertEqual(payload["age"], 30)

    def test_create_rejects_invalid_fields(self) -> None:
        response = self.client.post("/api/v1/users", json={"name": "   ", "email": "", "age": -1})
        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(
            response.json(),
            {
                "name": "Name must not be blank",
                "email": "Email must not be blank",
                "age": "Age must be positive or zero",
            },
        )
        self.assertEqual(self.database.list_users(), [])

    def test_create_rejects_missing_and_malformed_fields(self) -> None:
        response = self.client.post("/api/v1/users", json={"email": "not-an-email", "age": None})
        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(
            response.json(),
            {
                "name": "Name must not be blank",
                "email": "Email should be valid",
                "age": "Age must not be null",
            },
        )

    def test_create_rejects_overlong_values(self) -> None:
        response = self._create(name="N" * 26, email=("a" * 45) + "@example.com")
        self.assertEqual(response.status_code, 400, response.text)
        payload = response.json()
        self.assertIn("name", payload)
        self.assertIn("email", payload)

    def test_create_normalises_email(self) -> None:
        created = self._create(email="  John@Example.COM ")
        self.assertEqual(created.status_code, 201, created.text)
        self.assertEqual(created.json()["email"], "john@example.com")

        duplicate = self._create(email="JOHN@example.com")
        self.assertEqual(duplicate.status_code, 409, duplicate.text)

    def test_update_conflicting_email_returns_conflict(self) -> None:
        john_id = self._create().json()["userId"]
        self._create(name="Jane", email="jane@example.com")

        response = self.client.put(
            f"/api/v1/users/{john_id}",
            json={"name": None, "email": "jane@example.com", "age": None},
        )
        self.assertEqual(response.status_code, 409, response.text)

        current = self.client.get(f"/api/v1/users/{john_id}").json()
        self.assertEqual(current["email"], "john@example.com")

    def test_update_rejects_negative_age(self) -> None:
        user_id = self._create().json()["userId"]

        response = self.client.put(f"/api/v1/users/{user_id}", json={"name": None, "email": None, "age": -5})
        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(response.json(), {"age": "Age must be positive or zero"})

    def test_create_rejects_age_beyond_integer_range(self) -> None:
        response = self._create(name="Big", email="big@example.com", age=10**19)
        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(response.json(), {"age": "Age must be at most 2147483647"})
        self.assertEqual(self.database.list_users(), [])

        accepted = self._create(name="Big", email="big@example.com", age=2**31 - 1)
        self.assertEqual(accepted.status_code, 201, accepted.text)

    def test_update_rejects_age_beyond_integer_range(self) -> None:
        user_id = self._create().json()["userId"]

        response = self.client.put(f"/api/v1/users/{user_id}", json={"name": None, "email": None, "age": 10**19})
        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(response.json(), {"age": "Age must be at most 2147483647"})
        self.assertEqual(self.client.get(f"/api/v1/users/{user_id}").json()["age"], 30)

    def test_update_missing_user_returns_not_found(self) -> None:
        response = self.client.put("/api/v1/users/999", json={"name": "Nobody", "email": None, "age": None})
        self.assertEqual(response.status_code, 404, response.text)
        self.assertEqual(response.json(), {"message": "User with id 999 not found"})

    def test_delete_missing_user_returns_not_found(self) -> None:
        response = self.client.delete("/api/v1/users/999")
        self.assertEqual(response.status_code, 404, response.text)
        self.assertEqual(response.json(), {"message": "User with id 999 not found"})

    def test_event_delivery_failure_does_not_fail_request(self) -> None:
        self.channel.fail_with = RuntimeError("broker down")

        created = self._create()
        self.assertEqual(created.status_code, 201, created.text)

        self.publisher.flush()
        self.assertEqual(self.publisher.stats.failed, 1)

    def test_healthcheck(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
