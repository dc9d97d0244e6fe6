from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import select

from app.db import get_db
from app.main import app
from app.models import AuditLog, Booking, BookingStatus, UserRole
from app.security import require_user
from tests.sqlite_support import SqliteDatabase, principal_for, seed_organization, seed_room, seed_user


def _instant(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class BookingEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = SqliteDatabase()
        with self.database.session() as db:
            organization = seed_organization(db)
            self.owner = principal_for(seed_user(db, organization, email="owner@example.com"))
            self.other = principal_for(seed_user(db, organization, email="other@example.com"))
            self.admin = principal_for(seed_user(db, organization, email="admin@example.com", role=UserRole.ADMIN))
            seed_room(db, organization, room_id="ROOM0001", name="Boardroom")
        self.current_principal = self.owner

        app.dependency_overrides[get_db] = self.database.override_get_db()
        app.dependency_overrides[require_user] = lambda: self.current_principal
        self.created_email = patch("app.routers.bookings.send_booking_created_email").start()
        self.canceled_email = patch("app.routers.bookings.send_booking_canceled_email").start()
        self.recurring_email = patch("app.services.recurring_bookings.send_booking_created_email").start()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        patch.stopall()
        app.dependency_overrides.clear()
        self.database.dispose()

    def _create(self, start_at: str = "2030-05-06T09:00:00Z", end_at: str = "2030-05-06T10:00:00Z"):  # type: ignore[no-untyped-def]
        return self.client.post(
            "/api/bookings",
            json={"room_id": "ROOM0001", "start_at": start_at, "end_at": end_at, "title": "Planning"},
        )

    def _audit_actions(self) -> list[str]:
        with self.database.session() as db:
            return list(db.scalars(select(AuditLog.action).order_by(AuditLog.id)).all())

    def test_create_booking_returns_credentials_once(self) -> None:
        response = self._create()

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.headers.get("X-Request-Id"))
        body = response.json()
        self.assertEqual(body["booking"]["room_id"], "ROOM0001")
        self.assertEqual(body["booking"]["status"], "ACTIVE")
        self.assertEqual(body["booking"]["title"], "Planning")
        self.assertEqual(_instant(body["booking"]["start_at"]), datetime(2030, 5, 6, 9, 0, tzinfo=timezone.utc))
        self.assertRegex(body["credentials"]["pin"], r"^\d{6}$")
        self.assertEqual(len(body["credentials"]["qr_token"]), 32)

        self.assertEqual(self._audit_actions(), ["BOOKING_CREATED"])
        email = self.created_email.call_args.kwargs
        self.assertEqual(email["to"], "owner@example.com")
        self.assertEqual(email["pin"], body["credentials"]["pin"])
        self.assertEqual(email["room_name"], "Boardroom")
        self.assertEqual(email["time_zone"], "UTC")

        listed = self.client.get("/api/bookings").json()["bookings"]
        self.assertEqual([item["id"] for item in listed], [body["booking"]["id"]])
        self.assertNotIn("pin", listed[0])

    def test_overlap_returns_conflict_error(self) -> None:
        self.assertEqual(self._create().status_code, 201)
        self.current_principal = self.other

        response = self._create("2030-05-06T09:45:00Z", "2030-05-06T10:15:00Z")

        self.assertEqual(response.status_code, 409)
        error = response.json()["error"]
        self.assertEqual(error["code"], "SLOT_UNAVAILABLE")
        self.assertEqual(error["type"], "Conflict")
        self.assertTrue(error["request_id"])

    def test_policy_violations_return_400(self) -> None:
        cases = [
            (("2030-05-06T09:05:00Z", "2030-05-06T10:00:00Z"), "UNALIGNED_WINDOW"),
            (("2030-05-06T10:00:00Z", "2030-05-06T09:00:00Z"), "INVALID_WINDOW"),
            (("2030-05-06T09:00:00Z", "2030-05-06T09:00:00Z"), "INVALID_WINDOW"),
            (("2030-05-06T09:00:00Z", "2030-05-06T14:00:00Z"), "DURATION_OUT_OF_RANGE"),
            (("2030-05-06T23:00:00Z", "2030-05-07T00:30:00Z"), "CROSSES_DAY_BOUNDARY"),
        ]
        for (start_at, end_at), code in cases:
            with self.subTest(code=code, start_at=start_at):
                response = self._create(start_at, end_at)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"]["code"], code)
                self.assertEqual(response.json()["error"]["type"], "ValidationError")

    def test_malformed_body_is_a_validation_error(self) -> None:
        response = self.client.post("/api/bookings", json={"room_id": "ROOM0001"})

        self.assertEqual(response.status_code, 400)
        error = response.json()["error"]
        self.assertEqual(error["code"], "VALIDATION_ERROR")
        self.assertIn("start_at", error["message"])

    def test_unknown_room_is_not_found(self) -> None:
        response = self.client.post(
            "/api/bookings",
            json={"room_id": "NOPE0000", "start_at": "2030-05-06T09:00:00Z", "end_at": "2030-05-06T10:00:00Z"},
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "ROOM_NOT_FOUND")

    def test_cancel_rules_and_idempotency(self) -> None:
        booking_id = self._create().json()["booking"]["id"]

        self.current_principal = self.other
        forbidden = self.client.post("/api/bookings/cancel", json={"booking_id": booking_id})
        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(forbidden.json()["error"]["code"], "FORBIDDEN")

        self.current_principal = self.owner
        first = self.client.post("/api/bookings/cancel", json={"booking_id": booking_id})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["booking"]["status"], "CANCELED")
        self.assertFalse(first.json()["already_canceled"])
        self.canceled_email.assert_called_once()
        self.assertEqual(self.canceled_email.call_args.kwargs["to"], "owner@example.com")

        second = self.client.post("/api/bookings/cancel", json={"booking_id": booking_id})
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.json()["already_canceled"])
        self.assertEqual(second.json()["booking"]["canceled_at"], first.json()["booking"]["canceled_at"])
        self.assertEqual(self._audit_actions(), ["BOOKING_CREATED", "BOOKING_CANCELED"])
        self.canceled_email.assert_called_once()

        missing = self.client.post("/api/bookings/cancel", json={"booking_id": booking_id + 50})
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["error"]["code"], "BOOKING_NOT_FOUND")

    def test_admin_cancel_is_recorded_as_override(self) -> None:
        booking_id = self._create().json()["booking"]["id"]
        self.current_principal = self.admin

        response = self.client.post("/api/bookings/cancel", json={"booking_id": booking_id})

        self.assertEqual(response.status_code, 200)
        with self.database.session() as db:
            audit = db.scalar(select(AuditLog).where(AuditLog.action == "ADMIN_OVERRIDE"))
            booking = db.get(Booking, booking_id)
            self.assertIsNotNone(audit)
            self.assertEqual(audit.actor_id, str(self.admin.user_id))
            self.assertEqual(audit.booking_id, booking_id)
            self.assertEqual(booking.status, BookingStatus.CANCELED)
            self.assertEqual(booking.canceled_by_id, self.admin.user_id)
        self.assertEqual(self.canceled_email.call_args.kwargs["to"], "owner@example.com")

    def test_recurring_endpoint_reports_each_occurrence(self) -> None:
        self.current_principal = self.other
        self._create("2030-05-13T09:00:00Z", "2030-05-13T10:00:00Z")
        self.current_principal = self.owner

        response = self.client.post(
            "/api/bookings/recurring",
            json={
                "room_id": "ROOM0001",
                "title": "Weekly sync",
                "start_at": "2030-05-06T09:00:00Z",
                "duration_minutes": 60,
                "frequency": "WEEKLY",
                "days_of_week": [1],
                "count": 3,
            },
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["created"], 2)
        self.assertEqual([item["booking_id"] is None for item in body["results"]], [False, True, False])
        self.assertEqual(body["results"][1]["error"], "Time slot is not available.")
        self.assertEqual(self.recurring_email.call_count, 2)
        self.assertEqual(self._audit_actions()[-1], "RECURRING_BOOKINGS_CREATED")

    def test_recurring_endpoint_rejects_bad_weekdays(self) -> None:
        response = self.client.post(
            "/api/bookings/recurring",
            json={
                "room_id": "ROOM0001",
                "start_at": "2030-05-06T09:00:00Z",
                "duration_minutes": 60,
                "frequency": "WEEKLY",
                "days_of_week": [7],
            },
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_room_listing_and_availability(self) -> None:
        booking_id = self._create().json()["booking"]["id"]

        rooms = self.client.get("/api/rooms").json()["rooms"]
        self.assertEqual([item["id"] for item in rooms], ["ROOM0001"])

        response = self.client.get(
            "/api/rooms/ROOM0001/availability",
            params={"start_at": "2030-05-06T00:00:00Z", "end_at": "2030-05-07T00:00:00Z"},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["time_zone"], "UTC")
        self.assertEqual([item["id"] for item in body["bookings"]], [booking_id])
        self.assertNotIn("created_by_id", body["bookings"][0])

        invalid = self.client.get("/api/rooms/ROOM0001/availability", params={"start_at": "nope"})
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(invalid.json()["error"]["code"], "INVALID_WINDOW")


class UnauthenticatedBookingEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = SqliteDatabase()
        app.dependency_overrides[get_db] = self.database.override_get_db()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.database.dispose()

    def test_missing_or_bad_token_is_unauthorized(self) -> None:
        missing = self.client.get("/api/bookings")
        self.assertEqual(missing.status_code, 401)
        self.assertEqual(missing.json()["error"]["code"], "UNAUTHORIZED")
        self.assertEqual(missing.json()["error"]["type"], "Unauthorized")

        garbage = self.client.get("/api/bookings", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(garbage.status_code, 401)


if __name__ == "__main__":
    unittest.main()
