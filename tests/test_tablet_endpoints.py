from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from sqlalchemy import func, select

from app.db import get_db
from app.main import app
from app.models import AuditLog, Booking, BookingCredential, BookingStatus, CredentialType
from app.security import reset_login_attempts
from app.services.credentials import hash_secret
from tests.sqlite_support import SqliteDatabase, seed_organization, seed_room, seed_tablet, seed_user

PIN = "246810"
QR_TOKEN = "f" * 32


class TabletEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_login_attempts()
        self.database = SqliteDatabase()
        now = datetime.now(timezone.utc)
        with self.database.session() as db:
            organization = seed_organization(db)
            user = seed_user(db, organization)
            room = seed_room(db, organization, room_id="ROOM0001")
            self.tablet_id = seed_tablet(db, room, credential="lobby-secret").id
            booking = Booking(
                organization_id=organization.id,
                room_id=room.id,
                created_by_id=user.id,
                title="Live meeting",
                start_at=now - timedelta(minutes=30),
                end_at=now + timedelta(minutes=30),
                status=BookingStatus.ACTIVE,
            )
            db.add(booking)
            db.flush()
            db.add_all(
                [
                    BookingCredential(
                        booking_id=booking.id,
                        type=CredentialType.PIN,
                        token_hash=hash_secret(PIN),
                        expires_at=booking.end_at,
                    ),
                    BookingCredential(
                        booking_id=booking.id,
                        type=CredentialType.QR,
                        token_hash=hash_secret(QR_TOKEN),
                        expires_at=booking.end_at,
                    ),
                ]
            )
            db.commit()
            self.booking_id = booking.id

        app.dependency_overrides[get_db] = self.database.override_get_db()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        reset_login_attempts()
        self.database.dispose()

    def _session_headers(self) -> dict[str, str]:
        response = self.client.post(
            "/api/tablet/auth",
            json={"tablet_id": self.tablet_id, "credential": "lobby-secret"},
        )
        self.assertEqual(response.status_code, 200)
        return {"Authorization": f"Bearer {response.json()['session_token']}"}

    def test_auth_returns_session_token(self) -> None:
        response = self.client.post(
            "/api/tablet/auth",
            json={"tablet_id": self.tablet_id, "credential": "lobby-secret"},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["tablet_id"], self.tablet_id)
        self.assertEqual(body["room_id"], "ROOM0001")
        self.assertEqual(len(body["session_token"]), 64)

    def test_bad_credentials_are_unauthorized_and_throttled(self) -> None:
        for _ in range(10):
            response = self.client.post(
                "/api/tablet/auth",
                json={"tablet_id": self.tablet_id, "credential": "wrong"},
            )
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.json()["error"]["code"], "UNAUTHORIZED")

        blocked = self.client.post(
            "/api/tablet/auth",
            json={"tablet_id": self.tablet_id, "credential": "lobby-secret"},
        )
        self.assertEqual(blocked.status_code, 429)
        self.assertEqual(blocked.json()["error"]["code"], "TOO_MANY_ATTEMPTS")

    def test_validate_requires_tablet_session(self) -> None:
        response = self.client.post("/api/tablet/validate", json={"pin": PIN})
        self.assertEqual(response.status_code, 401)

        response = self.client.post(
            "/api/tablet/validate",
            json={"pin": PIN},
            headers={"Authorization": "Bearer unknown-session"},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "UNAUTHORIZED")

    def test_validate_with_pin_and_qr(self) -> None:
        headers = self._session_headers()

        by_pin = self.client.post("/api/tablet/validate", json={"pin": PIN}, headers=headers)
        self.assertEqual(by_pin.status_code, 200)
        self.assertEqual(by_pin.json()["booking"]["id"], self.booking_id)
        self.assertEqual(by_pin.json()["booking"]["title"], "Live meeting")

        by_qr = self.client.post(
            "/api/tablet/validate",
            json={"booking_id": self.booking_id, "qr_token": QR_TOKEN},
            headers=headers,
        )
        self.assertEqual(by_qr.status_code, 200)
        self.assertEqual(by_qr.json()["booking"]["id"], self.booking_id)

    def test_validate_body_needs_a_credential(self) -> None:
        headers = self._session_headers()

        for payload in ({}, {"booking_id": self.booking_id}, {"qr_token": QR_TOKEN}):
            with self.subTest(payload=payload):
                response = self.client.post("/api/tablet/validate", json=payload, headers=headers)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_blank_pin_is_looked_up_not_rejected(self) -> None:
        headers = self._session_headers()

        response = self.client.post("/api/tablet/validate", json={"pin": "  "}, headers=headers)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "BOOKING_NOT_FOUND")
        with self.database.session() as db:
            audit = db.scalar(select(AuditLog).where(AuditLog.action == "BOOKING_VALIDATED"))
        self.assertFalse(audit.success)
        self.assertEqual(audit.details["reason"], "credential_not_found")

    def test_repeated_wrong_pins_hit_rate_limit(self) -> None:
        headers = self._session_headers()
        wrong = "135790"

        for _ in range(5):
            response = self.client.post("/api/tablet/validate", json={"pin": wrong}, headers=headers)
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json()["error"]["code"], "BOOKING_NOT_FOUND")

        limited = self.client.post("/api/tablet/validate", json={"pin": PIN}, headers=headers)
        self.assertEqual(limited.status_code, 429)
        self.assertEqual(limited.json()["error"]["code"], "TOO_MANY_ATTEMPTS")
        self.assertEqual(limited.json()["error"]["type"], "RateLimited")

        with self.database.session() as db:
            failures = db.scalar(
                select(func.count(AuditLog.id)).where(
                    AuditLog.action == "BOOKING_VALIDATED",
                    AuditLog.success.is_(False),
                )
            )
        self.assertEqual(failures, 5)

    def test_login_challenge_for_tablet(self) -> None:
        headers = self._session_headers()

        response = self.client.post("/api/tablet/login-challenge", headers=headers)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertRegex(body["pin"], r"^\d{6}$")
        self.assertGreater(body["challenge_id"], 0)


if __name__ == "__main__":
    unittest.main()
