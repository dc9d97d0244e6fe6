from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy import text

from app.models import Booking, BookingCredential, BookingStatus, CredentialType
from app.services.credentials import hash_secret
from scripts.db_health_check import run
from tests.sqlite_support import SqliteDatabase, seed_organization, seed_room, seed_user


def _checks(report: dict) -> dict[str, dict]:
    return {item["name"]: item for item in report["checks"]}


class DbHealthCheckTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = SqliteDatabase()
        with self.database.session() as db:
            organization = seed_organization(db)
            self.organization_id = organization.id
            self.user_id = seed_user(db, organization).id
            seed_room(db, organization, room_id="ROOM0001")

    def tearDown(self) -> None:
        self.database.dispose()

    def _add_booking(self, start_hour: int, end_hour: int, *, with_credentials: bool = True) -> int:
        with self.database.session() as db:
            booking = Booking(
                organization_id=self.organization_id,
                room_id="ROOM0001",
                created_by_id=self.user_id,
                start_at=datetime(2030, 5, 6, start_hour, 0, tzinfo=timezone.utc),
                end_at=datetime(2030, 5, 6, end_hour, 0, tzinfo=timezone.utc),
                status=BookingStatus.ACTIVE,
            )
            db.add(booking)
            db.flush()
            if with_credentials:
                for credential_type, secret in ((CredentialType.PIN, f"{booking.id:06d}"), (CredentialType.QR, "a" * 32)):
                    db.add(
                        BookingCredential(
                            booking_id=booking.id,
                            type=credential_type,
                            token_hash=hash_secret(f"{secret}-{booking.id}"),
                            expires_at=booking.end_at,
                        )
                    )
            db.commit()
            return booking.id

    def _stamp(self, version: str) -> None:
        with self.database.engine.begin() as conn:
            conn.execute(text("create table alembic_version (version_num varchar(32) not null)"))
            conn.execute(text("insert into alembic_version (version_num) values (:version)"), {"version": version})

    def test_healthy_database_passes_every_check(self) -> None:
        self._stamp("0001_initial")
        self._add_booking(9, 10)
        self._add_booking(10, 11)

        checks = _checks(run(self.database.url))

        self.assertEqual({name: item["status"] for name, item in checks.items()}, {
            "alembic_version": "ok",
            "migration_up_to_date": "ok",
            "missing_tables": "ok",
            "overlapping_active_bookings": "ok",
            "bookings_without_credentials": "ok",
        })

    def test_unstamped_database_fails_version_check(self) -> None:
        checks = _checks(run(self.database.url))

        self.assertEqual(checks["alembic_version"]["status"], "fail")
        self.assertEqual(checks["migration_up_to_date"]["status"], "warn")
        self.assertEqual(checks["missing_tables"]["details"], {"tables": []})

    def test_overlaps_and_missing_credentials_are_reported(self) -> None:
        self._stamp("0001_initial")
        first = self._add_booking(9, 11)
        second = self._add_booking(10, 12, with_credentials=False)

        checks = _checks(run(self.database.url))

        overlapping = checks["overlapping_active_bookings"]
        self.assertEqual(overlapping["status"], "fail")
        self.assertEqual(overlapping["details"]["pairs"], [[first, second, "ROOM0001"]])
        incomplete = checks["bookings_without_credentials"]
        self.assertEqual(incomplete["status"], "fail")
        self.assertEqual(incomplete["details"]["rows"], [[second, 0]])

    def test_missing_database_url_raises(self) -> None:
        with patch("scripts.db_health_check.load_env_if_exists"), patch.dict(
            "os.environ", {}, clear=True
        ):
            with self.assertRaises(RuntimeError):
                run()


if __name__ == "__main__":
    unittest.main()
