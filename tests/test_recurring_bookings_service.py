from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from unittest.mock import patch

from sqlalchemy import func, select

from app.errors import ApiError
from app.models import Booking, RecurrenceFrequency, RecurringBookingRule
from app.services.recurring_bookings import create_recurring_bookings
from app.services.reservations import create_booking
from app.services.room_locks import InProcessRoomLock
from app.services.time_windows import as_utc
from tests.sqlite_support import SqliteDatabase, principal_for, seed_organization, seed_room, seed_user


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class RecurringBookingServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = SqliteDatabase()
        self.db = self.database.session()
        self.organization = seed_organization(self.db)
        self.user = seed_user(self.db, self.organization, email="planner@example.com")
        self.other_user = seed_user(self.db, self.organization, email="other@example.com")
        self.room = seed_room(self.db, self.organization, availability_start_minutes=8 * 60, availability_end_minutes=18 * 60)
        self.lock = InProcessRoomLock(timeout_seconds=5)
        self.email_patch = patch("app.services.recurring_bookings.send_booking_created_email")
        self.send_email = self.email_patch.start()

    def tearDown(self) -> None:
        self.email_patch.stop()
        self.db.close()
        self.database.dispose()

    def _recurring(self, **overrides):  # type: ignore[no-untyped-def]
        values = {
            "room_id": "ROOM0001",
            "principal": principal_for(self.user),
            # 2030-05-06 is a Monday.
            "start_at": "2030-05-06T09:00:00Z",
            "duration_minutes": 60,
            "frequency": RecurrenceFrequency.WEEKLY,
            "days_of_week": [1, 3],
            "count": 4,
            "title": "Standup",
            "room_lock": self.lock,
        }
        values.update(overrides)
        return create_recurring_bookings(self.db, **values)

    def test_each_occurrence_is_admitted_independently(self) -> None:
        create_booking(
            self.db,
            room_id="ROOM0001",
            start_at="2030-05-08T09:30:00Z",
            end_at="2030-05-08T10:30:00Z",
            principal=principal_for(self.other_user),
            room_lock=self.lock,
        )

        outcome = self._recurring()

        self.assertEqual(outcome.created, 3)
        self.assertEqual(
            [item.start_at for item in outcome.results],
            [
                _utc(2030, 5, 6, 9, 0),
                _utc(2030, 5, 8, 9, 0),
                _utc(2030, 5, 13, 9, 0),
                _utc(2030, 5, 15, 9, 0),
            ],
        )
        failed = outcome.results[1]
        self.assertIsNone(failed.booking_id)
        self.assertEqual(failed.error, "Time slot is not available.")
        self.assertTrue(all(item.error is None for index, item in enumerate(outcome.results) if index != 1))
        self.assertEqual(self.send_email.call_count, 3)

        tagged = self.db.scalars(
            select(Booking).where(Booking.recurring_rule_id == outcome.rule.id).order_by(Booking.start_at)
        ).all()
        self.assertEqual([item.id for item in tagged], [item.booking_id for item in outcome.results if item.booking_id])
        self.assertTrue(all(item.title == "Standup" for item in tagged))

    def test_rule_stores_local_start_and_pattern(self) -> None:
        organization = seed_organization(self.db, name="Empire", time_zone="America/New_York")
        user = seed_user(self.db, organization, email="ny@example.com")
        seed_room(self.db, organization, room_id="NYROOM01")

        # 13:00 UTC is 09:00 EDT.
        outcome = self._recurring(
            room_id="NYROOM01",
            principal=principal_for(user),
            start_at="2030-05-06T13:00:00Z",
            frequency="DAILY",
            days_of_week=None,
            count=2,
        )

        rule = self.db.get(RecurringBookingRule, outcome.rule.id)
        self.assertEqual(rule.frequency, RecurrenceFrequency.DAILY)
        self.assertEqual(rule.start_date, date(2030, 5, 6))
        self.assertEqual(rule.start_time_minutes, 9 * 60)
        self.assertEqual(rule.time_zone, "America/New_York")
        self.assertEqual(rule.count, 2)
        self.assertEqual(outcome.created, 2)
        self.assertEqual(self.send_email.call_args.kwargs["to"], "ny@example.com")

    def test_window_that_yields_nothing_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self._recurring(end_date=date(2030, 5, 5))

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.code, "NO_OCCURRENCES")
        self.assertEqual(self.db.scalar(select(func.count(RecurringBookingRule.id))), 0)

    def test_invalid_first_occurrence_fails_whole_request(self) -> None:
        cases = [
            ({"start_at": "2030-05-06T09:10:00Z"}, "UNALIGNED_WINDOW"),
            ({"start_at": "2030-05-06T17:30:00Z"}, "OUTSIDE_AVAILABILITY"),
            ({"duration_minutes": 300}, "DURATION_OUT_OF_RANGE"),
            ({"frequency": "MONTHLY"}, "INVALID_RECURRENCE"),
            ({"days_of_week": [9]}, "INVALID_RECURRENCE"),
        ]
        for overrides, code in cases:
            with self.subTest(code=code, overrides=overrides):
                with self.assertRaises(ApiError) as ctx:
                    self._recurring(**overrides)
                self.assertEqual(ctx.exception.code, code)

        self.assertEqual(self.db.scalar(select(func.count(RecurringBookingRule.id))), 0)
        self.assertEqual(self.db.scalar(select(func.count(Booking.id))), 0)
        self.send_email.assert_not_called()

    def test_count_defaults_to_configured_value(self) -> None:
        outcome = self._recurring(frequency=RecurrenceFrequency.DAILY, days_of_week=None, count=None)

        self.assertEqual(outcome.created, 10)
        self.assertIsNone(self.db.get(RecurringBookingRule, outcome.rule.id).count)
        self.assertEqual(as_utc(outcome.results[-1].start_at), _utc(2030, 5, 15, 9, 0))

    def test_summary_is_logged_at_info(self) -> None:
        with self.assertLogs("app.reservations", "INFO") as captured:
            outcome = self._recurring(frequency=RecurrenceFrequency.DAILY, days_of_week=None, count=2)

        self.assertEqual(outcome.created, 2)
        summary = [record for record in captured.records if record.getMessage() == "recurring_bookings_created"]
        self.assertEqual(len(summary), 1)
        self.assertEqual(summary[0].rule_id, outcome.rule.id)
        self.assertEqual(summary[0].requested, 2)
        self.assertEqual(summary[0].created_count, 2)

    def test_end_date_bound_rule_keeps_count_empty(self) -> None:
        outcome = self._recurring(
            frequency=RecurrenceFrequency.DAILY,
            days_of_week=None,
            count=None,
            end_date=date(2030, 5, 8),
        )

        self.assertEqual(outcome.created, 3)
        self.assertIsNone(self.db.get(RecurringBookingRule, outcome.rule.id).count)

    def test_unknown_room_is_not_found(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self._recurring(room_id="MISSING1")

        self.assertEqual(ctx.exception.code, "ROOM_NOT_FOUND")


if __name__ == "__main__":
    unittest.main()
