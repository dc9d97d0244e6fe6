from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest.mock import patch

from sqlalchemy import text

from app.services.schema_guard import BOOKING_COLUMNS, EXPECTED_ALEMBIC_HEAD, verify_runtime_schema
from tests.sqlite_support import SqliteDatabase


class SqliteSchemaGuardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = SqliteDatabase()

    def tearDown(self) -> None:
        self.database.dispose()

    def _execute(self, *statements: str) -> None:
        with self.database.engine.begin() as conn:
            for statement in statements:
                conn.execute(text(statement))

    def _stamp(self, version: str = EXPECTED_ALEMBIC_HEAD) -> None:
        self._execute(
            "CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)",
            f"INSERT INTO alembic_version (version_num) VALUES ('{version}')",
        )

    def test_schema_built_from_models_passes(self) -> None:
        self._stamp()

        result = verify_runtime_schema(self.database.engine)

        self.assertTrue(result.ok, result.issues)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, ["ENUM_CHECK_SKIPPED:sqlite"])

    def test_unstamped_or_stale_database_is_rejected(self) -> None:
        result = verify_runtime_schema(self.database.engine)
        self.assertEqual(result.issues, ["ALEMBIC_VERSION_MISSING"])

        self._stamp("0000_bootstrap")
        result = verify_runtime_schema(self.database.engine)
        self.assertFalse(result.ok)
        self.assertEqual(result.issues, ["ALEMBIC_HEAD_MISMATCH:0000_bootstrap"])

    def test_missing_overlap_and_rate_limit_indexes_are_issues(self) -> None:
        self._stamp()
        self._execute(
            "DROP INDEX ix_bookings_room_status_window",
            "DROP INDEX ix_audit_logs_actor_action_ts",
        )

        result = verify_runtime_schema(self.database.engine)

        self.assertFalse(result.ok)
        self.assertEqual(
            result.issues,
            ["MISSING_INDEX:bookings:overlap_scan", "MISSING_INDEX:audit_logs:validation_failures"],
        )

    def test_non_unique_session_index_is_rejected(self) -> None:
        self._stamp()
        self._execute(
            "DROP INDEX ix_tablets_session_token_hash",
            "CREATE INDEX ix_tablets_session_token_hash ON tablets (session_token_hash)",
        )

        result = verify_runtime_schema(self.database.engine)

        self.assertEqual(result.issues, ["MISSING_UNIQUE_KEY:tablets:tablet_session"])

    def test_missing_table_is_reported(self) -> None:
        self._stamp()
        self._execute("DROP TABLE audit_logs")

        result = verify_runtime_schema(self.database.engine)

        self.assertEqual(result.issues, ["MISSING_TABLE:audit_logs"])


class _FakeConnection:
    def __init__(self, versions: list[str]):
        self._versions = versions

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return [(version,) for version in self._versions]


class _FakeEngine:
    dialect = SimpleNamespace(name="postgresql")

    def __init__(self, versions: list[str]):
        self._versions = versions

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._versions)


class _FakePostgresInspector:
    def __init__(self, *, enums: list[dict[str, object]], credential_unique: bool = True):
        self._enums = enums
        self._credential_unique = credential_unique

    def get_table_names(self) -> list[str]:
        return [*BOOKING_COLUMNS, "alembic_version"]

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": name} for name in BOOKING_COLUMNS[table_name]]

    def get_indexes(self, table_name: str):  # type: ignore[no-untyped-def]
        return {
            "bookings": [{"column_names": ["room_id", "status", "start_at", "end_at"], "unique": False}],
            "booking_credentials": [{"column_names": ["type", "token_hash"], "unique": False}],
            "tablets": [{"column_names": ["session_token_hash"], "unique": True}],
            "audit_logs": [{"column_names": ["actor_type", "actor_id", "action", "ts_utc"], "unique": False}],
        }.get(table_name, [])

    def get_unique_constraints(self, table_name: str):  # type: ignore[no-untyped-def]
        if table_name == "booking_credentials" and self._credential_unique:
            return [{"column_names": ["type", "booking_id"]}]
        return []

    def get_enums(self, schema=None):  # type: ignore[no-untyped-def]
        return self._enums


class PostgresSchemaGuardTests(unittest.TestCase):
    def test_enum_labels_and_credential_uniqueness(self) -> None:
        inspector = _FakePostgresInspector(
            enums=[{"name": "booking_status", "labels": ["ACTIVE", "CANCELED"]}],
            credential_unique=False,
        )

        with patch("app.services.schema_guard.inspect", return_value=inspector):
            result = verify_runtime_schema(_FakeEngine([EXPECTED_ALEMBIC_HEAD]))  # type: ignore[arg-type]

        self.assertEqual(result.issues, ["MISSING_UNIQUE_KEY:booking_credentials:one_credential_per_type"])
        self.assertEqual(result.warnings, ["ENUM_NOT_FOUND:credential_type"])

    def test_missing_canceled_label_fails(self) -> None:
        inspector = _FakePostgresInspector(
            enums=[
                {"name": "booking_status", "labels": ["ACTIVE"]},
                {"name": "credential_type", "labels": ["PIN", "QR"]},
            ]
        )

        with patch("app.services.schema_guard.inspect", return_value=inspector):
            result = verify_runtime_schema(_FakeEngine([EXPECTED_ALEMBIC_HEAD]))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertEqual(result.issues, ["MISSING_ENUM_VALUES:booking_status:CANCELED"])
        self.assertEqual(result.to_dict()["issue_count"], 1)

    def test_empty_version_table_is_an_issue(self) -> None:
        inspector = _FakePostgresInspector(
            enums=[
                {"name": "booking_status", "labels": ["ACTIVE", "CANCELED"]},
                {"name": "credential_type", "labels": ["PIN", "QR"]},
            ]
        )

        with patch("app.services.schema_guard.inspect", return_value=inspector):
            result = verify_runtime_schema(_FakeEngine([]))  # type: ignore[arg-type]

        self.assertEqual(result.issues, ["ALEMBIC_VERSION_EMPTY"])
        self.assertEqual(result.warnings, [])


if __name__ == "__main__":
    unittest.main()
