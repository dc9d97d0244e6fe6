#!/usr/bin/env python
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, inspect, text


EXPECTED_HEAD = "0001_initial"
REQUIRED_TABLES = (
    "organizations",
    "users",
    "rooms",
    "recurring_booking_rules",
    "bookings",
    "booking_credentials",
    "tablets",
    "login_challenges",
    "audit_logs",
)


def load_env_if_exists() -> None:
    env_file = Path(".env")
    if not env_file.exists():
        return
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def run(database_url: str | None = None) -> dict:
    if database_url is None:
        load_env_if_exists()
        database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL not found (.env or env vars).")

    engine = create_engine(database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    tables = set(inspect(engine).get_table_names())
    with engine.connect() as conn:
        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        missing_tables = [table for table in REQUIRED_TABLES if table not in tables]
        add("missing_tables", "fail" if missing_tables else "ok", {"tables": missing_tables})

        if "bookings" in tables:
            # Two live bookings on one room must never overlap.
            overlapping = conn.execute(
                text(
                    """
                    select a.id, b.id, a.room_id
                    from bookings a
                    join bookings b on b.room_id = a.room_id and b.id > a.id
                    where a.status = 'ACTIVE' and b.status = 'ACTIVE'
                      and a.deleted_at is null and b.deleted_at is null
                      and a.start_at < b.end_at and b.start_at < a.end_at
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "overlapping_active_bookings",
                "fail" if overlapping else "ok",
                {"pairs": [[row[0], row[1], row[2]] for row in overlapping]},
            )

        if "bookings" in tables and "booking_credentials" in tables:
            incomplete = conn.execute(
                text(
                    """
                    select b.id, count(c.id)
                    from bookings b
                    left join booking_credentials c on c.booking_id = b.id
                    group by b.id
                    having count(c.id) <> 2
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "bookings_without_credentials",
                "fail" if incomplete else "ok",
                {"rows": [list(row) for row in incomplete]},
            )

    engine.dispose()
    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2, default=str))
