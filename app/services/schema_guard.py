from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.reflection import Inspector

EXPECTED_ALEMBIC_HEAD = "0001_initial"


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class KeyRequirement:
    """A column tuple that must be covered by an index (or unique key) on a table."""

    table: str
    columns: tuple[str, ...]
    unique: bool = False
    label: str = ""

    def satisfied_by(self, keys: list[tuple[tuple[str, ...], bool]]) -> bool:
        width = len(self.columns)
        for key_columns, key_unique in keys:
            if self.unique:
                if key_unique and set(key_columns) == set(self.columns):
                    return True
            elif tuple(key_columns[:width]) == self.columns:
                return True
        return False


BOOKING_COLUMNS: dict[str, set[str]] = {
    "rooms": {"id", "organization_id", "buffer_minutes", "time_zone", "deleted_at"},
    "bookings": {"id", "room_id", "start_at", "end_at", "status", "recurring_rule_id", "deleted_at"},
    "booking_credentials": {"id", "booking_id", "type", "token_hash", "expires_at", "last_used_at"},
    "tablets": {"id", "room_id", "session_token_hash", "session_expires_at", "revoked_at"},
    "audit_logs": {"id", "ts_utc", "actor_type", "actor_id", "action", "success"},
}

# Overlap scans, credential lookups and the validation rate limiter each rely on one of these.
BOOKING_KEYS: tuple[KeyRequirement, ...] = (
    KeyRequirement("bookings", ("room_id", "status", "start_at"), label="overlap_scan"),
    KeyRequirement("booking_credentials", ("booking_id", "type"), unique=True, label="one_credential_per_type"),
    KeyRequirement("booking_credentials", ("type", "token_hash"), label="credential_lookup"),
    KeyRequirement("tablets", ("session_token_hash",), unique=True, label="tablet_session"),
    KeyRequirement("audit_logs", ("actor_type", "actor_id", "action"), label="validation_failures"),
)

BOOKING_ENUM_LABELS: dict[str, set[str]] = {
    "booking_status": {"ACTIVE", "CANCELED"},
    "credential_type": {"PIN", "QR"},
}


def _table_keys(inspector: Inspector, table: str) -> list[tuple[tuple[str, ...], bool]]:
    keys = [
        (tuple(str(name) for name in item.get("column_names") or ()), bool(item.get("unique")))
        for item in inspector.get_indexes(table)
    ]
    keys.extend(
        (tuple(str(name) for name in item.get("column_names") or ()), True)
        for item in inspector.get_unique_constraints(table)
    )
    return keys


def _check_columns(inspector: Inspector, tables: set[str], issues: list[str]) -> None:
    for table, required in BOOKING_COLUMNS.items():
        if table not in tables:
            issues.append(f"MISSING_TABLE:{table}")
            continue
        present = {str(item.get("name")) for item in inspector.get_columns(table)}
        missing = sorted(required - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table}:{','.join(missing)}")


def _check_keys(inspector: Inspector, tables: set[str], issues: list[str]) -> None:
    keys_by_table: dict[str, list[tuple[tuple[str, ...], bool]]] = {}
    for requirement in BOOKING_KEYS:
        if requirement.table not in tables:
            continue
        if requirement.table not in keys_by_table:
            keys_by_table[requirement.table] = _table_keys(inspector, requirement.table)
        if not requirement.satisfied_by(keys_by_table[requirement.table]):
            kind = "MISSING_UNIQUE_KEY" if requirement.unique else "MISSING_INDEX"
            issues.append(f"{kind}:{requirement.table}:{requirement.label}")


def _check_enum_labels(inspector: Inspector, issues: list[str], warnings: list[str]) -> None:
    labels_by_name = {
        str(item.get("name")): {str(label) for label in item.get("labels") or ()}
        for item in inspector.get_enums(schema="*")
    }
    for enum_name, required in BOOKING_ENUM_LABELS.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required - labels_by_name[enum_name])
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")


def _check_alembic_head(engine: Engine, tables: set[str], issues: list[str]) -> None:
    if "alembic_version" not in tables:
        issues.append("ALEMBIC_VERSION_MISSING")
        return
    with engine.connect() as connection:
        versions = {str(row[0]).strip() for row in connection.execute(text("SELECT version_num FROM alembic_version"))}
    if not versions:
        issues.append("ALEMBIC_VERSION_EMPTY")
    elif EXPECTED_ALEMBIC_HEAD not in versions:
        issues.append(f"ALEMBIC_HEAD_MISMATCH:{','.join(sorted(versions))}")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Check the schema pieces reservations, credentials and tablet validation depend on.

    Enum labels only exist as database types on PostgreSQL; other dialects store
    the enum names as plain strings, so that check is skipped there.
    """
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())

    _check_columns(inspector, tables, issues)
    _check_keys(inspector, tables, issues)
    if engine.dialect.name == "postgresql":
        _check_enum_labels(inspector, issues, warnings)
    else:
        warnings.append(f"ENUM_CHECK_SKIPPED:{engine.dialect.name}")
    _check_alembic_head(engine, tables, issues)

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
