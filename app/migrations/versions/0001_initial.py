"""Initial room booking schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = postgresql.ENUM("USER", "ADMIN", name="user_role", create_type=False)
booking_status = postgresql.ENUM("ACTIVE", "CANCELED", name="booking_status", create_type=False)
recurrence_frequency = postgresql.ENUM("DAILY", "WEEKLY", name="recurrence_frequency", create_type=False)
credential_type = postgresql.ENUM("PIN", "QR", name="credential_type", create_type=False)
audit_actor_type = postgresql.ENUM("USER", "TABLET", "SYSTEM", name="audit_actor_type", create_type=False)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (user_role, booking_status, recurrence_frequency, credential_type, audit_actor_type):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("time_zone", sa.String(length=64), nullable=False, server_default=sa.text("'UTC'")),
        _created_at(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("role", user_role, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_organization_id", "users", ["organization_id"], unique=False)

    op.create_table(
        "rooms",
        sa.Column("id", sa.String(length=16), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("availability_start_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("availability_end_minutes", sa.Integer(), nullable=False, server_default=sa.text("1440")),
        sa.Column("min_duration_minutes", sa.Integer(), nullable=False, server_default=sa.text("15")),
        sa.Column("max_duration_minutes", sa.Integer(), nullable=False, server_default=sa.text("240")),
        sa.Column("buffer_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("time_zone", sa.String(length=64), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_rooms_organization_id", "rooms", ["organization_id"], unique=False)

    op.create_table(
        "recurring_booking_rules",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("room_id", sa.String(length=16), nullable=False),
        sa.Column("created_by_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("frequency", recurrence_frequency, nullable=False),
        sa.Column("interval", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("days_of_week", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("count", sa.Integer(), nullable=True),
        sa.Column("start_time_minutes", sa.Integer(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("time_zone", sa.String(length=64), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["room_id"], ["rooms.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
    )
    op.create_index(
        "ix_recurring_booking_rules_organization_id",
        "recurring_booking_rules",
        ["organization_id"],
        unique=False,
    )
    op.create_index("ix_recurring_booking_rules_room_id", "recurring_booking_rules", ["room_id"], unique=False)

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("room_id", sa.String(length=16), nullable=False),
        sa.Column("created_by_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", booking_status, nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_by_id", sa.Integer(), nullable=True),
        sa.Column("recurring_rule_id", sa.Integer(), nullable=True),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["room_id"], ["rooms.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["canceled_by_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["recurring_rule_id"], ["recurring_booking_rules.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_bookings_organization_id", "bookings", ["organization_id"], unique=False)
    op.create_index("ix_bookings_created_by_id", "bookings", ["created_by_id"], unique=False)
    op.create_index("ix_bookings_recurring_rule_id", "bookings", ["recurring_rule_id"], unique=False)
    op.create_index(
        "ix_bookings_room_status_window",
        "bookings",
        ["room_id", "status", "start_at", "end_at"],
        unique=False,
    )

    op.create_table(
        "booking_credentials",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("booking_id", sa.Integer(), nullable=False),
        sa.Column("type", credential_type, nullable=False),
        sa.Column("token_hash", sa.String(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("booking_id", "type", name="uq_booking_credentials_booking_type"),
    )
    op.create_index("ix_booking_credentials_booking_id", "booking_credentials", ["booking_id"], unique=False)
    op.create_index(
        "ix_booking_credentials_type_hash",
        "booking_credentials",
        ["type", "token_hash"],
        unique=False,
    )

    op.create_table(
        "tablets",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("room_id", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("credential_hash", sa.String(length=128), nullable=False),
        sa.Column("session_token_hash", sa.String(length=128), nullable=True),
        sa.Column("session_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["room_id"], ["rooms.id"]),
    )
    op.create_index("ix_tablets_organization_id", "tablets", ["organization_id"], unique=False)
    op.create_index("ix_tablets_room_id", "tablets", ["room_id"], unique=False)
    op.create_index("ix_tablets_session_token_hash", "tablets", ["session_token_hash"], unique=True)

    op.create_table(
        "login_challenges",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("tablet_id", sa.Integer(), nullable=True),
        sa.Column("pin_hash", sa.String(length=128), nullable=False),
        sa.Column("token_hash", sa.String(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tablet_id"], ["tablets.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_login_challenges_organization_id", "login_challenges", ["organization_id"], unique=False)
    op.create_index("ix_login_challenges_email", "login_challenges", ["email"], unique=False)
    op.create_index("ix_login_challenges_tablet_id", "login_challenges", ["tablet_id"], unique=False)
    op.create_index("ix_login_challenges_pin_hash", "login_challenges", ["pin_hash"], unique=False)
    op.create_index("ix_login_challenges_expires_at", "login_challenges", ["expires_at"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("organization_id", sa.Integer(), nullable=True),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("booking_id", sa.Integer(), nullable=True),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"], unique=False)
    op.create_index("ix_audit_logs_booking_id", "audit_logs", ["booking_id"], unique=False)
    op.create_index(
        "ix_audit_logs_actor_action_ts",
        "audit_logs",
        ["actor_type", "actor_id", "action", "ts_utc"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("login_challenges")
    op.drop_table("tablets")
    op.drop_table("booking_credentials")
    op.drop_table("bookings")
    op.drop_table("recurring_booking_rules")
    op.drop_table("rooms")
    op.drop_table("users")
    op.drop_table("organizations")

    bind = op.get_bind()
    for enum_type in (audit_actor_type, credential_type, recurrence_frequency, booking_status, user_role):
        enum_type.drop(bind, checkfirst=True)
