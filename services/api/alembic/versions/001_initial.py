"""Initial schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None

event_category = postgresql.ENUM("anniversary", "birthday", "date", "milestone", "other", name="event_category")
event_priority = postgresql.ENUM("low", "medium", "high", name="event_priority")
history_action = postgresql.ENUM("created", "updated", "deleted", "restored", name="history_action")
reminder_type = postgresql.ENUM("standard", "urgent", "gentle", name="reminder_type")
reminder_channel = postgresql.ENUM("primary", "in_app", name="reminder_channel")
reminder_status = postgresql.ENUM("pending", "sending", "sent", "failed", "cancelled", name="reminder_status")


def upgrade() -> None:
    # --- events ---
    op.create_table(
        "events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("is_all_day", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("location", sa.String(200), nullable=True),
        sa.Column("category", event_category, nullable=False, server_default="other"),
        sa.Column("priority", event_priority, nullable=False, server_default="medium"),
        sa.Column("is_recurring", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("recurring_config", postgresql.JSONB, nullable=True),
        sa.Column("reminder_minutes", sa.Integer, nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column("updated_by", sa.String(255), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_events_date", "events", ["date"])
    op.create_index("ix_events_category", "events", ["category"])
    op.create_index("ix_events_priority", "events", ["priority"])
    op.create_index("ix_events_created_by", "events", ["created_by"])
    op.create_index("ix_events_deleted_at", "events", ["deleted_at"])

    # --- event_history ---
    op.create_table(
        "event_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", history_action, nullable=False),
        sa.Column("changed_fields", postgresql.JSONB, nullable=True),
        sa.Column("old_values", postgresql.JSONB, nullable=True),
        sa.Column("new_values", postgresql.JSONB, nullable=True),
        sa.Column("changed_by", sa.String(255), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_event_history_event_id", "event_history", ["event_id"])
    op.create_index("ix_event_history_changed_by", "event_history", ["changed_by"])
    op.create_index("ix_event_history_changed_at", "event_history", ["changed_at"])

    # --- event_reminders ---
    op.create_table(
        "event_reminders",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reminder_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("occurrence_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lead_minutes", sa.Integer, nullable=True),
        sa.Column("reminder_type", reminder_type, nullable=False, server_default="standard"),
        sa.Column("channel", reminder_channel, nullable=False, server_default="primary"),
        sa.Column("status", reminder_status, nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_event_reminders_event_id", "event_reminders", ["event_id"])
    op.create_index("ix_event_reminders_reminder_time", "event_reminders", ["reminder_time"])
    op.create_index("ix_event_reminders_status", "event_reminders", ["status"])

    # --- notification_preferences ---
    op.create_table(
        "notification_preferences",
        sa.Column("user_id", sa.String(255), primary_key=True),
        sa.Column("reminder_times", postgresql.JSONB, nullable=False, server_default=sa.text("'[15, 60, 1440]'::jsonb")),
        sa.Column("quiet_hours_start", sa.String(5), nullable=False, server_default="22:00"),
        sa.Column("quiet_hours_end", sa.String(5), nullable=False, server_default="08:00"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("push_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("in_app_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("notification_preferences")
    op.drop_table("event_reminders")
    op.drop_table("event_history")
    op.drop_table("events")
    for enum_type in (reminder_status, reminder_channel, reminder_type, history_action, event_priority, event_category):
        enum_type.drop(op.get_bind(), checkfirst=True)
