"""Create dose scheduling, lifecycle and safety tables.

Revision ID: 20261001_create_dose_engine
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.sql import func
from sqlalchemy.dialects import postgresql


revision = "20261001_create_dose_engine"
down_revision = None
branch_labels = None
depends_on = None


DOSE_STATUS = ("SCHEDULED", "TAKEN", "MISSED", "SKIPPED", "SNOOZED")
SKIP_REASON = ("FORGOT", "FELT_SICK", "RAN_OUT", "SIDE_EFFECTS", "OTHER")
TIMING_CATEGORY = ("EARLY", "ON_TIME", "LATE", "VERY_LATE")
TIMING_TYPE = ("ABSOLUTE", "MEAL_RELATIVE", "SLEEP_RELATIVE", "INTERVAL")
AUDIT_ACTION = (
    "CREATE",
    "UPDATE",
    "ACTIVATE",
    "DEACTIVATE",
    "MATERIALIZE",
    "TAKE",
    "UNDO",
    "CONFIRM",
    "SKIP",
    "SNOOZE",
    "RESCHEDULE",
    "MARK_MISSED",
    "MILESTONE",
)


def _uuid_type(bind):
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(36)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)
    tables = set(inspector.get_table_names())
    uuid_type = _uuid_type(bind)

    if "medications" not in tables:
        op.create_table(
            "medications",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("patient_id", sa.String(length=64), nullable=False, index=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("generic_name", sa.String(length=128), nullable=True),
            sa.Column("brand_name", sa.String(length=128), nullable=True),
            sa.Column("dosage", sa.String(length=64), nullable=False),
            sa.Column("instructions", sa.Text(), nullable=True),
            sa.Column("is_prn", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("prescribed_date", sa.Date(), nullable=False),
            sa.Column("prescribed_by", sa.String(length=128), nullable=True),
            *_timestamps(),
        )

    if "medication_schedules" not in tables:
        op.create_table(
            "medication_schedules",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("medication_id", uuid_type, sa.ForeignKey("medications.id"), nullable=False, index=True),
            sa.Column("patient_id", sa.String(length=64), nullable=False, index=True),
            sa.Column("timing_type", sa.Enum(*TIMING_TYPE, name="timingtype"), nullable=False),
            sa.Column("timing", sa.JSON(), nullable=False),
            sa.Column("dosage_amount", sa.String(length=64), nullable=False),
            sa.Column("instructions", sa.Text(), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("is_indefinite", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("reminder_minutes_before", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
        )

    if "dose_events" not in tables:
        op.create_table(
            "dose_events",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("command_id", sa.String(length=64), nullable=True, index=True),
            sa.Column(
                "schedule_id", uuid_type, sa.ForeignKey("medication_schedules.id"), nullable=False, index=True
            ),
            sa.Column("medication_id", uuid_type, sa.ForeignKey("medications.id"), nullable=False),
            sa.Column("patient_id", sa.String(length=64), nullable=False, index=True),
            sa.Column("slot_datetime", sa.DateTime(timezone=True), nullable=False),
            sa.Column("scheduled_datetime", sa.DateTime(timezone=True), nullable=False, index=True),
            sa.Column("dosage_amount", sa.String(length=64), nullable=False),
            sa.Column("instructions", sa.Text(), nullable=True),
            sa.Column("is_approximate", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("status", sa.Enum(*DOSE_STATUS, name="dosestatus"), nullable=False),
            sa.Column("taken_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("undo_available_until", sa.DateTime(timezone=True), nullable=True),
            sa.Column("adherence_score", sa.Float(), nullable=True),
            sa.Column("timing_category", sa.Enum(*TIMING_CATEGORY, name="timingcategory"), nullable=True),
            sa.Column("minutes_from_scheduled", sa.Integer(), nullable=True),
            sa.Column("skip_reason", sa.Enum(*SKIP_REASON, name="skipreason"), nullable=True),
            sa.Column("skip_notes", sa.Text(), nullable=True),
            sa.Column("skipped_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("missed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("snoozed_until", sa.DateTime(timezone=True), nullable=True),
            sa.Column("snooze_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("snooze_reason", sa.String(length=256), nullable=True),
            sa.Column("last_undo_command_id", sa.String(length=64), nullable=True),
            sa.Column("last_action_command_id", sa.String(length=64), nullable=True),
            sa.Column("undo_reason", sa.Text(), nullable=True),
            sa.Column("reschedule_reason", sa.String(length=256), nullable=True),
            sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("medication_id", "slot_datetime", name="uq_dose_events_medication_slot"),
        )

    if "patient_time_preferences" not in tables:
        op.create_table(
            "patient_time_preferences",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("patient_id", sa.String(length=64), nullable=False, unique=True),
            sa.Column("time_buckets", sa.JSON(), nullable=False),
            sa.Column("lifestyle", sa.JSON(), nullable=False),
            sa.Column("updated_by", sa.String(length=64), nullable=True),
            *_timestamps(),
        )

    if "adherence_streaks" not in tables:
        op.create_table(
            "adherence_streaks",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("patient_id", sa.String(length=64), nullable=False, unique=True),
            sa.Column("current_streak", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("longest_streak", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("streak_start_date", sa.Date(), nullable=True),
            sa.Column("last_qualifying_date", sa.Date(), nullable=True),
            *_timestamps(),
        )

    if "streak_milestones" not in tables:
        op.create_table(
            "streak_milestones",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("patient_id", sa.String(length=64), nullable=False, index=True),
            sa.Column("threshold_days", sa.Integer(), nullable=False),
            sa.Column("streak_start_date", sa.Date(), nullable=False),
            sa.Column("dose_event_id", uuid_type, sa.ForeignKey("dose_events.id"), nullable=False),
            sa.Column("reached_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint(
                "patient_id", "threshold_days", "streak_start_date", name="uq_streak_milestone_crossing"
            ),
        )

    if "patient_safety_profiles" not in tables:
        op.create_table(
            "patient_safety_profiles",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("patient_id", sa.String(length=64), nullable=False, unique=True),
            sa.Column("allergies", sa.JSON(), nullable=False),
            sa.Column("contraindications", sa.JSON(), nullable=False),
            sa.Column("updated_by", sa.String(length=64), nullable=True),
            *_timestamps(),
        )

    if "audit_events" not in tables:
        op.create_table(
            "audit_events",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("actor", sa.String(length=64), nullable=False),
            sa.Column("action", sa.Enum(*AUDIT_ACTION, name="auditaction"), nullable=False),
            sa.Column("entity_type", sa.String(length=64), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("request_id", sa.String(length=64), nullable=False),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        )

    if "notification_logs" not in tables:
        op.create_table(
            "notification_logs",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("dose_event_id", uuid_type, sa.ForeignKey("dose_events.id"), nullable=True),
            sa.Column("patient_id", sa.String(length=64), nullable=False),
            sa.Column("notification_type", sa.String(length=64), nullable=False),
            sa.Column(
                "channel", sa.Enum("WEBHOOK", "LOG", name="notificationchannel"), nullable=False
            ),
            sa.Column("recipient", sa.String(length=256), nullable=False),
            sa.Column(
                "delivery_status",
                sa.Enum("PENDING", "SENT", "FAILED", "SKIPPED", name="notificationstatus"),
                nullable=False,
            ),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        )


def downgrade() -> None:
    for table in (
        "notification_logs",
        "audit_events",
        "patient_safety_profiles",
        "streak_milestones",
        "adherence_streaks",
        "patient_time_preferences",
        "dose_events",
        "medication_schedules",
        "medications",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in (
            "notificationstatus",
            "notificationchannel",
            "auditaction",
            "skipreason",
            "timingcategory",
            "dosestatus",
            "timingtype",
        ):
            op.execute(f"DROP TYPE IF EXISTS {enum_name}")
