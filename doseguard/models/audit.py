import enum
from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, JSON, func
from sqlalchemy.orm import mapped_column
from .base import Base, UUIDMixin


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    ACTIVATE = "ACTIVATE"
    DEACTIVATE = "DEACTIVATE"
    MATERIALIZE = "MATERIALIZE"
    TAKE = "TAKE"
    UNDO = "UNDO"
    CONFIRM = "CONFIRM"
    SKIP = "SKIP"
    SNOOZE = "SNOOZE"
    RESCHEDULE = "RESCHEDULE"
    MARK_MISSED = "MARK_MISSED"
    MILESTONE = "MILESTONE"


class AuditEvent(Base, UUIDMixin):
    __tablename__ = "audit_events"

    actor = mapped_column(String(64), nullable=False)
    action = mapped_column(Enum(AuditAction, name="auditaction"), nullable=False)
    entity_type = mapped_column(String(64), nullable=False)
    entity_id = mapped_column(String(64), nullable=False)
    request_id = mapped_column(String(64), nullable=False)
    details = mapped_column(JSON, nullable=True)
    timestamp = mapped_column(DateTime(timezone=True), nullable=False)


class NotificationChannel(str, enum.Enum):
    WEBHOOK = "WEBHOOK"
    LOG = "LOG"


class NotificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class NotificationLog(Base, UUIDMixin):
    __tablename__ = "notification_logs"

    dose_event_id = mapped_column(ForeignKey("dose_events.id"), nullable=True)
    patient_id = mapped_column(String(64), nullable=False)
    notification_type = mapped_column(String(64), nullable=False)
    channel = mapped_column(Enum(NotificationChannel, name="notificationchannel"), nullable=False)
    recipient = mapped_column(String(256), nullable=False)
    delivery_status = mapped_column(Enum(NotificationStatus, name="notificationstatus"), nullable=False)
    error_message = mapped_column(Text, nullable=True)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
