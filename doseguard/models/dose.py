import enum
from sqlalchemy import (
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Boolean,
    UniqueConstraint,
)
from sqlalchemy.orm import mapped_column, relationship
from .base import Base, UUIDMixin, TimestampMixin
from .types import EncryptedText


class DoseStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"
    SNOOZED = "snoozed"


PENDING_STATUSES = (DoseStatus.SCHEDULED, DoseStatus.SNOOZED)
TERMINAL_STATUSES = (DoseStatus.TAKEN, DoseStatus.MISSED, DoseStatus.SKIPPED)


class SkipReason(str, enum.Enum):
    FORGOT = "forgot"
    FELT_SICK = "felt_sick"
    RAN_OUT = "ran_out"
    SIDE_EFFECTS = "side_effects"
    OTHER = "other"


class TimingCategory(str, enum.Enum):
    EARLY = "early"
    ON_TIME = "on_time"
    LATE = "late"
    VERY_LATE = "very_late"


class DoseEvent(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "dose_events"
    __table_args__ = (
        UniqueConstraint("medication_id", "slot_datetime", name="uq_dose_events_medication_slot"),
    )

    command_id = mapped_column(String(64), nullable=True, index=True)
    schedule_id = mapped_column(ForeignKey("medication_schedules.id"), nullable=False, index=True)
    medication_id = mapped_column(ForeignKey("medications.id"), nullable=False)
    patient_id = mapped_column(String(64), nullable=False, index=True)

    slot_datetime = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_datetime = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    dosage_amount = mapped_column(String(64), nullable=False)
    instructions = mapped_column(Text, nullable=True)
    is_approximate = mapped_column(Boolean, default=False, nullable=False)

    status = mapped_column(
        Enum(DoseStatus, name="dosestatus"), default=DoseStatus.SCHEDULED, nullable=False
    )
    taken_at = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at = mapped_column(DateTime(timezone=True), nullable=True)
    undo_available_until = mapped_column(DateTime(timezone=True), nullable=True)
    adherence_score = mapped_column(Float, nullable=True)
    timing_category = mapped_column(Enum(TimingCategory, name="timingcategory"), nullable=True)
    minutes_from_scheduled = mapped_column(Integer, nullable=True)

    skip_reason = mapped_column(Enum(SkipReason, name="skipreason"), nullable=True)
    skip_notes = mapped_column(EncryptedText, nullable=True)
    skipped_at = mapped_column(DateTime(timezone=True), nullable=True)
    missed_at = mapped_column(DateTime(timezone=True), nullable=True)

    snoozed_until = mapped_column(DateTime(timezone=True), nullable=True)
    snooze_count = mapped_column(Integer, default=0, nullable=False)
    snooze_reason = mapped_column(String(256), nullable=True)

    last_undo_command_id = mapped_column(String(64), nullable=True)
    # client key of the last snooze/skip/reschedule, for safe retries
    last_action_command_id = mapped_column(String(64), nullable=True)
    undo_reason = mapped_column(EncryptedText, nullable=True)
    reschedule_reason = mapped_column(String(256), nullable=True)
    # set instead of deleting when a projection stops resolving or its medication is stopped
    retired_at = mapped_column(DateTime(timezone=True), nullable=True)

    schedule = relationship("MedicationSchedule")
    medication = relationship("Medication")

    @property
    def is_undoable(self) -> bool:
        return self.status == DoseStatus.TAKEN and self.confirmed_at is None
