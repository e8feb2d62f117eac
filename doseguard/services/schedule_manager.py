from __future__ import annotations

import logging
from datetime import date, datetime
from uuid import UUID

from sqlalchemy.orm import Session

from ..errors import NotFound, ValidationError
from ..models.audit import AuditAction
from ..models.base import utcnow
from ..models.dose import PENDING_STATUSES, DoseEvent
from ..models.medication import Medication, MedicationSchedule, TimingType
from .audit_logger import create_audit_event
from .timing import parse_timing

logger = logging.getLogger(__name__)


def validate_schedule_fields(
    *,
    timing_type: str,
    timing: dict,
    start_date: date,
    end_date: date | None,
    is_indefinite: bool,
    reminder_minutes_before: list[int] | None,
) -> tuple[TimingType, dict, list[int]]:
    try:
        timing_enum = TimingType(getattr(timing_type, "value", timing_type))
    except ValueError:
        raise ValidationError(
            "timing_type", f"must be one of {', '.join(t.value for t in TimingType)}"
        )
    payload = parse_timing(timing_enum, timing)

    if end_date is not None and is_indefinite:
        raise ValidationError("end_date", "cannot be set on an indefinite schedule")
    if end_date is not None and end_date < start_date:
        raise ValidationError("end_date", "must not be before start_date")

    reminders = sorted(set(reminder_minutes_before or []), reverse=True)
    if any(minutes < 0 for minutes in reminders):
        raise ValidationError("reminder_minutes_before", "reminder offsets must be non-negative")

    return timing_enum, payload.model_dump(exclude={"timing_type"}), reminders


class ScheduleManager:
    def __init__(self, db: Session):
        self.db = db

    def create_medication(self, *, actor: str = "SYSTEM", **fields) -> Medication:
        medication = Medication(**fields)
        self.db.add(medication)
        self.db.flush()
        create_audit_event(
            self.db,
            actor=actor,
            action=AuditAction.CREATE,
            entity_type="Medication",
            entity_id=str(medication.id),
            details={"patient_id": medication.patient_id, "name": medication.name},
            request=None,
            commit=False,
        )
        self.db.commit()
        return medication

    def get_medication(self, medication_id: UUID) -> Medication:
        medication = self.db.get(Medication, medication_id)
        if medication is None:
            raise NotFound("Medication", medication_id)
        return medication

    def get_schedule(self, schedule_id: UUID) -> MedicationSchedule:
        schedule = self.db.get(MedicationSchedule, schedule_id)
        if schedule is None:
            raise NotFound("MedicationSchedule", schedule_id)
        return schedule

    def active_schedule(self, medication_id: UUID) -> MedicationSchedule | None:
        return (
            self.db.query(MedicationSchedule)
            .filter_by(medication_id=medication_id, is_active=True)
            .first()
        )

    def create_schedule(
        self,
        medication_id: UUID,
        *,
        timing_type: str,
        timing: dict,
        dosage_amount: str,
        start_date: date,
        end_date: date | None = None,
        is_indefinite: bool = False,
        instructions: str | None = None,
        reminder_minutes_before: list[int] | None = None,
        actor: str = "SYSTEM",
    ) -> MedicationSchedule:
        """Add a schedule and make it the medication's only active one."""
        medication = self.get_medication(medication_id)
        if not medication.is_active:
            raise ValidationError("medication_id", "cannot schedule an inactive medication")

        timing_enum, payload, reminders = validate_schedule_fields(
            timing_type=timing_type,
            timing=timing,
            start_date=start_date,
            end_date=end_date,
            is_indefinite=is_indefinite,
            reminder_minutes_before=reminder_minutes_before,
        )

        previous = (
            self.db.query(MedicationSchedule)
            .filter_by(medication_id=medication.id, is_active=True)
            .all()
        )
        for old in previous:
            old.is_active = False
            create_audit_event(
                self.db,
                actor=actor,
                action=AuditAction.DEACTIVATE,
                entity_type="MedicationSchedule",
                entity_id=str(old.id),
                details={"superseded": True},
                request=None,
                commit=False,
            )

        schedule = MedicationSchedule(
            medication_id=medication.id,
            patient_id=medication.patient_id,
            timing_type=timing_enum,
            timing=payload,
            dosage_amount=dosage_amount,
            instructions=instructions,
            start_date=start_date,
            end_date=end_date,
            is_indefinite=is_indefinite,
            reminder_minutes_before=reminders,
            is_active=True,
        )
        self.db.add(schedule)
        self.db.flush()
        create_audit_event(
            self.db,
            actor=actor,
            action=AuditAction.ACTIVATE,
            entity_type="MedicationSchedule",
            entity_id=str(schedule.id),
            details={"medication_id": str(medication.id), "timing_type": timing_enum.value},
            request=None,
            commit=False,
        )
        self.db.commit()
        logger.info(
            "Activated %s schedule %s for medication %s (%s superseded)",
            timing_enum.value,
            schedule.id,
            medication.id,
            len(previous),
        )
        return schedule

    def update_timing(self, schedule: MedicationSchedule, timing: dict) -> None:
        """Replace the timing payload in place; caller commits."""
        _, payload, _ = validate_schedule_fields(
            timing_type=schedule.timing_type,
            timing=timing,
            start_date=schedule.start_date,
            end_date=schedule.end_date,
            is_indefinite=schedule.is_indefinite,
            reminder_minutes_before=schedule.reminder_minutes_before,
        )
        schedule.timing = payload

    def deactivate_medication(
        self, medication_id: UUID, actor: str = "SYSTEM", now: datetime | None = None
    ) -> Medication:
        """Stop a medication; its pending doses still ahead are retired, not deleted."""
        now = now or utcnow()
        medication = self.get_medication(medication_id)
        if not medication.is_active:
            return medication
        medication.is_active = False
        for schedule in medication.schedules:
            schedule.is_active = False
        pending = (
            self.db.query(DoseEvent)
            .filter(
                DoseEvent.medication_id == medication.id,
                DoseEvent.status.in_(PENDING_STATUSES),
                DoseEvent.retired_at.is_(None),
                DoseEvent.scheduled_datetime > now,
            )
            .all()
        )
        for event in pending:
            event.retired_at = now
        create_audit_event(
            self.db,
            actor=actor,
            action=AuditAction.DEACTIVATE,
            entity_type="Medication",
            entity_id=str(medication.id),
            details={"schedules": len(medication.schedules), "retired_doses": len(pending)},
            request=None,
            commit=False,
        )
        self.db.commit()
        return medication
