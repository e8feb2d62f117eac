from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..models.audit import AuditAction
from ..models.base import as_utc, utcnow
from ..models.dose import DoseEvent, DoseStatus
from ..models.medication import Medication, MedicationSchedule
from .audit_logger import create_audit_event
from .preferences import TimePreferences, TimePreferenceStore
from .schedule_resolver import ScheduleResolver, local_datetime

logger = logging.getLogger(__name__)


@dataclass
class MaterializationResult:
    created: list[DoseEvent] = field(default_factory=list)
    refreshed: list[DoseEvent] = field(default_factory=list)
    retired: int = 0
    unchanged: int = 0


class DoseMaterializer:
    """Turns resolved schedule times into stored dose events.

    Events are keyed by (medication_id, slot_datetime). Re-running over the
    same dates creates nothing new, and only events still in ``scheduled``
    are refreshed; anything a patient has acted on is left alone.
    """

    def __init__(self, db: Session, resolver: ScheduleResolver | None = None):
        self.db = db
        self.resolver = resolver or ScheduleResolver()

    def materialize(
        self,
        schedule: MedicationSchedule,
        start: date,
        days: int | None = None,
        prefs: TimePreferences | None = None,
        actor: str = "SYSTEM",
        now: datetime | None = None,
        not_before: datetime | None = None,
    ) -> MaterializationResult:
        """Upsert events for ``days`` dates from ``start``.

        Slots earlier than ``not_before`` are never created, only refreshed.
        """
        now = now or utcnow()
        if days is None:
            days = get_settings().MATERIALIZATION_HORIZON_DAYS
        try:
            return self._materialize(schedule, start, days, prefs, actor, now, not_before)
        except IntegrityError:
            # Another writer inserted one of the slots first; the retry sees it
            self.db.rollback()
            logger.info("Concurrent materialization for schedule %s, retrying", schedule.id)
            return self._materialize(schedule, start, days, prefs, actor, now, not_before)

    def _materialize(
        self,
        schedule: MedicationSchedule,
        start: date,
        days: int,
        prefs: TimePreferences | None,
        actor: str,
        now: datetime,
        not_before: datetime | None,
    ) -> MaterializationResult:
        result = MaterializationResult()
        medication = self.db.get(Medication, schedule.medication_id)
        if medication is None or medication.is_prn or not medication.is_active or not schedule.is_active:
            return result

        if prefs is None:
            prefs = TimePreferenceStore(self.db).get(schedule.patient_id)
        tz_name = prefs.lifestyle.timezone

        pending: dict = {}
        for day in range(days):
            on_date = start + timedelta(days=day)
            for resolved in self.resolver.resolve(schedule, prefs, on_date):
                slot_date = on_date + timedelta(days=resolved.day_offset)
                slot = local_datetime(slot_date, resolved.time, tz_name)
                if slot in pending:
                    continue
                pending[slot] = resolved

        for slot, resolved in sorted(pending.items()):
            existing = (
                self.db.query(DoseEvent)
                .filter(
                    DoseEvent.medication_id == schedule.medication_id,
                    DoseEvent.slot_datetime == slot,
                )
                .first()
            )
            if existing is None:
                if not_before is not None and slot < not_before:
                    continue
                event = DoseEvent(
                    schedule_id=schedule.id,
                    medication_id=schedule.medication_id,
                    patient_id=schedule.patient_id,
                    slot_datetime=slot,
                    scheduled_datetime=slot,
                    dosage_amount=schedule.dosage_amount,
                    instructions=schedule.instructions,
                    is_approximate=resolved.approximate,
                    status=DoseStatus.SCHEDULED,
                )
                self.db.add(event)
                result.created.append(event)
                continue

            if existing.status != DoseStatus.SCHEDULED or existing.snooze_count:
                result.unchanged += 1
                continue
            changed = False
            if existing.retired_at is not None:
                if not_before is not None and slot < not_before:
                    result.unchanged += 1
                    continue
                # the slot resolves again, so the retired projection comes back
                existing.retired_at = None
                changed = True
            for attr, value in (
                ("schedule_id", schedule.id),
                ("dosage_amount", schedule.dosage_amount),
                ("instructions", schedule.instructions),
                ("is_approximate", resolved.approximate),
            ):
                if getattr(existing, attr) != value:
                    setattr(existing, attr, value)
                    changed = True
            if changed:
                result.refreshed.append(existing)
            else:
                result.unchanged += 1

        result.retired = self._retire_stale(schedule, start, days, tz_name, set(pending), now)

        self.db.flush()
        if result.created or result.refreshed or result.retired:
            create_audit_event(
                self.db,
                actor=actor,
                action=AuditAction.MATERIALIZE,
                entity_type="MedicationSchedule",
                entity_id=str(schedule.id),
                details={
                    "start": start.isoformat(),
                    "days": days,
                    "created": len(result.created),
                    "refreshed": len(result.refreshed),
                    "retired": result.retired,
                },
                request=None,
                commit=False,
            )
        self.db.commit()
        return result

    def _retire_stale(
        self,
        schedule: MedicationSchedule,
        start: date,
        days: int,
        tz_name: str,
        resolved_slots: set,
        now: datetime,
    ) -> int:
        """Mark untouched future occurrences that no longer resolve as retired.

        Only projections qualify: still ``scheduled``, never snoozed, rescheduled
        or undone, and due after ``now``. Rows are never deleted; a retired
        event is hidden from listings and sweeps.
        """
        window_start = max(local_datetime(start, "00:00", tz_name), now)
        window_end = local_datetime(start + timedelta(days=days), "00:00", tz_name)
        candidates = (
            self.db.query(DoseEvent)
            .filter(
                DoseEvent.medication_id == schedule.medication_id,
                DoseEvent.status == DoseStatus.SCHEDULED,
                DoseEvent.snooze_count == 0,
                DoseEvent.reschedule_reason.is_(None),
                DoseEvent.last_undo_command_id.is_(None),
                DoseEvent.retired_at.is_(None),
                DoseEvent.slot_datetime > window_start,
                DoseEvent.slot_datetime < window_end,
            )
            .all()
        )
        retired = 0
        for event in candidates:
            if as_utc(event.slot_datetime) in resolved_slots:
                continue
            event.retired_at = now
            retired += 1
        return retired
