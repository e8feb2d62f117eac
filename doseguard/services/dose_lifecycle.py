"""State machine for dose events.

    scheduled --take--> (taking) --> undoable --window elapses--> confirmed
    undoable --undo--> scheduled
    scheduled --snooze--> snoozed --snoozed_until passes--> scheduled
    scheduled|snoozed|missed --skip--> skipped
    scheduled|snoozed --grace elapses--> missed

"undoable" and "confirmed" are both stored as ``taken``; ``confirmed_at``
tells them apart. Every transition runs under a per-event lock and commits
its state change together with its adherence, streak and audit effects.
Notifications go out only after that commit. Retired events (stale
projections, stopped medications) accept no transition.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from ..errors import AlreadyProcessed, InvalidState, NotFound, UndoWindowExpired, ValidationError
from ..models.audit import AuditAction
from ..models.base import as_utc, utcnow
from ..models.dose import (
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    DoseEvent,
    DoseStatus,
    SkipReason,
)
from ..models.medication import Medication, MedicationSchedule, TimingType
from .adherence import (
    LifecycleConfig,
    StreakTracker,
    StreakUpdate,
    adherence_score,
    medication_type,
    minutes_from_scheduled,
    timing_category,
)
from .audit_logger import create_audit_event
from .event_locks import EventLockRegistry, event_locks
from .materializer import DoseMaterializer
from .notification_dispatcher import NotificationDispatcher, NotificationType
from .preferences import TimePreferenceStore
from .schedule_manager import ScheduleManager
from .timing import MINUTES_PER_DAY, format_hhmm, parse_hhmm, parse_timing, shift_hhmm

logger = logging.getLogger(__name__)

RESCHEDULE_SCOPES = ("single", "future", "all")


def serialize_dose_event(event: DoseEvent) -> dict[str, Any]:
    def _iso(value):
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "id": str(event.id),
        "command_id": event.command_id,
        "schedule_id": str(event.schedule_id),
        "medication_id": str(event.medication_id),
        "patient_id": event.patient_id,
        "slot_datetime": _iso(event.slot_datetime),
        "scheduled_datetime": _iso(event.scheduled_datetime),
        "dosage_amount": event.dosage_amount,
        "instructions": event.instructions,
        "is_approximate": event.is_approximate,
        "status": event.status.value,
        "is_undoable": event.is_undoable,
        "taken_at": _iso(event.taken_at),
        "confirmed_at": _iso(event.confirmed_at),
        "undo_available_until": _iso(event.undo_available_until),
        "adherence_score": event.adherence_score,
        "timing_category": event.timing_category.value if event.timing_category else None,
        "minutes_from_scheduled": event.minutes_from_scheduled,
        "skip_reason": event.skip_reason.value if event.skip_reason else None,
        "snoozed_until": _iso(event.snoozed_until),
        "snooze_count": event.snooze_count,
        "retired_at": _iso(event.retired_at),
    }


@dataclass
class DoseTransition:
    event: DoseEvent
    operation: str
    changed: bool = True
    streak: StreakUpdate | None = None
    affected_event_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "operation": self.operation,
            "changed": self.changed,
            "event": serialize_dose_event(self.event),
        }
        if self.streak is not None:
            payload["streak"] = {
                "previous": self.streak.previous,
                "current": self.streak.current,
                "longest": self.streak.longest,
                "milestones_fired": self.streak.milestones_fired,
                "milestones_revoked": self.streak.milestones_revoked,
            }
        if self.affected_event_ids:
            payload["affected_event_ids"] = self.affected_event_ids
        return payload


class DoseLifecycleMachine:
    def __init__(
        self,
        db: Session,
        config: LifecycleConfig | None = None,
        *,
        locks: EventLockRegistry | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config or LifecycleConfig.from_settings()
        self.locks = locks or event_locks
        self.dispatcher = dispatcher or NotificationDispatcher(db)
        self.clock = clock
        self.streaks = StreakTracker(db, self.config)

    # -- take / undo ---------------------------------------------------

    def take(
        self,
        event_id: UUID,
        command_id: str,
        taken_at: datetime | None = None,
        actor: str = "SYSTEM",
    ) -> DoseTransition:
        if not command_id:
            raise ValidationError("command_id", "is required to take a dose")
        now = self.clock()
        taken_at = as_utc(taken_at) if taken_at else now

        with self.locks.hold(event_id):
            event = self._load(event_id)
            if event.status == DoseStatus.TAKEN:
                raise AlreadyProcessed(
                    event.id, "take", DoseTransition(event, "take", changed=False)
                )
            self._check_live(event, "take")
            if event.status not in PENDING_STATUSES:
                raise InvalidState(event.id, event.status.value, "take")

            logger.debug("Dose event %s taking (command %s)", event.id, command_id)
            try:
                minutes = minutes_from_scheduled(event.scheduled_datetime, taken_at)
                event.status = DoseStatus.TAKEN
                event.command_id = command_id
                event.taken_at = taken_at
                event.minutes_from_scheduled = minutes
                event.adherence_score = adherence_score(minutes, self.config)
                event.timing_category = timing_category(minutes, self.config)
                event.snoozed_until = None
                if self.config.undo_enabled:
                    event.undo_available_until = now + timedelta(seconds=self.config.undo_window_seconds)
                    event.confirmed_at = None
                else:
                    event.undo_available_until = None
                    event.confirmed_at = now

                streak = self.streaks.record_take(event, self._timezone(event.patient_id), now)
                self._audit(
                    event,
                    AuditAction.TAKE,
                    actor,
                    {
                        "command_id": command_id,
                        "minutes_from_scheduled": minutes,
                        "timing_category": event.timing_category.value,
                        "adherence_score": event.adherence_score,
                        "streak": streak.current,
                        "milestones_fired": streak.milestones_fired,
                    },
                )
                for threshold in streak.milestones_fired:
                    self._audit(
                        event,
                        AuditAction.MILESTONE,
                        actor,
                        {"streak_days": threshold, "streak_start": streak.streak_start.isoformat()},
                    )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(
            "Dose event %s taken (%s, score %.0f, streak %s)",
            event.id,
            event.timing_category.value,
            event.adherence_score,
            streak.current,
        )
        self._notify(NotificationType.DOSE_TAKEN, event, {"timing_category": event.timing_category.value})
        for threshold in streak.milestones_fired:
            self._notify(NotificationType.STREAK_MILESTONE, event, {"streak_days": threshold})
        return DoseTransition(event, "take", streak=streak)

    def undo(
        self,
        event_id: UUID,
        command_id: str,
        reason: str | None = None,
        actor: str = "SYSTEM",
    ) -> DoseTransition:
        now = self.clock()
        with self.locks.hold(event_id):
            event = self._load(event_id)
            if event.status == DoseStatus.SCHEDULED and command_id and event.last_undo_command_id == command_id:
                raise AlreadyProcessed(
                    event.id, "undo", DoseTransition(event, "undo", changed=False)
                )
            if event.status != DoseStatus.TAKEN:
                raise InvalidState(event.id, event.status.value, "undo")

            deadline = as_utc(event.undo_available_until)
            if deadline is not None and (now > deadline or event.confirmed_at is not None):
                window = self.config.undo_window_seconds
                elapsed = (now - (deadline - timedelta(seconds=window))).total_seconds()
                raise UndoWindowExpired(event.id, elapsed, window)
            if deadline is None:
                raise InvalidState(event.id, "confirmed", "undo", "undo is not enabled for this dose")
            if event.command_id != command_id:
                raise InvalidState(
                    event.id, event.status.value, "undo", "command_id does not match the take being undone"
                )

            try:
                event.status = DoseStatus.SCHEDULED
                event.taken_at = None
                event.undo_available_until = None
                event.confirmed_at = None
                event.adherence_score = None
                event.timing_category = None
                event.minutes_from_scheduled = None
                event.command_id = None
                event.last_undo_command_id = command_id
                event.undo_reason = reason

                streak = self.streaks.revert_take(event, self._timezone(event.patient_id), now)
                self._audit(
                    event,
                    AuditAction.UNDO,
                    actor,
                    {
                        "command_id": command_id,
                        "streak": streak.current,
                        "milestones_revoked": streak.milestones_revoked,
                    },
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info("Dose event %s take undone (streak %s -> %s)", event.id, streak.previous, streak.current)
        return DoseTransition(event, "undo", streak=streak)

    def confirm_expired(self, now: datetime | None = None) -> int:
        """Finalize takes whose undo window has elapsed."""
        now = now or self.clock()
        candidates = (
            self.db.query(DoseEvent.id)
            .filter(
                DoseEvent.status == DoseStatus.TAKEN,
                DoseEvent.confirmed_at.is_(None),
                DoseEvent.undo_available_until <= now,
            )
            .all()
        )
        confirmed = 0
        for (event_id,) in candidates:
            with self.locks.hold(event_id):
                event = self._load(event_id)
                deadline = as_utc(event.undo_available_until)
                if event.status != DoseStatus.TAKEN or event.confirmed_at is not None or deadline is None or deadline > now:
                    continue
                try:
                    event.confirmed_at = deadline
                    self._audit(event, AuditAction.CONFIRM, "SYSTEM", {"command_id": event.command_id})
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise
                confirmed += 1
        return confirmed

    # -- skip / snooze / missed ----------------------------------------

    def skip(
        self,
        event_id: UUID,
        reason: str,
        notes: str | None = None,
        actor: str = "SYSTEM",
        command_id: str | None = None,
    ) -> DoseTransition:
        try:
            skip_reason = SkipReason(reason)
        except ValueError:
            raise ValidationError("reason", f"must be one of {', '.join(r.value for r in SkipReason)}")
        now = self.clock()

        with self.locks.hold(event_id):
            event = self._load(event_id)
            if event.status == DoseStatus.SKIPPED:
                raise AlreadyProcessed(event.id, "skip", DoseTransition(event, "skip", changed=False))
            if event.status not in PENDING_STATUSES and event.status != DoseStatus.MISSED:
                raise InvalidState(event.id, event.status.value, "skip")
            self._check_live(event, "skip")
            previous = event.status
            try:
                event.status = DoseStatus.SKIPPED
                event.skip_reason = skip_reason
                event.skip_notes = notes
                event.skipped_at = now
                event.snoozed_until = None
                event.last_action_command_id = command_id
                self._audit(
                    event,
                    AuditAction.SKIP,
                    actor,
                    {"reason": skip_reason.value, "from_status": previous.value, "has_notes": bool(notes)},
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self._notify(NotificationType.DOSE_SKIPPED, event, {"reason": skip_reason.value})
        return DoseTransition(event, "skip")

    def snooze(
        self,
        event_id: UUID,
        minutes: int,
        reason: str | None = None,
        actor: str = "SYSTEM",
        command_id: str | None = None,
    ) -> DoseTransition:
        if not 1 <= minutes <= self.config.max_snooze_minutes:
            raise ValidationError("minutes", f"must be between 1 and {self.config.max_snooze_minutes}")
        now = self.clock()

        with self.locks.hold(event_id):
            event = self._load(event_id)
            if command_id and event.last_action_command_id == command_id:
                raise AlreadyProcessed(event.id, "snooze", DoseTransition(event, "snooze", changed=False))
            if event.status not in PENDING_STATUSES:
                raise InvalidState(event.id, event.status.value, "snooze")
            self._check_live(event, "snooze")
            base = max(as_utc(event.scheduled_datetime), now)
            new_time = base + timedelta(minutes=minutes)
            try:
                event.scheduled_datetime = new_time
                event.snoozed_until = new_time
                event.snooze_count = (event.snooze_count or 0) + 1
                event.snooze_reason = reason
                event.status = DoseStatus.SNOOZED
                event.last_action_command_id = command_id
                self._audit(
                    event,
                    AuditAction.SNOOZE,
                    actor,
                    {"minutes": minutes, "until": new_time.isoformat(), "reason": reason},
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        return DoseTransition(event, "snooze")

    def release_snoozes(self, now: datetime | None = None) -> int:
        """Return snoozed doses whose snooze has run out to ``scheduled``."""
        now = now or self.clock()
        candidates = (
            self.db.query(DoseEvent.id)
            .filter(
                DoseEvent.status == DoseStatus.SNOOZED,
                DoseEvent.snoozed_until <= now,
                DoseEvent.retired_at.is_(None),
            )
            .all()
        )
        released = 0
        for (event_id,) in candidates:
            with self.locks.hold(event_id):
                event = self._load(event_id)
                if event.status != DoseStatus.SNOOZED:
                    continue
                try:
                    event.status = DoseStatus.SCHEDULED
                    event.snoozed_until = None
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise
                released += 1
        return released

    def mark_missed(self, event_id: UUID, actor: str = "SYSTEM") -> DoseTransition:
        now = self.clock()
        with self.locks.hold(event_id):
            event = self._load(event_id)
            if event.status in TERMINAL_STATUSES or event.retired_at is not None:
                return DoseTransition(event, "mark_missed", changed=False)
            grace = self.grace_minutes(event)
            due = as_utc(event.scheduled_datetime) + timedelta(minutes=grace)
            if now < due:
                raise InvalidState(
                    event.id,
                    event.status.value,
                    "mark missed",
                    f"grace period of {grace} minutes runs until {due.isoformat()}",
                )
            try:
                event.status = DoseStatus.MISSED
                event.missed_at = now
                event.snoozed_until = None
                streak = self.streaks.refresh(event.patient_id, self._timezone(event.patient_id), now)
                self._audit(
                    event, AuditAction.MARK_MISSED, actor, {"grace_minutes": grace, "streak": streak.current}
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info("Dose event %s marked missed after %s minute grace period", event.id, grace)
        self._notify(NotificationType.DOSE_MISSED, event, {"grace_minutes": grace})
        return DoseTransition(event, "mark_missed", streak=streak)

    def mark_overdue_missed(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        candidates = (
            self.db.query(DoseEvent.id)
            .join(Medication, Medication.id == DoseEvent.medication_id)
            .join(MedicationSchedule, MedicationSchedule.id == DoseEvent.schedule_id)
            .filter(
                DoseEvent.status.in_(PENDING_STATUSES),
                DoseEvent.scheduled_datetime <= now,
                DoseEvent.retired_at.is_(None),
                Medication.is_active.is_(True),
                MedicationSchedule.is_active.is_(True),
            )
            .all()
        )
        marked = 0
        for (event_id,) in candidates:
            try:
                transition = self.mark_missed(event_id)
            except InvalidState:
                continue
            if transition.changed:
                marked += 1
        return marked

    def grace_minutes(self, event: DoseEvent) -> int:
        medication = self.db.get(Medication, event.medication_id)
        if medication is None:
            return self.config.grace_for("standard")
        return self.config.grace_for(medication_type(medication.name, medication.is_prn, self.config))

    # -- reschedule ----------------------------------------------------

    def reschedule(
        self,
        event_id: UUID,
        new_time: datetime,
        reason: str,
        scope: str = "single",
        actor: str = "SYSTEM",
        command_id: str | None = None,
    ) -> DoseTransition:
        if scope not in RESCHEDULE_SCOPES:
            raise ValidationError("scope", f"must be one of {', '.join(RESCHEDULE_SCOPES)}")
        if new_time.tzinfo is None:
            raise ValidationError("new_time", "must include a timezone offset")
        new_time = as_utc(new_time)

        with self.locks.hold(event_id):
            event = self._load(event_id)
            if command_id and event.last_action_command_id == command_id:
                raise AlreadyProcessed(
                    event.id, "reschedule", DoseTransition(event, "reschedule", changed=False)
                )
            if event.status not in PENDING_STATUSES:
                raise InvalidState(event.id, event.status.value, "reschedule")
            self._check_live(event, "reschedule")

            if scope == "single":
                event.scheduled_datetime = new_time
                event.snoozed_until = None
                event.status = DoseStatus.SCHEDULED
                event.reschedule_reason = reason
                event.last_action_command_id = command_id
                self._audit(
                    event,
                    AuditAction.RESCHEDULE,
                    actor,
                    {"scope": scope, "new_time": new_time.isoformat(), "reason": reason},
                )
                self.db.commit()
                return DoseTransition(event, "reschedule", affected_event_ids=[str(event.id)])

        return self._reschedule_series(event_id, new_time, reason, scope, actor, command_id)

    def _reschedule_series(
        self,
        event_id: UUID,
        new_time: datetime,
        reason: str,
        scope: str,
        actor: str,
        command_id: str | None,
    ) -> DoseTransition:
        event = self._load(event_id)
        schedule = event.schedule
        prefs = TimePreferenceStore(self.db).get(event.patient_id)
        zone = prefs.zone

        anchor_date = as_utc(event.slot_datetime).astimezone(zone).date()
        old_clock = format_hhmm(self._clock_minutes(event.slot_datetime, zone))
        new_clock = format_hhmm(self._clock_minutes(new_time, zone))
        delta = (parse_hhmm(new_clock) - parse_hhmm(old_clock) + MINUTES_PER_DAY // 2) % MINUTES_PER_DAY - MINUTES_PER_DAY // 2

        query = self.db.query(DoseEvent).filter(
            DoseEvent.schedule_id == schedule.id,
            DoseEvent.status.in_(PENDING_STATUSES),
            DoseEvent.retired_at.is_(None),
        )
        if scope == "future":
            query = query.filter(DoseEvent.slot_datetime >= event.slot_datetime)
        series = query.all()
        if schedule.timing_type == TimingType.ABSOLUTE:
            # only the occurrences of the edited dose time move
            series = [e for e in series if format_hhmm(self._clock_minutes(e.slot_datetime, zone)) == old_clock]

        affected: list[str] = []
        with ExitStack() as stack:
            for other in sorted(series, key=lambda e: str(e.id)):
                stack.enter_context(self.locks.hold(other.id))
            try:
                ScheduleManager(self.db).update_timing(
                    schedule, self._shifted_timing(schedule, old_clock, new_clock, delta)
                )
                # move the far end first so a shifted slot never lands on one not yet moved
                for item in sorted(series, key=lambda e: as_utc(e.slot_datetime), reverse=delta > 0):
                    self.db.refresh(item)
                    if item.status not in PENDING_STATUSES:
                        continue
                    new_slot = as_utc(item.slot_datetime) + timedelta(minutes=delta)
                    clash = (
                        self.db.query(DoseEvent.id)
                        .filter(
                            DoseEvent.medication_id == item.medication_id,
                            DoseEvent.slot_datetime == new_slot,
                            DoseEvent.id != item.id,
                        )
                        .first()
                    )
                    if clash is not None:
                        logger.warning("Reschedule of %s would collide with %s, left in place", item.id, clash[0])
                        continue
                    item.slot_datetime = new_slot
                    item.scheduled_datetime = new_slot
                    item.snoozed_until = None
                    item.status = DoseStatus.SCHEDULED
                    item.reschedule_reason = reason
                    affected.append(str(item.id))
                    self.db.flush()
                event.last_action_command_id = command_id
                self._audit(
                    event,
                    AuditAction.RESCHEDULE,
                    actor,
                    {
                        "scope": scope,
                        "from": old_clock,
                        "to": new_clock,
                        "delta_minutes": delta,
                        "reason": reason,
                        "affected": len(affected),
                    },
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        now = self.clock()
        # today's pending doses were moved above; a fresh projection today could
        # double up with a dose already taken at the old time
        start = now.astimezone(zone).date() + timedelta(days=1)
        if scope == "future":
            start = max(start, anchor_date)
        DoseMaterializer(self.db).materialize(
            schedule, start, prefs=prefs, actor=actor, now=now, not_before=now
        )
        self.db.refresh(event)
        logger.info(
            "Rescheduled %s doses of schedule %s (%s, %+d minutes)", len(affected), schedule.id, scope, delta
        )
        return DoseTransition(event, "reschedule", affected_event_ids=affected)

    def _shifted_timing(self, schedule, old_clock: str, new_clock: str, delta: int) -> dict:
        timing = parse_timing(schedule.timing_type, schedule.timing)
        data = timing.model_dump(exclude={"timing_type"})
        if schedule.timing_type == TimingType.ABSOLUTE:
            times = [t for t in data["times"] if t != old_clock]
            data["times"] = times + [new_clock]
        elif schedule.timing_type in (TimingType.MEAL_RELATIVE, TimingType.SLEEP_RELATIVE):
            data["offset_minutes"] = data["offset_minutes"] + delta
            data["fallback_time"] = shift_hhmm(data["fallback_time"], delta)
        elif schedule.timing_type == TimingType.INTERVAL:
            data["start_time"] = shift_hhmm(data["start_time"], delta)
            data["end_time"] = shift_hhmm(data["end_time"], delta)
        return data

    @staticmethod
    def _clock_minutes(value: datetime, zone) -> int:
        local = as_utc(value).astimezone(zone)
        return local.hour * 60 + local.minute

    # -- helpers -------------------------------------------------------

    def _load(self, event_id) -> DoseEvent:
        event = (
            self.db.query(DoseEvent)
            .filter(DoseEvent.id == event_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if event is None:
            raise NotFound("DoseEvent", event_id)
        return event

    @staticmethod
    def _check_live(event: DoseEvent, operation: str) -> None:
        if event.retired_at is not None:
            raise InvalidState(event.id, "retired", operation, "dose is no longer part of an active schedule")

    def _timezone(self, patient_id: str) -> str:
        return TimePreferenceStore(self.db).get(patient_id).lifestyle.timezone

    def _audit(self, event: DoseEvent, action: AuditAction, actor: str, details: dict) -> None:
        create_audit_event(
            self.db,
            actor=actor,
            action=action,
            entity_type="DoseEvent",
            entity_id=str(event.id),
            details=details,
            request=None,
            commit=False,
        )

    def _notify(self, notification_type: str, event: DoseEvent, payload: dict) -> None:
        try:
            self.dispatcher.dispatch(
                notification_type,
                patient_id=event.patient_id,
                dose_event_id=event.id,
                payload={"medication_id": str(event.medication_id), **payload},
            )
        except Exception:
            # the transition is already committed
            logger.exception("Notification %s for dose event %s failed", notification_type, event.id)
