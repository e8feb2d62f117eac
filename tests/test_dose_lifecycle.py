from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from doseguard.errors import AlreadyProcessed, InvalidState, UndoWindowExpired, ValidationError
from doseguard.models.adherence import AdherenceStreak, StreakMilestone
from doseguard.models.audit import AuditAction, AuditEvent, NotificationLog
from doseguard.models.base import as_utc
from doseguard.models.dose import DoseEvent, DoseStatus, SkipReason, TimingCategory
from doseguard.services.adherence import LifecycleConfig
from doseguard.services.dose_lifecycle import DoseLifecycleMachine
from doseguard.services.materializer import DoseMaterializer

DAY = date(2026, 3, 10)


class Clock:
    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def set(self, *args):
        self.value = datetime(*args, tzinfo=timezone.utc)


def materialized(db, schedule, start=DAY, days=1):
    DoseMaterializer(db).materialize(
        schedule, start, days=days, now=datetime(2026, 3, 1, tzinfo=timezone.utc)
    )
    return db.query(DoseEvent).order_by(DoseEvent.slot_datetime).all()


def machine_for(db, clock, **config):
    return DoseLifecycleMachine(db, LifecycleConfig(**config), clock=clock)


def test_take_records_adherence_and_opens_undo_window(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 10, tzinfo=timezone.utc))

    transition = machine_for(db_session, clock).take(event.id, "cmd-1")

    assert transition.event.status == DoseStatus.TAKEN
    assert transition.event.adherence_score == 100.0
    assert transition.event.timing_category == TimingCategory.ON_TIME
    assert transition.event.minutes_from_scheduled == 10
    assert as_utc(transition.event.undo_available_until) == clock.value + timedelta(seconds=30)
    assert transition.event.confirmed_at is None
    assert transition.streak.current == 1
    assert db_session.query(AuditEvent).filter_by(action=AuditAction.TAKE).count() == 1
    assert db_session.query(NotificationLog).filter_by(notification_type="DOSE_TAKEN").count() == 1


@pytest.mark.parametrize(
    "minutes,score,category",
    [
        (-45, 75.0, TimingCategory.EARLY),
        (25, 90.0, TimingCategory.ON_TIME),
        (90, 50.0, TimingCategory.LATE),
        (180, 25.0, TimingCategory.VERY_LATE),
    ],
)
def test_take_scores_by_lateness(db_session, seed_schedule, minutes, score, category):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    taken_at = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    clock = Clock(taken_at)

    transition = machine_for(db_session, clock).take(event.id, "cmd-score", taken_at)

    assert transition.event.adherence_score == score
    assert transition.event.timing_category == category


def test_take_without_undo_confirms_immediately(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))

    transition = machine_for(db_session, clock, undo_enabled=False).take(event.id, "cmd-1")

    assert transition.event.confirmed_at is not None
    assert transition.event.undo_available_until is None
    with pytest.raises(InvalidState):
        machine_for(db_session, clock, undo_enabled=False).undo(event.id, "cmd-1")


def test_take_twice_returns_prior_result(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.take(event.id, "cmd-1")

    with pytest.raises(AlreadyProcessed) as exc:
        machine.take(event.id, "cmd-1")
    assert exc.value.result.event.status == DoseStatus.TAKEN
    assert exc.value.result.changed is False
    assert db_session.query(AuditEvent).filter_by(action=AuditAction.TAKE).count() == 1


def test_take_rejected_from_skipped(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.skip(event.id, "felt_sick")

    with pytest.raises(InvalidState) as exc:
        machine.take(event.id, "cmd-1")
    assert exc.value.status == "skipped"


def test_take_then_undo_is_net_zero(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)

    machine.take(event.id, "cmd-1")
    clock.set(2026, 3, 10, 8, 0, 20)
    transition = machine.undo(event.id, "cmd-1", reason="tapped by mistake")

    assert transition.event.status == DoseStatus.SCHEDULED
    assert transition.event.taken_at is None
    assert transition.event.adherence_score is None
    assert transition.event.timing_category is None
    assert transition.streak.previous == 1
    assert transition.streak.current == 0
    streak = db_session.query(AdherenceStreak).filter_by(patient_id="PT-001").one()
    assert streak.current_streak == 0
    assert streak.longest_streak == 0


def test_undo_retry_returns_prior_result(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.take(event.id, "cmd-1")
    machine.undo(event.id, "cmd-1")

    with pytest.raises(AlreadyProcessed):
        machine.undo(event.id, "cmd-1")


def test_undo_with_other_command_is_rejected(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.take(event.id, "cmd-1")

    with pytest.raises(InvalidState):
        machine.undo(event.id, "cmd-2")


def test_undo_after_window_fails_and_leaves_status(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.take(event.id, "cmd-1")

    clock.set(2026, 3, 10, 8, 1)
    with pytest.raises(UndoWindowExpired) as exc:
        machine.undo(event.id, "cmd-1")

    assert exc.value.elapsed_seconds == pytest.approx(60.0)
    assert exc.value.allowed_seconds == 30
    db_session.refresh(event)
    assert event.status == DoseStatus.TAKEN


def test_confirm_expired_finalizes_without_client(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.take(event.id, "cmd-1")

    assert machine.confirm_expired(datetime(2026, 3, 10, 8, 0, 10, tzinfo=timezone.utc)) == 0
    assert machine.confirm_expired(datetime(2026, 3, 10, 8, 0, 31, tzinfo=timezone.utc)) == 1

    db_session.refresh(event)
    assert event.confirmed_at is not None
    assert event.is_undoable is False


def test_streak_milestone_fires_once_and_is_revoked_by_undo(db_session, seed_schedule):
    _, schedule = seed_schedule(timing={"times": ["08:00"]})
    events = materialized(db_session, schedule, days=3)
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock, milestone_days=(3,))

    fired = []
    for index, event in enumerate(events):
        clock.set(2026, 3, 10 + index, 8, 5)
        fired.append(machine.take(event.id, f"cmd-{index}").streak.milestones_fired)

    assert fired == [[], [], [3]]
    milestone = db_session.query(StreakMilestone).one()
    assert milestone.threshold_days == 3
    assert milestone.revoked_at is None
    assert db_session.query(NotificationLog).filter_by(notification_type="STREAK_MILESTONE").count() == 1

    transition = machine.undo(events[-1].id, "cmd-2")
    assert transition.streak.milestones_revoked == [3]
    assert transition.streak.current == 2
    db_session.refresh(milestone)
    assert milestone.revoked_at is not None


def test_late_dose_does_not_extend_streak(db_session, seed_schedule):
    _, schedule = seed_schedule(timing={"times": ["08:00"]})
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc))

    transition = machine_for(db_session, clock).take(event.id, "cmd-1")

    assert transition.event.timing_category == TimingCategory.LATE
    assert transition.streak.current == 0


def test_skip_encrypts_notes_and_is_terminal(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)

    transition = machine.skip(event.id, "other", notes="Dentist appointment")

    assert transition.event.status == DoseStatus.SKIPPED
    assert transition.event.skip_reason == SkipReason.OTHER
    raw = db_session.execute(text("SELECT skip_notes FROM dose_events WHERE skip_notes IS NOT NULL")).scalar()
    assert raw and "Dentist" not in raw
    db_session.refresh(event)
    assert event.skip_notes == "Dentist appointment"

    with pytest.raises(AlreadyProcessed):
        machine.skip(event.id, "other")
    with pytest.raises(InvalidState):
        machine.snooze(event.id, 10)


def test_skip_rejects_unknown_reason(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    machine = machine_for(db_session, Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)))

    with pytest.raises(ValidationError) as exc:
        machine.skip(event.id, "bored")
    assert exc.value.field == "reason"


def test_skip_allowed_after_missed(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.mark_missed(event.id)

    transition = machine.skip(event.id, "ran_out")
    assert transition.event.status == DoseStatus.SKIPPED


def test_snooze_advances_time_and_sweeper_releases(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 5, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)

    transition = machine.snooze(event.id, 15, reason="driving")

    assert transition.event.status == DoseStatus.SNOOZED
    assert as_utc(transition.event.scheduled_datetime) == datetime(2026, 3, 10, 8, 20, tzinfo=timezone.utc)
    assert as_utc(transition.event.slot_datetime) == datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)
    assert transition.event.snooze_count == 1
    assert db_session.query(DoseEvent).count() == 2

    assert machine.release_snoozes(datetime(2026, 3, 10, 8, 10, tzinfo=timezone.utc)) == 0
    assert machine.release_snoozes(datetime(2026, 3, 10, 8, 21, tzinfo=timezone.utc)) == 1
    db_session.refresh(event)
    assert event.status == DoseStatus.SCHEDULED


@pytest.mark.parametrize("minutes", [0, -5, 721])
def test_snooze_minutes_bounds(db_session, seed_schedule, minutes):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    machine = machine_for(db_session, Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)))

    with pytest.raises(ValidationError):
        machine.snooze(event.id, minutes)


def test_snooze_retry_with_same_command(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    machine = machine_for(db_session, Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)))
    machine.snooze(event.id, 10, command_id="snooze-1")

    with pytest.raises(AlreadyProcessed):
        machine.snooze(event.id, 10, command_id="snooze-1")
    db_session.refresh(event)
    assert event.snooze_count == 1


@pytest.mark.parametrize(
    "name,grace",
    [("Lisinopril", 30), ("Insulin glargine", 15), ("Vitamin D3", 120)],
)
def test_mark_missed_waits_for_grace_period(db_session, seed_schedule, name, grace):
    _, schedule = seed_schedule(name=name)
    event = materialized(db_session, schedule)[0]
    due = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)
    clock = Clock(due + timedelta(minutes=grace - 1))
    machine = machine_for(db_session, clock)

    with pytest.raises(InvalidState):
        machine.mark_missed(event.id)

    clock.value = due + timedelta(minutes=grace)
    transition = machine.mark_missed(event.id)
    assert transition.event.status == DoseStatus.MISSED
    assert db_session.query(NotificationLog).filter_by(notification_type="DOSE_MISSED").count() == 1

    again = machine.mark_missed(event.id)
    assert again.changed is False


def test_mark_missed_is_noop_on_taken_dose(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.take(event.id, "cmd-1")

    clock.set(2026, 3, 10, 12, 0)
    transition = machine.mark_missed(event.id)
    assert transition.changed is False
    assert transition.event.status == DoseStatus.TAKEN


def test_reschedule_single_moves_one_event(db_session, seed_schedule):
    _, schedule = seed_schedule()
    events = materialized(db_session, schedule, days=2)
    clock = Clock(datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)

    new_time = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)
    transition = machine.reschedule(events[0].id, new_time, "late meeting")

    assert as_utc(transition.event.scheduled_datetime) == new_time
    assert transition.affected_event_ids == [str(events[0].id)]
    db_session.refresh(schedule)
    assert schedule.timing["times"] == ["08:00", "20:00"]


def test_reschedule_all_moves_pending_and_leaves_taken(db_session, seed_schedule):
    _, schedule = seed_schedule()
    events = materialized(db_session, schedule, days=3)
    morning = [e for e in events if as_utc(e.slot_datetime).hour == 8]
    clock = Clock(datetime(2026, 3, 10, 8, 5, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.take(morning[0].id, "cmd-1")

    transition = machine.reschedule(
        morning[1].id, datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc), "new routine", scope="all"
    )

    assert sorted(transition.affected_event_ids) == sorted(str(e.id) for e in morning[1:])
    db_session.refresh(morning[0])
    assert as_utc(morning[0].slot_datetime).hour == 8
    assert morning[0].status == DoseStatus.TAKEN
    for event in morning[1:]:
        db_session.refresh(event)
        assert as_utc(event.scheduled_datetime).hour == 9
    db_session.refresh(schedule)
    assert schedule.timing["times"] == ["09:00", "20:00"]
    pending_at_eight = [
        e
        for e in db_session.query(DoseEvent).filter(DoseEvent.status == DoseStatus.SCHEDULED).all()
        if as_utc(e.slot_datetime).hour == 8
    ]
    assert pending_at_eight == []


def test_reschedule_future_keeps_earlier_events(db_session, seed_schedule):
    _, schedule = seed_schedule(timing={"times": ["08:00"]})
    events = materialized(db_session, schedule, days=3)
    clock = Clock(datetime(2026, 3, 9, 12, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)

    transition = machine.reschedule(
        events[1].id, datetime(2026, 3, 11, 7, 30, tzinfo=timezone.utc), "earlier start", scope="future"
    )

    assert sorted(transition.affected_event_ids) == sorted(str(e.id) for e in events[1:])
    db_session.refresh(events[0])
    assert as_utc(events[0].scheduled_datetime).strftime("%H:%M") == "08:00"
    db_session.refresh(events[2])
    assert as_utc(events[2].scheduled_datetime).strftime("%H:%M") == "07:30"


def test_reschedule_rejects_terminal_event(db_session, seed_schedule):
    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    machine.skip(event.id, "forgot")

    with pytest.raises(InvalidState):
        machine.reschedule(event.id, datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc), "x", scope="all")


def test_notification_failure_does_not_roll_back_take(db_session, seed_schedule):
    class ExplodingDispatcher:
        def dispatch(self, *args, **kwargs):
            raise RuntimeError("dispatcher down")

    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = DoseLifecycleMachine(db_session, LifecycleConfig(), dispatcher=ExplodingDispatcher(), clock=clock)

    transition = machine.take(event.id, "cmd-1")

    assert transition.event.status == DoseStatus.TAKEN
    db_session.refresh(event)
    assert event.status == DoseStatus.TAKEN


def test_transition_waits_for_event_lock(db_session, seed_schedule):
    import threading

    from doseguard.database import get_sessionmaker
    from doseguard.services.event_locks import EventLockRegistry

    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    registry = EventLockRegistry()
    results = []

    def take_in_thread():
        db = get_sessionmaker()()
        try:
            machine = DoseLifecycleMachine(
                db, LifecycleConfig(), locks=registry, clock=lambda: datetime(2026, 3, 10, 8, 5, tzinfo=timezone.utc)
            )
            results.append(machine.take(event.id, "cmd-thread").event.status)
        finally:
            db.close()

    with registry.hold(event.id):
        worker = threading.Thread(target=take_in_thread)
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        assert results == []

    worker.join(timeout=5)
    assert results == [DoseStatus.TAKEN]
    assert registry.active_keys() == 0


def test_streak_resets_after_days_without_qualifying_dose(db_session, seed_schedule):
    _, schedule = seed_schedule(timing={"times": ["08:00"]})
    events = materialized(db_session, schedule, days=11)
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)
    for index in range(3):
        clock.set(2026, 3, 10 + index, 8, 5)
        machine.take(events[index].id, f"cmd-{index}")

    clock.set(2026, 3, 15, 9, 0)
    missed = machine.mark_missed(events[5].id)
    assert missed.streak.previous == 3
    assert missed.streak.current == 0

    clock.set(2026, 3, 20, 11, 0)
    late = machine.take(events[10].id, "cmd-late")

    assert late.event.timing_category == TimingCategory.VERY_LATE
    assert late.streak.current == 0
    streak = db_session.query(AdherenceStreak).filter_by(patient_id="PT-001").one()
    assert streak.current_streak == 0
    assert streak.longest_streak == 3
    assert streak.last_qualifying_date == date(2026, 3, 12)


def test_retired_dose_rejects_actions(db_session, seed_schedule):
    medication, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    from doseguard.services.schedule_manager import ScheduleManager

    ScheduleManager(db_session).deactivate_medication(
        medication.id, now=datetime(2026, 3, 9, tzinfo=timezone.utc)
    )
    clock = Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))
    machine = machine_for(db_session, clock)

    with pytest.raises(InvalidState) as exc:
        machine.take(event.id, "cmd-1")
    assert exc.value.status == "retired"
    with pytest.raises(InvalidState):
        machine.snooze(event.id, 10)
    clock.set(2026, 3, 11, 8, 0)
    assert machine.mark_missed(event.id).changed is False


def test_failed_skip_rolls_back_session(db_session, seed_schedule, monkeypatch):
    from doseguard.config import get_settings
    from doseguard.services.encryption import reset_cipher

    _, schedule = seed_schedule()
    event = materialized(db_session, schedule)[0]
    monkeypatch.setenv("FIELD_ENCRYPTION_KEY", "")
    get_settings.cache_clear()
    reset_cipher()
    machine = machine_for(db_session, Clock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)))

    with pytest.raises(Exception):
        machine.skip(event.id, "other", notes="Dentist appointment")

    reloaded = db_session.query(DoseEvent).filter_by(id=event.id).one()
    assert reloaded.status == DoseStatus.SCHEDULED
    assert reloaded.skip_reason is None
    assert db_session.query(AuditEvent).filter_by(action=AuditAction.SKIP).count() == 0
