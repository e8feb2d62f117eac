from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..models.adherence import AdherenceStreak, StreakMilestone
from ..models.base import as_utc
from ..models.dose import DoseEvent, DoseStatus, TimingCategory

QUALIFYING_CATEGORIES = (TimingCategory.EARLY, TimingCategory.ON_TIME)


@dataclass(frozen=True)
class LifecycleConfig:
    """Process-wide lifecycle constants, fixed at construction time."""

    undo_enabled: bool = True
    undo_window_seconds: int = 30
    # (max |minutes from scheduled|, score), checked in order
    score_bands: tuple[tuple[int, float], ...] = ((15, 100.0), (30, 90.0), (60, 75.0), (120, 50.0))
    floor_score: float = 25.0
    early_before_minutes: int = 30
    on_time_within_minutes: int = 30
    late_within_minutes: int = 120
    milestone_days: tuple[int, ...] = (7, 30, 90)
    grace_minutes: tuple[tuple[str, int], ...] = (
        ("critical", 15),
        ("standard", 30),
        ("vitamin", 120),
        ("prn", 0),
    )
    critical_keywords: tuple[str, ...] = (
        "insulin",
        "heart",
        "cardiac",
        "blood thinner",
        "warfarin",
        "anticoagulant",
    )
    vitamin_keywords: tuple[str, ...] = (
        "vitamin",
        "supplement",
        "multivitamin",
        "calcium",
        "iron",
        "omega",
    )
    max_snooze_minutes: int = 720

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LifecycleConfig":
        settings = settings or get_settings()
        return cls(
            undo_enabled=settings.UNDO_ENABLED,
            undo_window_seconds=settings.UNDO_WINDOW_SECONDS,
            milestone_days=tuple(sorted(set(settings.STREAK_MILESTONE_DAYS))),
            grace_minutes=(
                ("critical", settings.GRACE_PERIOD_CRITICAL_MINUTES),
                ("standard", settings.GRACE_PERIOD_STANDARD_MINUTES),
                ("vitamin", settings.GRACE_PERIOD_VITAMIN_MINUTES),
                ("prn", settings.GRACE_PERIOD_PRN_MINUTES),
            ),
            max_snooze_minutes=settings.MAX_SNOOZE_MINUTES,
        )

    def grace_for(self, medication_type: str) -> int:
        return dict(self.grace_minutes).get(medication_type, dict(self.grace_minutes)["standard"])


def medication_type(name: str, is_prn: bool, config: LifecycleConfig) -> str:
    if is_prn:
        return "prn"
    lowered = (name or "").lower()
    if any(keyword in lowered for keyword in config.critical_keywords):
        return "critical"
    if any(keyword in lowered for keyword in config.vitamin_keywords):
        return "vitamin"
    return "standard"


def minutes_from_scheduled(scheduled: datetime, taken_at: datetime) -> int:
    """Signed minutes; negative means taken before the scheduled time."""
    delta = as_utc(taken_at) - as_utc(scheduled)
    return int(delta.total_seconds() // 60)


def adherence_score(minutes: int, config: LifecycleConfig) -> float:
    distance = abs(minutes)
    for limit, score in config.score_bands:
        if distance <= limit:
            return score
    return config.floor_score


def timing_category(minutes: int, config: LifecycleConfig) -> TimingCategory:
    if minutes < -config.early_before_minutes:
        return TimingCategory.EARLY
    if minutes <= config.on_time_within_minutes:
        return TimingCategory.ON_TIME
    if minutes <= config.late_within_minutes:
        return TimingCategory.LATE
    return TimingCategory.VERY_LATE


@dataclass
class StreakUpdate:
    previous: int
    current: int
    longest: int
    streak_start: date | None
    milestones_fired: list[int] = field(default_factory=list)
    milestones_revoked: list[int] = field(default_factory=list)


def _runs(days: list[date]) -> list[tuple[date, date]]:
    runs: list[tuple[date, date]] = []
    for day in sorted(set(days)):
        if runs and day - runs[-1][1] == timedelta(days=1):
            runs[-1] = (runs[-1][0], day)
        else:
            runs.append((day, day))
    return runs


class StreakTracker:
    """Consecutive days with at least one early or on-time dose.

    The streak is always recomputed from the taken doses, so applying and
    then reverting a take leaves the counters exactly where they were. A run
    whose last qualifying day is before the patient's local yesterday is
    broken and counts as zero.
    """

    def __init__(self, db: Session, config: LifecycleConfig):
        self.db = db
        self.config = config

    def get(self, patient_id: str) -> AdherenceStreak:
        streak = self.db.query(AdherenceStreak).filter_by(patient_id=patient_id).first()
        if streak is None:
            streak = AdherenceStreak(patient_id=patient_id, current_streak=0, longest_streak=0)
            self.db.add(streak)
            self.db.flush()
        return streak

    def record_take(self, event: DoseEvent, tz_name: str, now: datetime) -> StreakUpdate:
        streak = self.get(event.patient_id)
        previous = streak.current_streak
        self._recompute(streak, tz_name, now)
        update = StreakUpdate(
            previous=previous,
            current=streak.current_streak,
            longest=streak.longest_streak,
            streak_start=streak.streak_start_date,
        )
        if streak.streak_start_date is None:
            return update
        for threshold in self.config.milestone_days:
            if previous < threshold <= streak.current_streak:
                if self._fire(event, threshold, streak.streak_start_date, now):
                    update.milestones_fired.append(threshold)
        return update

    def refresh(self, patient_id: str, tz_name: str, now: datetime) -> StreakUpdate:
        """Re-derive the streak without a take, e.g. after a missed dose."""
        streak = self.get(patient_id)
        previous = streak.current_streak
        self._recompute(streak, tz_name, now)
        return StreakUpdate(
            previous=previous,
            current=streak.current_streak,
            longest=streak.longest_streak,
            streak_start=streak.streak_start_date,
        )

    def revert_take(self, event: DoseEvent, tz_name: str, now: datetime) -> StreakUpdate:
        streak = self.get(event.patient_id)
        previous = streak.current_streak
        self._recompute(streak, tz_name, now)
        update = StreakUpdate(
            previous=previous,
            current=streak.current_streak,
            longest=streak.longest_streak,
            streak_start=streak.streak_start_date,
        )
        fired = (
            self.db.query(StreakMilestone)
            .filter(
                StreakMilestone.dose_event_id == event.id,
                StreakMilestone.revoked_at.is_(None),
            )
            .all()
        )
        for milestone in fired:
            still_reached = (
                streak.streak_start_date == milestone.streak_start_date
                and streak.current_streak >= milestone.threshold_days
            )
            if still_reached:
                continue
            milestone.revoked_at = now
            update.milestones_revoked.append(milestone.threshold_days)
        return update

    def _recompute(self, streak: AdherenceStreak, tz_name: str, now: datetime) -> None:
        zone = ZoneInfo(tz_name)
        # pending ORM changes (the take being applied) must be visible here
        self.db.flush()
        rows = (
            self.db.query(DoseEvent.slot_datetime)
            .filter(
                DoseEvent.patient_id == streak.patient_id,
                DoseEvent.status == DoseStatus.TAKEN,
                DoseEvent.timing_category.in_(QUALIFYING_CATEGORIES),
            )
            .all()
        )
        days = [as_utc(slot).astimezone(zone).date() for (slot,) in rows]
        runs = _runs(days)
        if not runs:
            streak.current_streak = 0
            streak.streak_start_date = None
            streak.last_qualifying_date = None
            streak.longest_streak = 0
            return
        start, end = runs[-1]
        streak.last_qualifying_date = end
        streak.longest_streak = max((b - a).days + 1 for a, b in runs)
        yesterday = as_utc(now).astimezone(zone).date() - timedelta(days=1)
        if end < yesterday:
            streak.current_streak = 0
            streak.streak_start_date = None
            return
        streak.current_streak = (end - start).days + 1
        streak.streak_start_date = start

    def _fire(self, event: DoseEvent, threshold: int, streak_start: date, now: datetime) -> bool:
        existing = (
            self.db.query(StreakMilestone)
            .filter_by(
                patient_id=event.patient_id,
                threshold_days=threshold,
                streak_start_date=streak_start,
            )
            .first()
        )
        if existing is not None:
            if existing.revoked_at is None:
                return False
            existing.revoked_at = None
            existing.dose_event_id = event.id
            existing.reached_at = now
            return True
        self.db.add(
            StreakMilestone(
                patient_id=event.patient_id,
                threshold_days=threshold,
                streak_start_date=streak_start,
                dose_event_id=event.id,
                reached_at=now,
            )
        )
        return True
