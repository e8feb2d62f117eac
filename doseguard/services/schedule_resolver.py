from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from ..models.medication import MedicationSchedule
from .preferences import TimePreferences
from .timing import (
    MINUTES_PER_DAY,
    AbsoluteTiming,
    IntervalTiming,
    MealRelativeTiming,
    SleepRelativeTiming,
    format_hhmm,
    parse_hhmm,
    parse_timing,
    shift_hhmm,
)


@dataclass(frozen=True)
class ResolvedTime:
    time: str
    approximate: bool = False
    # interval windows crossing midnight spill into the following day
    day_offset: int = 0


def local_datetime(on_date: date, hhmm: str, tz_name: str) -> datetime:
    """Wall-clock time on ``on_date`` in ``tz_name``, returned in UTC."""
    minutes = parse_hhmm(hhmm)
    local = datetime.combine(on_date, time(minutes // 60, minutes % 60), tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def is_schedule_in_effect(schedule: MedicationSchedule, on_date: date) -> bool:
    if not schedule.is_active:
        return False
    if on_date < schedule.start_date:
        return False
    if schedule.end_date is not None and on_date > schedule.end_date:
        return False
    return True


def _in_sleep_window(minutes: int, bed_time: int, wake_time: int) -> bool:
    if bed_time == wake_time:
        return False
    if bed_time < wake_time:
        return bed_time <= minutes < wake_time
    # window crosses midnight
    return minutes >= bed_time or minutes < wake_time


def _circular_distance(a: int, b: int) -> int:
    diff = abs(a - b) % MINUTES_PER_DAY
    return min(diff, MINUTES_PER_DAY - diff)


def _dedupe(times: list[ResolvedTime]) -> list[ResolvedTime]:
    seen: set[str] = set()
    result: list[ResolvedTime] = []
    for item in times:
        if item.time in seen:
            continue
        seen.add(item.time)
        result.append(item)
    return result


class ScheduleResolver:
    """Pure conversion of a schedule's timing rule into times of day."""

    def resolve(
        self,
        schedule: MedicationSchedule,
        prefs: TimePreferences | None,
        on_date: date,
    ) -> list[ResolvedTime]:
        if not is_schedule_in_effect(schedule, on_date):
            return []
        timing = parse_timing(schedule.timing_type, schedule.timing)
        return self.resolve_timing(timing, prefs)

    def resolve_timing(self, timing, prefs: TimePreferences | None) -> list[ResolvedTime]:
        if isinstance(timing, AbsoluteTiming):
            return _dedupe([ResolvedTime(t) for t in timing.times])
        if isinstance(timing, MealRelativeTiming):
            return [self._resolve_meal(timing, prefs)]
        if isinstance(timing, SleepRelativeTiming):
            return [self._resolve_sleep(timing, prefs)]
        if isinstance(timing, IntervalTiming):
            return self._resolve_interval(timing, prefs)
        raise TypeError(f"Unsupported timing payload: {type(timing).__name__}")

    def _resolve_meal(self, timing: MealRelativeTiming, prefs: TimePreferences | None) -> ResolvedTime:
        meal_time = prefs.meal_time(timing.meal_type) if prefs is not None else None
        if meal_time is None:
            return ResolvedTime(timing.fallback_time, approximate=timing.is_flexible)
        return ResolvedTime(shift_hhmm(meal_time, timing.offset_minutes))

    def _resolve_sleep(self, timing: SleepRelativeTiming, prefs: TimePreferences | None) -> ResolvedTime:
        anchor = None
        if prefs is not None:
            if timing.relative_to == "bedtime":
                anchor = prefs.lifestyle.bed_time
            else:
                anchor = prefs.lifestyle.wake_up_time
        if anchor is None:
            return ResolvedTime(timing.fallback_time, approximate=True)
        return ResolvedTime(shift_hhmm(anchor, timing.offset_minutes))

    def _resolve_interval(self, timing: IntervalTiming, prefs: TimePreferences | None) -> list[ResolvedTime]:
        start = parse_hhmm(timing.start_time)
        end = parse_hhmm(timing.end_time)
        if end < start:
            end += MINUTES_PER_DAY
        step = timing.interval_hours * 60

        generated: list[int] = []
        current = start
        while current <= end and len(generated) < timing.max_doses_per_day:
            generated.append(current)
            current += step

        kept = generated
        if timing.avoid_sleep_hours and prefs is not None:
            bed = prefs.lifestyle.bed_time
            wake = prefs.lifestyle.wake_up_time
            if bed is not None and wake is not None:
                bed_minutes, wake_minutes = parse_hhmm(bed), parse_hhmm(wake)
                kept = [
                    m for m in generated
                    if not _in_sleep_window(m % MINUTES_PER_DAY, bed_minutes, wake_minutes)
                ]
                if not kept and generated:
                    kept = [min(generated, key=lambda m: _circular_distance(m, start))]

        return _dedupe(
            [ResolvedTime(format_hhmm(m), day_offset=m // MINUTES_PER_DAY) for m in kept]
        )


def resolve(schedule: MedicationSchedule, prefs: TimePreferences | None, on_date: date) -> list[str]:
    return [item.time for item in ScheduleResolver().resolve(schedule, prefs, on_date)]
