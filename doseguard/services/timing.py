"""Timing payloads for medication schedules and HH:MM clock arithmetic.

A schedule stores exactly one of four payload shapes, selected by
``timing_type``. Each shape is validated on its own; ``parse_timing`` is the
single entry point used by the schedule manager and the resolver.
"""

from __future__ import annotations

import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError, field_from_pydantic

MINUTES_PER_DAY = 24 * 60

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_hhmm(value: str) -> int:
    match = _HHMM_RE.match(value or "")
    if not match:
        raise ValueError(f"'{value}' is not a valid HH:MM time")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_hhmm(minutes: int) -> str:
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def shift_hhmm(value: str, offset_minutes: int) -> str:
    return format_hhmm(parse_hhmm(value) + offset_minutes)


def _check_hhmm(value: str) -> str:
    parse_hhmm(value)
    return value


class _TimingBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class AbsoluteTiming(_TimingBase):
    timing_type: Literal["absolute"] = "absolute"
    times: list[str] = Field(min_length=1)

    @field_validator("times")
    @classmethod
    def _validate_times(cls, value: list[str]) -> list[str]:
        for item in value:
            _check_hhmm(item)
        # ordered set
        return sorted(set(value), key=parse_hhmm)


class MealRelativeTiming(_TimingBase):
    timing_type: Literal["meal_relative"] = "meal_relative"
    meal_type: Literal["breakfast", "lunch", "dinner"]
    offset_minutes: int = Field(ge=-MINUTES_PER_DAY, le=MINUTES_PER_DAY)
    is_flexible: bool = True
    fallback_time: str

    @field_validator("fallback_time")
    @classmethod
    def _validate_fallback(cls, value: str) -> str:
        return _check_hhmm(value)


class SleepRelativeTiming(_TimingBase):
    timing_type: Literal["sleep_relative"] = "sleep_relative"
    relative_to: Literal["bedtime", "wake_time"]
    offset_minutes: int = Field(ge=-MINUTES_PER_DAY, le=MINUTES_PER_DAY)
    fallback_time: str

    @field_validator("fallback_time")
    @classmethod
    def _validate_fallback(cls, value: str) -> str:
        return _check_hhmm(value)


class IntervalTiming(_TimingBase):
    timing_type: Literal["interval"] = "interval"
    interval_hours: int = Field(ge=1, le=24)
    start_time: str
    end_time: str
    avoid_sleep_hours: bool = False
    max_doses_per_day: int = Field(ge=1, le=12)

    @field_validator("start_time", "end_time")
    @classmethod
    def _validate_clock(cls, value: str) -> str:
        return _check_hhmm(value)


TimingPayload = Annotated[
    Union[AbsoluteTiming, MealRelativeTiming, SleepRelativeTiming, IntervalTiming],
    Field(discriminator="timing_type"),
]

_timing_adapter = TypeAdapter(TimingPayload)


def parse_timing(timing_type: str, payload: dict) -> AbsoluteTiming | MealRelativeTiming | SleepRelativeTiming | IntervalTiming:
    """Validate ``payload`` as the variant named by ``timing_type``.

    A payload carrying its own ``timing_type`` that disagrees with the
    schedule's is rejected rather than silently re-tagged.
    """
    timing_type = getattr(timing_type, "value", timing_type)
    data = dict(payload or {})
    declared = data.get("timing_type")
    if declared is not None and declared != timing_type:
        raise ValidationError(
            "timing.timing_type",
            f"payload is tagged '{declared}' but schedule timing_type is '{timing_type}'",
        )
    data["timing_type"] = timing_type
    try:
        return _timing_adapter.validate_python(data)
    except PydanticValidationError as exc:
        field, message = field_from_pydantic(exc, prefix="timing")
        raise ValidationError(field, message) from exc
