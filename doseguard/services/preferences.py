from __future__ import annotations

from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..errors import ValidationError, field_from_pydantic
from ..models.audit import AuditAction
from ..models.preferences import PatientTimePreferences
from .audit_logger import create_audit_event
from .timing import parse_hhmm

BUCKET_NAMES = ("morning", "lunch", "evening", "before_bed")


class TimeRange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    earliest: str
    latest: str

    @field_validator("earliest", "latest")
    @classmethod
    def _clock(cls, value: str) -> str:
        parse_hhmm(value)
        return value


class TimeBucket(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_time: str
    label: str
    time_range: TimeRange
    is_active: bool = True

    @field_validator("default_time")
    @classmethod
    def _clock(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    @model_validator(mode="after")
    def _check_range(self):
        earliest = parse_hhmm(self.time_range.earliest)
        latest = parse_hhmm(self.time_range.latest)
        default = parse_hhmm(self.default_time)
        if not earliest < latest:
            raise ValueError("time_range.earliest must be before time_range.latest")
        if not earliest <= default <= latest:
            raise ValueError("default_time must fall within time_range")
        return self


class TimeBuckets(BaseModel):
    model_config = ConfigDict(extra="forbid")

    morning: TimeBucket
    lunch: TimeBucket
    evening: TimeBucket
    before_bed: TimeBucket


class MealTimes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    breakfast: Optional[str] = None
    lunch: Optional[str] = None
    dinner: Optional[str] = None

    @field_validator("breakfast", "lunch", "dinner")
    @classmethod
    def _clock(cls, value: str | None) -> str | None:
        if value is not None:
            parse_hhmm(value)
        return value


class WorkSchedule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start_time: str
    end_time: str
    days: list[Literal["mon", "tue", "wed", "thu", "fri", "sat", "sun"]] = []
    is_night_shift: bool = False


class Lifestyle(BaseModel):
    model_config = ConfigDict(extra="forbid")

    wake_up_time: Optional[str] = "07:00"
    bed_time: Optional[str] = "23:00"
    timezone: str = "America/Chicago"
    meal_times: MealTimes = MealTimes()
    work_schedule: Optional[WorkSchedule] = None

    @field_validator("wake_up_time", "bed_time")
    @classmethod
    def _clock(cls, value: str | None) -> str | None:
        if value is not None:
            parse_hhmm(value)
        return value

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone '{value}'")
        return value


class TimePreferences(BaseModel):
    """Validated, read-only view of a patient's time preferences."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    patient_id: str
    time_buckets: TimeBuckets
    lifestyle: Lifestyle

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.lifestyle.timezone)

    def meal_time(self, meal_type: str) -> str | None:
        return getattr(self.lifestyle.meal_times, meal_type, None)

    def bucket_for_time(self, value: str) -> str:
        minutes = parse_hhmm(value)
        for name in BUCKET_NAMES:
            bucket: TimeBucket = getattr(self.time_buckets, name)
            if not bucket.is_active:
                continue
            if parse_hhmm(bucket.time_range.earliest) <= minutes <= parse_hhmm(bucket.time_range.latest):
                return name
        return "custom"


DEFAULT_TIME_BUCKETS = {
    "morning": {
        "default_time": "08:00",
        "label": "Morning",
        "time_range": {"earliest": "06:00", "latest": "10:00"},
        "is_active": True,
    },
    "lunch": {
        "default_time": "12:00",
        "label": "Lunch",
        "time_range": {"earliest": "11:00", "latest": "14:00"},
        "is_active": True,
    },
    "evening": {
        "default_time": "18:00",
        "label": "Evening",
        "time_range": {"earliest": "17:00", "latest": "20:00"},
        "is_active": True,
    },
    "before_bed": {
        "default_time": "22:00",
        "label": "Before Bed",
        "time_range": {"earliest": "21:00", "latest": "23:30"},
        "is_active": True,
    },
}

DEFAULT_LIFESTYLE = {
    "wake_up_time": "07:00",
    "bed_time": "23:00",
    "timezone": "America/Chicago",
    "meal_times": {},
}


def build_preferences(patient_id: str, time_buckets: dict | None, lifestyle: dict | None) -> TimePreferences:
    try:
        return TimePreferences(
            patient_id=patient_id,
            time_buckets=time_buckets if time_buckets is not None else DEFAULT_TIME_BUCKETS,
            lifestyle=lifestyle if lifestyle is not None else DEFAULT_LIFESTYLE,
        )
    except PydanticValidationError as exc:
        field, message = field_from_pydantic(exc)
        raise ValidationError(field, message) from exc


def default_preferences(patient_id: str) -> TimePreferences:
    return build_preferences(patient_id, None, None)


class TimePreferenceStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, patient_id: str) -> TimePreferences:
        row = self._find(patient_id)
        if row is None:
            return default_preferences(patient_id)
        return build_preferences(patient_id, row.time_buckets, row.lifestyle)

    def update(
        self,
        patient_id: str,
        *,
        time_buckets: dict | None = None,
        lifestyle: dict | None = None,
        actor: str = "SYSTEM",
    ) -> TimePreferences:
        """Merge the supplied sections over the stored (or default) ones."""
        current = self.get(patient_id)
        buckets = current.time_buckets.model_dump()
        for name, bucket in (time_buckets or {}).items():
            if name not in BUCKET_NAMES:
                raise ValidationError(f"time_buckets.{name}", "unknown time bucket")
            buckets[name] = {**buckets[name], **bucket}
        merged_lifestyle = current.lifestyle.model_dump()
        merged_lifestyle.update(lifestyle or {})

        prefs = build_preferences(patient_id, buckets, merged_lifestyle)

        row = self._find(patient_id)
        if row is None:
            row = PatientTimePreferences(patient_id=patient_id)
            self.db.add(row)
        row.time_buckets = prefs.time_buckets.model_dump()
        row.lifestyle = prefs.lifestyle.model_dump()
        row.updated_by = actor
        self.db.flush()
        create_audit_event(
            self.db,
            actor=actor,
            action=AuditAction.UPDATE,
            entity_type="PatientTimePreferences",
            entity_id=str(row.id),
            details={
                "patient_id": patient_id,
                "sections": sorted(
                    key for key, value in (("time_buckets", time_buckets), ("lifestyle", lifestyle)) if value
                ),
            },
            request=None,
            commit=False,
        )
        self.db.commit()
        return prefs

    def _find(self, patient_id: str) -> PatientTimePreferences | None:
        return self.db.query(PatientTimePreferences).filter_by(patient_id=patient_id).first()
