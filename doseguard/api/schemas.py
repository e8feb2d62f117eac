from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class MedicationPayload(StrictModel):
    patient_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    generic_name: Optional[str] = None
    brand_name: Optional[str] = None
    dosage: str = Field(min_length=1)
    instructions: Optional[str] = None
    is_prn: bool = False
    prescribed_date: date
    prescribed_by: Optional[str] = None


class SchedulePayload(StrictModel):
    timing_type: Literal["absolute", "meal_relative", "sleep_relative", "interval"]
    timing: dict[str, Any]
    dosage_amount: str = Field(min_length=1)
    instructions: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    is_indefinite: bool = False
    reminder_minutes_before: list[int] = []
    materialize: bool = True


class MaterializePayload(StrictModel):
    start_date: Optional[date] = None
    days: int = Field(default=7, ge=1, le=90)


class TakePayload(StrictModel):
    command_id: str = Field(min_length=1, max_length=64)
    taken_at: Optional[datetime] = None


class UndoPayload(StrictModel):
    command_id: str = Field(min_length=1, max_length=64)
    reason: Optional[str] = None


class SkipPayload(StrictModel):
    reason: str
    notes: Optional[str] = None
    command_id: Optional[str] = Field(default=None, max_length=64)


class SnoozePayload(StrictModel):
    minutes: int
    reason: Optional[str] = None
    command_id: Optional[str] = Field(default=None, max_length=64)


class ReschedulePayload(StrictModel):
    new_time: datetime
    reason: str = Field(min_length=1)
    scope: Literal["single", "future", "all"] = "single"
    command_id: Optional[str] = Field(default=None, max_length=64)


class TimePreferencesPayload(StrictModel):
    time_buckets: Optional[dict[str, dict[str, Any]]] = None
    lifestyle: Optional[dict[str, Any]] = None


class SafetyProfilePayload(StrictModel):
    allergies: Optional[list[dict[str, Any]]] = None
    contraindications: Optional[list[dict[str, Any]]] = None
