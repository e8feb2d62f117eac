import enum
from sqlalchemy import Boolean, Date, Enum, ForeignKey, JSON, String, Text
from sqlalchemy.orm import mapped_column, relationship
from .base import Base, UUIDMixin, TimestampMixin


class TimingType(str, enum.Enum):
    ABSOLUTE = "absolute"
    MEAL_RELATIVE = "meal_relative"
    SLEEP_RELATIVE = "sleep_relative"
    INTERVAL = "interval"


class Medication(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "medications"

    patient_id = mapped_column(String(64), nullable=False, index=True)
    name = mapped_column(String(128), nullable=False)
    generic_name = mapped_column(String(128), nullable=True)
    brand_name = mapped_column(String(128), nullable=True)
    dosage = mapped_column(String(64), nullable=False)
    instructions = mapped_column(Text, nullable=True)
    is_prn = mapped_column(Boolean, default=False, nullable=False)
    is_active = mapped_column(Boolean, default=True, nullable=False)
    prescribed_date = mapped_column(Date, nullable=False)
    prescribed_by = mapped_column(String(128), nullable=True)

    schedules = relationship("MedicationSchedule", back_populates="medication")


class MedicationSchedule(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "medication_schedules"

    medication_id = mapped_column(ForeignKey("medications.id"), nullable=False, index=True)
    patient_id = mapped_column(String(64), nullable=False, index=True)
    timing_type = mapped_column(Enum(TimingType, name="timingtype"), nullable=False)
    # Validated against timing_type by services.timing.parse_timing
    timing = mapped_column(JSON, nullable=False)
    dosage_amount = mapped_column(String(64), nullable=False)
    instructions = mapped_column(Text, nullable=True)
    start_date = mapped_column(Date, nullable=False)
    end_date = mapped_column(Date, nullable=True)
    is_indefinite = mapped_column(Boolean, default=False, nullable=False)
    reminder_minutes_before = mapped_column(JSON, nullable=False, default=list)
    is_active = mapped_column(Boolean, default=True, nullable=False)

    medication = relationship("Medication", back_populates="schedules")
