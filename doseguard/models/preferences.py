from sqlalchemy import JSON, String
from sqlalchemy.orm import mapped_column
from .base import Base, UUIDMixin, TimestampMixin


class PatientTimePreferences(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "patient_time_preferences"

    patient_id = mapped_column(String(64), nullable=False, unique=True)
    # Shapes are defined and validated by services.preferences
    time_buckets = mapped_column(JSON, nullable=False)
    lifestyle = mapped_column(JSON, nullable=False)
    updated_by = mapped_column(String(64), nullable=True)
