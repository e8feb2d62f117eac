from sqlalchemy import JSON, String
from sqlalchemy.orm import mapped_column
from .base import Base, UUIDMixin, TimestampMixin


class PatientSafetyProfile(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "patient_safety_profiles"

    patient_id = mapped_column(String(64), nullable=False, unique=True)
    # [{"id", "allergen", "severity", "reaction"}]
    allergies = mapped_column(JSON, nullable=False, default=list)
    # [{"id", "medication", "reason", "source"}]
    contraindications = mapped_column(JSON, nullable=False, default=list)
    updated_by = mapped_column(String(64), nullable=True)
