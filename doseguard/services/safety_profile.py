from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import UpstreamUnavailable, ValidationError, field_from_pydantic
from ..models.audit import AuditAction
from ..models.medication import Medication
from ..models.safety import PatientSafetyProfile
from .audit_logger import create_audit_event
from .safety_rules import SafetyAlert, SafetyProfile, SafetyRuleEngine, Severity

logger = logging.getLogger(__name__)


class AllergyEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    allergen: str = Field(min_length=1)
    severity: Literal["mild", "moderate", "severe", "anaphylaxis"]
    reaction: Optional[str] = None


class ContraindicationEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    medication: str = Field(min_length=1)
    reason: str
    source: Optional[str] = None


class SafetyProfileProvider:
    """Reads allergies and contraindications for a patient.

    Storage failures surface as ``UpstreamUnavailable`` so callers can degrade.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, patient_id: str) -> SafetyProfile | None:
        try:
            row = self.db.query(PatientSafetyProfile).filter_by(patient_id=patient_id).first()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise UpstreamUnavailable("safety profile", str(exc)) from exc
        if row is None:
            return None
        return SafetyProfile.from_model(row)

    def update(
        self,
        patient_id: str,
        *,
        allergies: list[dict] | None = None,
        contraindications: list[dict] | None = None,
        actor: str = "SYSTEM",
    ) -> PatientSafetyProfile:
        validated_allergies = self._validate(AllergyEntry, allergies, "allergies")
        validated_contraindications = self._validate(ContraindicationEntry, contraindications, "contraindications")

        row = self.db.query(PatientSafetyProfile).filter_by(patient_id=patient_id).first()
        if row is None:
            row = PatientSafetyProfile(patient_id=patient_id, allergies=[], contraindications=[])
            self.db.add(row)
        if validated_allergies is not None:
            row.allergies = validated_allergies
        if validated_contraindications is not None:
            row.contraindications = validated_contraindications
        row.updated_by = actor
        self.db.flush()
        create_audit_event(
            self.db,
            actor=actor,
            action=AuditAction.UPDATE,
            entity_type="PatientSafetyProfile",
            entity_id=str(row.id),
            details={
                "patient_id": patient_id,
                "allergies": len(row.allergies or []),
                "contraindications": len(row.contraindications or []),
            },
            request=None,
            commit=False,
        )
        self.db.commit()
        return row

    @staticmethod
    def _validate(model, entries: list[dict] | None, section: str) -> list[dict] | None:
        if entries is None:
            return None
        validated = []
        for index, entry in enumerate(entries):
            try:
                validated.append(model.model_validate(entry).model_dump())
            except PydanticValidationError as exc:
                field_name, message = field_from_pydantic(exc, prefix=f"{section}.{index}")
                raise ValidationError(field_name, message) from exc
        return validated


@dataclass
class SafetyReport:
    patient_id: str
    alerts: list[SafetyAlert] = field(default_factory=list)
    degraded: bool = False
    degraded_reason: str | None = None

    def summary(self) -> dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for alert in self.alerts:
            counts[alert.severity.value] += 1
        counts["total"] = len(self.alerts)
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "alerts": [alert.to_dict() for alert in self.alerts],
            "summary": self.summary(),
            "degraded": self.degraded,
            "degraded_reason": self.degraded_reason,
        }


class SafetyService:
    def __init__(
        self,
        db: Session,
        engine: SafetyRuleEngine | None = None,
        provider: SafetyProfileProvider | None = None,
    ):
        self.db = db
        self.engine = engine or SafetyRuleEngine()
        self.provider = provider or SafetyProfileProvider(db)

    def evaluate_for_patient(self, patient_id: str) -> SafetyReport:
        medications = (
            self.db.query(Medication)
            .filter(Medication.patient_id == patient_id, Medication.is_active.is_(True))
            .order_by(Medication.created_at, Medication.name)
            .all()
        )
        report = SafetyReport(patient_id=patient_id)
        try:
            profile = self.provider.get(patient_id)
        except UpstreamUnavailable as exc:
            logger.warning(
                "Safety profile unavailable for patient %s, skipping allergy and contraindication checks: %s",
                patient_id,
                exc.message,
            )
            profile = None
            report.degraded = True
            report.degraded_reason = exc.message

        report.alerts = self.engine.evaluate(medications, profile)
        logger.info(
            "Safety analysis for patient %s: %s alerts over %s medications%s",
            patient_id,
            len(report.alerts),
            len(medications),
            " (degraded)" if report.degraded else "",
        )
        return report
