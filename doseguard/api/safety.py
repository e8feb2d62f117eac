from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.safety_profile import SafetyProfileProvider, SafetyService
from .deps import get_actor
from .schemas import SafetyProfilePayload

router = APIRouter(tags=["safety"])


@router.get("/patients/{patient_id}/safety-alerts")
def safety_alerts(patient_id: str, db: Session = Depends(get_db)):
    return SafetyService(db).evaluate_for_patient(patient_id).to_dict()


@router.put("/patients/{patient_id}/safety-profile")
def update_safety_profile(
    patient_id: str,
    payload: SafetyProfilePayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    profile = SafetyProfileProvider(db).update(
        patient_id,
        allergies=payload.allergies,
        contraindications=payload.contraindications,
        actor=actor,
    )
    return {
        "patient_id": profile.patient_id,
        "allergies": profile.allergies,
        "contraindications": profile.contraindications,
    }
