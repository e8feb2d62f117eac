from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.preferences import TimePreferenceStore
from .deps import get_actor
from .schemas import TimePreferencesPayload

router = APIRouter(tags=["preferences"])


@router.get("/patients/{patient_id}/time-preferences")
def get_time_preferences(patient_id: str, db: Session = Depends(get_db)):
    return TimePreferenceStore(db).get(patient_id).model_dump()


@router.put("/patients/{patient_id}/time-preferences")
def update_time_preferences(
    patient_id: str,
    payload: TimePreferencesPayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    prefs = TimePreferenceStore(db).update(
        patient_id,
        time_buckets=payload.time_buckets,
        lifestyle=payload.lifestyle,
        actor=actor,
    )
    return prefs.model_dump()
