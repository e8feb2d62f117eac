from datetime import date, timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.base import utcnow
from ..services.materializer import DoseMaterializer
from ..services.preferences import TimePreferenceStore
from ..services.schedule_manager import ScheduleManager
from ..services.schedule_resolver import ScheduleResolver, local_datetime
from .deps import get_actor
from .schemas import MaterializePayload, MedicationPayload, SchedulePayload

router = APIRouter(tags=["medications"])


def _medication_dict(medication) -> dict:
    return {
        "id": str(medication.id),
        "patient_id": medication.patient_id,
        "name": medication.name,
        "generic_name": medication.generic_name,
        "brand_name": medication.brand_name,
        "dosage": medication.dosage,
        "instructions": medication.instructions,
        "is_prn": medication.is_prn,
        "is_active": medication.is_active,
        "prescribed_date": medication.prescribed_date.isoformat(),
        "prescribed_by": medication.prescribed_by,
    }


def _schedule_dict(schedule) -> dict:
    return {
        "id": str(schedule.id),
        "medication_id": str(schedule.medication_id),
        "patient_id": schedule.patient_id,
        "timing_type": schedule.timing_type.value,
        "timing": schedule.timing,
        "dosage_amount": schedule.dosage_amount,
        "instructions": schedule.instructions,
        "start_date": schedule.start_date.isoformat(),
        "end_date": schedule.end_date.isoformat() if schedule.end_date else None,
        "is_indefinite": schedule.is_indefinite,
        "reminder_minutes_before": schedule.reminder_minutes_before,
        "is_active": schedule.is_active,
    }


@router.post("/medications", status_code=201)
def create_medication(
    payload: MedicationPayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    medication = ScheduleManager(db).create_medication(actor=actor, **payload.model_dump())
    return _medication_dict(medication)


@router.post("/medications/{medication_id}/deactivate")
def deactivate_medication(
    medication_id: UUID,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    medication = ScheduleManager(db).deactivate_medication(medication_id, actor=actor)
    return _medication_dict(medication)


@router.post("/medications/{medication_id}/schedules", status_code=201)
def create_schedule(
    medication_id: UUID,
    payload: SchedulePayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    data = payload.model_dump()
    materialize = data.pop("materialize")
    schedule = ScheduleManager(db).create_schedule(medication_id, actor=actor, **data)

    created = 0
    if materialize:
        prefs = TimePreferenceStore(db).get(schedule.patient_id)
        now = utcnow()
        start = max(schedule.start_date, now.astimezone(prefs.zone).date())
        result = DoseMaterializer(db).materialize(
            schedule, start, prefs=prefs, actor=actor, now=now, not_before=now
        )
        created = len(result.created)
    return {"schedule": _schedule_dict(schedule), "dose_events_created": created}


@router.get("/schedules/{schedule_id}/resolve")
def resolve_schedule(
    schedule_id: UUID,
    on_date: date = Query(...),
    db: Session = Depends(get_db),
):
    schedule = ScheduleManager(db).get_schedule(schedule_id)
    prefs = TimePreferenceStore(db).get(schedule.patient_id)
    resolved = ScheduleResolver().resolve(schedule, prefs, on_date)
    tz_name = prefs.lifestyle.timezone
    return {
        "schedule_id": str(schedule.id),
        "on_date": on_date.isoformat(),
        "timezone": tz_name,
        "times": [
            {
                "time": item.time,
                "approximate": item.approximate,
                "day_offset": item.day_offset,
                "bucket": prefs.bucket_for_time(item.time),
                "slot_datetime": local_datetime(
                    on_date + timedelta(days=item.day_offset), item.time, tz_name
                ).isoformat(),
            }
            for item in resolved
        ],
    }


@router.post("/schedules/{schedule_id}/materialize")
def materialize_schedule(
    schedule_id: UUID,
    payload: MaterializePayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    schedule = ScheduleManager(db).get_schedule(schedule_id)
    prefs = TimePreferenceStore(db).get(schedule.patient_id)
    start = payload.start_date or utcnow().astimezone(prefs.zone).date()
    result = DoseMaterializer(db).materialize(schedule, start, payload.days, prefs=prefs, actor=actor)
    return {
        "schedule_id": str(schedule.id),
        "created": len(result.created),
        "refreshed": len(result.refreshed),
        "retired": result.retired,
        "unchanged": result.unchanged,
    }
