from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.base import as_utc, utcnow
from ..models.dose import DoseEvent
from ..services.dose_lifecycle import DoseLifecycleMachine, serialize_dose_event
from ..services.preferences import TimePreferenceStore
from ..services.schedule_resolver import local_datetime
from .deps import get_actor
from .schemas import ReschedulePayload, SkipPayload, SnoozePayload, TakePayload, UndoPayload

router = APIRouter(tags=["doses"])


@router.get("/patients/{patient_id}/doses")
def list_doses(
    patient_id: str,
    on_date: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
):
    prefs = TimePreferenceStore(db).get(patient_id)
    tz_name = prefs.lifestyle.timezone
    on_date = on_date or utcnow().astimezone(prefs.zone).date()
    day_start = local_datetime(on_date, "00:00", tz_name)
    day_end = local_datetime(on_date + timedelta(days=1), "00:00", tz_name)
    events = (
        db.query(DoseEvent)
        .filter(
            DoseEvent.patient_id == patient_id,
            DoseEvent.slot_datetime >= day_start,
            DoseEvent.slot_datetime < day_end,
            DoseEvent.retired_at.is_(None),
        )
        .order_by(DoseEvent.slot_datetime)
        .all()
    )
    items = []
    for event in events:
        item = serialize_dose_event(event)
        local_slot = as_utc(event.slot_datetime).astimezone(prefs.zone)
        item["bucket"] = prefs.bucket_for_time(local_slot.strftime("%H:%M"))
        items.append(item)
    return {"patient_id": patient_id, "on_date": on_date.isoformat(), "timezone": tz_name, "doses": items}


@router.post("/doses/{event_id}/take")
def take_dose(
    event_id: UUID,
    payload: TakePayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    transition = DoseLifecycleMachine(db).take(event_id, payload.command_id, payload.taken_at, actor=actor)
    return transition.to_dict()


@router.post("/doses/{event_id}/undo")
def undo_dose(
    event_id: UUID,
    payload: UndoPayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    transition = DoseLifecycleMachine(db).undo(event_id, payload.command_id, payload.reason, actor=actor)
    return transition.to_dict()


@router.post("/doses/{event_id}/skip")
def skip_dose(
    event_id: UUID,
    payload: SkipPayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    transition = DoseLifecycleMachine(db).skip(
        event_id, payload.reason, payload.notes, actor=actor, command_id=payload.command_id
    )
    return transition.to_dict()


@router.post("/doses/{event_id}/snooze")
def snooze_dose(
    event_id: UUID,
    payload: SnoozePayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    transition = DoseLifecycleMachine(db).snooze(
        event_id, payload.minutes, payload.reason, actor=actor, command_id=payload.command_id
    )
    return transition.to_dict()


@router.post("/doses/{event_id}/reschedule")
def reschedule_dose(
    event_id: UUID,
    payload: ReschedulePayload,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    transition = DoseLifecycleMachine(db).reschedule(
        event_id,
        payload.new_time,
        payload.reason,
        scope=payload.scope,
        actor=actor,
        command_id=payload.command_id,
    )
    return transition.to_dict()


@router.post("/doses/{event_id}/mark-missed")
def mark_missed(
    event_id: UUID,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
):
    transition = DoseLifecycleMachine(db).mark_missed(event_id, actor=actor)
    return transition.to_dict()
