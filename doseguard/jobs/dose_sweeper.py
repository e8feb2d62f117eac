import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime

from ..config import get_settings
from ..database import get_sessionmaker
from ..models.base import utcnow
from ..models.medication import Medication, MedicationSchedule
from ..services.dose_lifecycle import DoseLifecycleMachine
from ..services.materializer import DoseMaterializer
from ..services.preferences import TimePreferenceStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    confirmed: int = 0
    released: int = 0
    missed: int = 0
    materialized: int = 0


class DoseSweeper:
    """Time-driven transitions that must happen without a client connected."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or get_sessionmaker()

    def run_once(self, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()
        db = self.session_factory()
        try:
            machine = DoseLifecycleMachine(db, clock=lambda: now)
            result.confirmed = machine.confirm_expired(now)
            result.released = machine.release_snoozes(now)
            result.missed = machine.mark_overdue_missed(now)
            result.materialized = self._materialize_horizon(db, now)
        finally:
            db.close()
        logger.info("Dose sweep complete: %s", asdict(result))
        return result

    def _materialize_horizon(self, db, now: datetime) -> int:
        schedules = (
            db.query(MedicationSchedule)
            .join(Medication, Medication.id == MedicationSchedule.medication_id)
            .filter(
                MedicationSchedule.is_active.is_(True),
                Medication.is_active.is_(True),
                Medication.is_prn.is_(False),
            )
            .all()
        )
        materializer = DoseMaterializer(db)
        prefs_store = TimePreferenceStore(db)
        created = 0
        for schedule in schedules:
            prefs = prefs_store.get(schedule.patient_id)
            start = now.astimezone(prefs.zone).date()
            outcome = materializer.materialize(schedule, start, prefs=prefs, now=now, not_before=now)
            created += len(outcome.created)
        return created


def start_background_sweeper(stop_event: threading.Event | None = None) -> threading.Thread:
    settings = get_settings()
    stop_event = stop_event or threading.Event()
    sweeper = DoseSweeper()

    def _loop() -> None:
        while not stop_event.is_set():
            try:
                sweeper.run_once()
            except Exception:
                logger.exception("Dose sweep failed")
            stop_event.wait(settings.SWEEPER_INTERVAL_SECONDS)

    thread = threading.Thread(target=_loop, name="dose-sweeper", daemon=True)
    thread.start()
    logger.info("Background dose sweeper started (every %ss)", settings.SWEEPER_INTERVAL_SECONDS)
    return thread


if __name__ == "__main__":
    from ..logging_config import configure_logging

    configure_logging(get_settings())
    DoseSweeper().run_once()
