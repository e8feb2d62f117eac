import os
from datetime import date, datetime, timezone

import pytest
from cryptography.fernet import Fernet

# Ensure critical env vars are set before doseguard imports
os.environ.setdefault("FIELD_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))
os.environ.setdefault("NOTIFICATION_WEBHOOK_URL", "")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("SWEEPER_ENABLED", "false")


@pytest.fixture
def db_session(tmp_path, monkeypatch):
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{db_path}")

    from doseguard.config import get_settings
    from doseguard.database import reset_engine, get_engine, get_sessionmaker
    from doseguard.models.base import Base
    from doseguard.services.encryption import reset_cipher

    get_settings.cache_clear()
    reset_cipher()
    reset_engine()
    engine = get_engine()
    Base.metadata.create_all(bind=engine)

    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        reset_engine()


@pytest.fixture
def utc():
    def _utc(*args) -> datetime:
        return datetime(*args, tzinfo=timezone.utc)

    return _utc


@pytest.fixture
def seed_schedule(db_session):
    """Medication plus active schedule for a patient on UTC time preferences."""
    from doseguard.services.preferences import TimePreferenceStore
    from doseguard.services.schedule_manager import ScheduleManager

    def _seed(
        name="Lisinopril",
        timing_type="absolute",
        timing=None,
        patient_id="PT-001",
        is_prn=False,
        start_date=date(2026, 3, 1),
        lifestyle=None,
    ):
        store = TimePreferenceStore(db_session)
        store.update(
            patient_id,
            lifestyle={"timezone": "UTC", **(lifestyle or {})},
        )
        manager = ScheduleManager(db_session)
        medication = manager.create_medication(
            patient_id=patient_id,
            name=name,
            dosage="10mg",
            is_prn=is_prn,
            prescribed_date=start_date,
        )
        schedule = manager.create_schedule(
            medication.id,
            timing_type=timing_type,
            timing=timing or {"times": ["08:00", "20:00"]},
            dosage_amount="1 tablet",
            start_date=start_date,
            is_indefinite=True,
        )
        return medication, schedule

    return _seed


@pytest.fixture(autouse=True)
def _fresh_settings():
    yield
    from doseguard.config import get_settings

    get_settings.cache_clear()
