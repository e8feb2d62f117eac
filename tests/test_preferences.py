import pytest

from doseguard.errors import ValidationError
from doseguard.models.audit import AuditAction, AuditEvent
from doseguard.models.preferences import PatientTimePreferences
from doseguard.services.preferences import TimePreferenceStore, build_preferences


def test_defaults_returned_when_nothing_stored(db_session):
    prefs = TimePreferenceStore(db_session).get("PT-NEW")

    assert prefs.time_buckets.morning.default_time == "08:00"
    assert prefs.time_buckets.before_bed.time_range.latest == "23:30"
    assert prefs.lifestyle.wake_up_time == "07:00"
    assert prefs.lifestyle.timezone == "America/Chicago"
    assert db_session.query(PatientTimePreferences).count() == 0


def test_update_merges_partial_sections(db_session):
    store = TimePreferenceStore(db_session)
    store.update("PT-1", lifestyle={"meal_times": {"breakfast": "07:30"}}, actor="carer-1")
    prefs = store.update("PT-1", time_buckets={"morning": {"default_time": "07:00"}}, actor="carer-1")

    assert prefs.lifestyle.meal_times.breakfast == "07:30"
    assert prefs.time_buckets.morning.default_time == "07:00"
    assert prefs.time_buckets.morning.label == "Morning"
    assert store.get("PT-1") == prefs
    audits = db_session.query(AuditEvent).filter_by(action=AuditAction.UPDATE, actor="carer-1").all()
    assert len(audits) == 2


@pytest.mark.parametrize(
    "bucket",
    [
        {"time_range": {"earliest": "10:00", "latest": "09:00"}},
        {"default_time": "11:30"},
        {"default_time": "7am"},
    ],
)
def test_bucket_invariants_rejected(db_session, bucket):
    with pytest.raises(ValidationError) as exc:
        TimePreferenceStore(db_session).update("PT-1", time_buckets={"morning": bucket})
    assert exc.value.field.startswith("time_buckets.morning")
    assert db_session.query(PatientTimePreferences).count() == 0


def test_unknown_bucket_rejected(db_session):
    with pytest.raises(ValidationError) as exc:
        TimePreferenceStore(db_session).update("PT-1", time_buckets={"brunch": {"default_time": "10:00"}})
    assert exc.value.field == "time_buckets.brunch"


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError) as exc:
        build_preferences("PT-1", None, {"timezone": "Mars/Olympus"})
    assert exc.value.field == "lifestyle.timezone"


def test_bucket_for_time():
    prefs = build_preferences("PT-1", None, None)
    assert prefs.bucket_for_time("08:15") == "morning"
    assert prefs.bucket_for_time("22:45") == "before_bed"
    assert prefs.bucket_for_time("15:00") == "custom"
