from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from doseguard.errors import UpstreamUnavailable, ValidationError
from doseguard.services.safety_profile import SafetyProfileProvider, SafetyService
from doseguard.services.safety_rules import (
    SafetyMedication,
    SafetyProfile,
    SafetyRuleConfig,
    SafetyRuleEngine,
    Severity,
)


def med(name, generic=None, brand=None):
    return SafetyMedication(id=name.lower().replace(" ", "-"), name=name, generic_name=generic, brand_name=brand)


@pytest.fixture
def engine():
    return SafetyRuleEngine(SafetyRuleConfig.load())


def test_empty_medication_list_returns_no_alerts(engine):
    assert engine.evaluate([]) == []
    assert engine.evaluate([], SafetyProfile(allergies=({"id": "a1", "allergen": "penicillin", "severity": "severe"},))) == []


def test_warfarin_aspirin_single_major_interaction(engine):
    alerts = engine.evaluate([med("Warfarin"), med("Aspirin 81mg")])

    interactions = [a for a in alerts if a.type == "interaction"]
    assert len(interactions) == 1
    alert = interactions[0]
    assert alert.severity == Severity.MAJOR
    assert alert.title == "Warfarin + Aspirin 81mg"
    assert alert.recommendations[0] == "Monitor INR closely and watch for signs of bleeding."
    assert alert.learn_more_url.startswith("https://www.drugs.com/drug_interactions.php?drug_list=")


def test_interaction_matches_in_either_order(engine):
    alerts = engine.evaluate([med("Aspirin"), med("warfarin sodium")])
    assert [a.type for a in alerts] == ["interaction"]


def test_three_statins_yield_one_duplicate_alert(engine):
    alerts = engine.evaluate([med("Atorvastatin"), med("Simvastatin"), med("Rosuvastatin")])

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.type == "duplicate"
    assert alert.severity == Severity.MODERATE
    assert alert.medications == ["Atorvastatin", "Simvastatin", "Rosuvastatin"]
    assert alert.title == "Multiple Statins medications"


def test_timing_separation_is_presence_only(engine):
    alerts = engine.evaluate([med("Levothyroxine"), med("Iron sulfate")])

    assert len(alerts) == 1
    assert alerts[0].type == "timing"
    assert "at least 4 hours" in alerts[0].description
    assert alerts[0].recommendations[0] == "Take Levothyroxine and Iron sulfate at least 4 hours apart"


def test_levothyroxine_calcium_reports_interaction_then_timing(engine):
    alerts = engine.evaluate([med("Levothyroxine"), med("Calcium carbonate")])
    assert [a.type for a in alerts] == ["interaction", "timing"]


@pytest.mark.parametrize(
    "allergy_severity,expected",
    [("anaphylaxis", Severity.CRITICAL), ("severe", Severity.MAJOR), ("mild", Severity.MODERATE)],
)
def test_allergy_severity_mapping(engine, allergy_severity, expected):
    profile = SafetyProfile(allergies=({"id": "a1", "allergen": "amoxicillin", "severity": allergy_severity},))
    alerts = engine.evaluate([med("Amoxicillin 500mg")], profile)

    assert len(alerts) == 1
    assert alerts[0].severity == expected
    assert "DO NOT TAKE this medication" in alerts[0].recommendations
    assert "Contact healthcare provider immediately" in alerts[0].recommendations


def test_allergy_matches_generic_and_brand_names(engine):
    profile = SafetyProfile(allergies=({"id": "a1", "allergen": "ibuprofen", "severity": "severe"},))
    alerts = engine.evaluate([med("Advil", generic="Ibuprofen")], profile)
    assert [a.type for a in alerts] == ["allergy"]


def test_contraindication_is_major(engine):
    profile = SafetyProfile(
        contraindications=({"id": "c1", "medication": "metformin", "reason": "Renal impairment", "source": "Nephrology"},)
    )
    alerts = engine.evaluate([med("Metformin XR")], profile)

    assert len(alerts) == 1
    assert alerts[0].type == "contraindication"
    assert alerts[0].severity == Severity.MAJOR
    assert alerts[0].source == "Nephrology"


def test_alerts_sorted_by_severity_with_stable_ties(engine):
    profile = SafetyProfile(
        allergies=({"id": "a1", "allergen": "naproxen", "severity": "anaphylaxis"},),
        contraindications=({"id": "c1", "medication": "ibuprofen", "reason": "Ulcer history"},),
    )
    meds = [med("Warfarin"), med("Aspirin"), med("Ibuprofen"), med("Naproxen"), med("Levothyroxine"), med("Iron")]
    alerts = engine.evaluate(meds, profile)

    ranks = [a.severity for a in alerts]
    order = [Severity.CRITICAL, Severity.MAJOR, Severity.MODERATE, Severity.MINOR]
    assert ranks == sorted(ranks, key=order.index)
    assert alerts[0].type == "allergy"
    majors = [a.type for a in alerts if a.severity == Severity.MAJOR]
    assert majors == ["interaction", "contraindication"]
    moderates = [a.type for a in alerts if a.severity == Severity.MODERATE]
    assert moderates == ["duplicate", "timing"]


def test_engine_is_deterministic(engine):
    meds = [med("Lisinopril"), med("Enalapril"), med("Warfarin"), med("Aspirin")]
    first = [a.to_dict() for a in engine.evaluate(meds)]
    second = [a.to_dict() for a in engine.evaluate(meds)]
    assert first == second


def seed_medication(db, name, patient_id="PT-SAFE"):
    from doseguard.services.schedule_manager import ScheduleManager

    return ScheduleManager(db).create_medication(
        patient_id=patient_id, name=name, dosage="1 tablet", prescribed_date=date(2026, 1, 1)
    )


def test_service_uses_stored_profile(db_session):
    seed_medication(db_session, "Penicillin V")
    seed_medication(db_session, "Warfarin")
    seed_medication(db_session, "Aspirin")
    SafetyProfileProvider(db_session).update(
        "PT-SAFE",
        allergies=[{"id": "a1", "allergen": "penicillin", "severity": "anaphylaxis"}],
    )

    report = SafetyService(db_session).evaluate_for_patient("PT-SAFE")

    assert report.degraded is False
    assert [a.type for a in report.alerts] == ["allergy", "interaction"]
    assert report.summary() == {"minor": 0, "moderate": 0, "major": 1, "critical": 1, "total": 2}


def test_service_ignores_inactive_medications(db_session):
    from doseguard.services.schedule_manager import ScheduleManager

    seed_medication(db_session, "Warfarin")
    aspirin = seed_medication(db_session, "Aspirin")
    ScheduleManager(db_session).deactivate_medication(aspirin.id)

    report = SafetyService(db_session).evaluate_for_patient("PT-SAFE")
    assert report.alerts == []


def test_service_degrades_when_profile_unavailable(db_session):
    class BrokenProvider:
        def get(self, patient_id):
            raise UpstreamUnavailable("safety profile", "connection refused")

    seed_medication(db_session, "Warfarin")
    seed_medication(db_session, "Aspirin")

    report = SafetyService(db_session, provider=BrokenProvider()).evaluate_for_patient("PT-SAFE")

    assert report.degraded is True
    assert [a.type for a in report.alerts] == ["interaction"]


def test_provider_wraps_storage_errors(db_session, monkeypatch):
    provider = SafetyProfileProvider(db_session)

    def broken_query(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "query", broken_query)
    with pytest.raises(UpstreamUnavailable):
        provider.get("PT-SAFE")


def test_profile_update_validates_entries(db_session):
    with pytest.raises(ValidationError) as exc:
        SafetyProfileProvider(db_session).update(
            "PT-SAFE", allergies=[{"id": "a1", "allergen": "latex", "severity": "extreme"}]
        )
    assert exc.value.field.startswith("allergies.0")
