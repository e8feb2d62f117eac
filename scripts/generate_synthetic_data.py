from datetime import date, timedelta
import random

from faker import Faker
from sqlalchemy.orm import Session

from doseguard.config import get_settings
from doseguard.database import get_sessionmaker, init_db
from doseguard.models.base import utcnow
from doseguard.services.materializer import DoseMaterializer
from doseguard.services.preferences import TimePreferenceStore
from doseguard.services.safety_profile import SafetyProfileProvider
from doseguard.services.schedule_manager import ScheduleManager

fake = Faker("en_GB")

MEDICATIONS = {
    "absolute": ["Lisinopril", "Atorvastatin", "Levothyroxine", "Warfarin"],
    "meal_relative": ["Metformin", "Ibuprofen", "Calcium carbonate"],
    "sleep_relative": ["Simvastatin", "Melatonin"],
    "interval": ["Amoxicillin", "Paracetamol"],
}

TIMEZONES = ["Europe/London", "Europe/Dublin", "UTC"]
ALLERGENS = ["penicillin", "aspirin", "ibuprofen", "sulfa", "latex"]


def _timing(timing_type: str) -> dict:
    if timing_type == "absolute":
        return {"times": sorted(random.sample(["07:00", "08:00", "13:00", "18:00", "21:00"], k=random.randint(1, 2)))}
    if timing_type == "meal_relative":
        return {
            "meal_type": random.choice(["breakfast", "lunch", "dinner"]),
            "offset_minutes": random.choice([-30, 0, 15, 30]),
            "fallback_time": "08:00",
            "is_flexible": random.random() < 0.5,
        }
    if timing_type == "sleep_relative":
        return {"relative_to": "bedtime", "offset_minutes": -30, "fallback_time": "22:00"}
    hours = random.choice([4, 6, 8])
    return {
        "interval_hours": hours,
        "start_time": "08:00",
        "end_time": "22:00",
        "max_doses_per_day": 24 // hours,
    }


def generate_synthetic_patients(db: Session, count: int = 25) -> None:
    manager = ScheduleManager(db)
    materializer = DoseMaterializer(db)
    for _ in range(count):
        patient_id = f"PT-{fake.bothify(text='???###').upper()}"
        TimePreferenceStore(db).update(
            patient_id,
            lifestyle={
                "timezone": random.choice(TIMEZONES),
                "wake_up_time": random.choice(["06:30", "07:00", "07:30"]),
                "bed_time": random.choice(["22:00", "22:30", "23:00"]),
            },
            actor="SYNTHETIC",
        )

        if random.random() < 0.3:
            SafetyProfileProvider(db).update(
                patient_id,
                allergies=[
                    {
                        "id": fake.uuid4(),
                        "allergen": random.choice(ALLERGENS),
                        "severity": random.choice(["mild", "moderate", "severe", "anaphylaxis"]),
                        "reaction": fake.sentence(nb_words=4),
                    }
                ],
                actor="SYNTHETIC",
            )

        for _ in range(random.randint(1, 4)):
            timing_type = random.choice(list(MEDICATIONS.keys()))
            start_date = fake.date_between(start_date="-60d", end_date="today")
            end_date = None if random.random() < 0.7 else date.today() + timedelta(days=30)
            medication = manager.create_medication(
                patient_id=patient_id,
                name=random.choice(MEDICATIONS[timing_type]),
                dosage=f"{random.choice([5, 10, 20, 50, 500])}mg",
                prescribed_date=start_date,
                prescribed_by=f"Dr {fake.last_name()}",
                actor="SYNTHETIC",
            )
            schedule = manager.create_schedule(
                medication.id,
                timing_type=timing_type,
                timing=_timing(timing_type),
                dosage_amount="1 tablet",
                start_date=start_date,
                end_date=end_date,
                is_indefinite=end_date is None,
                actor="SYNTHETIC",
            )
            materializer.materialize(schedule, date.today(), actor="SYNTHETIC", not_before=utcnow())


if __name__ == "__main__":
    settings = get_settings()
    if settings.ENVIRONMENT != "dev" or not settings.SYNTHETIC_DATA_MODE:
        raise SystemExit("Synthetic data generation is only permitted in dev with SYNTHETIC_DATA_MODE=true")

    init_db()
    db = get_sessionmaker()()
    try:
        generate_synthetic_patients(db)
    finally:
        db.close()

    print("Synthetic data generation complete")
