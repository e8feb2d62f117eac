from .base import Base
from .medication import Medication, MedicationSchedule, TimingType
from .dose import DoseEvent, DoseStatus, SkipReason, TimingCategory
from .preferences import PatientTimePreferences
from .adherence import AdherenceStreak, StreakMilestone
from .safety import PatientSafetyProfile
from .audit import AuditEvent, AuditAction, NotificationLog, NotificationChannel, NotificationStatus

__all__ = [
    "Base",
    "Medication",
    "MedicationSchedule",
    "TimingType",
    "DoseEvent",
    "DoseStatus",
    "SkipReason",
    "TimingCategory",
    "PatientTimePreferences",
    "AdherenceStreak",
    "StreakMilestone",
    "PatientSafetyProfile",
    "AuditEvent",
    "AuditAction",
    "NotificationLog",
    "NotificationChannel",
    "NotificationStatus",
]
