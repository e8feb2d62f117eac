from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import mapped_column
from .base import Base, UUIDMixin, TimestampMixin


class AdherenceStreak(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "adherence_streaks"

    patient_id = mapped_column(String(64), nullable=False, unique=True)
    current_streak = mapped_column(Integer, default=0, nullable=False)
    longest_streak = mapped_column(Integer, default=0, nullable=False)
    streak_start_date = mapped_column(Date, nullable=True)
    last_qualifying_date = mapped_column(Date, nullable=True)


class StreakMilestone(Base, UUIDMixin):
    __tablename__ = "streak_milestones"
    __table_args__ = (
        UniqueConstraint(
            "patient_id", "threshold_days", "streak_start_date", name="uq_streak_milestone_crossing"
        ),
    )

    patient_id = mapped_column(String(64), nullable=False, index=True)
    threshold_days = mapped_column(Integer, nullable=False)
    streak_start_date = mapped_column(Date, nullable=False)
    dose_event_id = mapped_column(ForeignKey("dose_events.id"), nullable=False)
    reached_at = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at = mapped_column(DateTime(timezone=True), nullable=True)
