from __future__ import annotations

import logging
from typing import Any

import requests
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..models.audit import NotificationChannel, NotificationLog, NotificationStatus

logger = logging.getLogger(__name__)


class NotificationType:
    DOSE_TAKEN = "DOSE_TAKEN"
    DOSE_SKIPPED = "DOSE_SKIPPED"
    DOSE_MISSED = "DOSE_MISSED"
    STREAK_MILESTONE = "STREAK_MILESTONE"


class NotificationDispatcher:
    """Fire-and-forget delivery of lifecycle notifications.

    Called only after a transition has committed. Delivery failures are
    logged and recorded, never raised back into the lifecycle.
    """

    def __init__(self, db: Session, session=None):
        self.db = db
        self.settings = get_settings()
        self._http = session or requests

    def dispatch(
        self,
        notification_type: str,
        *,
        patient_id: str,
        dose_event_id=None,
        payload: dict[str, Any] | None = None,
    ) -> NotificationStatus:
        if not self.settings.NOTIFICATIONS_ENABLED:
            return NotificationStatus.SKIPPED

        url = self.settings.NOTIFICATION_WEBHOOK_URL
        if not url:
            logger.info("Notification %s for dose event %s (no webhook configured)", notification_type, dose_event_id)
            self._record(notification_type, patient_id, dose_event_id, NotificationChannel.LOG, "log", NotificationStatus.SENT)
            return NotificationStatus.SENT

        body = {
            "type": notification_type,
            "patient_id": patient_id,
            "dose_event_id": str(dose_event_id) if dose_event_id else None,
            "payload": payload or {},
        }
        try:
            response = self._http.post(url, json=body, timeout=self.settings.NOTIFICATION_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Notification %s delivery failed: %s", notification_type, exc)
            self._record(
                notification_type,
                patient_id,
                dose_event_id,
                NotificationChannel.WEBHOOK,
                url,
                NotificationStatus.FAILED,
                error=str(exc),
            )
            return NotificationStatus.FAILED

        self._record(notification_type, patient_id, dose_event_id, NotificationChannel.WEBHOOK, url, NotificationStatus.SENT)
        return NotificationStatus.SENT

    def _record(
        self,
        notification_type: str,
        patient_id: str,
        dose_event_id,
        channel: NotificationChannel,
        recipient: str,
        status: NotificationStatus,
        error: str | None = None,
    ) -> None:
        try:
            self.db.add(
                NotificationLog(
                    dose_event_id=dose_event_id,
                    patient_id=patient_id,
                    notification_type=notification_type,
                    channel=channel,
                    recipient=recipient,
                    delivery_status=status,
                    error_message=error,
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not record notification log for %s", notification_type)
