"""Firebase Cloud Messaging: absence streak alerts."""
import asyncio
import logging
from typing import Sequence

import firebase_admin
from firebase_admin import credentials, messaging

from attendance_streaks.config import settings
from attendance_streaks.models.notification import NotificationType
from attendance_streaks.services.store import NotificationDraft

logger = logging.getLogger(__name__)

_firebase_app = None


def _get_firebase_app():
    global _firebase_app
    if _firebase_app is not None:
        return _firebase_app

    if not settings.firebase_credentials_path:
        logger.warning("FIREBASE_CREDENTIALS_PATH not set. FCM will be disabled.")
        return None

    try:
        cred = credentials.Certificate(settings.firebase_credentials_path)
        _firebase_app = firebase_admin.initialize_app(cred)
        return _firebase_app
    except Exception as e:
        logger.error(f"Failed to initialize Firebase app: {e}")
        return None


def build_alert_message(note: NotificationDraft, topic: str) -> messaging.Message:
    if note.kind == NotificationType.ABSENT3_SUBJECT:
        body = f"Student {note.student_id} has been absent from {note.subject_id} for {note.streak} consecutive meetings."
    else:
        body = f"Student {note.student_id} has missed all classes for {note.streak} consecutive school days."
    return messaging.Message(
        notification=messaging.Notification(
            title=f"Warning! Student absent for {note.streak} days",
            body=body,
        ),
        data={
            "type": note.kind.value,
            "id": note.id,
            "student_id": note.student_id,
            "subject_id": note.subject_id or "",
            "date": note.day.isoformat(),
        },
        topic=topic,
    )


class FcmAlertNotifier:
    """Pushes newly raised absence alerts to the staff topic."""

    def __init__(self, topic: str = settings.fcm_alert_topic):
        self.topic = topic

    async def deliver(self, notifications: Sequence[NotificationDraft]) -> None:
        app = _get_firebase_app()
        if not app:
            return

        # Batch send limit is 500
        messages = [build_alert_message(n, self.topic) for n in notifications]
        for i in range(0, len(messages), 500):
            batch = messages[i:i + 500]
            try:
                response = await asyncio.to_thread(messaging.send_each, batch)
                logger.info(f"Sent {response.success_count} absence alerts. Errors: {response.failure_count}")
            except Exception as e:
                logger.error(f"FCM absence alert send failed: {e}")
