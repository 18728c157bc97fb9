"""Firebase Cloud Messaging delivery of notification records."""

import structlog
from firebase_admin import messaging

from clinicflow.core.firebase import recipient_topic
from clinicflow.schemas.notifications import NotificationPriority, NotificationRecord

logger = structlog.get_logger(__name__)

_HIGH_PRIORITIES = {NotificationPriority.HIGH, NotificationPriority.URGENT}


def build_message(record: NotificationRecord) -> messaging.Message:
    """FCM message addressed to the recipient's topic."""
    android_priority = "high" if record.priority in _HIGH_PRIORITIES else "normal"
    return messaging.Message(
        notification=messaging.Notification(
            title=record.title,
            body=record.message,
        ),
        # FCM data values must be strings
        data={
            "notification_id": str(record.id),
            "type": record.type.value,
            **{key: str(value) for key, value in record.data.items() if value is not None},
        },
        topic=recipient_topic(record.recipient_type.value, record.recipient_id),
        apns=messaging.APNSConfig(
            payload=messaging.APNSPayload(
                aps=messaging.Aps(
                    sound="default",
                    badge=1,
                ),
            ),
        ),
        android=messaging.AndroidConfig(
            priority=android_priority,
            notification=messaging.AndroidNotification(
                sound="default",
            ),
        ),
    )


class PushNotificationTransport:
    """Delivers notifications as push messages through FCM topics."""

    async def deliver(self, record: NotificationRecord) -> None:
        """
        Send one notification.

        Raises:
            firebase_admin.exceptions.FirebaseError: If FCM rejects the message
        """
        message_id = messaging.send(build_message(record))
        logger.info(
            "push_notification_sent",
            notification_id=str(record.id),
            recipient_id=record.recipient_id,
            message_id=message_id,
        )
