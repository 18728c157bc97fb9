"""Persistence of notification records."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicflow.core.exceptions import NotFoundException
from clinicflow.models.notifications import notifications
from clinicflow.schemas.notifications import (
    DeliveryStatus,
    NotificationRecord,
    ReadStatus,
)


def _to_record(row) -> NotificationRecord:
    values = dict(row._mapping)
    values["type"] = values.pop("notification_type")
    values.pop("appointment_id", None)
    values["data"] = values.get("data") or {}
    return NotificationRecord.model_validate(values)


class NotificationStore:
    """SQLAlchemy Core store for notification records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize store with a session factory."""
        self._session_factory = session_factory

    async def insert_many(self, records: list[NotificationRecord]) -> None:
        """Persist a batch of records in one transaction."""
        if not records:
            return

        rows = []
        for record in records:
            data = record.model_dump(mode="json")
            appointment_id = data["data"].get("appointment_id")
            rows.append(
                {
                    "id": record.id,
                    "recipient_id": record.recipient_id,
                    "recipient_type": record.recipient_type.value,
                    "appointment_id": UUID(appointment_id) if appointment_id else None,
                    "notification_type": record.type.value,
                    "title": record.title,
                    "message": record.message,
                    "priority": record.priority.value,
                    "data": data["data"],
                    "status": record.status.value,
                    "delivery_status": record.delivery_status.value,
                    "retry_count": record.retry_count,
                    "max_retries": record.max_retries,
                    "failure_reason": record.failure_reason,
                    "created_at": record.created_at,
                    "read_at": record.read_at,
                    "delivered_at": record.delivered_at,
                }
            )

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(insert(notifications), rows)

    async def mark_delivered(self, notification_id: UUID, delivered_at: datetime) -> None:
        """Record a successful delivery."""
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(notifications)
                    .where(notifications.c.id == notification_id)
                    .values(
                        delivery_status=DeliveryStatus.SENT.value,
                        delivered_at=delivered_at,
                        failure_reason=None,
                    )
                )

    async def mark_delivery_failed(self, notification_id: UUID, reason: str) -> None:
        """Record a failed delivery attempt."""
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(notifications)
                    .where(notifications.c.id == notification_id)
                    .values(
                        delivery_status=DeliveryStatus.FAILED.value,
                        failure_reason=reason,
                        retry_count=notifications.c.retry_count + 1,
                    )
                )

    async def list_retryable(self) -> list[NotificationRecord]:
        """Failed deliveries that still have retries left."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(notifications)
                .where(
                    and_(
                        notifications.c.delivery_status == DeliveryStatus.FAILED.value,
                        notifications.c.retry_count < notifications.c.max_retries,
                    )
                )
                .order_by(notifications.c.created_at.asc())
            )
            return [_to_record(row) for row in result.fetchall()]

    async def list_for_recipient(
        self,
        recipient_id: str,
        unread_only: bool = False,
    ) -> list[NotificationRecord]:
        """Notifications of a recipient, newest first."""
        conditions = [notifications.c.recipient_id == recipient_id]
        if unread_only:
            conditions.append(notifications.c.status == ReadStatus.UNREAD.value)

        async with self._session_factory() as session:
            result = await session.execute(
                select(notifications)
                .where(and_(*conditions))
                .order_by(notifications.c.created_at.desc())
            )
            return [_to_record(row) for row in result.fetchall()]

    async def list_for_appointment(self, appointment_id: UUID) -> list[NotificationRecord]:
        """Notifications produced for one appointment, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(notifications)
                .where(notifications.c.appointment_id == appointment_id)
                .order_by(notifications.c.created_at.asc())
            )
            return [_to_record(row) for row in result.fetchall()]

    async def mark_read(self, notification_id: UUID, read_at: datetime) -> NotificationRecord:
        """
        Mark a notification as read.

        Raises:
            NotFoundException: If notification not found
        """
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(notifications)
                    .where(notifications.c.id == notification_id)
                    .values(status=ReadStatus.READ.value, read_at=read_at)
                )
                if result.rowcount == 0:
                    raise NotFoundException("Notification not found")

            row = (
                await session.execute(
                    select(notifications).where(notifications.c.id == notification_id)
                )
            ).fetchone()

        return _to_record(row)
