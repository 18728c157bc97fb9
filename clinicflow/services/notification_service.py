"""Stakeholder notifications for appointment events."""

import asyncio
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from clinicflow.core.ports import Clock, IdGenerator, NotificationTransport, new_id, utc_now
from clinicflow.schemas.appointments import Appointment
from clinicflow.schemas.notifications import (
    NotificationPriority,
    NotificationRecord,
    NotificationType,
    RecipientType,
)
from clinicflow.services.notification_store import NotificationStore

logger = structlog.get_logger(__name__)

STATUS_MESSAGES = {
    "pending_approval": "is pending approval",
    "approved": "has been approved",
    "confirmed": "has been confirmed",
    "in_progress": "is now in progress",
    "cancelled": "has been cancelled",
    "completed": "has been completed",
    "declined": "has been declined",
    "no_show": "was marked as a no-show",
}

REMINDER_TITLES = {
    "24h": "Appointment Reminder - Tomorrow",
    "2h": "Appointment Reminder - In 2 Hours",
    "30min": "Appointment Reminder - In 30 Minutes",
}

REMINDER_PHRASES = {
    "24h": "tomorrow",
    "2h": "in 2 hours",
    "30min": "in 30 minutes",
}


def _day(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def _time(value: datetime) -> str:
    return value.strftime("%H:%M UTC")


def _templates(
    appointment: Appointment,
    event: NotificationType,
    extra: dict[str, Any],
) -> tuple[tuple[str, str, NotificationPriority], tuple[str, str, NotificationPriority]]:
    """(title, message, priority) for the patient and for the doctor."""
    doctor = appointment.doctor_name or appointment.doctor_id
    patient = appointment.patient_name or appointment.patient_id
    when = appointment.date_time
    high, medium = NotificationPriority.HIGH, NotificationPriority.MEDIUM

    if event == NotificationType.BOOKING:
        return (
            (
                "Appointment Booked",
                f"Your appointment with Dr. {doctor} has been booked for {_day(when)}.",
                high,
            ),
            (
                "New Appointment Request",
                f"New appointment request from {patient} for {_day(when)}.",
                medium,
            ),
        )

    if event in (NotificationType.APPROVAL, NotificationType.DECLINE):
        action = "approved" if event == NotificationType.APPROVAL else "declined"
        title = f"Appointment {action.capitalize()}"
        return (
            (title, f"Your appointment with Dr. {doctor} has been {action}.", medium),
            (title, f"Your appointment with {patient} has been {action}.", medium),
        )

    if event == NotificationType.PAYMENT:
        amount = appointment.payment.amount or 0.0
        return (
            (
                "Payment Confirmed",
                f"Payment of ${amount:.2f} for your appointment with Dr. {doctor} "
                "has been confirmed.",
                high,
            ),
            (
                "Payment Received",
                f"Payment of ${amount:.2f} has been received for your appointment with {patient}.",
                medium,
            ),
        )

    if event == NotificationType.REMINDER:
        reminder_type = extra.get("reminder_type")
        title = REMINDER_TITLES.get(reminder_type, "Appointment Reminder")
        phrase = REMINDER_PHRASES.get(reminder_type)
        if phrase:
            patient_message = (
                f"You have an appointment with Dr. {doctor} {phrase} at {_time(when)}."
            )
            doctor_message = f"You have an appointment with {patient} {phrase}."
        else:
            patient_message = (
                f"You have an upcoming appointment with Dr. {doctor} on {_day(when)}."
            )
            doctor_message = f"You have an upcoming appointment with {patient} on {_day(when)}."
        return (title, patient_message, high), (title, doctor_message, medium)

    if extra.get("rescheduled"):
        change = f"has been rescheduled to {_day(when)} at {_time(when)} and is pending approval"
    else:
        change = STATUS_MESSAGES.get(extra.get("new_status"), "status has been updated")
    title = "Appointment Status Update"
    return (
        (title, f"Your appointment with Dr. {doctor} {change}.", medium),
        (title, f"Your appointment with {patient} {change}.", medium),
    )


def build_notifications(
    appointment: Appointment,
    event: NotificationType,
    extra: dict[str, Any] | None = None,
    *,
    clock: Clock = utc_now,
    id_generator: IdGenerator = new_id,
    max_retries: int = 3,
) -> list[NotificationRecord]:
    """
    Build one notification per stakeholder for an appointment event.

    Pure apart from the injected clock and id generator.

    Args:
        appointment: Appointment after the event
        event: Event type
        extra: Event details (``old_status``/``new_status``, ``reminder_type``, ...)

    Returns:
        Patient record followed by doctor record
    """
    extra = dict(extra or {})
    patient_template, doctor_template = _templates(appointment, event, extra)
    now = clock()

    data = {
        "appointment_id": str(appointment.id),
        "appointment_date": appointment.date_time.isoformat(),
        "status": appointment.status.value,
    }
    for key in ("old_status", "new_status", "reminder_type", "reason", "notes"):
        if extra.get(key) is not None:
            data[key] = extra[key]
    if event == NotificationType.PAYMENT:
        data.update(
            amount=appointment.payment.amount,
            transaction_ref=appointment.payment.transaction_ref,
            payment_method=appointment.payment.method,
        )

    records = []
    for (title, message, priority), recipient_id, recipient_type, counterpart in (
        (
            patient_template,
            appointment.patient_id,
            RecipientType.PATIENT,
            {"doctor_name": appointment.doctor_name},
        ),
        (
            doctor_template,
            appointment.doctor_id,
            RecipientType.DOCTOR,
            {"patient_name": appointment.patient_name},
        ),
    ):
        records.append(
            NotificationRecord(
                id=id_generator(),
                recipient_id=recipient_id,
                recipient_type=recipient_type,
                type=event,
                title=title,
                message=message,
                priority=priority,
                data={**data, **counterpart},
                max_retries=max_retries,
                created_at=now,
            )
        )
    return records


class LoggingTransport:
    """Transport that only writes the notification to the log."""

    async def deliver(self, record: NotificationRecord) -> None:
        logger.info(
            "notification_delivered",
            notification_id=str(record.id),
            recipient_id=record.recipient_id,
            recipient_type=record.recipient_type.value,
            notification_type=record.type.value,
            title=record.title,
        )


class NotificationDispatcher:
    """
    Persists notification records and delivers them in the background.

    Nothing here raises into the caller: a transition that already committed
    stays committed whatever happens to its notifications. Records that could
    not be persisted are parked in memory, and deliveries that failed are
    flagged in the store; both are picked up again by :meth:`retry_failed`.
    """

    def __init__(
        self,
        store: NotificationStore,
        transport: NotificationTransport,
        clock: Clock = utc_now,
        id_generator: IdGenerator = new_id,
        max_retries: int = 3,
    ):
        self._store = store
        self._transport = transport
        self._clock = clock
        self._id_generator = id_generator
        self.max_retries = max_retries
        self._parked: list[NotificationRecord] = []
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: set[UUID] = set()

    @property
    def parked(self) -> list[NotificationRecord]:
        """Records waiting to be persisted again."""
        return list(self._parked)

    def build(
        self,
        appointment: Appointment,
        event: NotificationType,
        extra: dict[str, Any] | None = None,
    ) -> list[NotificationRecord]:
        return build_notifications(
            appointment,
            event,
            extra,
            clock=self._clock,
            id_generator=self._id_generator,
            max_retries=self.max_retries,
        )

    async def notify(
        self,
        appointment: Appointment,
        event: NotificationType,
        extra: dict[str, Any] | None = None,
    ) -> list[NotificationRecord]:
        """Build and dispatch the records of one event."""
        return await self.dispatch(self.build(appointment, event, extra))

    async def dispatch(self, records: list[NotificationRecord]) -> list[NotificationRecord]:
        """
        Persist records and schedule their delivery.

        Returns:
            The persisted records; empty if persistence failed and they were parked
        """
        if not records:
            return []

        try:
            await self._store.insert_many(records)
        except Exception as e:
            logger.error(
                "notification_persist_failed",
                error=str(e),
                count=len(records),
                appointment_id=records[0].data.get("appointment_id"),
            )
            self._parked.extend(records)
            return []

        for record in records:
            self._schedule(record)
        return records

    async def retry_failed(self) -> int:
        """
        Re-persist parked records and re-deliver failed ones below their retry cap.

        Returns:
            Number of records retried
        """
        parked, self._parked = self._parked, []
        if parked:
            try:
                await self.dispatch(parked)
            except asyncio.CancelledError:
                self._parked.extend(parked)
                raise

        try:
            retryable = await self._store.list_retryable()
        except Exception as e:
            logger.error("notification_retry_lookup_failed", error=str(e))
            return len(parked)

        # Records whose redelivery is still running are left alone
        scheduled = sum(1 for record in retryable if self._schedule(record))

        logger.info("notification_retry_scheduled", parked=len(parked), failed=scheduled)
        return len(parked) + scheduled

    async def retry_periodically(self, interval_seconds: float) -> None:
        """Run :meth:`retry_failed` every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.retry_failed()
            except Exception as e:
                logger.error("notification_retry_failed", error=str(e))

    async def shutdown(self) -> int:
        """
        Retry once more and wait for deliveries to finish.

        Returns:
            Number of records still parked, which are lost with the process
        """
        await self.retry_failed()
        await self.wait_for_deliveries()

        if self._parked:
            logger.warning(
                "notifications_dropped_on_shutdown",
                count=len(self._parked),
                notification_ids=[str(record.id) for record in self._parked],
            )
        return len(self._parked)

    async def wait_for_deliveries(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def list_for_recipient(
        self, recipient_id: str, unread_only: bool = False
    ) -> list[NotificationRecord]:
        return await self._store.list_for_recipient(recipient_id, unread_only=unread_only)

    async def list_for_appointment(self, appointment_id: UUID) -> list[NotificationRecord]:
        return await self._store.list_for_appointment(appointment_id)

    async def mark_read(self, notification_id: UUID) -> NotificationRecord:
        return await self._store.mark_read(notification_id, self._clock())

    def _schedule(self, record: NotificationRecord) -> bool:
        if record.id in self._in_flight:
            return False

        self._in_flight.add(record.id)
        task = asyncio.create_task(self._deliver(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _deliver(self, record: NotificationRecord) -> bool:
        try:
            return await self._attempt(record)
        finally:
            self._in_flight.discard(record.id)

    async def _attempt(self, record: NotificationRecord) -> bool:
        try:
            await self._transport.deliver(record)
        except Exception as e:
            logger.warning(
                "notification_delivery_failed",
                notification_id=str(record.id),
                recipient_id=record.recipient_id,
                retry_count=record.retry_count,
                error=str(e),
            )
            try:
                await self._store.mark_delivery_failed(record.id, str(e))
            except Exception as store_error:
                logger.error(
                    "notification_status_update_failed",
                    notification_id=str(record.id),
                    error=str(store_error),
                )
            return False

        try:
            await self._store.mark_delivered(record.id, self._clock())
        except Exception as e:
            logger.error(
                "notification_status_update_failed",
                notification_id=str(record.id),
                error=str(e),
            )
        return True
