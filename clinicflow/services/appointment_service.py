"""Appointment lifecycle orchestration."""

from collections.abc import Awaitable, Callable
from datetime import date, timedelta
from typing import Any, TypeVar
from uuid import UUID

import redis
import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicflow.config import Settings
from clinicflow.core.exceptions import (
    AppException,
    ConflictException,
    ErrorKind,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from clinicflow.core.ports import (
    Clock,
    Directory,
    IdGenerator,
    NotificationTransport,
    PaymentGateway,
    new_id,
    utc_now,
)
from clinicflow.schemas.appointments import (
    Actor,
    Appointment,
    AppointmentDetails,
    AppointmentFilters,
    AppointmentStatus,
    ApprovalRequest,
    BookAppointmentRequest,
    CancelRequest,
    CompleteRequest,
    DeclineRequest,
    NoShowRequest,
    ReminderRequest,
    RescheduleRequest,
    ReserveSlotRequest,
    TransitionRequest,
)
from clinicflow.schemas.common import OperationResult
from clinicflow.schemas.notifications import NotificationType
from clinicflow.schemas.payments import PaymentRequest, PaymentResult
from clinicflow.services.appointment_store import AppointmentStore
from clinicflow.services.availability_service import SlotAvailabilityIndex
from clinicflow.services.directory_service import SqlDirectory
from clinicflow.services.notification_service import LoggingTransport, NotificationDispatcher
from clinicflow.services.notification_store import NotificationStore
from clinicflow.services.payment_service import PaymentCoordinator, SimulatedPaymentGateway
from clinicflow.services.reservation_service import ReservationManager
from clinicflow.services.state_machine import AppointmentStateMachine, TransitionOperation

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Notification event per transition; anything else is a status change
EVENT_BY_OPERATION = {
    TransitionOperation.APPROVE: NotificationType.APPROVAL,
    TransitionOperation.DECLINE: NotificationType.DECLINE,
    TransitionOperation.RECORD_PAYMENT: NotificationType.PAYMENT,
}

REMINDABLE_STATUSES = frozenset({AppointmentStatus.APPROVED, AppointmentStatus.CONFIRMED})
UPCOMING_STATUSES = REMINDABLE_STATUSES


def _coerce(model: type[ModelT], value: ModelT | dict[str, Any]) -> ModelT:
    if isinstance(value, model):
        return value
    return model.model_validate(value)


def _parse_id(value: UUID | str, label: str = "appointment") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationException(f"Invalid {label} ID: {value}")


def _parse_day(value: date | str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationException(f"Invalid date: {value}")


def _validation_message(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'value'}: {err['msg']}"
        for err in error.errors()
    )


class AppointmentLifecycleService:
    """
    Entry point for every appointment operation.

    Each public coroutine returns an :class:`OperationResult` and never raises:
    domain failures come back with their ``error_kind``, unexpected ones are
    logged and reported as ``internal``.
    """

    def __init__(
        self,
        store: AppointmentStore,
        dispatcher: NotificationDispatcher,
        directory: Directory,
        reservations: ReservationManager,
        payments: PaymentCoordinator,
        availability: SlotAvailabilityIndex,
        state_machine: AppointmentStateMachine,
        clock: Clock = utc_now,
        id_generator: IdGenerator = new_id,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._directory = directory
        self._reservations = reservations
        self._payments = payments
        self._availability = availability
        self._state_machine = state_machine
        self._clock = clock
        self._id_generator = id_generator

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    # Slots and booking

    async def get_available_slots(self, doctor_id: str, day: date | str) -> OperationResult:
        async def handler() -> OperationResult:
            slots = await self._availability.get_available_slots(doctor_id, _parse_day(day))
            return OperationResult.ok("Available slots retrieved", slots)

        return await self._guarded("get_available_slots", handler)

    async def reserve_slot(self, request: ReserveSlotRequest | dict[str, Any]) -> OperationResult:
        """Place a short-lived hold on a free slot for a patient."""

        async def handler() -> OperationResult:
            data = _coerce(ReserveSlotRequest, request)
            if not await self._directory.doctor_exists(data.doctor_id):
                raise NotFoundException("Doctor not found")
            if not await self._directory.patient_exists(data.patient_id):
                raise NotFoundException("Patient not found")

            await self._availability.ensure_slot_free(data.doctor_id, data.date_time, data.duration)
            hold = self._reservations.reserve_slot(data.doctor_id, data.date_time, data.duration)
            try:
                # Someone may have booked between the check and the hold
                await self._availability.ensure_slot_free(
                    data.doctor_id, data.date_time, data.duration
                )
            except Exception:
                self._reservations.release_hold(
                    hold.token, data.doctor_id, data.date_time, data.duration
                )
                raise

            logger.info(
                "slot_reserved",
                doctor_id=data.doctor_id,
                patient_id=data.patient_id,
                date_time=data.date_time.isoformat(),
                expires_at=hold.expires_at.isoformat(),
            )
            return OperationResult.ok("Slot reserved", hold)

        return await self._guarded("reserve_slot", handler)

    async def book_appointment(
        self, request: BookAppointmentRequest | dict[str, Any]
    ) -> OperationResult:
        """
        Book an appointment on a slot previously held with :meth:`reserve_slot`.

        The hold is released afterwards whatever the outcome.
        """

        async def handler() -> OperationResult:
            data = _coerce(BookAppointmentRequest, request)
            try:
                self._reservations.require_hold(
                    data.doctor_id, data.date_time, data.hold_token, data.duration
                )

                doctor_name = await self._directory.get_doctor_name(data.doctor_id)
                if doctor_name is None:
                    raise NotFoundException("Doctor not found")
                patient_name = await self._directory.get_patient_name(data.patient_id)
                if patient_name is None:
                    raise NotFoundException("Patient not found")

                await self._availability.ensure_slot_free(
                    data.doctor_id, data.date_time, data.duration
                )

                appointment = self._state_machine.book(
                    appointment_id=self._id_generator(),
                    patient_id=data.patient_id,
                    doctor_id=data.doctor_id,
                    patient_name=patient_name,
                    doctor_name=doctor_name,
                    date_time=data.date_time,
                    duration=data.duration,
                    reason_for_visit=data.reason_for_visit,
                    details=AppointmentDetails(
                        appointment_type=data.appointment_type,
                        priority=data.priority,
                        notes=data.notes,
                    ),
                    requires_manager_approval=data.requires_manager_approval,
                    actor=Actor(
                        id=data.performed_by or data.patient_id,
                        name=data.performed_by_name or patient_name,
                    ),
                )
                await self._store.insert(appointment)
            finally:
                self._reservations.release_hold(
                    data.hold_token, data.doctor_id, data.date_time, data.duration
                )

            logger.info(
                "appointment_booked",
                appointment_id=str(appointment.id),
                doctor_id=appointment.doctor_id,
                patient_id=appointment.patient_id,
                status=appointment.status.value,
                auto_approved=appointment.approval_workflow.auto_approved,
            )
            await self._notify(
                appointment,
                NotificationType.BOOKING,
                {"new_status": appointment.status.value, "reason": appointment.reason_for_visit},
            )

            message = (
                "Appointment booked and auto-approved"
                if appointment.approval_workflow.auto_approved
                else "Appointment booked successfully and is pending approval"
            )
            return OperationResult.ok(message, appointment)

        return await self._guarded("book_appointment", handler)

    # Transitions

    async def approve_appointment(
        self, appointment_id: UUID | str, request: ApprovalRequest | dict[str, Any]
    ) -> OperationResult:
        async def handler() -> OperationResult:
            data = _coerce(ApprovalRequest, request)
            appointment = await self._transition(
                appointment_id,
                TransitionOperation.APPROVE,
                data.actor,
                extra={"notes": data.notes},
                notes=data.notes,
            )
            return OperationResult.ok("Appointment approved successfully", appointment)

        return await self._guarded("approve_appointment", handler)

    async def decline_appointment(
        self, appointment_id: UUID | str, request: DeclineRequest | dict[str, Any]
    ) -> OperationResult:
        async def handler() -> OperationResult:
            data = _coerce(DeclineRequest, request)
            appointment = await self._transition(
                appointment_id,
                TransitionOperation.DECLINE,
                data.actor,
                extra={"reason": data.reason},
                reason=data.reason,
            )
            return OperationResult.ok("Appointment declined successfully", appointment)

        return await self._guarded("decline_appointment", handler)

    async def reschedule_appointment(
        self, appointment_id: UUID | str, request: RescheduleRequest | dict[str, Any]
    ) -> OperationResult:
        """
        Move a pending appointment to a new time.

        The new slot is held for the duration of the write so a concurrent
        booking cannot take it in between.
        """

        async def handler() -> OperationResult:
            data = _coerce(RescheduleRequest, request)
            before = await self._store.get(_parse_id(appointment_id))
            after = self._state_machine.apply(
                before,
                TransitionOperation.RESCHEDULE,
                data.actor,
                new_date_time=data.new_date_time,
                reason=data.reason,
            )

            hold = self._reservations.reserve_slot(
                before.doctor_id, data.new_date_time, before.duration
            )
            try:
                await self._availability.ensure_slot_free(
                    before.doctor_id, data.new_date_time, before.duration, exclude_id=before.id
                )
                saved = await self._store.save_transition(before, after)
            finally:
                self._reservations.release_hold(
                    hold.token, before.doctor_id, data.new_date_time, before.duration
                )

            logger.info(
                "appointment_rescheduled",
                appointment_id=str(saved.id),
                from_date_time=before.date_time.isoformat(),
                to_date_time=saved.date_time.isoformat(),
                reschedule_count=saved.rescheduling.reschedule_count,
            )
            await self._notify(
                saved,
                NotificationType.STATUS_CHANGE,
                {
                    "old_status": before.status.value,
                    "new_status": saved.status.value,
                    "rescheduled": True,
                    "reason": data.reason,
                },
            )
            return OperationResult.ok("Appointment rescheduled successfully", saved)

        return await self._guarded("reschedule_appointment", handler)

    async def confirm_appointment(
        self, appointment_id: UUID | str, request: TransitionRequest | dict[str, Any]
    ) -> OperationResult:
        async def handler() -> OperationResult:
            data = _coerce(TransitionRequest, request)
            appointment = await self._transition(
                appointment_id, TransitionOperation.CONFIRM, data.actor
            )
            return OperationResult.ok("Appointment confirmed successfully", appointment)

        return await self._guarded("confirm_appointment", handler)

    async def cancel_appointment(
        self, appointment_id: UUID | str, request: CancelRequest | dict[str, Any]
    ) -> OperationResult:
        async def handler() -> OperationResult:
            data = _coerce(CancelRequest, request)
            appointment = await self._transition(
                appointment_id,
                TransitionOperation.CANCEL,
                data.actor,
                extra={"reason": data.reason},
                reason=data.reason,
            )
            return OperationResult.ok("Appointment cancelled successfully", appointment)

        return await self._guarded("cancel_appointment", handler)

    async def start_appointment(
        self, appointment_id: UUID | str, request: TransitionRequest | dict[str, Any]
    ) -> OperationResult:
        async def handler() -> OperationResult:
            data = _coerce(TransitionRequest, request)
            appointment = await self._transition(
                appointment_id, TransitionOperation.START, data.actor
            )
            return OperationResult.ok("Appointment started", appointment)

        return await self._guarded("start_appointment", handler)

    async def complete_appointment(
        self, appointment_id: UUID | str, request: CompleteRequest | dict[str, Any]
    ) -> OperationResult:
        async def handler() -> OperationResult:
            data = _coerce(CompleteRequest, request)
            appointment = await self._transition(
                appointment_id,
                TransitionOperation.COMPLETE,
                data.actor,
                **data.model_dump(exclude={"performed_by", "performed_by_name"}),
            )
            return OperationResult.ok("Appointment completed successfully", appointment)

        return await self._guarded("complete_appointment", handler)

    async def mark_no_show(
        self, appointment_id: UUID | str, request: NoShowRequest | dict[str, Any]
    ) -> OperationResult:
        async def handler() -> OperationResult:
            data = _coerce(NoShowRequest, request)
            appointment = await self._transition(
                appointment_id,
                TransitionOperation.MARK_NO_SHOW,
                data.actor,
                extra={"reason": data.reason},
                reason=data.reason,
            )
            return OperationResult.ok("Appointment marked as no-show", appointment)

        return await self._guarded("mark_no_show", handler)

    async def process_payment(
        self, appointment_id: UUID | str, request: PaymentRequest | dict[str, Any]
    ) -> OperationResult:
        """
        Charge an appointment through the payment gateway, at most once.

        Payments of one appointment are serialized by a short Redis claim taken
        before the appointment is read, so a concurrent caller is turned away
        without reaching the gateway and a later one sees it paid.
        """

        async def handler() -> OperationResult:
            data = _coerce(PaymentRequest, request)
            actor = Actor(id=data.performed_by, name=data.performed_by_name)
            parsed_id = _parse_id(appointment_id)

            claim = self._reservations.hold_payment(str(parsed_id))
            try:
                before = await self._store.get(parsed_id)
                after = await self._payments.process(before, data.method, data.amount, actor)
                saved = await self._record_captured_payment(before, after, actor)
            finally:
                self._reservations.release_payment(str(parsed_id), claim)

            await self._notify(saved, NotificationType.PAYMENT)
            return OperationResult.ok(
                "Payment processed successfully",
                PaymentResult(
                    appointment_id=saved.id,
                    method=saved.payment.method,
                    amount=saved.payment.amount,
                    transaction_ref=saved.payment.transaction_ref,
                    paid_at=saved.payment.paid_at,
                ),
            )

        return await self._guarded("process_payment", handler)

    # Queries

    async def get_appointment(self, appointment_id: UUID | str) -> OperationResult:
        async def handler() -> OperationResult:
            appointment = await self._store.get(_parse_id(appointment_id))
            return OperationResult.ok("Appointment retrieved", appointment)

        return await self._guarded("get_appointment", handler)

    async def get_appointment_history(self, appointment_id: UUID | str) -> OperationResult:
        """Audit trail of an appointment, newest entry first."""

        async def handler() -> OperationResult:
            appointment = await self._store.get(_parse_id(appointment_id))
            return OperationResult.ok(
                "Appointment history retrieved", list(reversed(appointment.history))
            )

        return await self._guarded("get_appointment_history", handler)

    async def list_pending_approval(self) -> OperationResult:
        async def handler() -> OperationResult:
            pending = await self._store.list_by_status(AppointmentStatus.PENDING_APPROVAL)
            return OperationResult.ok(f"{len(pending)} appointment(s) pending approval", pending)

        return await self._guarded("list_pending_approval", handler)

    async def list_patient_appointments(self, patient_id: str) -> OperationResult:
        async def handler() -> OperationResult:
            if not await self._directory.patient_exists(patient_id):
                raise NotFoundException("Patient not found")
            appointments = await self._store.list_for_patient(patient_id)
            return OperationResult.ok("Patient appointments retrieved", appointments)

        return await self._guarded("list_patient_appointments", handler)

    async def list_doctor_appointments(
        self, doctor_id: str, day: date | str | None = None
    ) -> OperationResult:
        async def handler() -> OperationResult:
            if not await self._directory.doctor_exists(doctor_id):
                raise NotFoundException("Doctor not found")
            if day is None:
                appointments = await self._store.list_for_doctor(doctor_id)
            else:
                start, end = self._availability.day_bounds(_parse_day(day))
                appointments = await self._store.list_for_doctor_between(doctor_id, start, end)
            return OperationResult.ok("Doctor appointments retrieved", appointments)

        return await self._guarded("list_doctor_appointments", handler)

    async def list_upcoming(self, days: int = 7) -> OperationResult:
        """Approved or confirmed appointments in the next ``days`` days."""

        async def handler() -> OperationResult:
            if days < 1:
                raise ValidationException("days must be at least 1")
            now = self._clock()
            appointments = await self._store.list_between(
                now, now + timedelta(days=days), UPCOMING_STATUSES
            )
            return OperationResult.ok("Upcoming appointments retrieved", appointments)

        return await self._guarded("list_upcoming", handler)

    async def get_statistics(
        self, filters: AppointmentFilters | dict[str, Any] | None = None
    ) -> OperationResult:
        async def handler() -> OperationResult:
            stats = await self._store.statistics(_coerce(AppointmentFilters, filters or {}))
            return OperationResult.ok("Appointment statistics retrieved", stats)

        return await self._guarded("get_statistics", handler)

    # Notifications

    async def send_reminder(
        self,
        appointment_id: UUID | str,
        request: ReminderRequest | dict[str, Any] | None = None,
    ) -> OperationResult:
        async def handler() -> OperationResult:
            data = _coerce(ReminderRequest, request or {})
            appointment = await self._store.get(_parse_id(appointment_id))
            if appointment.status not in REMINDABLE_STATUSES:
                raise InvalidTransitionException("send a reminder for", appointment.status.value)

            records = await self._dispatcher.notify(
                appointment, NotificationType.REMINDER, {"reminder_type": data.reminder_type}
            )
            logger.info(
                "appointment_reminder_sent",
                appointment_id=str(appointment.id),
                reminder_type=data.reminder_type,
            )
            return OperationResult.ok(f"{data.reminder_type} reminder sent", records)

        return await self._guarded("send_reminder", handler)

    async def list_notifications(
        self, recipient_id: str, unread_only: bool = False
    ) -> OperationResult:
        async def handler() -> OperationResult:
            records = await self._dispatcher.list_for_recipient(recipient_id, unread_only)
            return OperationResult.ok("Notifications retrieved", records)

        return await self._guarded("list_notifications", handler)

    async def list_appointment_notifications(self, appointment_id: UUID | str) -> OperationResult:
        """Notifications sent about one appointment, oldest first."""

        async def handler() -> OperationResult:
            appointment = await self._store.get(_parse_id(appointment_id))
            records = await self._dispatcher.list_for_appointment(appointment.id)
            return OperationResult.ok("Appointment notifications retrieved", records)

        return await self._guarded("list_appointment_notifications", handler)

    async def mark_notification_read(self, notification_id: UUID | str) -> OperationResult:
        async def handler() -> OperationResult:
            record = await self._dispatcher.mark_read(_parse_id(notification_id, "notification"))
            return OperationResult.ok("Notification marked as read", record)

        return await self._guarded("mark_notification_read", handler)

    async def retry_notifications(self) -> OperationResult:
        async def handler() -> OperationResult:
            count = await self._dispatcher.retry_failed()
            return OperationResult.ok(f"{count} notification(s) scheduled for retry", count)

        return await self._guarded("retry_notifications", handler)

    # Internals

    async def _transition(
        self,
        appointment_id: UUID | str,
        operation: TransitionOperation,
        actor: Actor,
        extra: dict[str, Any] | None = None,
        **params: Any,
    ) -> Appointment:
        before = await self._store.get(_parse_id(appointment_id))
        after = self._state_machine.apply(before, operation, actor, **params)
        saved = await self._store.save_transition(before, after)

        logger.info(
            "appointment_transitioned",
            appointment_id=str(saved.id),
            operation=operation.value,
            from_status=before.status.value,
            to_status=saved.status.value,
            performed_by=actor.id,
        )

        event = EVENT_BY_OPERATION.get(operation, NotificationType.STATUS_CHANGE)
        await self._notify(
            saved,
            event,
            {"old_status": before.status.value, "new_status": saved.status.value, **(extra or {})},
        )
        return saved

    async def _record_captured_payment(
        self, before: Appointment, after: Appointment, actor: Actor
    ) -> Appointment:
        try:
            return await self._store.save_transition(before, after)
        except ConflictException:
            pass

        # The gateway already took the money; replay it onto the latest state once
        payment = after.payment
        try:
            current = await self._store.get(before.id)
            replayed = self._state_machine.apply(
                current,
                TransitionOperation.RECORD_PAYMENT,
                actor,
                method=payment.method,
                amount=payment.amount,
                transaction_ref=payment.transaction_ref,
            )
            return await self._store.save_transition(current, replayed)
        except AppException:
            logger.error(
                "payment_not_recorded",
                appointment_id=str(before.id),
                transaction_ref=payment.transaction_ref,
            )
            raise

    async def _notify(
        self,
        appointment: Appointment,
        event: NotificationType,
        extra: dict[str, Any] | None = None,
    ) -> None:
        # The state change is already committed
        try:
            await self._dispatcher.notify(appointment, event, extra)
        except Exception as e:
            logger.error(
                "notification_dispatch_failed",
                appointment_id=str(appointment.id),
                event=event.value,
                error=str(e),
            )

    async def _guarded(
        self, operation: str, handler: Callable[[], Awaitable[OperationResult]]
    ) -> OperationResult:
        try:
            return await handler()
        except AppException as e:
            logger.info(
                "operation_rejected",
                operation=operation,
                error_kind=e.kind.value,
                message=e.message,
            )
            return OperationResult.fail(e.kind, e.message)
        except ValidationError as e:
            message = _validation_message(e)
            logger.info("operation_invalid", operation=operation, message=message)
            return OperationResult.fail(ErrorKind.VALIDATION_ERROR, message)
        except Exception as e:
            logger.exception("operation_failed", operation=operation, error=str(e))
            return OperationResult.fail(ErrorKind.INTERNAL, "An unexpected error occurred")


def build_lifecycle_service(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
    settings: Settings,
    transport: NotificationTransport | None = None,
    gateway: PaymentGateway | None = None,
    directory: Directory | None = None,
    clock: Clock = utc_now,
    id_generator: IdGenerator = new_id,
) -> AppointmentLifecycleService:
    """Wire the lifecycle service from configuration."""
    store = AppointmentStore(session_factory)
    directory = directory or SqlDirectory(session_factory)
    state_machine = AppointmentStateMachine(
        clock=clock,
        max_reschedules=settings.max_reschedules,
        refund_window_hours=settings.refund_window_hours,
    )
    dispatcher = NotificationDispatcher(
        NotificationStore(session_factory),
        transport or LoggingTransport(),
        clock=clock,
        id_generator=id_generator,
        max_retries=settings.notification_max_retries,
    )

    return AppointmentLifecycleService(
        store=store,
        dispatcher=dispatcher,
        directory=directory,
        reservations=ReservationManager(
            redis_client,
            hold_ttl_seconds=settings.reservation_hold_ttl_seconds,
            slot_minutes=settings.slot_duration_minutes,
            clock=clock,
            timezone=settings.clinic_timezone,
        ),
        payments=PaymentCoordinator(gateway or SimulatedPaymentGateway(), state_machine),
        availability=SlotAvailabilityIndex(
            directory,
            store,
            slot_minutes=settings.slot_duration_minutes,
            timezone=settings.clinic_timezone,
        ),
        state_machine=state_machine,
        clock=clock,
        id_generator=id_generator,
    )
