"""Canonical lifecycle of a single appointment.

Every operation is a member of :class:`TransitionOperation` and goes through
:meth:`AppointmentStateMachine.apply`, which works on a deep copy: a rejected
transition leaves the caller's appointment untouched, and an accepted one comes
back with its status, detail block, audit stamps and exactly one new history
entry.
"""

from collections.abc import Callable
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from clinicflow.core.exceptions import (
    AlreadyPaidException,
    InvalidTransitionException,
    RescheduleLimitExceededException,
    ValidationException,
)
from clinicflow.core.ports import Clock, utc_now
from clinicflow.schemas.appointments import (
    Actor,
    Appointment,
    AppointmentDetails,
    AppointmentPriority,
    AppointmentStatus,
    AppointmentType,
    ApprovalStatus,
    ApprovalWorkflow,
    Cancellation,
    Completion,
    HistoryAction,
    HistoryEntry,
    PaymentState,
    PaymentStatus,
    RescheduleEntry,
)


class TransitionOperation(str, Enum):
    """Closed set of lifecycle operations."""

    BOOK = "book"
    APPROVE = "approve"
    DECLINE = "decline"
    RESCHEDULE = "reschedule"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    START = "start"
    COMPLETE = "complete"
    MARK_NO_SHOW = "mark_no_show"
    RECORD_PAYMENT = "record_payment"


_S = AppointmentStatus

# Statuses each operation may start from
ALLOWED_SOURCES: dict[TransitionOperation, frozenset[AppointmentStatus]] = {
    TransitionOperation.APPROVE: frozenset({_S.PENDING_APPROVAL}),
    TransitionOperation.DECLINE: frozenset({_S.PENDING_APPROVAL}),
    TransitionOperation.RESCHEDULE: frozenset({_S.PENDING_APPROVAL}),
    TransitionOperation.CONFIRM: frozenset({_S.APPROVED}),
    TransitionOperation.CANCEL: frozenset({_S.PENDING_APPROVAL, _S.APPROVED, _S.CONFIRMED}),
    TransitionOperation.START: frozenset({_S.CONFIRMED}),
    TransitionOperation.COMPLETE: frozenset({_S.IN_PROGRESS}),
    TransitionOperation.MARK_NO_SHOW: frozenset(
        {_S.PENDING_APPROVAL, _S.APPROVED, _S.CONFIRMED, _S.IN_PROGRESS}
    ),
    TransitionOperation.RECORD_PAYMENT: frozenset(
        {_S.PENDING_APPROVAL, _S.APPROVED, _S.CONFIRMED, _S.IN_PROGRESS, _S.COMPLETED}
    ),
}

Handler = Callable[..., HistoryEntry]


def is_auto_approved(details: AppointmentDetails, requires_manager_approval: bool) -> bool:
    """Routine check-ups with routine priority skip review unless a manager must approve."""
    return (
        details.appointment_type == AppointmentType.ROUTINE_CHECKUP
        and details.priority == AppointmentPriority.ROUTINE
        and not requires_manager_approval
    )


class AppointmentStateMachine:
    """Enforces legal transitions and builds the audit trail."""

    def __init__(
        self,
        clock: Clock = utc_now,
        max_reschedules: int = 3,
        refund_window_hours: int = 24,
    ):
        self._clock = clock
        self.max_reschedules = max_reschedules
        self.refund_window = timedelta(hours=refund_window_hours)
        self._handlers: dict[TransitionOperation, Handler] = {
            TransitionOperation.APPROVE: self._approve,
            TransitionOperation.DECLINE: self._decline,
            TransitionOperation.RESCHEDULE: self._reschedule,
            TransitionOperation.CONFIRM: self._confirm,
            TransitionOperation.CANCEL: self._cancel,
            TransitionOperation.START: self._start,
            TransitionOperation.COMPLETE: self._complete,
            TransitionOperation.MARK_NO_SHOW: self._mark_no_show,
            TransitionOperation.RECORD_PAYMENT: self._record_payment,
        }

    def can_apply(self, appointment: Appointment, operation: TransitionOperation) -> bool:
        return appointment.status in ALLOWED_SOURCES.get(operation, frozenset())

    def book(
        self,
        *,
        appointment_id: UUID,
        patient_id: str,
        doctor_id: str,
        date_time: datetime,
        reason_for_visit: str,
        actor: Actor,
        duration: int = 30,
        details: AppointmentDetails | None = None,
        requires_manager_approval: bool = True,
        patient_name: str | None = None,
        doctor_name: str | None = None,
    ) -> Appointment:
        """
        Create a new appointment.

        Status is ``pending_approval`` unless the auto-approval rule applies, in
        which case the appointment starts ``approved``.
        """
        details = details or AppointmentDetails()
        now = self._clock()
        auto_approved = is_auto_approved(details, requires_manager_approval)
        status = _S.APPROVED if auto_approved else _S.PENDING_APPROVAL

        workflow = ApprovalWorkflow(
            requested_at=now,
            requires_manager_approval=requires_manager_approval,
        )
        if auto_approved:
            workflow.approval_status = ApprovalStatus.APPROVED
            workflow.auto_approved = True
            workflow.reviewed_at = now

        return Appointment(
            id=appointment_id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            patient_name=patient_name,
            doctor_name=doctor_name,
            date_time=date_time,
            duration=duration,
            reason_for_visit=reason_for_visit,
            details=details,
            status=status,
            approval_workflow=workflow,
            created_at=now,
            last_updated_by=actor.id,
            last_updated_at=now,
            history=[
                HistoryEntry(
                    action=HistoryAction.CREATED,
                    performed_by=actor.id,
                    performed_by_name=actor.name,
                    timestamp=now,
                    notes="Appointment auto-approved" if auto_approved else "Appointment scheduled",
                    data={
                        "appointment_type": details.appointment_type.value,
                        "priority": details.priority.value,
                        "duration": duration,
                        "date_time": date_time,
                        "auto_approved": auto_approved,
                        "to_status": status.value,
                    },
                )
            ],
        )

    def apply(
        self,
        appointment: Appointment,
        operation: TransitionOperation,
        actor: Actor,
        **params: Any,
    ) -> Appointment:
        """
        Run ``operation`` against a copy of ``appointment``.

        Raises:
            InvalidTransitionException: If the operation is not legal from the current status
            RescheduleLimitExceededException: If the reschedule cap is reached
            AlreadyPaidException: If recording a payment twice
        """
        if operation == TransitionOperation.RECORD_PAYMENT and appointment.payment.is_completed:
            raise AlreadyPaidException()

        handler = self._handlers.get(operation)
        if handler is None or not self.can_apply(appointment, operation):
            raise InvalidTransitionException(operation.value, appointment.status.value)

        updated = appointment.model_copy(deep=True)
        now = self._stamp(updated)
        entry = handler(updated, actor, now, **params)

        entry.data.setdefault("from_status", appointment.status.value)
        entry.data.setdefault("to_status", updated.status.value)
        updated.last_updated_by = actor.id
        updated.last_updated_at = now
        updated.history.append(entry)
        return updated

    def is_refund_eligible(self, appointment: Appointment, at: datetime) -> bool:
        """Eligible when cancelled more than the refund window before the visit."""
        return appointment.date_time - at > self.refund_window

    def _stamp(self, appointment: Appointment) -> datetime:
        """Current time, kept strictly after the latest history entry."""
        now = self._clock()
        if appointment.history and now <= appointment.history[-1].timestamp:
            now = appointment.history[-1].timestamp + timedelta(microseconds=1)
        return now

    @staticmethod
    def _entry(
        action: HistoryAction,
        actor: Actor,
        now: datetime,
        notes: str | None,
        data: dict[str, Any] | None = None,
    ) -> HistoryEntry:
        return HistoryEntry(
            action=action,
            performed_by=actor.id,
            performed_by_name=actor.name,
            timestamp=now,
            notes=notes,
            data=data or {},
        )

    def _approve(
        self, a: Appointment, actor: Actor, now: datetime, notes: str | None = None
    ) -> HistoryEntry:
        a.status = _S.APPROVED
        a.approval_workflow.approval_status = ApprovalStatus.APPROVED
        a.approval_workflow.reviewed_by = actor.id
        a.approval_workflow.reviewed_by_name = actor.name
        a.approval_workflow.reviewed_at = now
        a.approval_workflow.approval_notes = notes
        return self._entry(
            HistoryAction.APPROVED,
            actor,
            now,
            notes,
            {"approval_date": now, "approval_notes": notes},
        )

    def _decline(self, a: Appointment, actor: Actor, now: datetime, reason: str) -> HistoryEntry:
        if not reason or not reason.strip():
            raise ValidationException("A decline reason is required")

        a.status = _S.DECLINED
        a.approval_workflow.approval_status = ApprovalStatus.DECLINED
        a.approval_workflow.reviewed_by = actor.id
        a.approval_workflow.reviewed_by_name = actor.name
        a.approval_workflow.reviewed_at = now
        a.approval_workflow.decline_reason = reason
        return self._entry(
            HistoryAction.DECLINED,
            actor,
            now,
            f"Appointment declined. Reason: {reason}",
            {"decline_date": now, "decline_reason": reason},
        )

    def _reschedule(
        self,
        a: Appointment,
        actor: Actor,
        now: datetime,
        new_date_time: datetime,
        reason: str | None = None,
    ) -> HistoryEntry:
        if a.rescheduling.reschedule_count >= self.max_reschedules:
            raise RescheduleLimitExceededException(self.max_reschedules)

        previous = a.date_time
        a.date_time = new_date_time
        a.status = _S.PENDING_APPROVAL
        # Any reschedule goes back through review
        a.approval_workflow = ApprovalWorkflow(
            requested_at=now,
            requires_manager_approval=a.approval_workflow.requires_manager_approval,
        )
        a.rescheduling.reschedule_count += 1
        a.rescheduling.original_date_time = a.rescheduling.original_date_time or previous
        a.rescheduling.history.append(
            RescheduleEntry(
                from_date_time=previous,
                to_date_time=a.date_time,
                reason=reason,
                requested_by=actor.id,
                requested_by_name=actor.name,
                rescheduled_at=now,
            )
        )
        return self._entry(
            HistoryAction.RESCHEDULED,
            actor,
            now,
            f"Rescheduled from {previous.isoformat()} to {a.date_time.isoformat()}. "
            f"Reason: {reason or ''}",
            {
                "from_date_time": previous,
                "to_date_time": a.date_time,
                "reason": reason,
                "reschedule_count": a.rescheduling.reschedule_count,
            },
        )

    def _confirm(self, a: Appointment, actor: Actor, now: datetime) -> HistoryEntry:
        a.status = _S.CONFIRMED
        return self._entry(HistoryAction.CONFIRMED, actor, now, "Appointment confirmed")

    def _cancel(
        self, a: Appointment, actor: Actor, now: datetime, reason: str | None = None
    ) -> HistoryEntry:
        refund_eligible = self.is_refund_eligible(a, now)
        refund_amount = (a.payment.amount or 0.0) if refund_eligible and a.payment.is_completed else 0.0

        a.status = _S.CANCELLED
        a.cancellation = Cancellation(
            cancelled_by=actor.id,
            cancelled_by_name=actor.name,
            cancelled_at=now,
            reason=reason,
            refund_eligible=refund_eligible,
            refund_amount=refund_amount,
        )
        return self._entry(
            HistoryAction.CANCELLED,
            actor,
            now,
            f"Appointment cancelled. Reason: {reason or ''}",
            {
                "reason": reason,
                "refund_eligible": refund_eligible,
                "refund_amount": refund_amount,
            },
        )

    def _start(self, a: Appointment, actor: Actor, now: datetime) -> HistoryEntry:
        a.status = _S.IN_PROGRESS
        return self._entry(HistoryAction.STARTED, actor, now, "Appointment started", {"start_time": now})

    def _complete(
        self,
        a: Appointment,
        actor: Actor,
        now: datetime,
        duration: int | None = None,
        diagnosis: str | None = None,
        treatment_plan: str | None = None,
        follow_up_required: bool = False,
        follow_up_date: date | None = None,
        prescription_issued: bool = False,
        prescription_id: str | None = None,
    ) -> HistoryEntry:
        a.status = _S.COMPLETED
        a.completion = Completion(
            completed_by=actor.id,
            completed_by_name=actor.name,
            completed_at=now,
            duration=duration or a.duration,
            diagnosis=diagnosis,
            treatment_plan=treatment_plan,
            follow_up_required=follow_up_required,
            follow_up_date=follow_up_date,
            prescription_issued=prescription_issued,
            prescription_id=prescription_id,
        )
        return self._entry(
            HistoryAction.COMPLETED,
            actor,
            now,
            "Appointment completed",
            a.completion.model_dump(
                include={"duration", "diagnosis", "treatment_plan", "follow_up_required"}
            ),
        )

    def _mark_no_show(
        self, a: Appointment, actor: Actor, now: datetime, reason: str | None = None
    ) -> HistoryEntry:
        a.status = _S.NO_SHOW
        return self._entry(
            HistoryAction.NO_SHOW,
            actor,
            now,
            f"Marked as no-show. Reason: {reason or ''}",
            {"reason": reason, "no_show_time": now},
        )

    def _record_payment(
        self,
        a: Appointment,
        actor: Actor,
        now: datetime,
        method: str,
        amount: float,
        transaction_ref: str,
    ) -> HistoryEntry:
        if not transaction_ref or amount is None or amount <= 0:
            raise ValidationException("A completed payment needs a transaction reference and amount")

        a.payment = PaymentState(
            status=PaymentStatus.COMPLETED,
            method=method,
            amount=amount,
            transaction_ref=transaction_ref,
            paid_at=now,
        )
        return self._entry(
            HistoryAction.PAYMENT_COMPLETED,
            actor,
            now,
            f"Payment of {amount:.2f} received via {method}",
            {"method": method, "amount": amount, "transaction_ref": transaction_ref},
        )
