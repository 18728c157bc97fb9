"""Tests for the appointment state machine."""

from datetime import timedelta
from uuid import uuid4

import pytest
from conftest import MONDAY_10, FakeClock
from pydantic import ValidationError

from clinicflow.core.exceptions import (
    AlreadyPaidException,
    InvalidTransitionException,
    RescheduleLimitExceededException,
)
from clinicflow.schemas.appointments import (
    Actor,
    Appointment,
    AppointmentDetails,
    AppointmentPriority,
    AppointmentStatus,
    AppointmentType,
    ApprovalStatus,
    HistoryAction,
)
from clinicflow.services.state_machine import (
    ALLOWED_SOURCES,
    AppointmentStateMachine,
    TransitionOperation,
)

PATIENT = Actor(id="P1", name="Alex Morgan")
MANAGER = Actor(id="M1", name="Morgan Manager")

PARAMS = {
    TransitionOperation.DECLINE: {"reason": "Doctor unavailable"},
    TransitionOperation.RESCHEDULE: {"new_date_time": MONDAY_10 + timedelta(hours=2)},
    TransitionOperation.RECORD_PAYMENT: {
        "method": "credit_card",
        "amount": 80.0,
        "transaction_ref": "TXN0123456789AB",
    },
}

OPERATIONS = [op for op in TransitionOperation if op != TransitionOperation.BOOK]


@pytest.fixture
def machine(clock: FakeClock) -> AppointmentStateMachine:
    return AppointmentStateMachine(clock=clock)


def _book(machine: AppointmentStateMachine, **overrides) -> Appointment:
    values = {
        "appointment_id": uuid4(),
        "patient_id": "P1",
        "doctor_id": "D1",
        "date_time": MONDAY_10,
        "reason_for_visit": "Persistent cough",
        "actor": PATIENT,
    }
    values.update(overrides)
    return machine.book(**values)


def _in_status(machine: AppointmentStateMachine, status: AppointmentStatus) -> Appointment:
    return _book(machine).model_copy(update={"status": status})


def test_book_starts_pending_approval(machine):
    appointment = _book(machine)

    assert appointment.status == AppointmentStatus.PENDING_APPROVAL
    assert appointment.approval_workflow.approval_status == ApprovalStatus.PENDING
    assert not appointment.approval_workflow.auto_approved
    assert [entry.action for entry in appointment.history] == [HistoryAction.CREATED]
    assert appointment.last_updated_by == "P1"


def test_book_auto_approves_routine_checkup(machine):
    appointment = _book(
        machine,
        details=AppointmentDetails(
            appointment_type=AppointmentType.ROUTINE_CHECKUP,
            priority=AppointmentPriority.ROUTINE,
        ),
        requires_manager_approval=False,
    )

    assert appointment.status == AppointmentStatus.APPROVED
    assert appointment.approval_workflow.approval_status == ApprovalStatus.APPROVED
    assert appointment.approval_workflow.auto_approved
    assert appointment.history[0].data["auto_approved"] is True


@pytest.mark.parametrize(
    "appointment_type,priority,requires_manager_approval",
    [
        (AppointmentType.ROUTINE_CHECKUP, AppointmentPriority.ROUTINE, True),
        (AppointmentType.ROUTINE_CHECKUP, AppointmentPriority.URGENT, False),
        (AppointmentType.CONSULTATION, AppointmentPriority.ROUTINE, False),
    ],
)
def test_book_without_auto_approval(machine, appointment_type, priority, requires_manager_approval):
    appointment = _book(
        machine,
        details=AppointmentDetails(appointment_type=appointment_type, priority=priority),
        requires_manager_approval=requires_manager_approval,
    )

    assert appointment.status == AppointmentStatus.PENDING_APPROVAL


@pytest.mark.parametrize("duration", [10, 121])
def test_book_rejects_duration_out_of_range(machine, duration):
    with pytest.raises(ValidationError):
        _book(machine, duration=duration)


@pytest.mark.parametrize("status", list(AppointmentStatus))
@pytest.mark.parametrize("operation", OPERATIONS)
def test_illegal_transitions_leave_appointment_unchanged(machine, status, operation):
    if status in ALLOWED_SOURCES[operation]:
        pytest.skip("legal transition")

    appointment = _in_status(machine, status)
    snapshot = appointment.model_dump()

    with pytest.raises(InvalidTransitionException) as exc_info:
        machine.apply(appointment, operation, MANAGER, **PARAMS.get(operation, {}))

    assert exc_info.value.operation == operation.value
    assert appointment.model_dump() == snapshot


@pytest.mark.parametrize(
    "status,operation",
    [(status, op) for op in OPERATIONS for status in sorted(ALLOWED_SOURCES[op])],
)
def test_legal_transitions_append_exactly_one_entry(machine, clock, status, operation):
    appointment = _in_status(machine, status)
    clock.advance(minutes=5)

    updated = machine.apply(appointment, operation, MANAGER, **PARAMS.get(operation, {}))

    assert len(updated.history) == len(appointment.history) + 1
    assert updated.history[-1].performed_by == "M1"
    assert updated.last_updated_by == "M1"
    assert updated.last_updated_at == clock.now
    assert updated.history[-1].data["from_status"] == status.value
    assert len(appointment.history) == 1


@pytest.mark.parametrize("status", [s for s in AppointmentStatus if s.is_terminal])
def test_terminal_statuses_only_accept_late_payment(machine, status):
    appointment = _in_status(machine, status)

    legal = [op for op in OPERATIONS if machine.can_apply(appointment, op)]

    if status == AppointmentStatus.COMPLETED:
        assert legal == [TransitionOperation.RECORD_PAYMENT]
    else:
        assert legal == []


def test_book_cannot_be_applied_to_existing_appointment(machine):
    appointment = _book(machine)

    with pytest.raises(InvalidTransitionException):
        machine.apply(appointment, TransitionOperation.BOOK, PATIENT)


def test_happy_path_scenario(machine, clock):
    appointment = _book(machine)
    for operation in (
        TransitionOperation.APPROVE,
        TransitionOperation.CONFIRM,
        TransitionOperation.START,
    ):
        clock.advance(minutes=1)
        appointment = machine.apply(appointment, operation, MANAGER)

    appointment = machine.apply(appointment, TransitionOperation.COMPLETE, MANAGER, duration=30)

    assert appointment.status == AppointmentStatus.COMPLETED
    assert appointment.completion.duration == 30
    assert [entry.action for entry in appointment.history] == [
        HistoryAction.CREATED,
        HistoryAction.APPROVED,
        HistoryAction.CONFIRMED,
        HistoryAction.STARTED,
        HistoryAction.COMPLETED,
    ]

    with pytest.raises(InvalidTransitionException):
        machine.apply(appointment, TransitionOperation.CANCEL, PATIENT)


def test_history_timestamps_strictly_increase_with_frozen_clock(machine):
    appointment = _book(machine)
    for operation in (
        TransitionOperation.APPROVE,
        TransitionOperation.CONFIRM,
        TransitionOperation.START,
        TransitionOperation.COMPLETE,
    ):
        appointment = machine.apply(appointment, operation, MANAGER)

    timestamps = [entry.timestamp for entry in appointment.history]
    assert all(earlier < later for earlier, later in zip(timestamps, timestamps[1:]))


def test_approve_records_reviewer(machine):
    approved = machine.apply(
        _book(machine), TransitionOperation.APPROVE, MANAGER, notes="Looks fine"
    )

    workflow = approved.approval_workflow
    assert workflow.approval_status == ApprovalStatus.APPROVED
    assert workflow.reviewed_by == "M1"
    assert workflow.approval_notes == "Looks fine"


def test_decline_records_reason(machine):
    declined = machine.apply(
        _book(machine), TransitionOperation.DECLINE, MANAGER, reason="Doctor on leave"
    )

    assert declined.status == AppointmentStatus.DECLINED
    assert declined.approval_workflow.decline_reason == "Doctor on leave"


def test_reschedule_limit(machine, clock):
    appointment = _book(machine)
    for hours in (1, 2, 3):
        clock.advance(minutes=1)
        appointment = machine.apply(
            appointment,
            TransitionOperation.RESCHEDULE,
            PATIENT,
            new_date_time=MONDAY_10 + timedelta(hours=hours),
        )
        assert appointment.status == AppointmentStatus.PENDING_APPROVAL

    assert appointment.rescheduling.reschedule_count == 3
    assert appointment.rescheduling.original_date_time == MONDAY_10
    assert len(appointment.rescheduling.history) == 3

    with pytest.raises(RescheduleLimitExceededException):
        machine.apply(
            appointment,
            TransitionOperation.RESCHEDULE,
            PATIENT,
            new_date_time=MONDAY_10 + timedelta(hours=4),
        )


def test_reschedule_resets_approval_review(machine):
    appointment = _book(machine)
    appointment.approval_workflow.reviewed_by = "M1"

    moved = machine.apply(
        appointment,
        TransitionOperation.RESCHEDULE,
        PATIENT,
        new_date_time=MONDAY_10 + timedelta(days=1),
        reason="Travel",
    )

    assert moved.date_time == MONDAY_10 + timedelta(days=1)
    assert moved.approval_workflow.reviewed_by is None
    assert moved.approval_workflow.approval_status == ApprovalStatus.PENDING
    assert moved.rescheduling.history[0].reason == "Travel"


@pytest.mark.parametrize("hours_before,eligible", [(25, True), (10, False)])
def test_cancel_refund_eligibility(machine, clock, hours_before, eligible):
    appointment = _book(machine)
    clock.set(MONDAY_10 - timedelta(hours=hours_before))

    cancelled = machine.apply(appointment, TransitionOperation.CANCEL, PATIENT, reason="Sick")

    assert cancelled.status == AppointmentStatus.CANCELLED
    assert cancelled.cancellation.refund_eligible is eligible
    assert cancelled.cancellation.refund_amount == 0.0


def test_cancel_refunds_paid_amount_when_eligible(machine, clock):
    appointment = machine.apply(
        _book(machine),
        TransitionOperation.RECORD_PAYMENT,
        PATIENT,
        **PARAMS[TransitionOperation.RECORD_PAYMENT],
    )
    clock.set(MONDAY_10 - timedelta(days=2))

    cancelled = machine.apply(appointment, TransitionOperation.CANCEL, PATIENT)

    assert cancelled.cancellation.refund_amount == 80.0


def test_record_payment_only_once(machine):
    paid = machine.apply(
        _book(machine),
        TransitionOperation.RECORD_PAYMENT,
        PATIENT,
        **PARAMS[TransitionOperation.RECORD_PAYMENT],
    )

    assert paid.payment.is_completed
    assert paid.status == AppointmentStatus.PENDING_APPROVAL

    with pytest.raises(AlreadyPaidException):
        machine.apply(
            paid,
            TransitionOperation.RECORD_PAYMENT,
            PATIENT,
            **PARAMS[TransitionOperation.RECORD_PAYMENT],
        )


def test_complete_defaults_to_scheduled_duration(machine):
    appointment = _in_status(machine, AppointmentStatus.IN_PROGRESS)

    completed = machine.apply(appointment, TransitionOperation.COMPLETE, MANAGER)

    assert completed.completion.duration == appointment.duration


def test_mark_no_show_from_in_progress(machine):
    appointment = _in_status(machine, AppointmentStatus.IN_PROGRESS)

    no_show = machine.apply(appointment, TransitionOperation.MARK_NO_SHOW, MANAGER, reason="Left")

    assert no_show.status == AppointmentStatus.NO_SHOW
    assert no_show.history[-1].action == HistoryAction.NO_SHOW
