"""Tests for payment capture."""

import asyncio
import random
import re
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from conftest import MANAGER, MONDAY_10

from clinicflow.core.exceptions import (
    AlreadyPaidException,
    ErrorKind,
    InvalidTransitionException,
    PaymentFailedException,
)
from clinicflow.schemas.appointments import Actor, AppointmentStatus
from clinicflow.schemas.payments import PaymentOutcome
from clinicflow.services.payment_service import (
    PaymentCoordinator,
    SimulatedPaymentGateway,
)
from clinicflow.services.state_machine import AppointmentStateMachine

PAYER = {"performed_by": "P1", "performed_by_name": "Alex Morgan"}


class FixedRandom(random.Random):
    """Random source whose ``random()`` always returns the same draw."""

    draw = 0.5

    def random(self) -> float:
        return self.draw


def _fixed(draw: float) -> FixedRandom:
    rng = FixedRandom(42)
    rng.draw = draw
    return rng


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "method,draw,success",
    [
        ("credit_card", 0.94, True),
        ("credit_card", 0.96, False),
        ("paypal", 0.97, True),
        ("bank_transfer", 0.91, False),
        ("cash", 0.96, True),
        ("cash", 0.975, False),
    ],
)
async def test_simulated_gateway_success_rates(method, draw, success):
    gateway = SimulatedPaymentGateway(rng=_fixed(draw))

    outcome = await gateway.attempt_payment(method, 50.0, {})

    assert outcome.success is success
    if success:
        assert re.match(r"^TXN[0-9A-F]{12}$", outcome.transaction_ref)
    else:
        assert outcome.transaction_ref is None
        assert outcome.reason == "Payment declined by gateway"


@pytest.fixture
def machine(clock) -> AppointmentStateMachine:
    return AppointmentStateMachine(clock=clock)


@pytest.fixture
def appointment(machine):
    return machine.book(
        appointment_id=uuid4(),
        patient_id="P1",
        doctor_id="D1",
        date_time=MONDAY_10,
        reason_for_visit="Checkup",
        actor=Actor(id="P1"),
    )


@pytest.mark.asyncio
async def test_coordinator_records_transaction(machine, appointment, gateway):
    coordinator = PaymentCoordinator(gateway, machine)

    paid = await coordinator.process(appointment, "credit_card", 75.0, Actor(id="P1"))

    assert paid.payment.transaction_ref == "TXN0123456789AB"
    assert paid.payment.amount == 75.0
    assert not appointment.payment.is_completed
    gateway.attempt_payment.assert_awaited_once()


@pytest.mark.asyncio
async def test_coordinator_skips_gateway_when_already_paid(machine, appointment, gateway):
    coordinator = PaymentCoordinator(gateway, machine)
    paid = await coordinator.process(appointment, "credit_card", 75.0, Actor(id="P1"))
    gateway.attempt_payment.reset_mock()

    with pytest.raises(AlreadyPaidException):
        await coordinator.process(paid, "credit_card", 75.0, Actor(id="P1"))

    gateway.attempt_payment.assert_not_awaited()


@pytest.mark.asyncio
async def test_coordinator_rejects_closed_appointment(machine, appointment, gateway):
    closed = appointment.model_copy(update={"status": AppointmentStatus.CANCELLED})
    coordinator = PaymentCoordinator(gateway, machine)

    with pytest.raises(InvalidTransitionException):
        await coordinator.process(closed, "credit_card", 75.0, Actor(id="P1"))

    gateway.attempt_payment.assert_not_awaited()


@pytest.mark.asyncio
async def test_coordinator_raises_on_decline(machine, appointment):
    declining = MagicMock()
    declining.attempt_payment = AsyncMock(
        return_value=PaymentOutcome(success=False, reason="Insufficient funds")
    )
    coordinator = PaymentCoordinator(declining, machine)

    with pytest.raises(PaymentFailedException) as exc_info:
        await coordinator.process(appointment, "debit_card", 75.0, Actor(id="P1"))

    assert exc_info.value.reason == "Insufficient funds"


@pytest.mark.asyncio
async def test_process_payment_persists_and_notifies(service, book):
    appointment = await book()

    result = await service.process_payment(
        appointment.id, {"method": "credit_card", "amount": 80.0, **PAYER}
    )

    assert result.success
    assert result.payload.transaction_ref == "TXN0123456789AB"

    stored = (await service.get_appointment(appointment.id)).payload
    assert stored.payment.is_completed
    assert stored.status == AppointmentStatus.PENDING_APPROVAL
    assert stored.history[-1].action.value == "payment_completed"


@pytest.mark.asyncio
async def test_second_payment_is_rejected(service, book, gateway):
    appointment = await book()
    payment = {"method": "credit_card", "amount": 80.0, **PAYER}
    await service.process_payment(appointment.id, payment)

    result = await service.process_payment(appointment.id, payment)

    assert result.error_kind == ErrorKind.ALREADY_PAID
    assert gateway.attempt_payment.await_count == 1


@pytest.mark.asyncio
async def test_failed_payment_leaves_appointment_unchanged(service, book, gateway):
    appointment = await book()
    gateway.attempt_payment.return_value = PaymentOutcome(
        success=False, reason="Payment declined by gateway"
    )

    result = await service.process_payment(
        appointment.id, {"method": "bank_transfer", "amount": 80.0, **PAYER}
    )

    assert result.error_kind == ErrorKind.PAYMENT_FAILED
    stored = (await service.get_appointment(appointment.id)).payload
    assert not stored.payment.is_completed
    assert len(stored.history) == 1


@pytest.mark.asyncio
async def test_payment_on_cancelled_appointment(service, book, gateway):
    appointment = await book()
    await service.cancel_appointment(appointment.id, PAYER)

    result = await service.process_payment(
        appointment.id, {"method": "credit_card", "amount": 80.0, **PAYER}
    )

    assert result.error_kind == ErrorKind.INVALID_TRANSITION
    gateway.attempt_payment.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5])
async def test_payment_amount_must_be_positive(service, book, amount):
    appointment = await book()

    result = await service.process_payment(
        appointment.id, {"method": "credit_card", "amount": amount, **PAYER}
    )

    assert result.error_kind == ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_concurrent_payments_charge_once(service, book, gateway):
    appointment = await book()
    payment = {"method": "credit_card", "amount": 80.0, **PAYER}

    results = await asyncio.gather(
        service.process_payment(appointment.id, payment),
        service.process_payment(appointment.id, payment),
    )

    assert sum(result.success for result in results) == 1
    rejected = next(result for result in results if not result.success)
    assert rejected.error_kind in (ErrorKind.CONFLICT, ErrorKind.ALREADY_PAID)
    assert gateway.attempt_payment.await_count == 1

    retried = await service.process_payment(appointment.id, payment)
    assert retried.error_kind == ErrorKind.ALREADY_PAID
    assert gateway.attempt_payment.await_count == 1


@pytest.mark.asyncio
async def test_captured_payment_survives_concurrent_transition(service, book, gateway):
    appointment = await book()

    async def approve_while_charging(method, amount, details):
        await service.approve_appointment(appointment.id, MANAGER)
        return PaymentOutcome(success=True, transaction_ref="TXN0123456789AB")

    gateway.attempt_payment.side_effect = approve_while_charging

    result = await service.process_payment(
        appointment.id, {"method": "credit_card", "amount": 80.0, **PAYER}
    )

    assert result.success, result.message
    stored = (await service.get_appointment(appointment.id)).payload
    assert stored.status == AppointmentStatus.APPROVED
    assert stored.payment.transaction_ref == "TXN0123456789AB"
    assert [entry.action.value for entry in stored.history][-2:] == [
        "approved",
        "payment_completed",
    ]
