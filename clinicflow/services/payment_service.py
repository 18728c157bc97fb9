"""Payment capture for appointments."""

import random
from typing import Any

import structlog

from clinicflow.core.exceptions import (
    AlreadyPaidException,
    InvalidTransitionException,
    PaymentFailedException,
)
from clinicflow.core.ports import PaymentGateway
from clinicflow.schemas.appointments import Actor, Appointment
from clinicflow.schemas.payments import PaymentOutcome
from clinicflow.services.state_machine import AppointmentStateMachine, TransitionOperation

logger = structlog.get_logger(__name__)

SUCCESS_RATES = {
    "credit_card": 0.95,
    "debit_card": 0.95,
    "paypal": 0.98,
    "wallet": 0.98,
    "bank_transfer": 0.90,
}
DEFAULT_SUCCESS_RATE = 0.97


class SimulatedPaymentGateway:
    """
    Stand-in gateway with a per-method success rate.

    Pass a seeded ``random.Random`` to make outcomes reproducible.
    """

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    async def attempt_payment(
        self, method: str, amount: float, context: dict[str, Any]
    ) -> PaymentOutcome:
        rate = SUCCESS_RATES.get(method, DEFAULT_SUCCESS_RATE)
        if self._rng.random() < rate:
            reference = "TXN" + "".join(self._rng.choice("0123456789ABCDEF") for _ in range(12))
            return PaymentOutcome(success=True, transaction_ref=reference)
        return PaymentOutcome(success=False, reason="Payment declined by gateway")


class PaymentCoordinator:
    """Attaches a successful gateway payment to an appointment, at most once."""

    def __init__(self, gateway: PaymentGateway, state_machine: AppointmentStateMachine):
        self._gateway = gateway
        self._state_machine = state_machine

    async def process(
        self,
        appointment: Appointment,
        method: str,
        amount: float,
        actor: Actor,
    ) -> Appointment:
        """
        Charge ``amount`` and record it on a copy of the appointment.

        The gateway is never called for an already paid or closed appointment.

        Raises:
            AlreadyPaidException: If the appointment is already paid
            InvalidTransitionException: If the appointment can no longer take payment
            PaymentFailedException: If the gateway declines
        """
        if appointment.payment.is_completed:
            raise AlreadyPaidException()
        if not self._state_machine.can_apply(appointment, TransitionOperation.RECORD_PAYMENT):
            raise InvalidTransitionException(
                TransitionOperation.RECORD_PAYMENT.value, appointment.status.value
            )

        outcome = await self._gateway.attempt_payment(
            method,
            amount,
            {
                "appointment_id": str(appointment.id),
                "patient_id": appointment.patient_id,
                "doctor_id": appointment.doctor_id,
            },
        )

        if not outcome.success or not outcome.transaction_ref:
            logger.warning(
                "payment_failed",
                appointment_id=str(appointment.id),
                method=method,
                amount=amount,
                reason=outcome.reason,
            )
            raise PaymentFailedException(outcome.reason or "Payment was not completed")

        logger.info(
            "payment_captured",
            appointment_id=str(appointment.id),
            method=method,
            amount=amount,
            transaction_ref=outcome.transaction_ref,
        )
        return self._state_machine.apply(
            appointment,
            TransitionOperation.RECORD_PAYMENT,
            actor,
            method=method,
            amount=amount,
            transaction_ref=outcome.transaction_ref,
        )
