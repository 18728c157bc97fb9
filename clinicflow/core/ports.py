"""Interfaces of the collaborators the lifecycle engine consumes."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID, uuid4

from clinicflow.schemas.availability import WorkingHours
from clinicflow.schemas.notifications import NotificationRecord
from clinicflow.schemas.payments import PaymentOutcome

Clock = Callable[[], datetime]
IdGenerator = Callable[[], UUID]


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(UTC)


def new_id() -> UUID:
    """Default id generator."""
    return uuid4()


class Directory(Protocol):
    """Doctor and patient directory lookup."""

    async def doctor_exists(self, doctor_id: str) -> bool:
        """Return True if the doctor is known."""
        ...

    async def patient_exists(self, patient_id: str) -> bool:
        """Return True if the patient is known."""
        ...

    async def get_doctor_working_hours(
        self, doctor_id: str, weekday: str
    ) -> list[WorkingHours] | None:
        """Return the working-hour windows for a lowercase weekday name, or None."""
        ...

    async def get_doctor_name(self, doctor_id: str) -> str | None:
        """Return the doctor's display name."""
        ...

    async def get_patient_name(self, patient_id: str) -> str | None:
        """Return the patient's display name."""
        ...


class PaymentGateway(Protocol):
    """Pluggable source of payment outcomes."""

    async def attempt_payment(
        self, method: str, amount: float, context: dict[str, Any]
    ) -> PaymentOutcome:
        """Try to take a payment and report the outcome."""
        ...


class NotificationTransport(Protocol):
    """Delivers a persisted notification to its recipient."""

    async def deliver(self, record: NotificationRecord) -> None:
        """Deliver the notification. Raises on failure."""
        ...
