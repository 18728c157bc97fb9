"""Payment schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class PaymentRequest(BaseModel):
    """Schema for paying for an appointment."""

    method: str = Field(..., min_length=1, max_length=50)
    amount: float = Field(..., gt=0)
    performed_by: str = Field(..., min_length=1, max_length=100)
    performed_by_name: str | None = Field(None, max_length=200)


class PaymentOutcome(BaseModel):
    """What the payment-outcome source decided."""

    success: bool
    transaction_ref: str | None = None
    reason: str | None = None


class PaymentResult(BaseModel):
    """Payment confirmation returned to the caller."""

    appointment_id: UUID
    method: str
    amount: float
    transaction_ref: str
    paid_at: datetime
