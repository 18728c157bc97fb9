"""Appointment schemas for the lifecycle engine and its request/response payloads."""

from datetime import UTC, date, datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 120
DEFAULT_DURATION_MINUTES = 30


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    NO_SHOW = "no_show"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.DECLINED,
        AppointmentStatus.NO_SHOW,
    }
)

# Statuses that hold a doctor's time slot
OCCUPYING_STATUSES = frozenset(
    {
        AppointmentStatus.PENDING_APPROVAL,
        AppointmentStatus.APPROVED,
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.IN_PROGRESS,
    }
)


class AppointmentType(str, Enum):
    """Appointment type enumeration."""

    CONSULTATION = "consultation"
    FOLLOW_UP = "follow_up"
    EMERGENCY = "emergency"
    ROUTINE_CHECKUP = "routine_checkup"
    SPECIALIST_VISIT = "specialist_visit"
    PROCEDURE = "procedure"


class AppointmentPriority(str, Enum):
    """Appointment priority enumeration."""

    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class ApprovalStatus(str, Enum):
    """Approval workflow status."""

    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class PaymentStatus(str, Enum):
    """Payment sub-state of an appointment."""

    UNPAID = "unpaid"
    COMPLETED = "completed"


class HistoryAction(str, Enum):
    """Audit trail actions."""

    CREATED = "created"
    APPROVED = "approved"
    DECLINED = "declined"
    RESCHEDULED = "rescheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    STARTED = "started"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    PAYMENT_COMPLETED = "payment_completed"


class Actor(BaseModel):
    """Who performs an operation."""

    id: str = Field(..., min_length=1, max_length=100)
    name: str | None = Field(None, max_length=200)


class AppointmentDetails(BaseModel):
    """Clinical classification of the visit."""

    appointment_type: AppointmentType = AppointmentType.CONSULTATION
    priority: AppointmentPriority = AppointmentPriority.ROUTINE
    notes: str | None = Field(None, max_length=1000)


class ApprovalWorkflow(BaseModel):
    """Review state of the appointment."""

    requested_at: datetime | None = None
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    reviewed_by: str | None = None
    reviewed_by_name: str | None = None
    reviewed_at: datetime | None = None
    approval_notes: str | None = None
    decline_reason: str | None = None
    auto_approved: bool = False
    requires_manager_approval: bool = True


class PaymentState(BaseModel):
    """Payment details; independent of status."""

    status: PaymentStatus = PaymentStatus.UNPAID
    method: str | None = None
    amount: float | None = None
    transaction_ref: str | None = None
    paid_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED


class RescheduleEntry(BaseModel):
    """One prior move of the appointment."""

    from_date_time: datetime
    to_date_time: datetime
    reason: str | None = None
    requested_by: str
    requested_by_name: str | None = None
    rescheduled_at: datetime


class Rescheduling(BaseModel):
    """Reschedule bookkeeping."""

    original_date_time: datetime | None = None
    reschedule_count: int = Field(default=0, ge=0)
    history: list[RescheduleEntry] = Field(default_factory=list)


class Cancellation(BaseModel):
    """Populated when the appointment is cancelled."""

    cancelled_by: str
    cancelled_by_name: str | None = None
    cancelled_at: datetime
    reason: str | None = None
    refund_eligible: bool
    refund_amount: float = 0.0


class Completion(BaseModel):
    """Populated when the appointment is completed."""

    completed_by: str
    completed_by_name: str | None = None
    completed_at: datetime
    duration: int
    diagnosis: str | None = None
    treatment_plan: str | None = None
    follow_up_required: bool = False
    follow_up_date: date | None = None
    prescription_issued: bool = False
    prescription_id: str | None = None


class HistoryEntry(BaseModel):
    """Audit trail entry; never changed once appended."""

    action: HistoryAction
    performed_by: str
    performed_by_name: str | None = None
    timestamp: datetime
    notes: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class Appointment(BaseModel):
    """Appointment aggregate root."""

    id: UUID
    patient_id: str
    doctor_id: str
    patient_name: str | None = None
    doctor_name: str | None = None
    date_time: datetime
    duration: int = Field(
        default=DEFAULT_DURATION_MINUTES,
        ge=MIN_DURATION_MINUTES,
        le=MAX_DURATION_MINUTES,
    )
    reason_for_visit: str
    details: AppointmentDetails = Field(default_factory=AppointmentDetails)
    status: AppointmentStatus = AppointmentStatus.PENDING_APPROVAL
    approval_workflow: ApprovalWorkflow = Field(default_factory=ApprovalWorkflow)
    payment: PaymentState = Field(default_factory=PaymentState)
    rescheduling: Rescheduling = Field(default_factory=Rescheduling)
    cancellation: Cancellation | None = None
    completion: Completion | None = None
    history: list[HistoryEntry] = Field(default_factory=list)
    version: int = 1
    created_at: datetime
    last_updated_by: str | None = None
    last_updated_at: datetime | None = None

    @field_validator("date_time")
    @classmethod
    def normalize_date_time(cls, v: datetime) -> datetime:
        """Store the scheduled instant in UTC."""
        return _as_utc(v)


class BookAppointmentRequest(BaseModel):
    """Schema for booking an appointment against a held slot."""

    hold_token: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1, max_length=100)
    patient_id: str = Field(..., min_length=1, max_length=100)
    date_time: datetime
    duration: int = Field(
        default=DEFAULT_DURATION_MINUTES,
        ge=MIN_DURATION_MINUTES,
        le=MAX_DURATION_MINUTES,
    )
    reason_for_visit: str = Field(default="General consultation", min_length=1, max_length=500)
    appointment_type: AppointmentType = AppointmentType.CONSULTATION
    priority: AppointmentPriority = AppointmentPriority.ROUTINE
    notes: str | None = Field(None, max_length=1000)
    requires_manager_approval: bool = True
    performed_by: str | None = None
    performed_by_name: str | None = None

    @field_validator("date_time")
    @classmethod
    def normalize_date_time(cls, v: datetime) -> datetime:
        """Store the scheduled instant in UTC."""
        return _as_utc(v)


class ReserveSlotRequest(BaseModel):
    """Schema for requesting a slot hold."""

    doctor_id: str = Field(..., min_length=1, max_length=100)
    patient_id: str = Field(..., min_length=1, max_length=100)
    date_time: datetime
    duration: int = Field(
        default=DEFAULT_DURATION_MINUTES,
        ge=MIN_DURATION_MINUTES,
        le=MAX_DURATION_MINUTES,
    )

    @field_validator("date_time")
    @classmethod
    def normalize_date_time(cls, v: datetime) -> datetime:
        """Store the scheduled instant in UTC."""
        return _as_utc(v)


class TransitionRequest(BaseModel):
    """Schema for transitions that only need an actor (confirm, start)."""

    performed_by: str = Field(..., min_length=1, max_length=100)
    performed_by_name: str | None = Field(None, max_length=200)

    @property
    def actor(self) -> Actor:
        return Actor(id=self.performed_by, name=self.performed_by_name)


class ApprovalRequest(TransitionRequest):
    """Schema for approving a pending appointment."""

    notes: str | None = Field(None, max_length=1000)


class DeclineRequest(TransitionRequest):
    """Schema for declining a pending appointment."""

    reason: str = Field(..., min_length=1, max_length=1000)


class RescheduleRequest(TransitionRequest):
    """Schema for moving an appointment to a new time."""

    new_date_time: datetime
    reason: str | None = Field(None, max_length=1000)

    @field_validator("new_date_time")
    @classmethod
    def normalize_date_time(cls, v: datetime) -> datetime:
        """Store the scheduled instant in UTC."""
        return _as_utc(v)


class CancelRequest(TransitionRequest):
    """Schema for cancelling an appointment."""

    reason: str | None = Field(None, max_length=1000)


class CompleteRequest(TransitionRequest):
    """Schema for completing an in-progress appointment."""

    duration: int | None = Field(None, ge=1, le=600)
    diagnosis: str | None = Field(None, max_length=2000)
    treatment_plan: str | None = Field(None, max_length=2000)
    follow_up_required: bool = False
    follow_up_date: date | None = None
    prescription_issued: bool = False
    prescription_id: str | None = None


class NoShowRequest(TransitionRequest):
    """Schema for marking an appointment as no-show."""

    reason: str | None = Field(None, max_length=1000)


class ReminderRequest(BaseModel):
    """Schema for sending an appointment reminder."""

    reminder_type: Literal["24h", "2h", "30min"] = "24h"


class AppointmentFilters(BaseModel):
    """Schema for appointment statistics filtering."""

    doctor_id: str | None = None
    patient_id: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None


class AppointmentStatistics(BaseModel):
    """Aggregated appointment counts."""

    total_appointments: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    average_reschedule_count: float = 0.0
