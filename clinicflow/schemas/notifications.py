"""Notification schemas."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class RecipientType(str, Enum):
    """Stakeholder kinds."""

    PATIENT = "patient"
    DOCTOR = "doctor"
    MANAGER = "manager"


class NotificationType(str, Enum):
    """Events that fan out notifications."""

    BOOKING = "booking"
    APPROVAL = "approval"
    DECLINE = "decline"
    PAYMENT = "payment"
    STATUS_CHANGE = "status_change"
    REMINDER = "reminder"


class NotificationPriority(str, Enum):
    """Notification priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ReadStatus(str, Enum):
    """Whether the recipient has seen the notification."""

    UNREAD = "unread"
    READ = "read"


class DeliveryStatus(str, Enum):
    """Transport state."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationRecord(BaseModel):
    """Schema for notification record."""

    id: UUID
    recipient_id: str
    recipient_type: RecipientType
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    status: ReadStatus = ReadStatus.UNREAD
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    data: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    failure_reason: str | None = None
    created_at: datetime
    read_at: datetime | None = None
    delivered_at: datetime | None = None

    model_config = {"from_attributes": True}
