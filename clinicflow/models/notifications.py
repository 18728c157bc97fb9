"""Notification table for tracking fan-out records and delivery status."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    Integer,
    String,
    Table,
    Text,
    Uuid,
    func,
)

from clinicflow.models.base import JSONType, UTCDateTime, metadata

notifications = Table(
    "notifications",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("recipient_id", String(100), nullable=False),
    Column("recipient_type", String(20), nullable=False),
    Column("appointment_id", Uuid, nullable=True),
    Column("notification_type", String(30), nullable=False),
    Column("title", Text, nullable=False),
    Column("message", Text, nullable=False),
    Column("priority", String(20), nullable=False, server_default="medium"),
    Column("data", JSONType, nullable=True),
    Column("status", String(20), nullable=False, server_default="unread"),
    Column("delivery_status", String(20), nullable=False, server_default="pending"),
    Column("delivered_at", UTCDateTime, nullable=True),
    Column("read_at", UTCDateTime, nullable=True),
    Column("failure_reason", Text, nullable=True),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    Column("max_retries", Integer, nullable=False, server_default="3"),
    Column("created_at", UTCDateTime, nullable=False, server_default=func.now()),
    CheckConstraint(
        "recipient_type IN ('patient', 'doctor', 'manager')",
        name="notifications_recipient_type_check",
    ),
    CheckConstraint(
        "notification_type IN ('booking', 'approval', 'decline', 'payment', "
        "'status_change', 'reminder')",
        name="notifications_type_check",
    ),
    CheckConstraint(
        "priority IN ('low', 'medium', 'high', 'urgent')",
        name="notifications_priority_check",
    ),
    CheckConstraint(
        "status IN ('unread', 'read')",
        name="notifications_status_check",
    ),
    CheckConstraint(
        "delivery_status IN ('pending', 'sent', 'failed')",
        name="notifications_delivery_status_check",
    ),
    Index("idx_notifications_recipient", "recipient_id"),
    Index("idx_notifications_recipient_status", "recipient_id", "status"),
    Index("idx_notifications_delivery_status", "delivery_status"),
    Index("idx_notifications_appointment", "appointment_id"),
)
