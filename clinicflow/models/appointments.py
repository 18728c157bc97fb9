"""Appointments and appointment history tables using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)

from clinicflow.models.base import JSONType, UTCDateTime, metadata

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True),
    # Ownership / references (directory ids are opaque)
    Column("patient_id", String(100), nullable=False),
    Column("doctor_id", String(100), nullable=False),
    # Snapshot fields (denormalized for notifications and history)
    Column("patient_name", Text, nullable=True),
    Column("doctor_name", Text, nullable=True),
    # Appointment details
    Column("date_time", UTCDateTime, nullable=False),
    Column("duration", Integer, nullable=False, server_default="30"),
    Column("reason_for_visit", Text, nullable=False),
    Column("details", JSONType, nullable=False),
    # Status management
    Column("status", String(30), nullable=False, server_default="pending_approval"),
    Column("approval_workflow", JSONType, nullable=False),
    Column("payment", JSONType, nullable=False),
    Column("rescheduling", JSONType, nullable=False),
    Column("cancellation", JSONType, nullable=True),
    Column("completion", JSONType, nullable=True),
    # Optimistic concurrency token
    Column("version", Integer, nullable=False, server_default="1"),
    # Audit fields
    Column("created_at", UTCDateTime, nullable=False, server_default=func.now()),
    Column("last_updated_by", String(100), nullable=True),
    Column("last_updated_at", UTCDateTime, nullable=True),
    # Constraints
    CheckConstraint(
        "status IN ('pending_approval', 'approved', 'confirmed', 'in_progress', "
        "'completed', 'cancelled', 'declined', 'no_show')",
        name="appointments_status_check",
    ),
    CheckConstraint("duration BETWEEN 15 AND 120", name="appointments_duration_check"),
    Index("idx_appointments_doctor_date_time", "doctor_id", "date_time"),
    Index("idx_appointments_patient_id", "patient_id"),
    Index("idx_appointments_status", "status"),
)

# Append-only audit trail
appointment_history = Table(
    "appointment_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="RESTRICT"),
        nullable=False,
    ),
    Column("sequence", Integer, nullable=False),
    Column("action", String(30), nullable=False),
    Column("performed_by", String(100), nullable=False),
    Column("performed_by_name", Text, nullable=True),
    Column("timestamp", UTCDateTime, nullable=False),
    Column("notes", Text, nullable=True),
    Column("data", JSONType, nullable=True),
    UniqueConstraint("appointment_id", "sequence", name="unique_appointment_history_sequence"),
    Index("idx_appointment_history_appointment", "appointment_id"),
)
