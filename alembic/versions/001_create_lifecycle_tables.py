"""Create directory, appointment, history and notification tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table(
        "doctors",
        sa.Column("id", sa.String(100), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("specialization", sa.String(200), nullable=True),
        sa.Column("consultation_fee", sa.Numeric(10, 2), nullable=True),
        sa.Column("working_hours", JSON_TYPE, nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_doctors_specialization", "doctors", ["specialization"])

    op.create_table(
        "patients",
        sa.Column("id", sa.String(100), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "appointments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("patient_id", sa.String(100), nullable=False),
        sa.Column("doctor_id", sa.String(100), nullable=False),
        sa.Column("patient_name", sa.Text(), nullable=True),
        sa.Column("doctor_name", sa.Text(), nullable=True),
        sa.Column("date_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration", sa.Integer(), server_default="30", nullable=False),
        sa.Column("reason_for_visit", sa.Text(), nullable=False),
        sa.Column("details", JSON_TYPE, nullable=False),
        sa.Column("status", sa.String(30), server_default="pending_approval", nullable=False),
        sa.Column("approval_workflow", JSON_TYPE, nullable=False),
        sa.Column("payment", JSON_TYPE, nullable=False),
        sa.Column("rescheduling", JSON_TYPE, nullable=False),
        sa.Column("cancellation", JSON_TYPE, nullable=True),
        sa.Column("completion", JSON_TYPE, nullable=True),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("last_updated_by", sa.String(100), nullable=True),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending_approval', 'approved', 'confirmed', 'in_progress', "
            "'completed', 'cancelled', 'declined', 'no_show')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint("duration BETWEEN 15 AND 120", name="appointments_duration_check"),
    )
    op.create_index(
        "idx_appointments_doctor_date_time", "appointments", ["doctor_id", "date_time"]
    )
    op.create_index("idx_appointments_patient_id", "appointments", ["patient_id"])
    op.create_index("idx_appointments_status", "appointments", ["status"])

    op.create_table(
        "appointment_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("performed_by", sa.String(100), nullable=False),
        sa.Column("performed_by_name", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("data", JSON_TYPE, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["appointment_id"], ["appointments.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint(
            "appointment_id", "sequence", name="unique_appointment_history_sequence"
        ),
    )
    op.create_index(
        "idx_appointment_history_appointment", "appointment_history", ["appointment_id"]
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("recipient_id", sa.String(100), nullable=False),
        sa.Column("recipient_type", sa.String(20), nullable=False),
        sa.Column("appointment_id", sa.Uuid(), nullable=True),
        sa.Column("notification_type", sa.String(30), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(20), server_default="medium", nullable=False),
        sa.Column("data", JSON_TYPE, nullable=True),
        sa.Column("status", sa.String(20), server_default="unread", nullable=False),
        sa.Column("delivery_status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_retries", sa.Integer(), server_default="3", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "recipient_type IN ('patient', 'doctor', 'manager')",
            name="notifications_recipient_type_check",
        ),
        sa.CheckConstraint(
            "notification_type IN ('booking', 'approval', 'decline', 'payment', "
            "'status_change', 'reminder')",
            name="notifications_type_check",
        ),
        sa.CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')",
            name="notifications_priority_check",
        ),
        sa.CheckConstraint("status IN ('unread', 'read')", name="notifications_status_check"),
        sa.CheckConstraint(
            "delivery_status IN ('pending', 'sent', 'failed')",
            name="notifications_delivery_status_check",
        ),
    )
    op.create_index("idx_notifications_recipient", "notifications", ["recipient_id"])
    op.create_index(
        "idx_notifications_recipient_status", "notifications", ["recipient_id", "status"]
    )
    op.create_index("idx_notifications_delivery_status", "notifications", ["delivery_status"])
    op.create_index("idx_notifications_appointment", "notifications", ["appointment_id"])


def downgrade() -> None:
    """Drop lifecycle tables."""
    op.drop_index("idx_notifications_appointment", table_name="notifications")
    op.drop_index("idx_notifications_delivery_status", table_name="notifications")
    op.drop_index("idx_notifications_recipient_status", table_name="notifications")
    op.drop_index("idx_notifications_recipient", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("idx_appointment_history_appointment", table_name="appointment_history")
    op.drop_table("appointment_history")
    op.drop_index("idx_appointments_status", table_name="appointments")
    op.drop_index("idx_appointments_patient_id", table_name="appointments")
    op.drop_index("idx_appointments_doctor_date_time", table_name="appointments")
    op.drop_table("appointments")
    op.drop_table("patients")
    op.drop_index("ix_doctors_specialization", table_name="doctors")
    op.drop_table("doctors")
