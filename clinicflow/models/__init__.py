"""Database models."""

from clinicflow.models.appointments import appointment_history, appointments
from clinicflow.models.base import metadata
from clinicflow.models.doctors import doctors
from clinicflow.models.notifications import notifications
from clinicflow.models.patients import patients

__all__ = [
    "appointment_history",
    "appointments",
    "doctors",
    "metadata",
    "notifications",
    "patients",
]
