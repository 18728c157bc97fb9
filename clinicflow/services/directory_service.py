"""Doctor and patient directory backed by the doctors/patients tables."""

from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicflow.models.doctors import doctors
from clinicflow.models.patients import patients
from clinicflow.schemas.availability import WorkingHours


def parse_working_hours(value: Any) -> list[WorkingHours] | None:
    """
    Normalize one weekday entry of a doctor's ``working_hours`` column.

    Accepts a single window (``{"start": "09:00", "end": "17:00"}``), optionally
    flagged with ``"is_available": false``, or a list of windows.

    Returns:
        Windows sorted by start time, or None when the doctor does not work that day
    """
    if not value:
        return None

    if isinstance(value, dict):
        if not value.get("is_available", True):
            return None
        value = [value]

    windows = [WorkingHours(start=item["start"], end=item["end"]) for item in value]
    return sorted(windows, key=lambda window: window.start) or None


class SqlDirectory:
    """Directory lookups over SQLAlchemy Core."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize directory with a session factory."""
        self._session_factory = session_factory

    async def doctor_exists(self, doctor_id: str) -> bool:
        return await self._get_doctor(doctor_id) is not None

    async def patient_exists(self, patient_id: str) -> bool:
        return await self.get_patient_name(patient_id) is not None

    async def get_doctor_working_hours(
        self, doctor_id: str, weekday: str
    ) -> list[WorkingHours] | None:
        doctor = await self._get_doctor(doctor_id)
        if doctor is None:
            return None
        return parse_working_hours((doctor.working_hours or {}).get(weekday.lower()))

    async def get_doctor_name(self, doctor_id: str) -> str | None:
        doctor = await self._get_doctor(doctor_id)
        return doctor.name if doctor else None

    async def get_patient_name(self, patient_id: str) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(patients.c.name).where(patients.c.id == patient_id)
            )
            return result.scalar_one_or_none()

    async def _get_doctor(self, doctor_id: str):
        async with self._session_factory() as session:
            result = await session.execute(
                select(doctors.c.id, doctors.c.name, doctors.c.working_hours).where(
                    and_(doctors.c.id == doctor_id, doctors.c.is_active.is_(True))
                )
            )
            return result.fetchone()
