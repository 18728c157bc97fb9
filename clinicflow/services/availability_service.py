"""Slot availability derived from doctor working hours and existing appointments."""

from datetime import UTC, date, datetime, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from clinicflow.core.exceptions import (
    NotFoundException,
    SlotNoLongerAvailableException,
    ValidationException,
)
from clinicflow.core.ports import Directory
from clinicflow.schemas.appointments import OCCUPYING_STATUSES, Appointment
from clinicflow.schemas.availability import AvailableSlots, Slot, WorkingHours
from clinicflow.services.appointment_store import AppointmentStore

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _overlaps(start: datetime, end: datetime, appointment: Appointment) -> bool:
    appointment_end = appointment.date_time + timedelta(minutes=appointment.duration)
    return start < appointment_end and end > appointment.date_time


class SlotAvailabilityIndex:
    """Read-only view of free and busy slots; needs no coordination."""

    def __init__(
        self,
        directory: Directory,
        store: AppointmentStore,
        slot_minutes: int = 30,
        timezone: str = "UTC",
    ):
        self._directory = directory
        self._store = store
        self._slot = timedelta(minutes=slot_minutes)
        self._tz = ZoneInfo(timezone)

    async def get_available_slots(self, doctor_id: str, day: date) -> AvailableSlots:
        """
        Candidate slots of a doctor on a date, flagged free or busy.

        Args:
            doctor_id: Doctor ID
            day: Date in the clinic's timezone

        Returns:
            Ordered slots; empty when the doctor has no hours that weekday

        Raises:
            NotFoundException: If the doctor is unknown
        """
        if not await self._directory.doctor_exists(doctor_id):
            raise NotFoundException("Doctor not found")

        windows = await self._directory.get_doctor_working_hours(
            doctor_id, WEEKDAYS[day.weekday()]
        )
        if not windows:
            return AvailableSlots(doctor_id=doctor_id, date=day, slots=[])

        occupied = await self._occupied(doctor_id, day)

        slots = []
        for window in windows:
            current, window_end = self._window_bounds(day, window)
            while current + self._slot <= window_end:
                slot_end = current + self._slot
                busy = any(_overlaps(current, slot_end, a) for a in occupied)
                slots.append(Slot(time=current.astimezone(UTC), available=not busy))
                current = slot_end

        return AvailableSlots(doctor_id=doctor_id, date=day, slots=slots)

    async def ensure_slot_free(
        self,
        doctor_id: str,
        date_time: datetime,
        duration: int,
        exclude_id: UUID | None = None,
    ) -> None:
        """
        Check a requested appointment fits the doctor's hours and overlaps nothing.

        Raises:
            NotFoundException: If the doctor is unknown
            ValidationException: If the time is outside working hours
            SlotNoLongerAvailableException: If another appointment occupies the time
        """
        if not await self._directory.doctor_exists(doctor_id):
            raise NotFoundException("Doctor not found")

        local = date_time.astimezone(self._tz)
        day = local.date()
        start = date_time
        end = date_time + timedelta(minutes=duration)

        windows = await self._directory.get_doctor_working_hours(
            doctor_id, WEEKDAYS[day.weekday()]
        )
        inside = False
        for window in windows or []:
            window_start, window_end = self._window_bounds(day, window)
            if window_start <= start and end <= window_end:
                inside = True
                break
        if not inside:
            raise ValidationException("Selected time is outside doctor's availability")

        occupied = await self._occupied(doctor_id, day)
        if any(_overlaps(start, end, a) for a in occupied if a.id != exclude_id):
            raise SlotNoLongerAvailableException()

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """UTC instants delimiting a calendar day of the clinic."""
        day_start = datetime.combine(day, datetime.min.time(), self._tz)
        return day_start.astimezone(UTC), (day_start + timedelta(days=1)).astimezone(UTC)

    async def _occupied(self, doctor_id: str, day: date) -> list[Appointment]:
        start, end = self.day_bounds(day)
        return await self._store.list_for_doctor_between(
            doctor_id, start, end, statuses=OCCUPYING_STATUSES
        )

    def _window_bounds(self, day: date, window: WorkingHours) -> tuple[datetime, datetime]:
        return (
            datetime.combine(day, window.start, self._tz),
            datetime.combine(day, window.end, self._tz),
        )
