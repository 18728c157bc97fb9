"""Slot availability and reservation schemas."""

from datetime import date, datetime, time

from pydantic import BaseModel, ValidationInfo, field_validator


class WorkingHours(BaseModel):
    """A working window of a doctor on one weekday."""

    start: time
    end: time

    @field_validator("end")
    @classmethod
    def validate_end(cls, v: time, info: ValidationInfo) -> time:
        """Validate end time is after start time."""
        if "start" in info.data and v <= info.data["start"]:
            raise ValueError("End time must be after start time")
        return v


class Slot(BaseModel):
    """One candidate slot."""

    time: datetime
    available: bool


class AvailableSlots(BaseModel):
    """Slots of a doctor for one date."""

    doctor_id: str
    date: date
    slots: list[Slot]


class SlotHold(BaseModel):
    """An exclusive, short-lived claim on a slot."""

    token: str
    doctor_id: str
    slot_start: datetime
    duration: int
    expires_at: datetime
