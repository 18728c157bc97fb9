"""Doctor availability endpoints."""

from datetime import date

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from clinicflow.dependencies import LifecycleService
from clinicflow.middleware.error_handler import result_response

router = APIRouter()


@router.get("/{doctor_id}/slots", summary="Get available slots of a doctor")
async def get_available_slots(
    doctor_id: str,
    service: LifecycleService,
    day: date = Query(..., alias="date"),
) -> JSONResponse:
    """
    Candidate slots of a doctor on a date, each flagged available or not.

    Args:
        doctor_id: Doctor ID
        day: Date (YYYY-MM-DD) in the clinic's timezone
    """
    return result_response(await service.get_available_slots(doctor_id, day))


@router.get("/{doctor_id}/appointments", summary="List a doctor's appointments")
async def list_doctor_appointments(
    doctor_id: str,
    service: LifecycleService,
    day: date | None = Query(None, alias="date"),
) -> JSONResponse:
    return result_response(await service.list_doctor_appointments(doctor_id, day))
