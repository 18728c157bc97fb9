"""Appointment endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from clinicflow.dependencies import LifecycleService
from clinicflow.middleware.error_handler import result_response
from clinicflow.schemas.appointments import (
    AppointmentFilters,
    ApprovalRequest,
    BookAppointmentRequest,
    CancelRequest,
    CompleteRequest,
    DeclineRequest,
    NoShowRequest,
    ReminderRequest,
    RescheduleRequest,
    ReserveSlotRequest,
    TransitionRequest,
)
from clinicflow.schemas.payments import PaymentRequest

router = APIRouter()


@router.post(
    "/reservations",
    status_code=status.HTTP_201_CREATED,
    summary="Hold a slot before booking",
)
async def reserve_slot(data: ReserveSlotRequest, service: LifecycleService) -> JSONResponse:
    """
    Place a short-lived hold on a doctor's slot.

    The returned ``token`` must be passed as ``hold_token`` when booking.
    """
    return result_response(await service.reserve_slot(data), status.HTTP_201_CREATED)


@router.post(
    "/",
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
)
async def book_appointment(data: BookAppointmentRequest, service: LifecycleService) -> JSONResponse:
    return result_response(await service.book_appointment(data), status.HTTP_201_CREATED)


@router.get("/pending-approval", summary="List appointments awaiting approval")
async def list_pending_approval(service: LifecycleService) -> JSONResponse:
    return result_response(await service.list_pending_approval())


@router.get("/upcoming", summary="List upcoming approved or confirmed appointments")
async def list_upcoming(
    service: LifecycleService,
    days: int = Query(7, ge=1, le=90),
) -> JSONResponse:
    return result_response(await service.list_upcoming(days))


@router.get("/statistics", summary="Appointment statistics")
async def get_statistics(
    service: LifecycleService,
    doctor_id: str | None = Query(None),
    patient_id: str | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
) -> JSONResponse:
    """Counts per status and average reschedule count, optionally filtered."""
    filters = AppointmentFilters(
        doctor_id=doctor_id,
        patient_id=patient_id,
        from_date=from_date,
        to_date=to_date,
    )
    return result_response(await service.get_statistics(filters))


@router.get("/patients/{patient_id}", summary="List a patient's appointments")
async def list_patient_appointments(patient_id: str, service: LifecycleService) -> JSONResponse:
    return result_response(await service.list_patient_appointments(patient_id))


@router.get("/{appointment_id}", summary="Get appointment by ID")
async def get_appointment(appointment_id: UUID, service: LifecycleService) -> JSONResponse:
    return result_response(await service.get_appointment(appointment_id))


@router.get("/{appointment_id}/history", summary="Get appointment history")
async def get_appointment_history(appointment_id: UUID, service: LifecycleService) -> JSONResponse:
    """Audit trail, newest entry first."""
    return result_response(await service.get_appointment_history(appointment_id))


@router.get("/{appointment_id}/notifications", summary="Get appointment notifications")
async def list_appointment_notifications(
    appointment_id: UUID, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.list_appointment_notifications(appointment_id))


@router.post("/{appointment_id}/approve", summary="Approve a pending appointment")
async def approve_appointment(
    appointment_id: UUID, data: ApprovalRequest, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.approve_appointment(appointment_id, data))


@router.post("/{appointment_id}/decline", summary="Decline a pending appointment")
async def decline_appointment(
    appointment_id: UUID, data: DeclineRequest, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.decline_appointment(appointment_id, data))


@router.post("/{appointment_id}/reschedule", summary="Reschedule a pending appointment")
async def reschedule_appointment(
    appointment_id: UUID, data: RescheduleRequest, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.reschedule_appointment(appointment_id, data))


@router.post("/{appointment_id}/confirm", summary="Confirm an approved appointment")
async def confirm_appointment(
    appointment_id: UUID, data: TransitionRequest, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.confirm_appointment(appointment_id, data))


@router.post("/{appointment_id}/cancel", summary="Cancel an appointment")
async def cancel_appointment(
    appointment_id: UUID, data: CancelRequest, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.cancel_appointment(appointment_id, data))


@router.post("/{appointment_id}/start", summary="Start a confirmed appointment")
async def start_appointment(
    appointment_id: UUID, data: TransitionRequest, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.start_appointment(appointment_id, data))


@router.post("/{appointment_id}/complete", summary="Complete an appointment")
async def complete_appointment(
    appointment_id: UUID, data: CompleteRequest, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.complete_appointment(appointment_id, data))


@router.post("/{appointment_id}/no-show", summary="Mark an appointment as no-show")
async def mark_no_show(
    appointment_id: UUID, data: NoShowRequest, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.mark_no_show(appointment_id, data))


@router.post("/{appointment_id}/payment", summary="Pay for an appointment")
async def process_payment(
    appointment_id: UUID, data: PaymentRequest, service: LifecycleService
) -> JSONResponse:
    """Charge the appointment once; a second payment is rejected."""
    return result_response(await service.process_payment(appointment_id, data))


@router.post("/{appointment_id}/reminders", summary="Send an appointment reminder")
async def send_reminder(
    appointment_id: UUID, data: ReminderRequest, service: LifecycleService
) -> JSONResponse:
    return result_response(await service.send_reminder(appointment_id, data))
