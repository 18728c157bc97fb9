"""Tests for the appointment lifecycle service and its HTTP endpoints."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import UUID

import pytest
from conftest import DOCTOR, MANAGER, MONDAY_10
from httpx import ASGITransport, AsyncClient

from clinicflow.core.exceptions import ConflictException, ErrorKind
from clinicflow.main import app
from clinicflow.schemas.appointments import Actor, AppointmentStatus, HistoryAction
from clinicflow.schemas.notifications import NotificationType
from clinicflow.services.appointment_store import AppointmentStore
from clinicflow.services.state_machine import AppointmentStateMachine, TransitionOperation

PATIENT = {"performed_by": "P1", "performed_by_name": "Alex Morgan"}


def _booking(hold_token: str, date_time=MONDAY_10, **extra) -> dict:
    return {
        "hold_token": hold_token,
        "doctor_id": "D1",
        "patient_id": "P1",
        "date_time": date_time,
        **extra,
    }


@pytest.mark.asyncio
async def test_full_lifecycle(service, book, clock):
    appointment = await book(reason_for_visit="Persistent cough")
    assert appointment.status == AppointmentStatus.PENDING_APPROVAL
    assert appointment.doctor_name == "Sarah Lee"
    assert appointment.patient_name == "Alex Morgan"

    for operation, request in (
        (service.approve_appointment, {**MANAGER, "notes": "OK"}),
        (service.confirm_appointment, PATIENT),
        (service.start_appointment, DOCTOR),
    ):
        clock.advance(minutes=5)
        result = await operation(appointment.id, request)
        assert result.success, result.message

    completed = await service.complete_appointment(
        appointment.id, {**DOCTOR, "diagnosis": "Common cold", "follow_up_required": True}
    )
    assert completed.payload.status == AppointmentStatus.COMPLETED
    assert completed.payload.completion.diagnosis == "Common cold"
    assert completed.payload.completion.duration == 30

    history = await service.get_appointment_history(appointment.id)
    assert [entry.action for entry in history.payload] == [
        HistoryAction.COMPLETED,
        HistoryAction.STARTED,
        HistoryAction.CONFIRMED,
        HistoryAction.APPROVED,
        HistoryAction.CREATED,
    ]

    cancelled = await service.cancel_appointment(appointment.id, PATIENT)
    assert not cancelled.success
    assert cancelled.error_kind == ErrorKind.INVALID_TRANSITION

    stored = (await service.get_appointment(appointment.id)).payload
    assert stored.status == AppointmentStatus.COMPLETED
    assert stored.version == 5


@pytest.mark.asyncio
async def test_auto_approved_booking(service):
    hold = await service.reserve_slot({"doctor_id": "D1", "patient_id": "P1", "date_time": MONDAY_10})

    result = await service.book_appointment(
        _booking(
            hold.payload.token,
            appointment_type="routine_checkup",
            requires_manager_approval=False,
        )
    )

    assert result.success
    assert result.message == "Appointment booked and auto-approved"
    assert result.payload.status == AppointmentStatus.APPROVED


@pytest.mark.asyncio
async def test_book_without_valid_hold(service):
    result = await service.book_appointment(_booking("not-a-hold"))

    assert result.error_kind == ErrorKind.SLOT_NO_LONGER_AVAILABLE


@pytest.mark.asyncio
async def test_hold_for_other_time_does_not_cover_booking(service):
    hold = await service.reserve_slot({"doctor_id": "D1", "patient_id": "P1", "date_time": MONDAY_10})

    result = await service.book_appointment(
        _booking(hold.payload.token, date_time=MONDAY_10 + timedelta(hours=1))
    )

    assert result.error_kind == ErrorKind.SLOT_NO_LONGER_AVAILABLE


@pytest.mark.asyncio
async def test_expired_hold_cannot_book(service, redis_client):
    hold = await service.reserve_slot({"doctor_id": "D1", "patient_id": "P1", "date_time": MONDAY_10})
    redis_client.flushall()

    result = await service.book_appointment(_booking(hold.payload.token))

    assert result.error_kind == ErrorKind.SLOT_NO_LONGER_AVAILABLE


@pytest.mark.asyncio
async def test_hold_released_after_booking(book, redis_client):
    await book()

    assert redis_client.keys("slot_hold:*") == []
    assert redis_client.keys("slot_hold_span:*") == []


@pytest.mark.asyncio
async def test_booking_shorter_than_hold_frees_whole_hold(service, redis_client):
    hold = await service.reserve_slot(
        {"doctor_id": "D1", "patient_id": "P1", "date_time": MONDAY_10, "duration": 60}
    )

    booked = await service.book_appointment(_booking(hold.payload.token, duration=30))
    assert booked.success, booked.message
    assert redis_client.keys("slot_hold*") == []

    following = await service.reserve_slot(
        {"doctor_id": "D1", "patient_id": "P2", "date_time": MONDAY_10 + timedelta(minutes=30)}
    )

    assert following.success, following.message


@pytest.mark.asyncio
async def test_reschedule_moves_appointment(service, book):
    appointment = await book()
    new_time = MONDAY_10 + timedelta(hours=2)

    result = await service.reschedule_appointment(
        appointment.id, {**PATIENT, "new_date_time": new_time, "reason": "Work"}
    )

    assert result.success, result.message
    assert result.payload.date_time == new_time
    assert result.payload.rescheduling.original_date_time == MONDAY_10

    slots = (await service.get_available_slots("D1", MONDAY_10.date())).payload.slots
    busy = [slot.time for slot in slots if not slot.available]
    assert busy == [new_time]


@pytest.mark.asyncio
async def test_reschedule_limit(service, book):
    appointment = await book()

    for hours in (1, 2, 3):
        result = await service.reschedule_appointment(
            appointment.id, {**PATIENT, "new_date_time": MONDAY_10 + timedelta(hours=hours)}
        )
        assert result.success, result.message

    result = await service.reschedule_appointment(
        appointment.id, {**PATIENT, "new_date_time": MONDAY_10 + timedelta(hours=4)}
    )

    assert result.error_kind == ErrorKind.RESCHEDULE_LIMIT_EXCEEDED
    stored = (await service.get_appointment(appointment.id)).payload
    assert stored.rescheduling.reschedule_count == 3
    assert stored.date_time == MONDAY_10 + timedelta(hours=3)


@pytest.mark.asyncio
async def test_reschedule_onto_booked_slot(service, book, redis_client):
    first = await book()
    await book(date_time=MONDAY_10 + timedelta(hours=1), patient_id="P2")

    result = await service.reschedule_appointment(
        first.id, {**PATIENT, "new_date_time": MONDAY_10 + timedelta(hours=1)}
    )

    assert result.error_kind == ErrorKind.SLOT_NO_LONGER_AVAILABLE
    stored = (await service.get_appointment(first.id)).payload
    assert stored.date_time == MONDAY_10
    assert stored.rescheduling.reschedule_count == 0
    assert redis_client.keys("slot_hold:*") == []


@pytest.mark.asyncio
async def test_reschedule_outside_working_hours(service, book):
    appointment = await book()

    result = await service.reschedule_appointment(
        appointment.id, {**PATIENT, "new_date_time": MONDAY_10.replace(hour=20)}
    )

    assert result.error_kind == ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_reschedule_approved_appointment_is_rejected(service, book):
    appointment = await book()
    await service.approve_appointment(appointment.id, MANAGER)

    result = await service.reschedule_appointment(
        appointment.id, {**PATIENT, "new_date_time": MONDAY_10 + timedelta(hours=1)}
    )

    assert result.error_kind == ErrorKind.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_decline_requires_reason(service, book):
    appointment = await book()

    result = await service.decline_appointment(appointment.id, {**MANAGER, "reason": ""})

    assert result.error_kind == ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_cancel_well_ahead_is_refund_eligible(service, book):
    appointment = await book()

    result = await service.cancel_appointment(appointment.id, {**PATIENT, "reason": "Better"})

    assert result.payload.status == AppointmentStatus.CANCELLED
    assert result.payload.cancellation.refund_eligible is True


@pytest.mark.asyncio
async def test_mark_no_show(service, book):
    appointment = await book()
    await service.approve_appointment(appointment.id, MANAGER)

    result = await service.mark_no_show(appointment.id, {**DOCTOR, "reason": "Did not arrive"})

    assert result.payload.status == AppointmentStatus.NO_SHOW


@pytest.mark.asyncio
async def test_stale_write_is_a_conflict(session_factory, book, clock):
    appointment = await book()
    store = AppointmentStore(session_factory)
    machine = AppointmentStateMachine(clock=clock)
    manager = Actor(id="M1")

    stale = await store.get(appointment.id)
    await store.save_transition(
        stale, machine.apply(stale, TransitionOperation.APPROVE, manager)
    )

    with pytest.raises(ConflictException):
        await store.save_transition(
            stale, machine.apply(stale, TransitionOperation.DECLINE, manager, reason="Late")
        )

    stored = await store.get(appointment.id)
    assert stored.status == AppointmentStatus.APPROVED
    assert len(stored.history) == 2


@pytest.mark.asyncio
async def test_concurrent_transitions_one_wins(service, book):
    appointment = await book()

    results = await asyncio.gather(
        service.approve_appointment(appointment.id, MANAGER),
        service.decline_appointment(appointment.id, {**MANAGER, "reason": "Full"}),
    )

    assert sum(result.success for result in results) == 1
    failed = next(result for result in results if not result.success)
    assert failed.error_kind in (ErrorKind.CONFLICT, ErrorKind.INVALID_TRANSITION)


@pytest.mark.asyncio
async def test_unknown_and_malformed_ids(service):
    missing = await service.get_appointment(UUID(int=424242))
    malformed = await service.get_appointment("not-a-uuid")

    assert missing.error_kind == ErrorKind.NOT_FOUND
    assert malformed.error_kind == ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_appointment_notifications(service, book, client, clock):
    appointment = await book()
    clock.advance(minutes=5)
    await service.approve_appointment(appointment.id, MANAGER)

    result = await service.list_appointment_notifications(appointment.id)

    assert result.success
    assert [record.type for record in result.payload] == [
        NotificationType.BOOKING,
        NotificationType.BOOKING,
        NotificationType.APPROVAL,
        NotificationType.APPROVAL,
    ]

    response = await client.get(f"/api/v1/appointments/{appointment.id}/notifications")
    assert response.status_code == 200
    assert len(response.json()["payload"]) == 4

    missing = await service.list_appointment_notifications(UUID(int=424242))
    assert missing.error_kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_missing_actor_is_validation_error(service, book):
    appointment = await book()

    result = await service.approve_appointment(appointment.id, {})

    assert result.error_kind == ErrorKind.VALIDATION_ERROR
    assert "performed_by" in result.message


@pytest.mark.asyncio
async def test_unexpected_failure_is_internal(service):
    with patch.object(AppointmentStore, "get", AsyncMock(side_effect=RuntimeError("boom"))):
        result = await service.get_appointment(UUID(int=1))

    assert not result.success
    assert result.error_kind == ErrorKind.INTERNAL
    assert "boom" not in result.message


@pytest.mark.asyncio
async def test_listing_queries(service, book):
    first = await book()
    await book(date_time=MONDAY_10 + timedelta(hours=1), patient_id="P2")
    await service.approve_appointment(first.id, MANAGER)

    pending = await service.list_pending_approval()
    assert [a.patient_id for a in pending.payload] == ["P2"]

    upcoming = await service.list_upcoming(days=7)
    assert [a.id for a in upcoming.payload] == [first.id]
    assert (await service.list_upcoming(days=1)).payload == []

    patient = await service.list_patient_appointments("P1")
    assert [a.id for a in patient.payload] == [first.id]
    unknown = await service.list_patient_appointments("P404")
    assert unknown.error_kind == ErrorKind.NOT_FOUND

    monday = await service.list_doctor_appointments("D1", "2024-01-15")
    assert len(monday.payload) == 2
    tuesday = await service.list_doctor_appointments("D1", "2024-01-16")
    assert tuesday.payload == []


@pytest.mark.asyncio
async def test_statistics(service, book):
    first = await book()
    await book(date_time=MONDAY_10 + timedelta(hours=1), patient_id="P2")
    await service.approve_appointment(first.id, MANAGER)

    stats = (await service.get_statistics()).payload

    assert stats.total_appointments == 2
    assert stats.by_status["approved"] == 1
    assert stats.by_status["pending_approval"] == 1
    assert stats.by_status["cancelled"] == 0
    assert stats.average_reschedule_count == 0.0

    other = (await service.get_statistics({"doctor_id": "D2"})).payload
    assert other.total_appointments == 0


@pytest.mark.asyncio
async def test_reminder_requires_approved_appointment(service, book):
    appointment = await book()

    rejected = await service.send_reminder(appointment.id, {"reminder_type": "2h"})
    assert rejected.error_kind == ErrorKind.INVALID_TRANSITION

    await service.approve_appointment(appointment.id, MANAGER)
    sent = await service.send_reminder(appointment.id, {"reminder_type": "2h"})

    assert sent.success
    assert [record.type for record in sent.payload] == [NotificationType.REMINDER] * 2
    assert sent.payload[0].title == "Appointment Reminder - In 2 Hours"


@pytest.mark.asyncio
async def test_health_endpoints(client):
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"

    response = await client.get("/api/v1/ping")
    assert response.json() == {"message": "pong"}


@pytest.mark.asyncio
async def test_service_unavailable_before_startup():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/appointments/pending-approval")

    assert response.status_code == 503
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_http_booking_flow(client):
    date_time = "2024-01-15T10:00:00Z"

    response = await client.post(
        "/api/v1/appointments/reservations",
        json={"doctor_id": "D1", "patient_id": "P1", "date_time": date_time},
    )
    assert response.status_code == 201
    token = response.json()["payload"]["token"]

    response = await client.post(
        "/api/v1/appointments/",
        json={"hold_token": token, "doctor_id": "D1", "patient_id": "P1", "date_time": date_time},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["payload"]["status"] == "pending_approval"
    appointment_id = body["payload"]["id"]

    response = await client.post(f"/api/v1/appointments/{appointment_id}/approve", json=MANAGER)
    assert response.status_code == 200
    assert response.json()["payload"]["status"] == "approved"

    payment = {"method": "credit_card", "amount": 80.0, **PATIENT}
    response = await client.post(f"/api/v1/appointments/{appointment_id}/payment", json=payment)
    assert response.status_code == 200
    assert response.json()["payload"]["transaction_ref"] == "TXN0123456789AB"

    response = await client.post(f"/api/v1/appointments/{appointment_id}/payment", json=payment)
    assert response.status_code == 409
    assert response.json()["error_kind"] == "already_paid"

    response = await client.post(f"/api/v1/appointments/{appointment_id}/start", json=DOCTOR)
    assert response.status_code == 409
    assert response.json()["error_kind"] == "invalid_transition"

    response = await client.get(f"/api/v1/appointments/{appointment_id}/history")
    assert response.status_code == 200
    actions = [entry["action"] for entry in response.json()["payload"]]
    assert actions == ["payment_completed", "approved", "created"]

    response = await client.get("/api/v1/doctors/D1/slots", params={"date": "2024-01-15"})
    assert response.status_code == 200
    slots = response.json()["payload"]["slots"]
    assert [slot["available"] for slot in slots].count(False) == 1


@pytest.mark.asyncio
async def test_http_error_statuses(client):
    response = await client.get(f"/api/v1/appointments/{UUID(int=77)}")
    assert response.status_code == 404
    assert response.json()["error_kind"] == "not_found"

    response = await client.get("/api/v1/appointments/not-a-uuid")
    assert response.status_code == 422
    assert response.json()["error_kind"] == "validation_error"

    response = await client.get("/api/v1/doctors/D404/slots", params={"date": "2024-01-15"})
    assert response.status_code == 404

    response = await client.post(
        "/api/v1/appointments/",
        json={"hold_token": "expired", "doctor_id": "D1", "patient_id": "P1",
              "date_time": "2024-01-15T10:00:00Z"},
    )
    assert response.status_code == 409
    assert response.json()["error_kind"] == "slot_no_longer_available"
