"""Notification endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from clinicflow.dependencies import LifecycleService
from clinicflow.middleware.error_handler import result_response

router = APIRouter()


@router.get("/{recipient_id}", summary="List notifications of a recipient")
async def list_notifications(
    recipient_id: str,
    service: LifecycleService,
    unread_only: bool = Query(False),
) -> JSONResponse:
    """Notifications of a patient or doctor, newest first."""
    return result_response(await service.list_notifications(recipient_id, unread_only))


@router.patch("/{notification_id}/read", summary="Mark notification as read")
async def mark_notification_read(
    notification_id: UUID,
    service: LifecycleService,
) -> JSONResponse:
    return result_response(await service.mark_notification_read(notification_id))


@router.post("/retry", summary="Retry failed notifications")
async def retry_notifications(service: LifecycleService) -> JSONResponse:
    return result_response(await service.retry_notifications())
