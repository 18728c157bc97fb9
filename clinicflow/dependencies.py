"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from clinicflow.services.appointment_service import AppointmentLifecycleService


def get_lifecycle_service(request: Request) -> AppointmentLifecycleService:
    """
    Lifecycle service wired at startup.

    Raises:
        HTTPException: If the application has not finished starting
    """
    service = getattr(request.app.state, "lifecycle_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Appointment service is not ready",
        )
    return service


# Type aliases for dependency injection
LifecycleService = Annotated[AppointmentLifecycleService, Depends(get_lifecycle_service)]
