"""Error handling middleware."""

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinicflow.core.exceptions import AppException, ErrorKind
from clinicflow.schemas.common import OperationResult

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.SLOT_NO_LONGER_AVAILABLE: status.HTTP_409_CONFLICT,
    ErrorKind.RESCHEDULE_LIMIT_EXCEEDED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.ALREADY_PAID: status.HTTP_409_CONFLICT,
    ErrorKind.PAYMENT_FAILED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def result_response(
    result: OperationResult,
    success_status: int = status.HTTP_200_OK,
) -> JSONResponse:
    """
    Render an operation envelope, choosing the status code from its error kind.

    Args:
        result: Envelope returned by the lifecycle service
        success_status: Status code for a successful result

    Returns:
        JSON response carrying the envelope
    """
    if result.success:
        status_code = success_status
    else:
        status_code = STATUS_BY_KIND.get(result.error_kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle custom application exceptions.

    Args:
        request: Request object
        exc: Application exception

    Returns:
        JSON error response
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error_kind": exc.kind.value,
            "message": exc.message,
            "path": str(request.url),
        },
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error_kind": None,
            "message": exc.detail,
            "path": str(request.url),
        },
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle request validation errors.

    Returns:
        JSON error response with validation details
    """
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error_kind": ErrorKind.VALIDATION_ERROR.value,
            "message": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
            "path": str(request.url),
        },
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error_kind": ErrorKind.INTERNAL.value,
            "message": "An unexpected error occurred",
            "path": str(request.url),
        },
    )
