"""FastAPI application entry point."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinicflow.api.v1.router import api_router
from clinicflow.config import settings
from clinicflow.core.exceptions import AppException
from clinicflow.core.firebase import initialize_firebase
from clinicflow.core.ports import NotificationTransport
from clinicflow.core.redis_client import (
    check_redis_connection,
    close_redis_connection,
    get_redis_client,
)
from clinicflow.database import AsyncSessionLocal, check_database_connection, engine
from clinicflow.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from clinicflow.middleware.logging import LoggingMiddleware, configure_logging
from clinicflow.services.appointment_service import build_lifecycle_service
from clinicflow.services.notification_service import LoggingTransport
from clinicflow.services.push_transport import PushNotificationTransport

# Configure logging
configure_logging()
logger = structlog.get_logger()


def _notification_transport() -> NotificationTransport:
    """FCM when enabled and Firebase starts, otherwise the log transport."""
    if not settings.push_notifications_enabled:
        return LoggingTransport()

    try:
        initialize_firebase(settings.firebase_credentials_path, settings.firebase_config_json)
        logger.info("firebase_initialized")
        return PushNotificationTransport()
    except Exception as e:
        logger.warning(
            "firebase_initialization_failed",
            error=str(e),
            note="Falling back to log delivery. Set FIREBASE_CREDENTIALS_PATH env var.",
        )
        return LoggingTransport()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Wires the lifecycle service and the notification retry loop on startup,
    and flushes pending notification deliveries on shutdown.
    """
    logger.info("application_startup", environment=settings.environment)

    if await check_database_connection():
        logger.info("database_connected")
    else:
        logger.error("database_connection_failed")

    if await check_redis_connection():
        logger.info("redis_connected")
    else:
        logger.error("redis_connection_failed")

    service = build_lifecycle_service(
        AsyncSessionLocal,
        get_redis_client(),
        settings,
        transport=_notification_transport(),
    )
    app.state.lifecycle_service = service
    retry_task = asyncio.create_task(
        service.dispatcher.retry_periodically(settings.notification_retry_interval_seconds)
    )

    yield

    logger.info("application_shutdown")
    retry_task.cancel()
    try:
        await retry_task
    except asyncio.CancelledError:
        pass
    await service.dispatcher.shutdown()

    await engine.dispose()
    logger.info("database_connections_closed")

    close_redis_connection()
    logger.info("redis_connection_closed")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Appointment lifecycle engine: slots, reservations, approvals, payments and notifications",
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(LoggingMiddleware)

app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, general_exception_handler)  # type: ignore[arg-type]

app.include_router(api_router, prefix=settings.api_v1_prefix)

# Setup Prometheus instrumentation
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/docs", "/redoc", "/openapi.json"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "clinicflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
