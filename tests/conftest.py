from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from itertools import count
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import fakeredis
import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Load environment variables from .env file
load_dotenv()

from clinicflow.config import Settings
from clinicflow.dependencies import get_lifecycle_service
from clinicflow.main import app
from clinicflow.models import doctors, metadata, patients
from clinicflow.schemas.appointments import Appointment
from clinicflow.schemas.payments import PaymentOutcome
from clinicflow.services.appointment_service import (
    AppointmentLifecycleService,
    build_lifecycle_service,
)

# 2024-01-15 is a Monday
MONDAY = datetime(2024, 1, 15, tzinfo=UTC)
MONDAY_10 = MONDAY.replace(hour=10)
START_OF_TEST = datetime(2024, 1, 10, 8, 0, tzinfo=UTC)

MANAGER = {"performed_by": "M1", "performed_by_name": "Morgan Manager"}
DOCTOR = {"performed_by": "D1", "performed_by_name": "Sarah Lee"}

SEED_DOCTORS = [
    {
        "id": "D1",
        "name": "Sarah Lee",
        "specialization": "General Practice",
        "working_hours": {
            "monday": [{"start": "09:00", "end": "17:00"}],
            "tuesday": [{"start": "09:00", "end": "12:00"}, {"start": "13:00", "end": "15:00"}],
            "saturday": {"start": "09:00", "end": "12:00", "is_available": False},
        },
    },
    {
        "id": "D2",
        "name": "Omar Haddad",
        "specialization": "Cardiology",
        "working_hours": {"wednesday": {"start": "08:00", "end": "12:00"}},
    },
]

SEED_PATIENTS = [
    {"id": "P1", "name": "Alex Morgan", "email": "alex@example.com"},
    {"id": "P2", "name": "Priya Nair", "email": "priya@example.com"},
]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START_OF_TEST):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def id_generator():
    """Sequential, deterministic UUIDs."""
    counter = count(1)
    return lambda: UUID(int=next(counter))


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Temporary SQLite database with all tables and seeded directory rows."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.execute(insert(doctors), SEED_DOCTORS)
        await conn.execute(insert(patients), SEED_PATIENTS)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def transport() -> MagicMock:
    """Notification transport whose deliveries always succeed."""
    mock_transport = MagicMock()
    mock_transport.deliver = AsyncMock(return_value=None)
    return mock_transport


@pytest.fixture
def gateway() -> MagicMock:
    """Payment gateway that approves every payment."""
    mock_gateway = MagicMock()
    mock_gateway.attempt_payment = AsyncMock(
        return_value=PaymentOutcome(success=True, transaction_ref="TXN0123456789AB")
    )
    return mock_gateway


@pytest_asyncio.fixture
async def service(
    session_factory,
    redis_client,
    settings,
    transport,
    gateway,
    clock,
    id_generator,
) -> AsyncGenerator[AppointmentLifecycleService, None]:
    lifecycle = build_lifecycle_service(
        session_factory,
        redis_client,
        settings,
        transport=transport,
        gateway=gateway,
        clock=clock,
        id_generator=id_generator,
    )

    yield lifecycle

    await lifecycle.dispatcher.wait_for_deliveries()


@pytest_asyncio.fixture
async def client(service: AppointmentLifecycleService) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""
    app.dependency_overrides[get_lifecycle_service] = lambda: service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def book(service: AppointmentLifecycleService):
    """Reserve a slot and book it, failing the test if either step fails."""

    async def _book(
        date_time: datetime = MONDAY_10,
        duration: int = 30,
        doctor_id: str = "D1",
        patient_id: str = "P1",
        **extra,
    ) -> Appointment:
        hold = await service.reserve_slot(
            {
                "doctor_id": doctor_id,
                "patient_id": patient_id,
                "date_time": date_time,
                "duration": duration,
            }
        )
        assert hold.success, hold.message

        result = await service.book_appointment(
            {
                "hold_token": hold.payload.token,
                "doctor_id": doctor_id,
                "patient_id": patient_id,
                "date_time": date_time,
                "duration": duration,
                **extra,
            }
        )
        assert result.success, result.message
        return result.payload

    return _book
