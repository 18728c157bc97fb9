"""Script to initialize the database, optionally with demo directory data."""

import asyncio
import sys

from sqlalchemy import insert, select

from clinicflow.database import AsyncSessionLocal, engine
from clinicflow.models import doctors, metadata, patients

WEEKDAY_HOURS = {"start": "09:00", "end": "17:00"}

DEMO_DOCTORS = [
    {
        "id": "D1",
        "name": "Sarah Lee",
        "specialization": "General Practice",
        "consultation_fee": 80,
        "working_hours": {
            day: [WEEKDAY_HOURS] for day in ("monday", "tuesday", "wednesday", "thursday", "friday")
        },
    },
    {
        "id": "D2",
        "name": "Omar Haddad",
        "specialization": "Cardiology",
        "consultation_fee": 150,
        "working_hours": {
            "monday": [{"start": "08:00", "end": "12:00"}, {"start": "13:00", "end": "16:00"}],
            "wednesday": [{"start": "08:00", "end": "12:00"}],
            "saturday": {"start": "09:00", "end": "12:00", "is_available": False},
        },
    },
]

DEMO_PATIENTS = [
    {"id": "P1", "name": "Alex Morgan", "email": "alex@example.com"},
    {"id": "P2", "name": "Priya Nair", "email": "priya@example.com"},
]


async def init_db(seed: bool = False) -> None:
    """Create all tables and, if asked, insert demo doctors and patients."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    print("✓ Database initialized successfully!")

    if not seed:
        return

    async with AsyncSessionLocal() as session:
        async with session.begin():
            existing = set((await session.execute(select(doctors.c.id))).scalars())
            new_doctors = [d for d in DEMO_DOCTORS if d["id"] not in existing]
            if new_doctors:
                await session.execute(insert(doctors), new_doctors)

            existing = set((await session.execute(select(patients.c.id))).scalars())
            new_patients = [p for p in DEMO_PATIENTS if p["id"] not in existing]
            if new_patients:
                await session.execute(insert(patients), new_patients)

    print(f"✓ Seeded {len(new_doctors)} doctor(s) and {len(new_patients)} patient(s)")


if __name__ == "__main__":
    asyncio.run(init_db(seed="--seed" in sys.argv[1:]))
