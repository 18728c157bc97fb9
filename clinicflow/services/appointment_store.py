"""Persistence of appointment aggregates and their audit trail."""

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicflow.core.exceptions import ConflictException, NotFoundException
from clinicflow.models.appointments import appointment_history, appointments
from clinicflow.schemas.appointments import (
    Appointment,
    AppointmentFilters,
    AppointmentStatistics,
    AppointmentStatus,
    HistoryEntry,
)

logger = structlog.get_logger(__name__)


def _row_values(appointment: Appointment) -> dict[str, Any]:
    """Flatten an appointment into column values."""
    data = appointment.model_dump(mode="json", exclude={"history"})
    return {
        "patient_id": appointment.patient_id,
        "doctor_id": appointment.doctor_id,
        "patient_name": appointment.patient_name,
        "doctor_name": appointment.doctor_name,
        "date_time": appointment.date_time,
        "duration": appointment.duration,
        "reason_for_visit": appointment.reason_for_visit,
        "details": data["details"],
        "status": appointment.status.value,
        "approval_workflow": data["approval_workflow"],
        "payment": data["payment"],
        "rescheduling": data["rescheduling"],
        "cancellation": data["cancellation"],
        "completion": data["completion"],
        "version": appointment.version,
        "created_at": appointment.created_at,
        "last_updated_by": appointment.last_updated_by,
        "last_updated_at": appointment.last_updated_at,
    }


def _history_values(
    appointment_id: UUID, entries: Iterable[HistoryEntry], start: int
) -> list[dict[str, Any]]:
    return [
        {
            "appointment_id": appointment_id,
            "sequence": start + offset,
            "action": entry.action.value,
            "performed_by": entry.performed_by,
            "performed_by_name": entry.performed_by_name,
            "timestamp": entry.timestamp,
            "notes": entry.notes,
            "data": entry.model_dump(mode="json")["data"],
        }
        for offset, entry in enumerate(entries)
    ]


def _to_appointment(row: Row, history_rows: Sequence[Row]) -> Appointment:
    values = dict(row._mapping)
    values["history"] = [
        {
            "action": h.action,
            "performed_by": h.performed_by,
            "performed_by_name": h.performed_by_name,
            "timestamp": h.timestamp,
            "notes": h.notes,
            "data": h.data or {},
        }
        for h in history_rows
    ]
    return Appointment.model_validate(values)


class AppointmentStore:
    """SQLAlchemy Core store for appointments.

    Status changes and their history entries are written in one transaction,
    guarded by the ``version`` column.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize store with a session factory."""
        self._session_factory = session_factory

    async def insert(self, appointment: Appointment) -> Appointment:
        """Persist a new appointment together with its initial history."""
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert(appointments).values(id=appointment.id, **_row_values(appointment))
                )
                if appointment.history:
                    await session.execute(
                        insert(appointment_history),
                        _history_values(appointment.id, appointment.history, start=0),
                    )

        logger.debug("appointment_inserted", appointment_id=str(appointment.id))
        return appointment

    async def get(self, appointment_id: UUID) -> Appointment:
        """
        Load an appointment with its full history.

        Raises:
            NotFoundException: If appointment not found
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(appointments).where(appointments.c.id == appointment_id)
            )
            row = result.fetchone()

            if not row:
                raise NotFoundException("Appointment not found")

            history = await self._load_history(session, [appointment_id])

        return _to_appointment(row, history.get(appointment_id, []))

    async def save_transition(self, before: Appointment, after: Appointment) -> Appointment:
        """
        Persist ``after`` only if the stored version still equals ``before.version``.

        New history entries (those past ``before``'s history) are inserted in the
        same transaction.

        Raises:
            ConflictException: If another writer changed the appointment first
        """
        new_entries = after.history[len(before.history) :]
        saved = after.model_copy(update={"version": before.version + 1})

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(appointments)
                        .where(
                            and_(
                                appointments.c.id == before.id,
                                appointments.c.version == before.version,
                            )
                        )
                        .values(**_row_values(saved))
                    )

                    if result.rowcount == 0:
                        raise ConflictException(
                            "Appointment was modified concurrently; reload and retry"
                        )

                    if new_entries:
                        await session.execute(
                            insert(appointment_history),
                            _history_values(before.id, new_entries, start=len(before.history)),
                        )
        except IntegrityError as e:
            logger.warning(
                "appointment_history_conflict",
                appointment_id=str(before.id),
                error=str(e),
            )
            raise ConflictException(
                "Appointment was modified concurrently; reload and retry"
            ) from e

        return saved

    async def list_for_doctor_between(
        self,
        doctor_id: str,
        start: datetime,
        end: datetime,
        statuses: Iterable[AppointmentStatus] | None = None,
    ) -> list[Appointment]:
        """Appointments of a doctor with ``start <= date_time < end``."""
        conditions = [
            appointments.c.doctor_id == doctor_id,
            appointments.c.date_time >= start,
            appointments.c.date_time < end,
        ]
        if statuses is not None:
            conditions.append(appointments.c.status.in_([s.value for s in statuses]))

        return await self._list(conditions, order_by=appointments.c.date_time.asc())

    async def list_by_status(self, status: AppointmentStatus) -> list[Appointment]:
        """Appointments in the given status, soonest first."""
        return await self._list(
            [appointments.c.status == status.value],
            order_by=appointments.c.date_time.asc(),
        )

    async def list_for_patient(self, patient_id: str) -> list[Appointment]:
        """Appointments of a patient, most recent first."""
        return await self._list(
            [appointments.c.patient_id == patient_id],
            order_by=appointments.c.date_time.desc(),
        )

    async def list_for_doctor(self, doctor_id: str) -> list[Appointment]:
        """Appointments of a doctor, most recent first."""
        return await self._list(
            [appointments.c.doctor_id == doctor_id],
            order_by=appointments.c.date_time.desc(),
        )

    async def list_between(
        self,
        start: datetime,
        end: datetime,
        statuses: Iterable[AppointmentStatus],
    ) -> list[Appointment]:
        """Appointments in a time window with one of the given statuses."""
        return await self._list(
            [
                appointments.c.date_time >= start,
                appointments.c.date_time <= end,
                appointments.c.status.in_([s.value for s in statuses]),
            ],
            order_by=appointments.c.date_time.asc(),
        )

    async def statistics(self, filters: AppointmentFilters) -> AppointmentStatistics:
        """Count appointments per status and average reschedule count."""
        conditions = []
        if filters.doctor_id:
            conditions.append(appointments.c.doctor_id == filters.doctor_id)
        if filters.patient_id:
            conditions.append(appointments.c.patient_id == filters.patient_id)
        if filters.from_date:
            conditions.append(appointments.c.date_time >= filters.from_date)
        if filters.to_date:
            conditions.append(appointments.c.date_time <= filters.to_date)

        async with self._session_factory() as session:
            count_stmt = select(appointments.c.status, func.count()).group_by(
                appointments.c.status
            )
            reschedule_stmt = select(appointments.c.rescheduling)
            if conditions:
                count_stmt = count_stmt.where(and_(*conditions))
                reschedule_stmt = reschedule_stmt.where(and_(*conditions))

            by_status = {status: count for status, count in (await session.execute(count_stmt))}
            reschedules = [
                (rescheduling or {}).get("reschedule_count", 0)
                for (rescheduling,) in (await session.execute(reschedule_stmt))
            ]

        total = sum(by_status.values())
        return AppointmentStatistics(
            total_appointments=total,
            by_status={status.value: by_status.get(status.value, 0) for status in AppointmentStatus},
            average_reschedule_count=(sum(reschedules) / len(reschedules)) if reschedules else 0.0,
        )

    async def _list(self, conditions: list[Any], order_by: Any) -> list[Appointment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(appointments).where(and_(*conditions)).order_by(order_by)
            )
            rows = result.fetchall()
            history = await self._load_history(session, [row.id for row in rows])

        return [_to_appointment(row, history.get(row.id, [])) for row in rows]

    @staticmethod
    async def _load_history(
        session: AsyncSession, appointment_ids: list[UUID]
    ) -> dict[UUID, list[Row]]:
        if not appointment_ids:
            return {}

        result = await session.execute(
            select(appointment_history)
            .where(appointment_history.c.appointment_id.in_(appointment_ids))
            .order_by(appointment_history.c.appointment_id, appointment_history.c.sequence)
        )

        grouped: dict[UUID, list[Row]] = {}
        for row in result.fetchall():
            grouped.setdefault(row.appointment_id, []).append(row)
        return grouped
