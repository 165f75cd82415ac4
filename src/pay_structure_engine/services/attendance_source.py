"""SQLAlchemy implementation of the attendance source."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pay_structure_engine.calculators.patterns import TimeEntryRecord
from pay_structure_engine.models import TimeEntry

APPROVED_STATUS = "approved"


class SqlAttendanceSource:
    """Approved time entries from the ``time_entry`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_approved_time_entries(
        self, worker_id: UUID, start_date: date, end_date: date
    ) -> list[TimeEntryRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TimeEntry)
                .where(
                    TimeEntry.worker_id == worker_id,
                    TimeEntry.status == APPROVED_STATUS,
                    TimeEntry.entry_date >= start_date,
                    TimeEntry.entry_date <= end_date,
                )
                .order_by(TimeEntry.entry_date)
            )
            return [
                TimeEntryRecord(
                    entry_date=row.entry_date,
                    hours_worked=row.hours_worked,
                    shift_type_id=row.shift_type_id,
                    location_id=row.location_id,
                    role_id=row.role_id,
                )
                for row in result.scalars().all()
            ]
