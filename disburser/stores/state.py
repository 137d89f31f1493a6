from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from disburser.db.models import SchedulerStateRow
from disburser.db.session import AsyncSessionLocal
from disburser.domain.models import SchedulerSettings

STATE_ROW_ID = 1

class SqlSchedulerStateStore:
    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def save_state(self, settings: SchedulerSettings) -> None:
        values = {
            "enabled": settings.enabled,
            "interval_hours": settings.interval_hours,
            "batch_size": settings.batch_size,
            "include_inactive": settings.include_inactive,
        }
        # INSERT ... ON CONFLICT (id) DO UPDATE, keyed by the singleton row
        stmt = (
            insert(SchedulerStateRow)
            .values(id=STATE_ROW_ID, **values)
            .on_conflict_do_update(index_elements=[SchedulerStateRow.id], set_=values)
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def load_state(self) -> Optional[SchedulerSettings]:
        stmt = select(SchedulerStateRow).where(SchedulerStateRow.id == STATE_ROW_ID)
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()

        if not row:
            return None

        return SchedulerSettings(
            interval_hours=row.interval_hours,
            batch_size=row.batch_size,
            include_inactive=bool(row.include_inactive),
            enabled=bool(row.enabled),
        )
