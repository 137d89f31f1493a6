from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from disburser.db.models import ProcessingJob
from disburser.db.session import AsyncSessionLocal
from disburser.domain.models import JobRecord
from disburser.domain.states import TERMINAL_JOB_STATUSES, JobStatus

# Columns callers may touch through update_job
UPDATABLE_FIELDS = {
    "status",
    "processed_clients",
    "successful_requests",
    "failed_requests",
    "started_at",
    "completed_at",
    "error_message",
    "server_stats",
}

def _to_record(row: ProcessingJob) -> JobRecord:
    return JobRecord(
        job_id=row.job_id,
        status=JobStatus(row.status),
        total_clients=row.total_clients,
        batch_size=row.batch_size,
        include_inactive=row.include_inactive,
        processed_clients=row.processed_clients,
        successful_requests=row.successful_requests,
        failed_requests=row.failed_requests,
        started_at=row.started_at,
        completed_at=row.completed_at,
        created_at=row.created_at,
        error_message=row.error_message,
        server_stats=row.server_stats,
    )

class SqlJobStore:
    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def create_job(self, job_id: str, total_count: int, batch_size: int, include_inactive: bool) -> None:
        async with self.session_factory() as session:
            session.add(ProcessingJob(
                job_id=job_id,
                total_clients=total_count,
                batch_size=batch_size,
                include_inactive=include_inactive,
                status=JobStatus.PENDING,
            ))
            await session.commit()

    async def update_job(self, job_id: str, **fields: Any) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
        if not fields:
            return

        # Finished jobs are never rewritten
        stmt = (
            update(ProcessingJob)
            .where(ProcessingJob.job_id == job_id)
            .where(ProcessingJob.status.not_in(TERMINAL_JOB_STATUSES))
            .values(**fields)
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        stmt = select(ProcessingJob).where(ProcessingJob.job_id == job_id)
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return _to_record(row) if row else None

    async def list_recent_jobs(self, limit: int = 10) -> list[JobRecord]:
        stmt = select(ProcessingJob).order_by(ProcessingJob.created_at.desc()).limit(limit)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_record(row) for row in rows]
