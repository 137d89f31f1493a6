from typing import Any, Optional, Protocol

from disburser.domain.models import Client, JobRecord, SchedulerSettings

class ClientSource(Protocol):
    async def list_clients(self, include_inactive: bool = False) -> list[Client]: ...

class JobStore(Protocol):
    async def create_job(self, job_id: str, total_count: int, batch_size: int, include_inactive: bool) -> None: ...

    async def update_job(self, job_id: str, **fields: Any) -> None: ...

    async def get_job(self, job_id: str) -> Optional[JobRecord]: ...

    async def list_recent_jobs(self, limit: int = 10) -> list[JobRecord]: ...

class SchedulerStateStore(Protocol):
    async def save_state(self, settings: SchedulerSettings) -> None: ...

    async def load_state(self) -> Optional[SchedulerSettings]: ...
