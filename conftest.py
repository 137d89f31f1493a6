"""Pytest configuration and shared fixtures."""

import asyncio
from dataclasses import replace
from typing import Any, Optional

import pytest

from disburser.domain.models import (
    Client,
    JobRecord,
    PaymentFailure,
    PaymentSuccess,
    SchedulerSettings,
)
from disburser.domain.states import TERMINAL_JOB_STATUSES, Endpoint, ErrorKind, JobStatus
from disburser.scheduler.dispatcher import DispatchEngine
from disburser.scheduler.service import PaymentScheduler
from disburser.services.events import EventBus


# =============================================================================
# In-memory collaborators
# =============================================================================

def make_clients(count: int, inactive: int = 0) -> list[Client]:
    clients = [Client(msisdn=f"2547{i:08d}", offer_code="OFFER1") for i in range(count)]
    clients += [
        Client(msisdn=f"2541{i:08d}", offer_code="OFFER1", subscription_status="I")
        for i in range(inactive)
    ]
    return clients


class FakeClientSource:
    def __init__(self, clients: Optional[list[Client]] = None, error: Optional[Exception] = None):
        self.clients = clients or []
        self.error = error
        self.calls: list[bool] = []

    async def list_clients(self, include_inactive: bool = False) -> list[Client]:
        self.calls.append(include_inactive)
        if self.error:
            raise self.error
        return [c for c in self.clients if include_inactive or c.is_active]

    async def client_stats(self) -> dict[str, int]:
        active = sum(1 for c in self.clients if c.is_active)
        return {"total": len(self.clients), "active": active, "inactive": len(self.clients) - active}


class FakeJobStore:
    """
    In-memory job store with the same finished-job guard as SqlJobStore.

    A write can be held open by registering an Event in `barriers`, keyed by
    "create" or by the status being written; `held` lists writes waiting on one.
    """

    def __init__(self):
        self.jobs: dict[str, JobRecord] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.barriers: dict[str, asyncio.Event] = {}
        self.held: list[str] = []

    async def _hold(self, key: Optional[str]):
        barrier = self.barriers.get(key)
        if barrier is None:
            return
        self.held.append(key)
        await barrier.wait()

    async def create_job(self, job_id: str, total_count: int, batch_size: int, include_inactive: bool) -> None:
        await self._hold("create")
        self.jobs[job_id] = JobRecord(
            job_id=job_id,
            status=JobStatus.PENDING,
            total_clients=total_count,
            batch_size=batch_size,
            include_inactive=include_inactive,
        )

    async def update_job(self, job_id: str, **fields: Any) -> None:
        await self._hold(fields.get("status"))
        self.updates.append((job_id, fields))
        job = self.jobs.get(job_id)
        if job is not None and job.status not in TERMINAL_JOB_STATUSES:
            self.jobs[job_id] = replace(job, **fields)

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self.jobs.get(job_id)

    async def list_recent_jobs(self, limit: int = 10) -> list[JobRecord]:
        return list(reversed(self.jobs.values()))[:limit]


class FakeStateStore:
    def __init__(self, saved: Optional[SchedulerSettings] = None):
        self.saved = saved
        self.save_calls = 0
        # When set, save_state() blocks on it before the write lands
        self.gate: Optional[asyncio.Event] = None
        self.held = 0

    async def save_state(self, settings: SchedulerSettings) -> None:
        self.save_calls += 1
        if self.gate is not None:
            self.held += 1
            await self.gate.wait()
        self.saved = replace(settings)

    async def load_state(self) -> Optional[SchedulerSettings]:
        return replace(self.saved) if self.saved else None


class ScriptedGateway:
    """
    Answers payment submissions from a per-msisdn script.

    Each script entry is consumed in order: True for success, an ErrorKind for a
    classified failure, or an exception instance to raise. Unscripted attempts
    succeed on the primary endpoint.
    """

    def __init__(self, script: Optional[dict[str, list]] = None, gate: Optional[asyncio.Event] = None):
        self.script = {msisdn: list(steps) for msisdn, steps in (script or {}).items()}
        self.gate = gate
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def fail_always(self, msisdn: str, kind: ErrorKind = ErrorKind.SERVER_ERROR):
        self.script[msisdn] = [kind] * 100

    async def submit(self, client: Client):
        self.calls.append(client.msisdn)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            steps = self.script.get(client.msisdn)
            step = steps.pop(0) if steps else True
        finally:
            self.in_flight -= 1

        if isinstance(step, BaseException):
            raise step
        if step is True:
            return PaymentSuccess(
                endpoint=Endpoint.PRIMARY,
                latency_ms=5,
                status_code="200",
                description="Success",
                msisdn=client.msisdn,
            )
        return PaymentFailure(
            endpoint=Endpoint.FALLBACK,
            latency_ms=5,
            error_kind=step,
            message=f"simulated {step}",
            msisdn=client.msisdn,
        )


class EventRecorder:
    def __init__(self, bus: EventBus):
        self.events = []
        bus.subscribe(self.events.append)

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> list:
        return [e for e in self.events if e.name == name]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def engine(gateway):
    return DispatchEngine(gateway, batch_delay=0)


@pytest.fixture
def client_source():
    return FakeClientSource(make_clients(10))


@pytest.fixture
def job_store():
    return FakeJobStore()


@pytest.fixture
def state_store():
    return FakeStateStore()


@pytest.fixture
async def scheduler(engine, client_source, job_store, state_store, bus):
    service = PaymentScheduler(
        engine,
        client_source,
        job_store,
        state_store,
        bus,
        reconcile_interval=3600,
    )
    yield service
    await service.shutdown()


@pytest.fixture(name="make_clients")
def make_clients_fixture():
    return make_clients
