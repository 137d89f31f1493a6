"""Unit tests for the SQLAlchemy stores, without a live database."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from disburser.db.models import ClientRow, SchedulerStateRow
from disburser.domain.models import SchedulerSettings
from disburser.stores.clients import SqlClientSource
from disburser.stores.jobs import SqlJobStore
from disburser.stores.state import SqlSchedulerStateStore


class RecordingSession:
    def __init__(self, result=None):
        self.result = result
        self.executed = []
        self.added = []
        self.commits = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, stmt):
        self.executed.append(stmt)
        return self.result

    def add(self, obj):
        self.added.append(obj)

    async def commit(self):
        self.commits += 1


def compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


@pytest.mark.asyncio
async def test_list_clients_filters_active_only():
    result = MagicMock()
    result.scalars.return_value.all.return_value = [
        ClientRow(msisdn="254700000001", offer_code="OFFER1", subscription_status="A")
    ]
    session = RecordingSession(result)
    source = SqlClientSource(session_factory=lambda: session)

    clients = await source.list_clients()

    assert [c.msisdn for c in clients] == ["254700000001"]
    sql = compiled(session.executed[0])
    assert "clients.subscription_status IN" in sql
    assert "clients.msisdn ~" in sql
    assert "ORDER BY random()" in sql
    assert session.executed[0].compile().params["subscription_status_1"] == ["A"]


@pytest.mark.asyncio
async def test_list_clients_can_include_inactive():
    result = MagicMock()
    result.scalars.return_value.all.return_value = []
    session = RecordingSession(result)
    source = SqlClientSource(session_factory=lambda: session)

    await source.list_clients(include_inactive=True)

    assert session.executed[0].compile().params["subscription_status_1"] == ["A", "I"]


@pytest.mark.asyncio
async def test_client_stats_counts_by_status():
    result = MagicMock()
    result.all.return_value = [("A", 7), ("I", 2)]
    source = SqlClientSource(session_factory=lambda: RecordingSession(result))

    assert await source.client_stats() == {"total": 9, "active": 7, "inactive": 2}


@pytest.mark.asyncio
async def test_update_job_rejects_unknown_fields():
    factory = MagicMock()
    store = SqlJobStore(session_factory=factory)

    with pytest.raises(ValueError, match="job_id"):
        await store.update_job("job-1", job_id="other")

    await store.update_job("job-1")
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_update_job_skips_finished_rows():
    session = RecordingSession()
    store = SqlJobStore(session_factory=lambda: session)

    await store.update_job("job-1", status="failed", error_message="Job stopped by user")

    stmt = session.executed[0]
    sql = compiled(stmt)
    assert "WHERE processing_jobs.job_id =" in sql
    assert "processing_jobs.status NOT IN" in sql
    assert session.commits == 1


@pytest.mark.asyncio
async def test_create_job_starts_pending():
    session = RecordingSession()
    store = SqlJobStore(session_factory=lambda: session)

    await store.create_job("job-1", total_count=12, batch_size=5, include_inactive=True)

    row = session.added[0]
    assert row.job_id == "job-1"
    assert row.status == "pending"
    assert row.total_clients == 12
    assert session.commits == 1


@pytest.mark.asyncio
async def test_save_state_upserts_singleton_row():
    session = RecordingSession()
    store = SqlSchedulerStateStore(session_factory=lambda: session)

    await store.save_state(SchedulerSettings(interval_hours=6, batch_size=40, enabled=True))

    sql = compiled(session.executed[0])
    assert sql.startswith("INSERT INTO scheduler_state")
    assert "ON CONFLICT (id) DO UPDATE" in sql
    assert session.commits == 1


@pytest.mark.asyncio
async def test_load_state_round_trip():
    result = MagicMock()
    result.scalar_one_or_none.return_value = SchedulerStateRow(
        id=1, enabled=True, interval_hours=6, batch_size=40, include_inactive=False
    )
    store = SqlSchedulerStateStore(session_factory=lambda: RecordingSession(result))

    assert await store.load_state() == SchedulerSettings(interval_hours=6, batch_size=40, enabled=True)


@pytest.mark.asyncio
async def test_load_state_missing_row():
    result = MagicMock()
    result.scalar_one_or_none.return_value = None
    store = SqlSchedulerStateStore(session_factory=lambda: RecordingSession(result))

    assert await store.load_state() is None
