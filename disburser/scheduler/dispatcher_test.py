"""Unit tests for the batch dispatch engine."""

import pytest

from disburser.domain.errors import UpstreamUnavailableError
from disburser.domain.retry import MAX_RETRIES
from disburser.domain.states import EngineEvent, Endpoint, ErrorKind
from disburser.scheduler.dispatcher import DispatchEngine


class Collector:
    def __init__(self):
        self.events = []

    async def __call__(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [event for event, _ in self.events]

    def of(self, event):
        return [payload for name, payload in self.events if name == event]


@pytest.mark.asyncio
async def test_zero_clients_emits_start_and_complete_only(engine, gateway):
    """Test an empty client list runs no batches and reports zero stats."""
    listener = Collector()

    outcomes = await engine.run([], batch_size=5, job_id="job-empty", listener=listener)

    assert outcomes == []
    assert listener.names() == [EngineEvent.PROCESSING_STARTED, EngineEvent.PROCESSING_COMPLETED]
    assert listener.of(EngineEvent.PROCESSING_STARTED)[0]["total_batches"] == 0
    stats = listener.of(EngineEvent.PROCESSING_COMPLETED)[0]["stats"]
    assert stats["total_requests"] == 0
    assert stats["successful"] == 0
    assert stats["failed"] == 0
    assert stats["permanent_failures"] == 0
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_clients_split_into_batches(engine, gateway, make_clients):
    """Test 10 clients with batch size 4 go out as 4, 4, 2."""
    listener = Collector()

    outcomes = await engine.run(make_clients(10), batch_size=4, job_id="job-b", listener=listener)

    assert [p["batch_size"] for p in listener.of(EngineEvent.BATCH_STARTED)] == [4, 4, 2]
    assert len(outcomes) == 10
    assert gateway.max_in_flight <= 4

    final = listener.of(EngineEvent.PROCESSING_COMPLETED)[0]["stats"]
    assert final["successful"] == 10
    assert final["failed"] == 0
    assert final["retried"] == 0
    assert final["success_rate"] == 100.0
    assert listener.of(EngineEvent.BATCH_COMPLETED)[-1]["processed_clients"] == 10


@pytest.mark.asyncio
async def test_failed_clients_succeed_on_retry(engine, gateway, make_clients):
    """Test clients failing once are retried in the next batch and recover."""
    clients = make_clients(5)
    for client in clients:
        gateway.script[client.msisdn] = [ErrorKind.SERVER_ERROR, True]
    listener = Collector()

    outcomes = await engine.run(clients, batch_size=5, job_id="job-c", listener=listener)

    batches = listener.of(EngineEvent.BATCH_STARTED)
    assert len(batches) == 2
    assert batches[1]["retry_count"] == 5
    assert batches[1]["fresh_count"] == 0

    assert len(outcomes) == 10
    assert all(o.will_retry for o in outcomes[:5])
    assert all(o.success and o.is_retry for o in outcomes[5:])

    stats = engine.get_stats()
    assert stats.successful == 5
    assert stats.failed == 5
    assert stats.retried == 5
    assert stats.retry_successes == 5
    assert stats.permanent_failures == 0


@pytest.mark.asyncio
async def test_retry_cap_limits_attempts(engine, gateway, make_clients):
    """Test a client that always fails is attempted exactly MAX_RETRIES + 1 times."""
    client = make_clients(1)[0]
    gateway.fail_always(client.msisdn, ErrorKind.TIMEOUT)

    outcomes = await engine.run([client], batch_size=5, job_id="job-cap")

    assert gateway.calls.count(client.msisdn) == MAX_RETRIES + 1
    assert len(outcomes) == MAX_RETRIES + 1
    assert outcomes[-1].will_retry is False
    assert outcomes[-1].retry_count == MAX_RETRIES

    stats = engine.get_stats()
    assert stats.failed == MAX_RETRIES + 1
    assert stats.retried == MAX_RETRIES
    assert stats.permanent_failures == 1
    assert stats.errors["timeout"] == MAX_RETRIES + 1


@pytest.mark.asyncio
async def test_retries_are_sent_before_fresh_clients(engine, gateway, make_clients):
    """Test queued retries take the front of the next batch."""
    clients = make_clients(6)
    gateway.script[clients[0].msisdn] = [ErrorKind.CONNECTION, True]
    listener = Collector()

    await engine.run(clients, batch_size=5, job_id="job-order", listener=listener)

    # Batch 1: clients 0-4, batch 2: retry of client 0 then fresh client 5
    assert gateway.calls[5] == clients[0].msisdn
    assert gateway.calls[6] == clients[5].msisdn
    second = listener.of(EngineEvent.BATCH_STARTED)[1]
    assert second["retry_count"] == 1
    assert second["fresh_count"] == 1


@pytest.mark.asyncio
async def test_attempt_accounting_is_consistent(engine, gateway, make_clients):
    """Test every attempt is counted once as success or failure."""
    clients = make_clients(12)
    gateway.script[clients[0].msisdn] = [ErrorKind.SERVER_ERROR, ErrorKind.SERVER_ERROR, True]
    gateway.script[clients[1].msisdn] = [ErrorKind.AUTH_ERROR, True]
    gateway.fail_always(clients[2].msisdn)
    listener = Collector()

    outcomes = await engine.run(clients, batch_size=5, job_id="job-acct", listener=listener)

    stats = engine.get_stats()
    attempted = sum(p["batch_size"] for p in listener.of(EngineEvent.BATCH_STARTED))
    assert stats.total_requests == attempted == len(outcomes)
    assert stats.total_requests == stats.successful + stats.failed
    assert stats.successful == 11
    assert stats.permanent_failures == 1
    assert stats.permanent_failures >= 0


@pytest.mark.asyncio
async def test_upstream_unavailable_aborts_run(engine, gateway, make_clients):
    """Test a missing token is a job-level failure, not a per-client one."""
    clients = make_clients(3)
    gateway.script[clients[1].msisdn] = [UpstreamUnavailableError("Authentication failed: 503")]

    with pytest.raises(UpstreamUnavailableError):
        await engine.run(clients, batch_size=5, job_id="job-auth")


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_retryable_failure(engine, gateway, make_clients):
    """Test an unclassified exception is recorded as an OTHER failure and retried."""
    client = make_clients(1)[0]
    gateway.script[client.msisdn] = [RuntimeError("boom"), True]

    outcomes = await engine.run([client], batch_size=5, job_id="job-other")

    first = outcomes[0]
    assert first.success is False
    assert first.error_kind == ErrorKind.OTHER
    assert first.endpoint == Endpoint.UNKNOWN
    assert first.message == "boom"
    assert first.will_retry is True
    assert outcomes[1].success is True


@pytest.mark.asyncio
async def test_listener_error_stops_run(engine, gateway, make_clients):
    """Test an exception raised by the listener propagates before the batch is sent."""

    async def listener(event, payload):
        if event == EngineEvent.BATCH_STARTED:
            raise RuntimeError("listener failed")

    with pytest.raises(RuntimeError, match="listener failed"):
        await engine.run(make_clients(3), batch_size=5, job_id="job-listener", listener=listener)

    assert gateway.calls == []


@pytest.mark.asyncio
async def test_batch_size_must_be_positive(gateway, make_clients):
    """Test a zero batch size is rejected."""
    engine = DispatchEngine(gateway, batch_delay=0)

    with pytest.raises(ValueError):
        await engine.run(make_clients(1), batch_size=0, job_id="job-zero")


@pytest.mark.asyncio
async def test_each_run_gets_fresh_stats(engine, make_clients):
    """Test stats do not leak from one run into the next."""
    await engine.run(make_clients(4), batch_size=5, job_id="job-1")
    await engine.run(make_clients(2), batch_size=5, job_id="job-2")

    assert engine.get_stats().total_requests == 2
