import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from disburser.api.v1.metrics import (
    BATCH_DURATION,
    PAYMENT_ERRORS,
    PAYMENT_LATENCY,
    PAYMENT_REQUESTS,
    PERMANENT_FAILURES,
    RETRIES_QUEUED,
)
from disburser.domain.errors import UpstreamUnavailableError
from disburser.domain.models import Client, Outcome, PaymentFailure, RetryItem
from disburser.domain.retry import MAX_RETRIES, can_retry, next_retry
from disburser.domain.states import EngineEvent, Endpoint, ErrorKind
from disburser.scheduler.stats import RunningStats, StatsSnapshot

logger = logging.getLogger(__name__)

Listener = Callable[[EngineEvent, dict[str, Any]], Awaitable[None]]

class Gateway(Protocol):
    async def submit(self, client: Client) -> Outcome: ...

async def _no_listener(event: EngineEvent, payload: dict[str, Any]) -> None:
    return None

def _take(queue: deque, limit: int) -> list:
    taken = []
    while queue and len(taken) < limit:
        taken.append(queue.popleft())
    return taken

class DispatchEngine:
    """
    Splits a client list into batches, sends each batch concurrently and
    feeds failed clients back in through a bounded retry queue.

    Batches run strictly one after another, so at most batch_size requests
    are in flight at any time.
    """

    def __init__(
        self,
        gateway: Gateway,
        batch_delay: float = 1.0,
        max_retries: int = MAX_RETRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.batch_delay = batch_delay
        self.max_retries = max_retries
        self.clock = clock
        self.stats = RunningStats(clock)

    def get_stats(self) -> StatsSnapshot:
        """Live view of the most recent run."""
        return self.stats.snapshot()

    async def run(
        self,
        clients: Iterable[Client],
        batch_size: int,
        job_id: str,
        listener: Optional[Listener] = None,
    ) -> list[Outcome]:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        emit = listener or _no_listener
        # Fresh counters per run: an orphaned run from a stopped job keeps its own.
        stats = RunningStats(self.clock)
        self.stats = stats

        fresh: deque[RetryItem] = deque(RetryItem(client=client) for client in clients)
        retry_queue: deque[RetryItem] = deque()
        total_clients = len(fresh)
        outcomes: list[Outcome] = []
        batch_index = 0
        processed = 0

        logger.info(f"Job {job_id}: processing {total_clients} clients with batch size {batch_size}")
        logger.info(f"Retry policy: max {self.max_retries} retries per client")

        await emit(EngineEvent.PROCESSING_STARTED, {
            "job_id": job_id,
            "total_clients": total_clients,
            "total_batches": math.ceil(total_clients / batch_size),
            "batch_size": batch_size,
        })

        while fresh or retry_queue:
            # Retries go first so a failing client is not starved by fresh ones
            batch = _take(retry_queue, batch_size)
            retry_count = len(batch)
            batch.extend(_take(fresh, batch_size - retry_count))
            if not batch:
                break

            batch_index += 1
            remaining = len(fresh) + len(retry_queue)
            logger.info(
                f"Processing batch {batch_index} - {len(batch)} clients ({retry_count} retries)"
            )
            await emit(EngineEvent.BATCH_STARTED, {
                "job_id": job_id,
                "batch_index": batch_index,
                "total_batches": batch_index + math.ceil(remaining / batch_size),
                "batch_size": len(batch),
                "retry_count": retry_count,
                "fresh_count": len(batch) - retry_count,
            })

            started = self.clock()
            batch_outcomes = await self._dispatch_batch(batch, retry_queue, stats)
            BATCH_DURATION.observe(self.clock() - started)

            outcomes.extend(batch_outcomes)
            processed += len(batch) - retry_count
            successful = sum(1 for outcome in batch_outcomes if outcome.success)
            failed = len(batch_outcomes) - successful

            logger.info(f"Batch {batch_index} completed - Success: {successful}, Failed: {failed}")
            if retry_queue:
                logger.info(f"{len(retry_queue)} clients queued for retry")

            await emit(EngineEvent.BATCH_COMPLETED, {
                "job_id": job_id,
                "batch_index": batch_index,
                "total_batches": batch_index + math.ceil((len(fresh) + len(retry_queue)) / batch_size),
                "batch_size": len(batch),
                "successful_in_batch": successful,
                "failed_in_batch": failed,
                "retry_count": retry_count,
                "queued_for_retry": len(retry_queue),
                "processed_clients": processed,
                "results": [outcome.to_dict() for outcome in batch_outcomes],
                "stats": stats.snapshot().to_dict(),
            })

            if (fresh or retry_queue) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        final = stats.snapshot()
        logger.info(
            f"Job {job_id}: {total_clients} clients processed - {final.successful} successful, "
            f"{final.retried} retried, {final.permanent_failures} permanent failures"
        )
        if final.permanent_failures:
            logger.warning(
                f"{final.permanent_failures} clients failed permanently after {self.max_retries} retries"
            )

        await emit(EngineEvent.PROCESSING_COMPLETED, {
            "job_id": job_id,
            "total_clients": total_clients,
            "results": [outcome.to_dict() for outcome in outcomes],
            "stats": final.to_dict(),
        })
        return outcomes

    async def _dispatch_batch(
        self,
        batch: list[RetryItem],
        retry_queue: deque,
        stats: RunningStats,
    ) -> list[Outcome]:
        # All-settled: every request finishes (or fails) before we look at results
        results = await asyncio.gather(
            *(self.gateway.submit(item.client) for item in batch),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, UpstreamUnavailableError):
                raise result
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        outcomes = []
        for item, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.error(f"Unexpected error dispatching {item.client.msisdn}: {result!r}")
                result = PaymentFailure(
                    endpoint=Endpoint.UNKNOWN,
                    latency_ms=0,
                    error_kind=ErrorKind.OTHER,
                    message=str(result) or type(result).__name__,
                    msisdn=item.client.msisdn,
                )

            outcome = replace(result, is_retry=item.is_retry)
            if not outcome.success:
                will_retry = can_retry(item, self.max_retries)
                outcome = replace(outcome, retry_count=item.retry_count, will_retry=will_retry)
                if will_retry:
                    retry_queue.append(next_retry(item, outcome.message))
                    RETRIES_QUEUED.inc()
                    logger.warning(
                        f"{item.client.msisdn} added to retry queue "
                        f"(attempt {item.retry_count + 1}/{self.max_retries})"
                    )
                else:
                    PERMANENT_FAILURES.inc()
                    logger.error(f"{item.client.msisdn} failed permanently after {self.max_retries} retries")

            stats.record(outcome)
            self._observe(outcome)
            outcomes.append(outcome)

        return outcomes

    @staticmethod
    def _observe(outcome: Outcome):
        PAYMENT_REQUESTS.labels(
            endpoint=outcome.endpoint.value,
            result="success" if outcome.success else "failure",
        ).inc()
        if outcome.endpoint != Endpoint.UNKNOWN:
            PAYMENT_LATENCY.labels(endpoint=outcome.endpoint.value).observe(outcome.latency_ms / 1000)
        if not outcome.success:
            PAYMENT_ERRORS.labels(error_kind=outcome.error_kind.value).inc()
