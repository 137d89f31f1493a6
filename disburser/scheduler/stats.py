import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable

from disburser.domain.models import Outcome
from disburser.domain.states import Endpoint, ErrorKind

def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole > 0 else 0.0

@dataclass
class StatsSnapshot:
    total_requests: int = 0
    successful: int = 0
    failed: int = 0
    retried: int = 0
    retry_successes: int = 0
    primary_requests: int = 0
    fallback_requests: int = 0
    primary_success: int = 0
    fallback_success: int = 0
    duration_ms: int = 0
    rate: float = 0.0
    success_rate: float = 0.0
    primary_success_rate: float = 0.0
    fallback_success_rate: float = 0.0
    permanent_failures: int = 0
    errors: dict[str, int] = field(default_factory=lambda: {kind.value: 0 for kind in ErrorKind})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

class RunningStats:
    """
    Aggregate counters for one dispatch run.

    failed counts failed attempts and retried counts the failed attempts that
    were queued again, so failed - retried is the number of clients that
    exhausted their retry budget.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.reset()

    def reset(self):
        self.started_at = self.clock()
        self.total_requests = 0
        self.successful = 0
        self.failed = 0
        self.retried = 0
        self.retry_successes = 0
        self.requests = {Endpoint.PRIMARY: 0, Endpoint.FALLBACK: 0}
        self.successes = {Endpoint.PRIMARY: 0, Endpoint.FALLBACK: 0}
        self.errors = {kind: 0 for kind in ErrorKind}

    def record(self, outcome: Outcome):
        self.total_requests += 1
        if outcome.endpoint in self.requests:
            self.requests[outcome.endpoint] += 1

        if outcome.success:
            self.successful += 1
            if outcome.is_retry:
                self.retry_successes += 1
            if outcome.endpoint in self.successes:
                self.successes[outcome.endpoint] += 1
        else:
            self.failed += 1
            self.errors[outcome.error_kind] += 1
            if outcome.will_retry:
                self.retried += 1

    def snapshot(self) -> StatsSnapshot:
        duration_ms = max(int((self.clock() - self.started_at) * 1000), 1)
        permanent_failures = self.failed - self.retried
        assert permanent_failures >= 0, "retried can never exceed failed"

        primary = self.requests[Endpoint.PRIMARY]
        fallback = self.requests[Endpoint.FALLBACK]
        return StatsSnapshot(
            total_requests=self.total_requests,
            successful=self.successful,
            failed=self.failed,
            retried=self.retried,
            retry_successes=self.retry_successes,
            primary_requests=primary,
            fallback_requests=fallback,
            primary_success=self.successes[Endpoint.PRIMARY],
            fallback_success=self.successes[Endpoint.FALLBACK],
            duration_ms=duration_ms,
            rate=round(self.total_requests / (duration_ms / 1000), 1) if self.total_requests else 0.0,
            success_rate=_pct(self.successful, self.total_requests),
            primary_success_rate=_pct(self.successes[Endpoint.PRIMARY], primary),
            fallback_success_rate=_pct(self.successes[Endpoint.FALLBACK], fallback),
            permanent_failures=permanent_failures,
            errors={kind.value: count for kind, count in self.errors.items()},
        )
