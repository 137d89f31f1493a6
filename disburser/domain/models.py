from dataclasses import dataclass, field, replace, asdict
from datetime import datetime
from typing import Optional, Any, Union

from disburser.domain.errors import SettingsValidationError
from disburser.domain.states import JobStatus, Endpoint, ErrorKind

MIN_INTERVAL_HOURS = 1
MAX_INTERVAL_HOURS = 12
MIN_BATCH_SIZE = 5
MAX_BATCH_SIZE = 100

@dataclass(frozen=True)
class Client:
    msisdn: str
    offer_code: str
    subscription_status: str = "A"

    @property
    def is_active(self) -> bool:
        return self.subscription_status == "A"

@dataclass
class RetryItem:
    client: Client
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt: Optional[datetime] = None

    @property
    def is_retry(self) -> bool:
        return self.retry_count > 0

@dataclass(frozen=True)
class PaymentSuccess:
    endpoint: Endpoint
    latency_ms: int
    status_code: str
    description: str
    msisdn: str
    is_retry: bool = False

    success = True

    def to_dict(self) -> dict[str, Any]:
        return {"success": True, **asdict(self)}

@dataclass(frozen=True)
class PaymentFailure:
    endpoint: Endpoint
    latency_ms: int
    error_kind: ErrorKind
    message: str
    msisdn: str
    is_retry: bool = False
    retry_count: int = 0
    will_retry: bool = False

    success = False

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, **asdict(self)}

Outcome = Union[PaymentSuccess, PaymentFailure]

@dataclass
class SchedulerSettings:
    interval_hours: int = 4
    batch_size: int = 75
    include_inactive: bool = False
    enabled: bool = False

    def validate(self) -> "SchedulerSettings":
        if not MIN_INTERVAL_HOURS <= self.interval_hours <= MAX_INTERVAL_HOURS:
            raise SettingsValidationError(
                f"Interval hours must be between {MIN_INTERVAL_HOURS} and {MAX_INTERVAL_HOURS}"
            )
        if not MIN_BATCH_SIZE <= self.batch_size <= MAX_BATCH_SIZE:
            raise SettingsValidationError(
                f"Batch size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}"
            )
        return self

    def merged(self, **changes: Any) -> "SchedulerSettings":
        """Returns a copy with the non-None changes applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

@dataclass
class RunningJob:
    job_id: str
    is_scheduled: bool
    batch_size: int
    include_inactive: bool
    status: JobStatus = JobStatus.RUNNING
    total_clients: int = 0
    start_time: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_time"] = self.start_time.isoformat()
        return data

@dataclass
class JobRecord:
    job_id: str
    status: JobStatus
    total_clients: int
    batch_size: int
    include_inactive: bool
    processed_clients: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    error_message: Optional[str] = None
    server_stats: Optional[dict[str, Any]] = None

@dataclass
class JobResult:
    job_id: str
    success: bool
    stats: Optional[dict[str, Any]] = None
    error: Optional[str] = None
