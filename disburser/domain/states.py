from enum import StrEnum, auto

class JobStatus(StrEnum):
    PENDING = auto()     # Row created, dispatch not started
    RUNNING = auto()     # Dispatch engine working through batches
    COMPLETED = auto()   # All batches settled
    FAILED = auto()      # Aborted by an infrastructure error or stopped by user

TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)

class SchedulerState(StrEnum):
    STOPPED = auto()
    SCHEDULED_IDLE = auto()
    SCHEDULED_RUNNING = auto()
    MANUAL_RUNNING = auto()

class Endpoint(StrEnum):
    PRIMARY = auto()
    FALLBACK = auto()
    UNKNOWN = auto()     # Dispatch blew up before an endpoint could be reported

class ErrorKind(StrEnum):
    TIMEOUT = auto()
    CONNECTION = auto()
    SERVER_ERROR = auto()
    AUTH_ERROR = auto()
    OTHER = auto()

class EngineEvent(StrEnum):
    PROCESSING_STARTED = auto()
    BATCH_STARTED = auto()
    BATCH_COMPLETED = auto()
    PROCESSING_COMPLETED = auto()

class SchedulerEvent(StrEnum):
    JOB_STARTED = auto()
    BATCH_STARTED = auto()
    BATCH_COMPLETED = auto()
    JOB_COMPLETED = auto()
    JOB_FAILED = auto()
    JOB_SKIPPED = auto()
    SCHEDULER_STARTED = auto()
    SCHEDULER_STOPPED = auto()
    SETTINGS_UPDATED = auto()
