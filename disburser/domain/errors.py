class DisburserError(Exception):
    """Base exception for disbursement scheduler errors."""
    pass

class SettingsValidationError(DisburserError):
    pass

class SchedulerAlreadyRunningError(DisburserError):
    def __init__(self):
        super().__init__("Scheduler is already running")

class JobAlreadyRunningError(DisburserError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} is already running")
        self.job_id = job_id

class JobNotFoundError(DisburserError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class JobStoppedError(DisburserError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} was stopped")

class UpstreamUnavailableError(DisburserError):
    """Raised when the payment gateway cannot be used at all (e.g. no token)."""
    pass
