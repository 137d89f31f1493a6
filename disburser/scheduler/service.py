import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from disburser.api.v1.metrics import JOBS_FINISHED, JOBS_RUNNING, JOBS_SKIPPED, SCHEDULER_ENABLED
from disburser.domain.errors import (
    JobAlreadyRunningError,
    JobStoppedError,
    SchedulerAlreadyRunningError,
    SettingsValidationError,
)
from disburser.domain.models import JobResult, RunningJob, SchedulerSettings
from disburser.domain.states import TERMINAL_JOB_STATUSES, EngineEvent, JobStatus, SchedulerEvent, SchedulerState
from disburser.scheduler.dispatcher import DispatchEngine
from disburser.scheduler.slots import cron_expression, next_run_time, next_run_times
from disburser.services.events import EventBus
from disburser.stores.base import ClientSource, JobStore, SchedulerStateStore

logger = logging.getLogger(__name__)

STOPPED_BY_USER = "Job stopped by user"
SHUT_DOWN = "Scheduler shut down while job was running"
SKIP_REASON = "Previous job still running"

class PaymentScheduler:
    """
    Owns the recurring disbursement timer and single-flight job execution.

    Constructed once by the application lifespan; call initialize() to
    restore a persisted schedule and start the reconciliation loop, and
    shutdown() on exit.
    """

    def __init__(
        self,
        engine: DispatchEngine,
        client_source: ClientSource,
        job_store: JobStore,
        state_store: SchedulerStateStore,
        events: EventBus,
        defaults: Optional[SchedulerSettings] = None,
        tz: tzinfo = timezone.utc,
        reconcile_interval: float = 5.0,
        upcoming_count: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.client_source = client_source
        self.job_store = job_store
        self.state_store = state_store
        self.events = events
        self.settings = replace(defaults or SchedulerSettings(), enabled=False)
        self.tz = tz
        self.reconcile_interval = reconcile_interval
        self.upcoming_count = upcoming_count
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._sleep = sleep

        self.current_job: Optional[RunningJob] = None
        self.running_jobs: dict[str, RunningJob] = {}
        self._timer_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._job_tasks: set[asyncio.Task] = set()
        # Serialises persisted-state writes against reconcile()
        self._state_lock = asyncio.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self):
        if self._initialized:
            return

        logger.info("Initializing scheduler service...")
        try:
            saved = await self.state_store.load_state()
        except Exception as e:
            logger.error(f"Failed to load scheduler state: {e}", exc_info=True)
            saved = None

        if saved and saved.enabled:
            try:
                saved.validate()
            except SettingsValidationError as e:
                logger.error(f"Persisted scheduler settings are invalid, not resuming: {e}")
            else:
                self.settings = saved
                self._arm()
                logger.info(
                    f"Restored scheduler state: every {saved.interval_hours} hours, batch size {saved.batch_size}"
                )
                await self.events.publish(SchedulerEvent.SCHEDULER_STARTED, self._schedule_payload())
        else:
            logger.info("No previous scheduler state found - scheduler is inactive")

        self._reconcile_task = asyncio.create_task(self._reconcile_loop())
        self._initialized = True

    async def shutdown(self):
        """Stops background tasks without touching the persisted state."""
        tasks = [task for task in (self._reconcile_task, self._timer_task) if task]
        tasks.extend(self._job_tasks)
        self._reconcile_task = None
        self._timer_task = None
        SCHEDULER_ENABLED.set(0)

        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._initialized = False
        logger.info("Scheduler service stopped.")

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    @property
    def is_armed(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def state(self) -> SchedulerState:
        if self.is_armed:
            return SchedulerState.SCHEDULED_RUNNING if self.current_job else SchedulerState.SCHEDULED_IDLE
        return SchedulerState.MANUAL_RUNNING if self.current_job else SchedulerState.STOPPED

    async def start(
        self,
        interval_hours: Optional[int] = None,
        batch_size: Optional[int] = None,
        include_inactive: Optional[bool] = None,
    ) -> dict[str, Any]:
        """
        Validates and persists the settings, then (re)arms the timer.

        Raises SchedulerAlreadyRunningError if the timer is armed and a job is
        in flight; with no job in flight the timer is re-armed instead.
        """
        if self.is_armed and self.current_job is not None:
            raise SchedulerAlreadyRunningError()

        async with self._state_lock:
            candidate = self.settings.merged(
                interval_hours=interval_hours,
                batch_size=batch_size,
                include_inactive=include_inactive,
            ).validate()
            candidate = replace(candidate, enabled=True)

            await self.state_store.save_state(candidate)
            logger.info("Scheduler state saved to database")
            self.settings = candidate
            self._arm()

        payload = self._schedule_payload()
        logger.info(f"Scheduler started - runs every {candidate.interval_hours} hours, next run {payload['next_run']}")
        await self.events.publish(SchedulerEvent.SCHEDULER_STARTED, payload)
        return payload

    async def stop(self) -> dict[str, Any]:
        async with self._state_lock:
            if not self.is_armed and not self.settings.enabled:
                logger.info("Scheduler already stopped")
                return self.settings.to_dict()

            stopped = replace(self.settings, enabled=False)
            await self.state_store.save_state(stopped)
            self._disarm()
            self.settings = stopped
        logger.info("Scheduler stopped and disabled state saved")

        await self.events.publish(SchedulerEvent.SCHEDULER_STOPPED, self.settings.to_dict())
        return self.settings.to_dict()

    async def stop_all(self) -> list[str]:
        """
        Disarms the timer and marks every tracked job as failed.

        In-flight requests are not interrupted; the orphaned run stops at its
        next batch boundary and its results are discarded.
        """
        logger.info("Stopping all running jobs...")
        async with self._state_lock:
            self._disarm()
            self.settings = replace(self.settings, enabled=False)

            # Jobs already writing their final status are left to finish
            stopped = [job for job in self.running_jobs.values() if job.status not in TERMINAL_JOB_STATUSES]
            for job in stopped:
                job.status = JobStatus.FAILED
                self._untrack(job)

            await self.state_store.save_state(self.settings)

        for job in stopped:
            try:
                await self.job_store.update_job(
                    job.job_id,
                    status=JobStatus.FAILED,
                    completed_at=self._clock(),
                    error_message=STOPPED_BY_USER,
                )
            except Exception as e:
                logger.error(f"Failed to update stopped job {job.job_id}: {e}")
            JOBS_FINISHED.labels(status="failed", trigger=self._trigger(job)).inc()
            await self.events.publish(
                SchedulerEvent.JOB_FAILED,
                {"job_id": job.job_id, "error": STOPPED_BY_USER, "is_scheduled": job.is_scheduled},
                job_id=job.job_id,
            )

        await self.events.publish(SchedulerEvent.SCHEDULER_STOPPED, self.settings.to_dict())
        logger.info(f"All jobs stopped ({len(stopped)} marked failed)")
        return [job.job_id for job in stopped]

    async def update_settings(
        self,
        interval_hours: Optional[int] = None,
        batch_size: Optional[int] = None,
        include_inactive: Optional[bool] = None,
    ) -> dict[str, Any]:
        async with self._state_lock:
            candidate = self.settings.merged(
                interval_hours=interval_hours,
                batch_size=batch_size,
                include_inactive=include_inactive,
            ).validate()

            await self.state_store.save_state(candidate)
            self.settings = candidate
            logger.info("Settings updated and saved to database")

            if candidate.enabled:
                self._arm()

        await self.events.publish(SchedulerEvent.SETTINGS_UPDATED, candidate.to_dict())
        return self._schedule_payload()

    async def run_manual(
        self,
        batch_size: Optional[int] = None,
        include_inactive: Optional[bool] = None,
    ) -> JobResult:
        """Runs one job now and waits for it to finish."""
        job = self._claim_manual(batch_size, include_inactive)
        return await self._execute_job(job)

    def launch_manual(
        self,
        batch_size: Optional[int] = None,
        include_inactive: Optional[bool] = None,
    ) -> RunningJob:
        """Claims the job slot now and runs the job in the background."""
        job = self._claim_manual(batch_size, include_inactive)
        self._spawn(self._execute_job(job))
        return job

    async def fire(self) -> Optional[asyncio.Task]:
        """Timer callback: starts a scheduled job unless one is still running."""
        if self.current_job is not None:
            logger.warning(f"{SKIP_REASON} ({self.current_job.job_id}), skipping this execution")
            JOBS_SKIPPED.inc()
            await self.events.publish(
                SchedulerEvent.JOB_SKIPPED,
                {
                    "reason": SKIP_REASON,
                    "running_job_id": self.current_job.job_id,
                    "timestamp": self._clock().isoformat(),
                },
            )
            return None

        job = RunningJob(
            job_id=str(uuid4()),
            is_scheduled=True,
            batch_size=self.settings.batch_size,
            include_inactive=self.settings.include_inactive,
            start_time=self._clock(),
        )
        self._track(job)
        return self._spawn(self._execute_job(job))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def upcoming_runs(self, count: Optional[int] = None) -> list[datetime]:
        if not self.is_armed:
            return []
        return next_run_times(self.settings.interval_hours, self._clock(), count or self.upcoming_count)

    async def reconcile(self):
        """Brings the in-memory timer in line with the persisted enabled flag."""
        async with self._state_lock:
            await self._apply_persisted_state()

    async def _apply_persisted_state(self):
        saved = await self.state_store.load_state()
        if saved is None:
            return

        if saved.enabled and not self.is_armed:
            try:
                saved.validate()
            except SettingsValidationError as e:
                logger.error(f"Cannot resume from persisted settings: {e}")
                return
            logger.info("Syncing scheduler state - DB: enabled, memory: disabled")
            self.settings = saved
            self._arm()
        elif not saved.enabled and self.is_armed:
            logger.info("Syncing scheduler state - DB: disabled, memory: enabled")
            self._disarm()
            self.settings = replace(self.settings, enabled=False)
        elif saved.enabled and saved != self.settings:
            try:
                saved.validate()
            except SettingsValidationError as e:
                logger.error(f"Ignoring invalid persisted settings: {e}")
                return
            logger.info("Syncing scheduler settings from DB")
            rearm = saved.interval_hours != self.settings.interval_hours
            self.settings = saved
            if rearm:
                self._arm()
        else:
            self.settings = replace(self.settings, enabled=saved.enabled)

    async def get_status(self) -> dict[str, Any]:
        try:
            await self.reconcile()
        except Exception as e:
            logger.error(f"Error reconciling scheduler status: {e}")

        upcoming = self.upcoming_runs()
        return {
            "enabled": self.settings.enabled,
            "armed": self.is_armed,
            "state": self.state.value,
            "settings": self.settings.to_dict(),
            "cron_expression": cron_expression(self.settings.interval_hours) if self.is_armed else None,
            "current_job": self.current_job.to_dict() if self.current_job else None,
            "running_jobs": [job.to_dict() for job in self.running_jobs.values()],
            "next_run": upcoming[0].isoformat() if upcoming else None,
            "upcoming_schedules": [run.isoformat() for run in upcoming],
            "live_stats": self.engine.get_stats().to_dict() if self.current_job else None,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule_payload(self) -> dict[str, Any]:
        upcoming = self.upcoming_runs()
        return {
            "settings": self.settings.to_dict(),
            "cron_expression": cron_expression(self.settings.interval_hours),
            "next_run": upcoming[0].isoformat() if upcoming else None,
            "upcoming_schedules": [run.isoformat() for run in upcoming],
        }

    def _arm(self):
        self._disarm()
        self._timer_task = asyncio.create_task(self._timer_loop(self.settings.interval_hours))
        SCHEDULER_ENABLED.set(1)
        logger.info(f"Timer armed with cron expression: {cron_expression(self.settings.interval_hours)}")

    def _disarm(self):
        if self._timer_task:
            self._timer_task.cancel()
            self._timer_task = None
            logger.info("Scheduled task stopped")
        SCHEDULER_ENABLED.set(0)

    async def _timer_loop(self, interval_hours: int):
        while True:
            next_run = next_run_time(interval_hours, self._clock())
            # sleep() may wake a little early; never fire before the slot
            remaining = (next_run - self._clock()).total_seconds()
            while remaining > 0:
                await self._sleep(remaining)
                remaining = (next_run - self._clock()).total_seconds()

            logger.info("Scheduled job triggered by timer")
            try:
                await self.fire()
            except Exception as e:
                logger.error(f"Error in scheduler timer: {e}", exc_info=True)

    async def _reconcile_loop(self):
        while True:
            await self._sleep(self.reconcile_interval)
            try:
                await self.reconcile()
            except Exception as e:
                logger.error(f"Status verification error: {e}")

    def _claim_manual(self, batch_size: Optional[int], include_inactive: Optional[bool]) -> RunningJob:
        if self.current_job is not None:
            raise JobAlreadyRunningError(self.current_job.job_id)

        job_settings = self.settings.merged(batch_size=batch_size, include_inactive=include_inactive).validate()
        job = RunningJob(
            job_id=str(uuid4()),
            is_scheduled=False,
            batch_size=job_settings.batch_size,
            include_inactive=job_settings.include_inactive,
            start_time=self._clock(),
        )
        self._track(job)
        return job

    def _track(self, job: RunningJob):
        self.running_jobs[job.job_id] = job
        self.current_job = job
        JOBS_RUNNING.set(len(self.running_jobs))

    def _untrack(self, job: RunningJob):
        self.running_jobs.pop(job.job_id, None)
        if self.current_job is job:
            self.current_job = None
        JOBS_RUNNING.set(len(self.running_jobs))

    def _ensure_tracked(self, job: RunningJob):
        if job.job_id not in self.running_jobs:
            raise JobStoppedError(job.job_id)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._job_tasks.add(task)
        task.add_done_callback(self._job_tasks.discard)
        return task

    @staticmethod
    def _trigger(job: RunningJob) -> str:
        return "scheduled" if job.is_scheduled else "manual"

    async def _execute_job(self, job: RunningJob) -> JobResult:
        trigger = self._trigger(job)
        try:
            logger.info(f"Starting {trigger} job: {job.job_id}")
            clients = await self.client_source.list_clients(job.include_inactive)
            self._ensure_tracked(job)
            job.total_clients = len(clients)
            if not clients:
                logger.warning("No clients found for processing")

            await self.job_store.create_job(job.job_id, len(clients), job.batch_size, job.include_inactive)
            self._ensure_tracked(job)
            await self.job_store.update_job(job.job_id, status=JobStatus.RUNNING, started_at=self._clock())
            self._ensure_tracked(job)
            logger.info(f"Job created in database: {job.job_id} ({len(clients)} clients)")

            await self.events.publish(
                SchedulerEvent.JOB_STARTED,
                {
                    "job_id": job.job_id,
                    "total_clients": len(clients),
                    "batch_size": job.batch_size,
                    "include_inactive": job.include_inactive,
                    "is_scheduled": job.is_scheduled,
                },
                job_id=job.job_id,
            )

            final_stats: dict[str, Any] = {}

            async def on_engine_event(event: EngineEvent, payload: dict[str, Any]):
                if event == EngineEvent.BATCH_STARTED:
                    self._ensure_tracked(job)
                    await self.events.publish(
                        SchedulerEvent.BATCH_STARTED,
                        {**payload, "is_scheduled": job.is_scheduled},
                        job_id=job.job_id,
                    )
                elif event == EngineEvent.BATCH_COMPLETED:
                    self._ensure_tracked(job)
                    await self.job_store.update_job(
                        job.job_id,
                        processed_clients=payload["processed_clients"],
                        successful_requests=payload["stats"]["successful"],
                        failed_requests=payload["stats"]["failed"],
                    )
                    await self.events.publish(
                        SchedulerEvent.BATCH_COMPLETED,
                        {**payload, "is_scheduled": job.is_scheduled},
                        job_id=job.job_id,
                    )
                elif event == EngineEvent.PROCESSING_COMPLETED:
                    final_stats.update(payload["stats"])

            outcomes = await self.engine.run(clients, job.batch_size, job.job_id, on_engine_event)
            self._ensure_tracked(job)

            # Claimed before the write so stop_all() leaves this job alone
            job.status = JobStatus.COMPLETED
            await self.job_store.update_job(
                job.job_id,
                status=JobStatus.COMPLETED,
                completed_at=self._clock(),
                processed_clients=len(clients),
                successful_requests=final_stats["successful"],
                failed_requests=final_stats["failed"],
                server_stats=final_stats,
            )
            self._untrack(job)
            JOBS_FINISHED.labels(status="completed", trigger=trigger).inc()

            logger.info(
                f"{trigger.capitalize()} job completed: {job.job_id} - {len(clients)} clients, "
                f"{final_stats['successful']} successful, {final_stats['failed']} failed"
            )
            await self.events.publish(
                SchedulerEvent.JOB_COMPLETED,
                {
                    "job_id": job.job_id,
                    "total_clients": len(clients),
                    "results": [outcome.to_dict() for outcome in outcomes],
                    "stats": final_stats,
                    "is_scheduled": job.is_scheduled,
                },
                job_id=job.job_id,
            )
            return JobResult(job_id=job.job_id, success=True, stats=final_stats)

        except JobStoppedError:
            logger.info(f"Job {job.job_id} was stopped by user, discarding its results")
            # The record may have been created after stop_all() wrote its status
            try:
                await self.job_store.update_job(
                    job.job_id,
                    status=JobStatus.FAILED,
                    completed_at=self._clock(),
                    error_message=STOPPED_BY_USER,
                )
            except Exception as db_error:
                logger.error(f"Failed to update stopped job {job.job_id}: {db_error}")
            return JobResult(job_id=job.job_id, success=False, error=STOPPED_BY_USER)
        except asyncio.CancelledError:
            await self._mark_failed(job, SHUT_DOWN)
            raise
        except Exception as e:
            logger.error(f"{trigger.capitalize()} job failed: {job.job_id} - {e}", exc_info=True)
            await self._mark_failed(job, str(e))
            return JobResult(job_id=job.job_id, success=False, error=str(e))
        finally:
            self._untrack(job)

    async def _mark_failed(self, job: RunningJob, error: str):
        if job.job_id not in self.running_jobs:
            # Already finalised by stop_all()
            return

        job.status = JobStatus.FAILED
        try:
            await self.job_store.update_job(
                job.job_id,
                status=JobStatus.FAILED,
                completed_at=self._clock(),
                error_message=error,
            )
        except Exception as db_error:
            logger.error(f"Failed to update failed job in database: {db_error}")

        JOBS_FINISHED.labels(status="failed", trigger=self._trigger(job)).inc()
        await self.events.publish(
            SchedulerEvent.JOB_FAILED,
            {"job_id": job.job_id, "error": error, "is_scheduled": job.is_scheduled},
            job_id=job.job_id,
        )
