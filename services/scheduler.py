"""Background scheduler that fires named lifecycle jobs on fixed schedules."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from loguru import logger
from prometheus_client import Counter, Histogram
from sqlalchemy.ext.asyncio import async_sessionmaker

from db import transaction
from repositories import SchedulerJobRepository
from services.auction_jobs import (
    ACTIVATION_JOB,
    CLEANUP_JOB,
    ENDING_JOB,
    ActivationJob,
    CleanupJob,
    EndingJob,
    JobRunResult,
    utcnow,
)
from services.event_bus import EventBus
from services.notifications import NotificationDispatcher
from services.run_guard import RunGuard
from utils.error_handling import ErrorCategory, SchedulerConfigurationError, capture_exception
from utils.settings import LifecycleSettings

JOB_RUNS = Counter(
    "scheduler_job_runs_total",
    "Lifecycle job invocations by outcome",
    labelnames=["job", "status"],
)
JOB_DURATION = Histogram(
    "scheduler_job_duration_seconds",
    "Wall-clock duration of lifecycle job runs",
    labelnames=["job"],
)

_INTERVAL_PATTERN = re.compile(r"^every\s+(\d+)\s*([smh])$", re.IGNORECASE)
_DAILY_PATTERN = re.compile(r"^daily\s+(\d{1,2}):(\d{2})$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}

JobCallback = Callable[[], Awaitable[JobRunResult]]


@dataclass(frozen=True, slots=True)
class JobSchedule:
    """Parsed schedule expression: ``every <n>s|m|h`` or ``daily HH:MM`` (UTC)."""

    expression: str
    interval_seconds: Optional[int] = None
    daily_at: Optional[dtime] = None

    @classmethod
    def parse(cls, expression: str) -> "JobSchedule":
        text = (expression or "").strip()
        interval = _INTERVAL_PATTERN.match(text)
        if interval:
            seconds = int(interval.group(1)) * _UNIT_SECONDS[interval.group(2).lower()]
            if seconds <= 0:
                raise SchedulerConfigurationError(f"Interval must be positive: {expression!r}")
            return cls(expression=text, interval_seconds=seconds)

        daily = _DAILY_PATTERN.match(text)
        if daily:
            hour, minute = int(daily.group(1)), int(daily.group(2))
            if hour > 23 or minute > 59:
                raise SchedulerConfigurationError(f"Invalid time of day: {expression!r}")
            return cls(expression=text, daily_at=dtime(hour, minute, tzinfo=timezone.utc))

        raise SchedulerConfigurationError(f"Unsupported schedule expression: {expression!r}")

    @property
    def runs_on_start(self) -> bool:
        return self.interval_seconds is not None

    def next_run_after(self, moment: datetime) -> datetime:
        if self.interval_seconds is not None:
            return moment + timedelta(seconds=self.interval_seconds)

        assert self.daily_at is not None
        moment_utc = moment.astimezone(timezone.utc)
        candidate = moment_utc.replace(
            hour=self.daily_at.hour, minute=self.daily_at.minute, second=0, microsecond=0
        )
        if candidate <= moment_utc:
            candidate += timedelta(days=1)
        return candidate

    def next_run_following(self, scheduled_for: datetime, fired_at: datetime) -> datetime:
        """Next run after a tick planned for ``scheduled_for`` that fired at ``fired_at``.

        Timers may fire slightly early, so the planned slot is never run twice.
        """

        return self.next_run_after(max(scheduled_for, fired_at))


@dataclass(slots=True)
class JobRegistration:
    name: str
    schedule: JobSchedule
    callback: JobCallback


@dataclass(slots=True)
class SchedulerJobState:
    """Runtime state of a registered lifecycle job."""

    id: int
    name: str
    schedule: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_run_message: Optional[str] = None
    last_run_duration_seconds: Optional[float] = None
    last_result_count: Optional[int] = None
    skipped_runs: int = 0
    running: bool = False


class LifecycleScheduler:
    """Runs registered jobs on their schedules, one asyncio task per job.

    Jobs of different names run concurrently. Each invocation passes through
    the ``RunGuard`` so a tick (or a manual run) never overlaps a still running
    invocation of the same job.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker,
        run_guard: Optional[RunGuard] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._guard = run_guard or RunGuard()
        self._clock = clock
        self._registrations: Dict[str, JobRegistration] = {}
        self._jobs: Dict[str, SchedulerJobState] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_events: Dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()
        self._started = False

    @property
    def run_guard(self) -> RunGuard:
        return self._guard

    def register(self, name: str, schedule_expression: str, callback: JobCallback) -> JobRegistration:
        """Register a zero-argument job callback under a unique name."""

        if self._started:
            raise SchedulerConfigurationError("Jobs must be registered before the scheduler starts")
        if not name or not name.strip():
            raise SchedulerConfigurationError("Job name must not be empty")
        if name in self._registrations:
            raise SchedulerConfigurationError(f"Job '{name}' is already registered")
        if not callable(callback):
            raise SchedulerConfigurationError(f"Job '{name}' callback is not callable")

        registration = JobRegistration(
            name=name,
            schedule=JobSchedule.parse(schedule_expression),
            callback=callback,
        )
        self._registrations[name] = registration
        logger.info("Registered lifecycle job", job=name, schedule=registration.schedule.expression)
        return registration

    async def start(self) -> None:
        """Persist registered jobs and launch tasks for the active ones."""

        async with transaction(self._session_factory) as session:
            repo = SchedulerJobRepository(session)
            rows = [
                await repo.ensure_job(name=registration.name, schedule=registration.schedule.expression)
                for registration in self._registrations.values()
            ]

        to_start: List[str] = []
        async with self._lock:
            self._jobs.clear()
            for row in rows:
                state = self._build_state(row)
                self._jobs[state.name] = state
                if state.is_active:
                    to_start.append(state.name)
            self._started = True

        for name in to_start:
            self._start_job_task(name)

        if not to_start:
            logger.info("Lifecycle scheduler initialised without active jobs")
        else:
            logger.info("Lifecycle scheduler started", active_jobs=len(to_start))

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop all job loops and reset scheduler state.

        In-flight runs are allowed to finish so that committed transitions
        still publish and notify. Tasks still busy after ``timeout`` seconds
        are cancelled.
        """

        for event in self._stop_events.values():
            event.set()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                logger.warning("Cancelling lifecycle job still running at shutdown", task=task.get_name())
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        async with self._lock:
            self._tasks.clear()
            self._stop_events.clear()
            self._jobs.clear()
            self._started = False

    async def list_jobs(self) -> List[SchedulerJobState]:
        """Return a snapshot of current job states."""

        async with self._lock:
            return [self._copy_state(state) for state in self._jobs.values()]

    async def get_job(self, name: str) -> SchedulerJobState:
        async with self._lock:
            state = self._jobs.get(name)
            if state is None:
                raise ValueError(f"Job '{name}' was not found")
            return self._copy_state(state)

    async def set_job_active(self, name: str, active: bool) -> SchedulerJobState:
        """Pause or resume a job's schedule."""

        async with self._lock:
            if name not in self._jobs:
                raise ValueError(f"Job '{name}' was not found")

        async with transaction(self._session_factory) as session:
            repo = SchedulerJobRepository(session)
            row = await repo.get_by_name(name)
            if row is None:
                raise ValueError(f"Job '{name}' was not found")
            await repo.update_job(row, is_active=active)

        async with self._lock:
            state = self._jobs[name]
            state.is_active = active
            state.updated_at = utcnow()

        if active:
            self._start_job_task(name)
        else:
            await self._stop_job_task(name)

        logger.info("Lifecycle job toggled", job=name, active=active)
        return await self.get_job(name)

    async def trigger(self, name: str) -> JobRunResult:
        """Run one guarded invocation of ``name`` and record its result."""

        registration = self._registrations.get(name)
        if registration is None:
            raise ValueError(f"Job '{name}' was not found")

        started_at = self._clock()
        async with self._guard.hold(name) as admitted:
            if not admitted:
                result = JobRunResult.skipped(name, started_at)
            else:
                try:
                    result = await registration.callback()
                except Exception as exc:
                    error = capture_exception(exc, operation=name, scope=ErrorCategory.RUN, job=name)
                    result = JobRunResult(
                        job=name,
                        started_at=started_at,
                        status="error",
                        message=error.message[:512],
                        errors=[error],
                    )

        JOB_RUNS.labels(job=name, status=result.status).inc()
        if result.status != "skipped":
            JOB_DURATION.labels(job=name).observe(result.duration_seconds)
        await self._record_run(registration, result)
        return result

    async def run_job_once(self, name: str) -> SchedulerJobState:
        """Execute a job immediately, outside its schedule."""

        if name not in self._registrations:
            raise ValueError(f"Job '{name}' was not found")
        if self._guard.is_running(name):
            raise RuntimeError(f"Job '{name}' is already running")

        await self.trigger(name)
        return await self.get_job(name)

    def _build_state(self, row) -> SchedulerJobState:
        return SchedulerJobState(
            id=row.id,
            name=row.name,
            schedule=row.schedule,
            is_active=row.is_active,
            created_at=row.created_at,
            updated_at=row.updated_at,
            last_run_at=row.last_run_at,
            next_run_at=row.next_run_at,
            last_run_status=row.last_run_status,
            last_run_message=row.last_run_message,
            last_run_duration_seconds=row.last_run_duration_seconds,
            last_result_count=row.last_result_count,
            skipped_runs=row.skipped_runs or 0,
        )

    def _copy_state(self, state: SchedulerJobState) -> SchedulerJobState:
        return SchedulerJobState(
            id=state.id,
            name=state.name,
            schedule=state.schedule,
            is_active=state.is_active,
            created_at=state.created_at,
            updated_at=state.updated_at,
            last_run_at=state.last_run_at,
            next_run_at=state.next_run_at,
            last_run_status=state.last_run_status,
            last_run_message=state.last_run_message,
            last_run_duration_seconds=state.last_run_duration_seconds,
            last_result_count=state.last_result_count,
            skipped_runs=state.skipped_runs,
            running=self._guard.is_running(state.name),
        )

    def _start_job_task(self, name: str) -> None:
        task = self._tasks.get(name)
        stop = self._stop_events.get(name)
        if task is not None and not task.done() and stop is not None and not stop.is_set():
            return

        stop = asyncio.Event()

        async def runner() -> None:
            await self._run_job(name, stop)

        self._stop_events[name] = stop
        self._tasks[name] = asyncio.create_task(runner(), name=f"lifecycle-job-{name}")

    async def _stop_job_task(self, name: str) -> None:
        """Signal the job loop to stop and wait for an in-flight run to finish."""

        task = self._tasks.get(name)
        stop = self._stop_events.get(name)
        if stop is not None:
            stop.set()
        if task is None:
            return
        await asyncio.gather(task, return_exceptions=True)
        if self._tasks.get(name) is task:
            self._tasks.pop(name, None)
            self._stop_events.pop(name, None)

    async def _run_job(self, name: str, stop: asyncio.Event) -> None:
        """Background task loop for a single job."""

        registration = self._registrations[name]
        schedule = registration.schedule
        now = self._clock()
        next_run = now if schedule.runs_on_start else schedule.next_run_after(now)

        while not stop.is_set():
            async with self._lock:
                state = self._jobs.get(name)
                if state is not None:
                    state.next_run_at = next_run
            if state is None or not state.is_active:
                break

            delay = max(0.0, (next_run - self._clock()).total_seconds())
            if delay > 0:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

            tick_at = self._clock()
            try:
                await self.trigger(name)
            except asyncio.CancelledError:
                logger.debug("Lifecycle job cancelled", job=name)
                raise
            except Exception:
                logger.exception("Lifecycle job crashed", job=name)

            # A run longer than the interval only delays the next tick
            next_run = schedule.next_run_following(next_run, tick_at)

        logger.debug("Lifecycle job loop stopped", job=name)

    async def _record_run(self, registration: JobRegistration, result: JobRunResult) -> None:
        skipped = result.status == "skipped"
        next_run = registration.schedule.next_run_after(result.started_at)
        message = None if result.status in {"success", "noop"} else (result.message or "Unknown error")[:512]

        try:
            async with transaction(self._session_factory) as session:
                repo = SchedulerJobRepository(session)
                row = await repo.get_by_name(registration.name)
                if row is None:
                    logger.error("Scheduler job missing in database", job=registration.name)
                elif skipped:
                    await repo.update_job(row, skipped=True)
                else:
                    await repo.update_job(
                        row,
                        last_run_at=result.started_at,
                        next_run_at=next_run,
                        last_run_status=result.status,
                        last_run_message=message,
                        last_run_duration_seconds=result.duration_seconds,
                        last_result_count=result.result_count,
                    )
        except Exception as exc:
            capture_exception(exc, operation="record_job_run", job=registration.name)

        async with self._lock:
            existing = self._jobs.get(registration.name)
            if existing:
                if skipped:
                    existing.skipped_runs += 1
                else:
                    existing.last_run_at = result.started_at
                    existing.next_run_at = next_run
                    existing.last_run_status = result.status
                    existing.last_run_message = message
                    existing.last_run_duration_seconds = result.duration_seconds
                    existing.last_result_count = result.result_count
                existing.updated_at = utcnow()


def register_lifecycle_jobs(
    scheduler: LifecycleScheduler,
    settings: LifecycleSettings,
    *,
    session_factory: async_sessionmaker,
    event_bus: Optional[EventBus] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Dict[str, JobCallback]:
    """Register activation, ending and cleanup jobs with their configured schedules."""

    jobs: Dict[str, JobCallback] = {
        ACTIVATION_JOB: ActivationJob(
            session_factory=session_factory,
            event_bus=event_bus,
            dispatcher=dispatcher,
            max_concurrency=settings.max_concurrency,
        ),
        ENDING_JOB: EndingJob(
            session_factory=session_factory,
            event_bus=event_bus,
            dispatcher=dispatcher,
            max_concurrency=settings.max_concurrency,
        ),
        CLEANUP_JOB: CleanupJob(
            session_factory=session_factory,
            retention_days=settings.notification_retention_days,
            batch_size=settings.cleanup_batch_size,
        ),
    }
    schedules = {
        ACTIVATION_JOB: settings.activation_schedule,
        ENDING_JOB: settings.ending_schedule,
        CLEANUP_JOB: settings.cleanup_schedule,
    }
    for name, job in jobs.items():
        scheduler.register(name, schedules[name], job)
    return jobs
