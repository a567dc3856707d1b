import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Set

from croniter import croniter

from .metrics import job_overlaps_skipped, jobs_running
from .schemas import JobResult

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[JobResult]]

# Pause before a timer tries again after an unexpected error.
TIMER_RETRY_SECONDS = 60


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class JobAlreadyRunning(RuntimeError):
    pass


class UnknownJob(KeyError):
    pass


@dataclass
class ScheduledJob:
    name: str
    schedule: str
    func: JobFunc
    guard: asyncio.Lock = field(default_factory=asyncio.Lock)
    timer: Optional[asyncio.Task] = None
    last_result: Optional[JobResult] = None
    last_started_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    current_run: Optional[asyncio.Task] = None

    @property
    def state(self) -> JobState:
        return JobState.RUNNING if self.busy else JobState.IDLE

    @property
    def busy(self) -> bool:
        # A spawned run counts as busy before it takes the guard.
        running = self.current_run is not None and not self.current_run.done()
        return running or self.guard.locked()


class JobScheduler:
    """
    Runs each registered job on its own cron timer.

    A timer never waits on the run it fires, so a slow job does not delay
    its own next tick or anyone else's. A job that is still running when
    its next tick comes is skipped for that tick.
    """

    def __init__(self, tz: tzinfo):
        self.tz = tz
        self.jobs: Dict[str, ScheduledJob] = {}
        self._runs: Set[asyncio.Task] = set()
        self._started = False

    def add_job(self, name: str, schedule: str, func: JobFunc) -> ScheduledJob:
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid cron expression for {name}: {schedule!r}")
        if name in self.jobs:
            raise ValueError(f"Job {name!r} already registered")
        job = ScheduledJob(name=name, schedule=schedule, func=func)
        self.jobs[name] = job
        return job

    def next_fire_time(self, job: ScheduledJob, after: Optional[datetime] = None) -> datetime:
        base = (after or datetime.now(self.tz)).astimezone(self.tz)
        return croniter(job.schedule, base).get_next(datetime)

    def start(self) -> None:
        if self._started:
            return
        for job in self.jobs.values():
            job.timer = asyncio.create_task(self._timer(job), name=f"timer:{job.name}")
            logger.info("Scheduled job %s: %s", job.name, job.schedule)
        self._started = True

    async def _timer(self, job: ScheduledJob) -> None:
        while True:
            try:
                await self._tick(job)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception(
                    "Timer for %s failed, retrying in %ss: %s", job.name, TIMER_RETRY_SECONDS, exc
                )
                job.next_run_at = None
                try:
                    await asyncio.sleep(TIMER_RETRY_SECONDS)
                except asyncio.CancelledError:
                    break

    async def _tick(self, job: ScheduledJob) -> None:
        job.next_run_at = self.next_fire_time(job)
        delay = (job.next_run_at - datetime.now(self.tz)).total_seconds()
        await asyncio.sleep(max(delay, 0))
        if job.busy:
            logger.warning("Skipping %s tick: previous run still in progress", job.name)
            job_overlaps_skipped.labels(job=job.name).inc()
            return
        self._spawn(job)

    async def _execute(self, job: ScheduledJob) -> JobResult:
        async with job.guard:
            job.last_started_at = datetime.now(self.tz)
            jobs_running.inc()
            try:
                result = await job.func()
            except Exception as exc:
                # Job functions report their own failures; this is a backstop.
                logger.exception("Job %s raised: %s", job.name, exc)
                result = JobResult(
                    job=job.name, success=False, message=str(exc), error=exc.__class__.__name__
                )
            finally:
                jobs_running.dec()
            job.last_result = result
            return result

    async def run_job(self, name: str) -> JobResult:
        """
        Run a job now, outside its schedule. Refuses if it is already running.
        """
        job = self.jobs.get(name)
        if job is None:
            raise UnknownJob(name)
        if job.busy:
            raise JobAlreadyRunning(f"Job {name} is already running")
        return await self._spawn(job)

    def _spawn(self, job: ScheduledJob) -> asyncio.Task:
        task = asyncio.create_task(self._execute(job), name=f"run:{job.name}")
        job.current_run = task
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Cancel future ticks, then wait up to ``timeout`` seconds for runs in
        flight before cancelling them.
        """
        timers = [job.timer for job in self.jobs.values() if job.timer is not None]
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        for job in self.jobs.values():
            job.timer = None
            job.next_run_at = None
            logger.info("Stopped job timer: %s", job.name)
        self._started = False

        pending = set(self._runs)
        if not pending:
            return
        logger.info("Waiting up to %ss for %s running job(s)", timeout, len(pending))
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.error("Forcing shutdown of %s job(s) after timeout", len(still_running))
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    def status(self) -> Dict[str, dict]:
        return {
            name: {
                "schedule": job.schedule,
                "scheduled": job.timer is not None and not job.timer.done(),
                "state": job.state.value,
                "next_run_at": job.next_run_at.isoformat() if job.next_run_at else None,
                "last_started_at": job.last_started_at.isoformat()
                if job.last_started_at
                else None,
                "last_result": job.last_result.model_dump() if job.last_result else None,
            }
            for name, job in self.jobs.items()
        }
