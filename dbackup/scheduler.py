"""
Backup scheduling for dbackup.

Manages:
- A once-a-minute tick (driven by APScheduler) that evaluates every job's
  cron expression and dispatches matching jobs
- The global concurrency limit and the per-job no-overlap rule
- Manual job triggers
- Draining in-flight backups on shutdown

A firing is skipped, never queued, when the job is still running or no
concurrency slot is free. The job's next natural match is its next chance.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.util import astimezone
from flask import current_app

from dbackup.backup.executor import STEP_INTERNAL, BackupExecutor, RunOutcome
from dbackup.backup.resolver import load_jobs
from dbackup.limiter import ConcurrencyLimiter, NoSlotAvailable, Slot


logger = logging.getLogger(__name__)

MISSED_RUNNING = 'running'
MISSED_NO_SLOT = 'no_slot'

EXTENSION_KEY = 'dbackup.scheduler'


class JobAlreadyRunning(Exception):
    """Raised when a manual trigger targets a job that is still running."""
    pass


@dataclass
class ScheduleState:
    """Scheduler-owned state of one job."""

    running: bool = False
    last_fired: Optional[datetime] = None
    last_evaluated: Optional[datetime] = None
    last_started: Optional[datetime] = None
    missed_ticks: int = 0
    last_missed: Optional[datetime] = None
    runs: int = 0
    last_outcome: Optional[RunOutcome] = None


@dataclass(frozen=True)
class MissedTick:
    job_name: str
    at: datetime
    reason: str


@dataclass
class TickReport:
    """What one tick did."""

    at: datetime
    dispatched: List[str] = field(default_factory=list)
    missed: List[MissedTick] = field(default_factory=list)


class BackupScheduler:
    """
    Dispatches resolved jobs according to their cron schedules.

    All per-job state lives in ``self.state`` and is only changed while
    holding the scheduler lock, on dispatch and on completion.
    """

    def __init__(
        self,
        jobs: Iterable,
        limiter: Optional[ConcurrencyLimiter] = None,
        listeners: Optional[List[Callable[[RunOutcome], None]]] = None,
        timezone='UTC',
        clock: Optional[Callable[[], datetime]] = None,
        pool=None,
        executor_factory: Optional[Callable] = None
    ):
        """
        Initialize the scheduler.

        Args:
            jobs: ResolvedJob instances (jobs without a schedule can only be triggered manually)
            limiter: Shared ConcurrencyLimiter (default: 2 slots)
            listeners: Callables receiving every terminal RunOutcome
            timezone: Timezone cron expressions are evaluated in
            clock: Returns the current time (default: datetime.now in ``timezone``)
            pool: Executor for backup runs (default: a thread pool sized to the limiter)
            executor_factory: Builds the BackupExecutor for a job
        """
        self.jobs = {job.name: job for job in jobs}
        self.limiter = limiter or ConcurrencyLimiter()
        self.listeners = list(listeners or [])
        self.timezone = astimezone(timezone)
        self.clock = clock or (lambda: datetime.now(self.timezone))
        self.executor_factory = executor_factory or self._default_executor
        self.state: Dict[str, ScheduleState] = {name: ScheduleState() for name in self.jobs}

        self._lock = threading.RLock()
        self._pool = pool or ThreadPoolExecutor(
            max_workers=self.limiter.capacity,
            thread_name_prefix='dbackup-job'
        )
        self._futures = set()
        self._accepting = True
        self._ticker = None

    def _default_executor(self, job) -> BackupExecutor:
        return BackupExecutor(job, clock=self.clock)

    # -- lifecycle ---------------------------------------------------------

    def start(self):
        """Start the per-minute tick."""
        if self.running:
            logger.info("Scheduler already running")
            return

        scheduled = [job for job in self.jobs.values() if job.is_scheduled]
        logger.info("Starting backup scheduler with %s concurrent slot(s)", self.limiter.capacity)

        if not scheduled:
            logger.warning("No scheduled backups found in configuration")

        now = self.clock()
        for job in scheduled:
            next_run = job.schedule.next_fire_time(now)
            logger.info(
                "  - '%s' scheduled for: %s (next run: %s)",
                job.name, job.schedule.expression, next_run.isoformat() if next_run else 'N/A'
            )

        self._ticker = BackgroundScheduler(
            timezone=self.timezone,
            job_defaults={
                'coalesce': True,  # Collapse missed ticks into one
                'max_instances': 1,
                'misfire_grace_time': 30
            }
        )
        self._ticker.add_job(
            func=self._tick_now,
            trigger=CronTrigger(second=0, timezone=self.timezone),
            id='dbackup_tick',
            name='Backup scheduler tick',
            replace_existing=True
        )
        self._ticker.start()

    @property
    def running(self) -> bool:
        return self._ticker is not None and self._ticker.running

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Stop ticking, then wait for dispatched backups to finish.

        In-flight dumps and uploads are allowed to complete; nothing is killed.

        Args:
            wait: Wait for in-flight backups
            timeout: Upper bound in seconds for the wait (None = no bound)

        Returns:
            True if every dispatched backup finished
        """
        with self._lock:
            self._accepting = False

        if self.running:
            self._ticker.shutdown(wait=True)
            logger.info("Scheduler tick stopped")

        drained = True
        if wait:
            drained = self.wait_idle(timeout)
            if not drained:
                logger.warning("Shutdown timeout reached with %s backup(s) still running", self.in_flight)

        self._pool.shutdown(wait=wait and drained)
        logger.info("Backup scheduler stopped")
        return drained

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every dispatched backup has completed."""
        with self._lock:
            futures = list(self._futures)
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    @property
    def in_flight(self) -> int:
        with self._lock:
            return sum(1 for state in self.state.values() if state.running)

    # -- ticking -----------------------------------------------------------

    def _tick_now(self):
        self.tick(self.clock())

    def tick(self, now: datetime) -> TickReport:
        """
        Evaluate all schedules for the minute containing ``now``.

        Args:
            now: Timezone-aware current time

        Returns:
            TickReport with dispatched jobs and missed firings
        """
        if now.tzinfo is None:
            raise ValueError("tick() requires a timezone-aware datetime")

        minute = now.astimezone(self.timezone).replace(second=0, microsecond=0)
        report = TickReport(at=minute)

        with self._lock:
            if not self._accepting:
                return report

            for name, job in self.jobs.items():
                if not job.is_scheduled:
                    continue

                state = self.state[name]

                # Each minute is evaluated at most once per job
                if state.last_evaluated is not None and minute <= state.last_evaluated:
                    continue
                state.last_evaluated = minute

                if not job.schedule.matches(minute):
                    continue

                if state.running:
                    self._record_missed(report, name, minute, MISSED_RUNNING)
                    continue

                try:
                    slot = self.limiter.acquire()
                except NoSlotAvailable:
                    self._record_missed(report, name, minute, MISSED_NO_SLOT)
                    continue

                try:
                    self._dispatch(job, slot, minute, 'schedule')
                except RuntimeError as e:
                    logger.error("Failed to dispatch backup '%s': %s", name, e)
                    continue

                report.dispatched.append(name)

        for name in report.dispatched:
            logger.info("Dispatched scheduled backup: %s", name)
        for missed in report.missed:
            logger.warning(
                "Missed tick for '%s' at %s (%s)",
                missed.job_name, missed.at.isoformat(),
                'still running' if missed.reason == MISSED_RUNNING else 'no concurrency slot available'
            )

        return report

    def _record_missed(self, report: TickReport, name: str, minute: datetime, reason: str):
        state = self.state[name]
        state.missed_ticks += 1
        state.last_missed = minute
        report.missed.append(MissedTick(job_name=name, at=minute, reason=reason))

    # -- dispatch / completion --------------------------------------------

    def trigger(self, name: str) -> Future:
        """
        Run a job now, outside its schedule.

        Args:
            name: Job name

        Returns:
            Future resolving to the RunOutcome

        Raises:
            KeyError: If the job is unknown
            JobAlreadyRunning: If the job is still running
            NoSlotAvailable: If all concurrency slots are in use
            RuntimeError: If the scheduler is shutting down
        """
        if name not in self.jobs:
            raise KeyError(name)

        with self._lock:
            if not self._accepting:
                raise RuntimeError("Scheduler is shutting down")

            if self.state[name].running:
                raise JobAlreadyRunning(f"Backup '{name}' is already running")

            slot = self.limiter.acquire()
            future = self._dispatch(self.jobs[name], slot, self.clock(), 'manual')

        logger.info("Manually triggered backup: %s", name)
        return future

    def _dispatch(self, job, slot: Slot, fired_at: datetime, trigger: str) -> Future:
        # Caller holds the lock
        state = self.state[job.name]
        state.running = True
        state.last_started = fired_at
        if trigger == 'schedule':
            state.last_fired = fired_at

        try:
            future = self._pool.submit(self._run, job, slot, fired_at, trigger)
        except RuntimeError:
            state.running = False
            self.limiter.release(slot)
            raise

        self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future):
        with self._lock:
            self._futures.discard(future)

    def _run(self, job, slot: Slot, fired_at: datetime, trigger: str) -> RunOutcome:
        outcome = None
        try:
            executor = self.executor_factory(job)
            outcome = executor.execute(started_at=fired_at, trigger=trigger)
        except Exception as e:
            logger.exception("Unexpected error while running backup '%s'", job.name)
            outcome = RunOutcome(job_name=job.name, started_at=fired_at, trigger=trigger)
            outcome.fail(STEP_INTERNAL, e, completed_at=self.clock())
        finally:
            self._complete(job.name, slot, outcome)

        self._emit(outcome)
        return outcome

    def _complete(self, name: str, slot: Slot, outcome: Optional[RunOutcome]):
        """Unconditional cleanup of a run: free the slot and clear the running flag."""
        try:
            self.limiter.release(slot)
        finally:
            with self._lock:
                state = self.state[name]
                state.running = False
                state.runs += 1
                if outcome is not None:
                    state.last_outcome = outcome

    def _emit(self, outcome: RunOutcome):
        for listener in self.listeners:
            try:
                listener(outcome)
            except Exception:
                logger.exception("Run listener %r failed for backup '%s'", listener, outcome.job_name)

    def add_listener(self, listener: Callable[[RunOutcome], None]):
        self.listeners.append(listener)

    # -- introspection -----------------------------------------------------

    def snapshot(self) -> List[dict]:
        """
        Get the state of every job.

        Returns:
            List of dicts with schedule, running flag, missed ticks, next run
            and the last outcome of each job
        """
        now = self.clock()
        jobs = []

        with self._lock:
            for name, job in self.jobs.items():
                state = self.state[name]
                next_run = job.schedule.next_fire_time(now) if job.is_scheduled else None
                last = state.last_outcome

                jobs.append({
                    'name': name,
                    'schedule': job.schedule.expression if job.is_scheduled else None,
                    'storage': job.storage.describe(),
                    'retention': str(job.retention) if job.retention else None,
                    'running': state.running,
                    'runs': state.runs,
                    'missed_ticks': state.missed_ticks,
                    'last_fired': state.last_fired.isoformat() if state.last_fired else None,
                    'next_run': next_run.isoformat() if next_run else None,
                    'last_outcome': {
                        'status': last.status,
                        'completed_at': last.completed_at.isoformat() if last.completed_at else None,
                        'failed_step': last.failed_step,
                        'error': last.error,
                    } if last else None
                })

        return jobs

    def diagnostics(self) -> dict:
        return {
            'running': self.running,
            'accepting': self._accepting,
            'timezone': str(self.timezone),
            'concurrency': self.limiter.capacity,
            'slots_in_use': self.limiter.in_use,
            'in_flight': self.in_flight,
            'job_count': len(self.jobs),
            'scheduled_job_count': sum(1 for job in self.jobs.values() if job.is_scheduled),
        }


# ---------------------------------------------------------------------------
# Flask integration
# ---------------------------------------------------------------------------

def init_scheduler(app, config_path: Optional[str] = None, concurrency: Optional[int] = None) -> BackupScheduler:
    """
    Load the backup configuration and attach a scheduler to the app.

    Args:
        app: Flask app instance
        config_path: YAML configuration (default: app.config['DBACKUP_CONFIG'])
        concurrency: Overrides settings.concurrency

    Returns:
        The BackupScheduler (not started)

    Raises:
        ConfigError: If the configuration is invalid; nothing is scheduled
    """
    existing = app.extensions.get(EXTENSION_KEY)
    if existing is not None:
        return existing

    from dbackup.notifications import build_listeners

    path = config_path or app.config['DBACKUP_CONFIG']
    app.logger.info(f"Loading configuration from: {path}")
    config, jobs = load_jobs(path)

    scheduler = BackupScheduler(
        jobs,
        limiter=ConcurrencyLimiter(concurrency or config.settings.concurrency),
        listeners=build_listeners(app, config.settings),
        timezone=config.settings.timezone
    )

    app.extensions[EXTENSION_KEY] = scheduler
    return scheduler


def get_scheduler(app=None) -> Optional[BackupScheduler]:
    """Return the app's scheduler, or None if it was never initialized."""
    app = app or current_app
    return app.extensions.get(EXTENSION_KEY)


def start_scheduler(app):
    """
    Start the app's scheduler.

    Should be called after init_scheduler().
    """
    scheduler = get_scheduler(app)

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    scheduler.start()


def stop_scheduler(app, timeout: Optional[float] = None) -> bool:
    """Stop the app's scheduler and drain running backups."""
    scheduler = get_scheduler(app)

    if scheduler is None:
        return True

    return scheduler.shutdown(wait=True, timeout=timeout)
