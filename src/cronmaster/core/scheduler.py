"""Tick scheduler for CronMaster.

Each call to ``tick()`` is one pass over the job table: take the tick lock,
decide which jobs are due, run each one under its timeout, and write the
outcome back to the run and job rows. Nothing is kept in memory between
ticks.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import pytz
from loguru import logger

from cronmaster.core import cron
from cronmaster.core.locks import LockManager, new_owner_id
from cronmaster.core.registry import HandlerRegistry, HandlerResult, JobHandler
from cronmaster.models import (
    FAILURE_STATUSES,
    Job,
    JobRun,
    RunStatus,
    ScheduleKind,
    SchedulerConfig,
    Severity,
    utcnow,
)

if TYPE_CHECKING:
    from cronmaster.alerts import AlertChannel
    from cronmaster.db import Database

HEARTBEAT_HANDLER = "heartbeat"


class JobTimeoutError(Exception):
    """A handler did not finish within its job's timeout."""

    pass


@dataclass
class JobOutcome:
    """What happened to one job during a tick."""

    job: str
    due: bool
    ran: bool = False
    status: RunStatus | None = None
    reason: str | None = None
    duration_seconds: float | None = None
    run_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "due": self.due,
            "ran": self.ran,
            "status": self.status.value if self.status else None,
            "reason": self.reason,
            "duration_seconds": self.duration_seconds,
            "run_id": self.run_id,
        }


@dataclass
class TickReport:
    """Result of one scheduler tick."""

    started_at: datetime
    owner: str
    lock_acquired: bool
    finished_at: datetime | None = None
    outcomes: list[JobOutcome] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        counts = {
            "jobs": len(self.outcomes),
            "due": sum(1 for o in self.outcomes if o.due),
            "ran": sum(1 for o in self.outcomes if o.ran),
            "skipped": sum(1 for o in self.outcomes if o.due and not o.ran),
        }
        for status in RunStatus:
            if status in (RunStatus.RUNNING, RunStatus.SKIPPED):
                continue
            counts[status.value.lower()] = sum(1 for o in self.outcomes if o.status == status)
        return counts

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "owner": self.owner,
            "lock_acquired": self.lock_acquired,
            "summary": self.summary,
            "jobs": [o.to_dict() for o in self.outcomes],
        }


def _consume_abandoned(task: asyncio.Task) -> None:
    """Retrieve the result of a timed-out handler so it is not reported as lost."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned handler finished with error: {exc}")


class Scheduler:
    """Runs due jobs once per tick under a shared lock."""

    def __init__(
        self,
        db: "Database",
        registry: HandlerRegistry,
        locks: LockManager,
        alerts: "AlertChannel | None" = None,
        config: SchedulerConfig | None = None,
    ):
        """Initialize the scheduler.

        Args:
            db: Store holding jobs and runs
            registry: Handler lookup
            locks: Lock manager guarding the tick
            alerts: Channel for high-priority failure alerts
            config: Scheduler settings
        """
        self._db = db
        self._registry = registry
        self._locks = locks
        self._alerts = alerts
        self._config = config or SchedulerConfig()
        self._running = False
        self._stop_event: asyncio.Event | None = None

    # =========================================================================
    # Due checks
    # =========================================================================

    def is_due(self, job: Job, now: datetime) -> bool:
        """Decide whether a job should run at ``now``.

        Interval jobs are due once ``next_run_at`` has passed. Cron jobs must
        also match their expression in the job's timezone.
        """
        if not job.enabled:
            return False

        if job.next_run_at is not None and job.next_run_at > now:
            return False

        if job.schedule_kind == ScheduleKind.CRON:
            local_now = now.astimezone(pytz.timezone(job.timezone or "UTC"))
            return cron.is_due(job.cron_expression or "", local_now)

        return True

    def in_cooldown(self, job: Job, now: datetime) -> bool:
        """Check whether a job ran too recently to run again."""
        if not job.cooldown_seconds or job.last_run_at is None:
            return False
        return job.last_run_at + timedelta(seconds=job.cooldown_seconds) > now

    def next_run_at(self, job: Job, now: datetime) -> datetime:
        """Next-run bookkeeping after an execution attempt."""
        interval = job.interval_seconds or self._config.cron_fallback_interval_seconds
        return now + timedelta(seconds=interval)

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Run one scheduling pass.

        If the lock is held by another tick, returns immediately with
        ``lock_acquired=False`` and no job touched.
        """
        now = now or utcnow()
        owner = new_owner_id()
        report = TickReport(started_at=now, owner=owner, lock_acquired=False)

        async with self._locks.holding(
            self._config.lock_key, self._config.lock_ttl_seconds, owner
        ) as acquired:
            if not acquired:
                logger.info(f"Tick {owner}: lock '{self._config.lock_key}' held elsewhere, skipping")
                report.finished_at = utcnow()
                return report

            report.lock_acquired = True
            logger.info(f"Tick {owner} acquired lock")

            jobs = sorted(
                self._db.get_jobs(enabled_only=True),
                key=lambda j: (-j.priority, j.name),
            )

            runnable: list[Job] = []
            for job in jobs:
                try:
                    due = self.is_due(job, now)
                    cooling = due and self.in_cooldown(job, now)
                except Exception as e:
                    logger.error(f"Could not evaluate schedule of job '{job.name}': {e}")
                    report.outcomes.append(JobOutcome(job=job.name, due=False, reason=f"error: {e}"))
                    continue

                if not due:
                    report.outcomes.append(JobOutcome(job=job.name, due=False, reason="not_due"))
                    continue
                if cooling:
                    logger.debug(f"Job '{job.name}' is due but in cooldown")
                    report.outcomes.append(
                        JobOutcome(job=job.name, due=True, ran=False, reason="cooldown")
                    )
                    continue
                runnable.append(job)

            if self._config.parallel:
                outcomes = await asyncio.gather(*(self._execute(job, now) for job in runnable))
            else:
                outcomes = [await self._execute(job, now) for job in runnable]
            report.outcomes.extend(outcomes)

        report.finished_at = utcnow()
        summary = report.summary
        logger.info(
            f"Tick {owner} done: {summary['ran']} ran, {summary['skipped']} skipped, "
            f"{summary['fail'] + summary['timeout']} failed"
        )
        return report

    async def run_job(self, name: str, now: datetime | None = None) -> JobOutcome:
        """Run one job immediately, ignoring its schedule but not the lock."""
        now = now or utcnow()
        job = self._db.get_job(name)
        if job is None:
            raise KeyError(f"Unknown job '{name}'")

        async with self._locks.holding(
            self._config.lock_key, self._config.lock_ttl_seconds
        ) as acquired:
            if not acquired:
                return JobOutcome(job=name, due=True, ran=False, reason="locked")
            return await self._execute(job, now)

    async def _execute(self, job: Job, now: datetime) -> JobOutcome:
        """Run one job and record its outcome. Never raises."""
        outcome = JobOutcome(job=job.name, due=True)
        try:
            run = JobRun(
                job_name=job.name,
                started_at=now,
                heartbeat=job.handler == HEARTBEAT_HANDLER,
            )
            run.id = self._db.add_run(run)
            outcome.run_id = run.id

            logger.info(f"Executing job '{job.name}' ({job.handler})")
            started = time.monotonic()
            status, result, error = await self._run_handler(job)
            duration = round(time.monotonic() - started, 3)

            run.completed_at = utcnow()
            run.status = status
            run.duration_seconds = duration
            run.issues_detected_count = result.issues_found
            run.fixes_applied_count = result.fixes_applied
            run.verification_passed = result.verification_passed
            run.summary = result.details
            run.error = error
            self._db.finish_run(run)

            failures = job.consecutive_failures + 1 if status in FAILURE_STATUSES else 0
            self._db.update_job_state(
                job.name,
                last_run_at=now,
                next_run_at=self.next_run_at(job, now),
                last_status=status,
                last_error=error,
                consecutive_failures=failures,
            )

            outcome.ran = True
            outcome.status = status
            outcome.duration_seconds = duration
            logger.info(f"Job '{job.name}' completed: {status.value} ({duration:.3f}s)")

            if status in FAILURE_STATUSES:
                await self._escalate(job, status, error, failures)

        except Exception as e:
            logger.exception(f"Bookkeeping failed for job '{job.name}': {e}")
            outcome.reason = f"error: {e}"

        return outcome

    async def _run_handler(self, job: Job) -> tuple[RunStatus, HandlerResult, str | None]:
        """Invoke the job's handler and classify the result."""
        try:
            handler = self._registry.resolve(job.handler)
            result = await self._invoke(handler, job)
        except JobTimeoutError as e:
            return RunStatus.TIMEOUT, self._failure_result(str(e)), str(e)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"Job '{job.name}' raised: {error}")
            return RunStatus.FAIL, self._failure_result(error), error

        if not result.success:
            error = result.details or "Handler reported failure"
            return RunStatus.FAIL, result, error
        if result.issues_found > 0 and result.fixes_applied == 0:
            return RunStatus.DEGRADED, result, None
        return RunStatus.SUCCESS, result, None

    async def _invoke(self, handler: JobHandler, job: Job) -> HandlerResult:
        """Race the handler against the job timeout.

        On timeout the handler task is left running, not cancelled.
        """
        task = asyncio.ensure_future(handler.run(job))
        done, _ = await asyncio.wait({task}, timeout=job.timeout_seconds)
        if task not in done:
            task.add_done_callback(_consume_abandoned)
            raise JobTimeoutError(f"Job timeout after {job.timeout_seconds}s")
        return HandlerResult.coerce(task.result())

    def _failure_result(self, error: str) -> HandlerResult:
        return HandlerResult(success=False, details=f"Job failed: {error}", issues_found=1)

    async def _escalate(self, job: Job, status: RunStatus, error: str | None, failures: int) -> None:
        """Alert when a high-priority job fails."""
        if self._alerts is None or job.priority < self._config.alert_priority_threshold:
            return
        try:
            await self._alerts.send(
                Severity.CRITICAL,
                f"Job Failed: {job.name}",
                error or status.value,
                job_name=job.name,
                details={"status": status.value, "consecutive_failures": failures},
            )
        except Exception as e:
            logger.error(f"Failed to send alert for job '{job.name}': {e}")

    # =========================================================================
    # Foreground loop
    # =========================================================================

    async def run(self, interval_seconds: float = 60) -> None:
        """Tick every ``interval_seconds`` until stopped.

        Ticks start on a fixed cadence; the time a tick takes is not added
        to the wait. A tick that overruns the interval is followed at once.
        """
        self._running = True
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        logger.info(f"Scheduler started, ticking every {interval_seconds}s")

        while self._running:
            deadline = loop.time() + interval_seconds
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Tick failed: {e}")

            delay = max(0.0, deadline - loop.time())
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
