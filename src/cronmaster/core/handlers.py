"""Built-in job handlers."""

from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import psutil
from loguru import logger

from cronmaster.core.playbooks import RemediationRunner
from cronmaster.core.proof import ProofEngine
from cronmaster.core.registry import HandlerRegistry, HandlerResult, JobHandler
from cronmaster.core.workitems import WorkItemStore
from cronmaster.models import Incident, Job, RunStatus, Severity, WorkItem, WorkItemStatus, utcnow

if TYPE_CHECKING:
    from cronmaster.alerts import AlertChannel
    from cronmaster.db import Database


_STATUS_CODE = re.compile(r"\b([45]\d{2})\b")


class HeartbeatHandler(JobHandler):
    """Liveness signal; its runs are what gap detection looks at."""

    name = "heartbeat"

    async def run(self, job: Job) -> HandlerResult:
        return HandlerResult(
            success=True,
            details=f"Heartbeat OK at {utcnow().isoformat()}",
            verification_passed=True,
        )


class SelfHealMonitorHandler(JobHandler):
    """Counts recent failed or degraded runs and escalates when there are many."""

    name = "selfheal.monitor"

    def __init__(self, db: "Database", alerts: "AlertChannel | None" = None):
        self._db = db
        self._alerts = alerts

    async def run(self, job: Job) -> HandlerResult:
        window = int(job.config.get("window_minutes", 60))
        threshold = int(job.config.get("threshold", 3))

        since = utcnow() - timedelta(minutes=window)
        bad_runs = self._db.get_runs(
            since=since,
            statuses=[RunStatus.FAIL, RunStatus.DEGRADED],
            limit=None,
        )
        count = len(bad_runs)

        if count > threshold and self._alerts is not None:
            jobs = sorted({r.job_name for r in bad_runs})
            await self._alerts.send(
                Severity.HIGH,
                "Self-Heal Monitor Alert",
                f"{count} degraded/failed runs in the last {window} minutes. Investigation needed.",
                job_name=job.name,
                details={"jobs": ", ".join(jobs)},
            )

        return HandlerResult(
            success=True,
            details=f"Self-heal monitor: {count} issues detected in last {window} minutes",
            issues_found=count,
            verification_passed=True,
        )


class WorkQueueDispatchHandler(JobHandler):
    """Claims the next dispatchable work items."""

    name = "workqueue.dispatch"

    def __init__(self, store: WorkItemStore):
        self._store = store

    async def run(self, job: Job) -> HandlerResult:
        batch = int(job.config.get("batch_size", 1))
        max_attempts = job.config.get("max_attempts", job.max_retries or None)

        claims = self._store.dispatch_batch(limit=batch, max_attempts=max_attempts)
        dispatched = sum(1 for c in claims if c.dispatched)
        blocked = sum(1 for c in claims if c.reason == "approval_required")

        return HandlerResult(
            success=True,
            details=f"Dispatched {dispatched} of {len(claims)} candidates ({blocked} awaiting approval)",
            verification_passed=True,
        )


class PendingReviewHandler(JobHandler):
    """Reports how many work items wait for review."""

    name = "workqueue.pending_review"

    def __init__(self, store: WorkItemStore):
        self._store = store

    async def run(self, job: Job) -> HandlerResult:
        pending = self._store.query(status=WorkItemStatus.PR_OPENED, limit=1).total
        return HandlerResult(
            success=True,
            details=f"{pending} work items awaiting review",
            verification_passed=True,
        )


class ProofReportHandler(JobHandler):
    """Writes the uptime proof report."""

    name = "proof.report"

    def __init__(self, engine: ProofEngine, output_dir: Path | None = None, default_hours: int = 24):
        self._engine = engine
        self._output_dir = output_dir
        self._default_hours = default_hours

    async def run(self, job: Job) -> HandlerResult:
        hours = int(job.config.get("window_hours", self._default_hours))
        result = self._engine.check(hours)
        report = result.report
        path = self._engine.write(report, self._output_dir)

        details = f"Proof report ({hours}h) written to {path}: uptime {report.summary.uptime_pct}%"
        if result.failures:
            details += "; " + "; ".join(result.failures)

        return HandlerResult(
            success=True,
            details=details,
            issues_found=len(report.gaps),
            verification_passed=report.verification.overall_healthy,
        )


class HealthCheckHandler(JobHandler):
    """Checks the store answers and the host has room to keep writing."""

    name = "health.check"

    def __init__(self, db: "Database"):
        self._db = db

    async def run(self, job: Job) -> HandlerResult:
        max_disk_pct = float(job.config.get("max_disk_percent", 95))
        max_memory_pct = float(job.config.get("max_memory_percent", 95))

        if not self._db.ping():
            return HandlerResult(success=False, details="Store did not answer")

        problems = []
        disk = psutil.disk_usage(str(self._db.db_path.parent))
        if disk.percent > max_disk_pct:
            problems.append(f"disk {disk.percent:.1f}% used")
        memory = psutil.virtual_memory()
        if memory.percent > max_memory_pct:
            problems.append(f"memory {memory.percent:.1f}% used")

        details = "Store OK" + (f"; {', '.join(problems)}" if problems else "")
        return HandlerResult(
            success=True,
            details=details,
            issues_found=len(problems),
            verification_passed=not problems,
        )


def incident_from_work_item(item: WorkItem) -> Incident:
    """Describe a work item as an incident for playbook matching."""
    match = _STATUS_CODE.search(item.title)
    return Incident(
        title=item.title,
        category=item.category,
        status_code=int(match.group(1)) if match else None,
        locator=item.locator,
        error_message=item.last_error or item.description,
        fingerprint=item.fingerprint,
    )


class RemediationHandler(JobHandler):
    """Runs matching playbooks for new work items."""

    name = "selfheal.remediate"

    def __init__(self, store: WorkItemStore, runner: RemediationRunner):
        self._store = store
        self._runner = runner

    async def run(self, job: Job) -> HandlerResult:
        batch = int(job.config.get("batch_size", 5))
        items = self._store.query(status=WorkItemStatus.NEW, limit=batch).items

        matched = 0
        resolved = 0
        for item in items:
            result = await self._runner.remediate(
                incident_from_work_item(item),
                approved=item.approved_at is not None,
            )
            if result.playbooks:
                matched += 1
            if result.resolved:
                resolved += 1
                self._store.transition(
                    item.id,
                    WorkItemStatus.SUPPRESSED,
                    expected_from=WorkItemStatus.NEW,
                    reason="remediated",
                )

        logger.debug(f"Remediation pass: {matched} matched, {resolved} resolved of {len(items)}")
        return HandlerResult(
            success=True,
            details=f"{len(items)} items checked, {matched} matched a playbook, {resolved} resolved",
            issues_found=matched,
            fixes_applied=resolved,
            verification_passed=resolved == matched,
        )


def register_builtin_handlers(
    registry: HandlerRegistry,
    *,
    db: "Database",
    store: WorkItemStore,
    proof: ProofEngine,
    runner: RemediationRunner,
    alerts: "AlertChannel | None" = None,
    proof_dir: Path | None = None,
    proof_hours: int = 24,
) -> HandlerRegistry:
    """Register every built-in handler."""
    for handler in (
        HeartbeatHandler(),
        SelfHealMonitorHandler(db, alerts),
        WorkQueueDispatchHandler(store),
        PendingReviewHandler(store),
        ProofReportHandler(proof, proof_dir, proof_hours),
        HealthCheckHandler(db),
        RemediationHandler(store, runner),
    ):
        registry.register(handler)
    return registry
