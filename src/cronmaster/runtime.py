"""Wiring of the store, handlers and scheduler from a config directory."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from loguru import logger

from cronmaster.alerts import AlertChannel
from cronmaster.config import (
    DEFAULT_CONFIG_DIR,
    ConfigError,
    load_config,
    load_jobs,
    validate_credentials,
)
from cronmaster.core.handlers import register_builtin_handlers
from cronmaster.core.locks import LockManager, SQLiteLockProvider
from cronmaster.core.playbooks import (
    ActionExecutor,
    PlaybookMatcher,
    RemediationRunner,
    load_playbooks,
)
from cronmaster.core.proof import ProofEngine
from cronmaster.core.registry import HandlerRegistry
from cronmaster.core.scheduler import Scheduler
from cronmaster.core.workitems import WorkItemStore
from cronmaster.db import Database
from cronmaster.models import CronMasterConfig, JobConfig, RemediationMode, SchedulerConfig

PLAYBOOKS_FILE = "playbooks.yaml"


@dataclass
class Runtime:
    """Everything a command needs, built once per process."""

    base_dir: Path
    config: CronMasterConfig
    db: Database
    registry: HandlerRegistry
    locks: LockManager
    alerts: AlertChannel
    store: WorkItemStore
    proof: ProofEngine
    matcher: PlaybookMatcher
    runner: RemediationRunner
    scheduler: Scheduler
    jobs: dict[str, JobConfig]


def worst_case_tick_seconds(jobs: Iterable[JobConfig], parallel: bool = False) -> float:
    """Longest a tick can take if every enabled job is due and times out."""
    timeouts = [job.timeout_seconds for job in jobs if job.enabled]
    if not timeouts:
        return 0.0
    return max(timeouts) if parallel else sum(timeouts)


def check_lock_ttl(config: SchedulerConfig, jobs: Iterable[JobConfig]) -> None:
    """Reject a tick lock that could expire while its own tick still runs."""
    worst = worst_case_tick_seconds(jobs, config.parallel)
    if config.lock_ttl_seconds <= worst:
        mode = "parallel" if config.parallel else "sequential"
        raise ConfigError(
            f"scheduler.lock_ttl_seconds ({config.lock_ttl_seconds}s) must exceed the "
            f"worst-case {mode} tick ({worst:g}s of job timeouts)"
        )


def build_runtime(
    config_dir: Path | None = None,
    config: CronMasterConfig | None = None,
    executor: ActionExecutor | None = None,
    sync_jobs: bool = True,
) -> Runtime:
    """Load configuration and build the runtime.

    Args:
        config_dir: Base directory holding cronmaster.yaml, jobs/ and the store
        config: Already loaded configuration (skips reading cronmaster.yaml)
        executor: Real action executor; required when remediation runs in execute mode
        sync_jobs: Write job definitions from jobs/ into the store

    Raises:
        ConfigError: On invalid configuration, missing credentials, a job
            naming an unknown handler or a lock TTL the worst-case tick outlasts
    """
    base = config_dir or DEFAULT_CONFIG_DIR
    config = config or load_config(base / "cronmaster.yaml")
    validate_credentials(config)

    if config.remediation.mode == RemediationMode.EXECUTE and executor is None:
        raise ConfigError("remediation.mode is 'execute' but no action executor is available")

    db = Database(base / "cronmaster.db")
    locks = LockManager(SQLiteLockProvider(db), default_ttl=config.scheduler.lock_ttl_seconds)
    alerts = AlertChannel(config.alerts, db=db)
    store = WorkItemStore(db)

    proof_dir = Path(config.proof.output_dir).expanduser() if config.proof.output_dir else base / "proof"
    proof = ProofEngine(db, output_dir=proof_dir, sample_size=config.proof.sample_size)

    playbooks_path = base / PLAYBOOKS_FILE
    matcher = PlaybookMatcher(load_playbooks(playbooks_path) if playbooks_path.exists() else None)
    runner = RemediationRunner(db, matcher, mode=config.remediation.mode, executor=executor)

    registry = HandlerRegistry()
    register_builtin_handlers(
        registry,
        db=db,
        store=store,
        proof=proof,
        runner=runner,
        alerts=alerts,
        proof_dir=proof_dir,
        proof_hours=config.proof.default_window_hours,
    )

    jobs = load_jobs(base / "jobs")
    registry.validate(jobs.values())
    check_lock_ttl(config.scheduler, jobs.values())

    if sync_jobs:
        added = sum(1 for job in jobs.values() if db.upsert_job_definition(job))
        logger.debug(f"Synced {len(jobs)} job definitions ({added} new)")

    scheduler = Scheduler(db, registry, locks, alerts=alerts, config=config.scheduler)

    return Runtime(
        base_dir=base,
        config=config,
        db=db,
        registry=registry,
        locks=locks,
        alerts=alerts,
        store=store,
        proof=proof,
        matcher=matcher,
        runner=runner,
        scheduler=scheduler,
        jobs=jobs,
    )
