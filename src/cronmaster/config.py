"""Configuration loading and management for CronMaster."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from croniter import croniter
from loguru import logger

from cronmaster.models import CronMasterConfig, JobConfig, ScheduleKind

# Default paths
DEFAULT_CONFIG_DIR = Path(os.environ.get("CRONMASTER_HOME", Path.home() / ".cronmaster"))
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "cronmaster.yaml"
DEFAULT_JOBS_DIR = DEFAULT_CONFIG_DIR / "jobs"  # one file per job
DEFAULT_DB_FILE = DEFAULT_CONFIG_DIR / "cronmaster.db"
DEFAULT_PROOF_DIR = DEFAULT_CONFIG_DIR / "proof"

# Jobs written by `cronmaster init` when the jobs directory is empty
DEFAULT_JOBS: dict[str, dict] = {
    "heartbeat": {
        "description": "Liveness signal used for gap detection",
        "handler": "heartbeat",
        "schedule_kind": "interval",
        "interval_seconds": 60,
        "timeout_seconds": 10,
        "priority": 90,
    },
    "selfheal-monitor": {
        "description": "Escalate when many jobs fail within the last hour",
        "handler": "selfheal.monitor",
        "schedule_kind": "interval",
        "interval_seconds": 300,
        "timeout_seconds": 30,
        "priority": 70,
    },
    "workqueue-dispatch": {
        "description": "Claim the next dispatchable work items",
        "handler": "workqueue.dispatch",
        "schedule_kind": "interval",
        "interval_seconds": 120,
        "timeout_seconds": 60,
        "priority": 60,
        "config": {"batch_size": 3, "max_attempts": 3},
    },
    "workqueue-pending-review": {
        "description": "Count work items waiting for review",
        "handler": "workqueue.pending_review",
        "schedule_kind": "interval",
        "interval_seconds": 300,
        "timeout_seconds": 30,
        "priority": 40,
    },
    "selfheal-remediate": {
        "description": "Run matching playbooks for new work items",
        "handler": "selfheal.remediate",
        "schedule_kind": "interval",
        "interval_seconds": 300,
        "timeout_seconds": 120,
        "priority": 60,
        "config": {"batch_size": 5},
    },
    "proof-report": {
        "description": "Hourly uptime proof report",
        "handler": "proof.report",
        "schedule_kind": "cron",
        "cron_expression": "0 * * * *",
        "timeout_seconds": 60,
        "priority": 50,
        "config": {"window_hours": 24},
    },
    "health-check": {
        "description": "Store connectivity check",
        "handler": "health.check",
        "schedule_kind": "interval",
        "interval_seconds": 300,
        "timeout_seconds": 15,
        "priority": 85,
    },
}


class ConfigError(Exception):
    """Configuration error."""

    pass


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure the config directory and its jobs/proof subdirectories exist."""
    base = config_dir or DEFAULT_CONFIG_DIR
    base.mkdir(parents=True, exist_ok=True)
    (base / "jobs").mkdir(parents=True, exist_ok=True)
    (base / "proof").mkdir(parents=True, exist_ok=True)
    return base


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """

    def replace_env(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)
    return os.path.expandvars(value)


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid YAML in {path}: expected a mapping, got {type(data).__name__}")
    return data


def load_config(config_path: Path | None = None) -> CronMasterConfig:
    """Load the main CronMaster configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return CronMasterConfig()

    data = load_yaml_file(path)

    try:
        config = CronMasterConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    if config.alerts.webhook_url:
        config.alerts.webhook_url = expand_env_vars(config.alerts.webhook_url) or None

    logger.debug(f"Loaded config from {path}")
    return config


def validate_credentials(config: CronMasterConfig) -> None:
    """Fail fast when a required external credential is missing."""
    if config.alerts.enabled and config.alerts.required and not config.alerts.webhook_url:
        raise ConfigError("alerts.required is set but alerts.webhook_url is empty")


def load_jobs(jobs_path: Path | None = None) -> dict[str, JobConfig]:
    """Load job definitions from the jobs/ directory.

    Each job is stored in its own file: jobs/{name}.yaml. The job name
    defaults to the filename (without .yaml extension).

    Returns:
        Mapping of job name to its validated definition
    """
    jobs_dir = jobs_path or DEFAULT_JOBS_DIR

    if not jobs_dir.exists() or not jobs_dir.is_dir():
        logger.warning(f"Jobs directory not found at {jobs_dir}")
        return {}

    jobs: dict[str, JobConfig] = {}

    for job_file in sorted(jobs_dir.glob("*.yaml")):
        job_data = load_yaml_file(job_file)
        job_data.setdefault("name", job_file.stem)

        try:
            job = JobConfig.model_validate(job_data)
        except Exception as e:
            raise ConfigError(f"Invalid job file {job_file}: {e}") from e

        if job.name in jobs:
            raise ConfigError(f"Duplicate job name '{job.name}' in {job_file}")
        jobs[job.name] = job

    _validate_jobs(jobs)
    logger.debug(f"Loaded {len(jobs)} jobs from {jobs_dir}")
    return jobs


def _validate_jobs(jobs: dict[str, JobConfig]) -> None:
    """Validate job schedules."""
    for name, job in jobs.items():
        if job.schedule_kind != ScheduleKind.CRON:
            continue

        expr = job.cron_expression or ""
        if len(expr.split()) != 5:
            raise ConfigError(
                f"Job '{name}' cron expression '{expr}' must have exactly five fields"
            )
        if not croniter.is_valid(expr):
            raise ConfigError(f"Job '{name}' has invalid cron expression '{expr}'")


def save_job(job: dict | JobConfig, jobs_path: Path | None = None) -> Path:
    """Save a single job to its own file.

    Args:
        job: Job definition (dict or JobConfig model)
        jobs_path: Optional path to jobs directory

    Returns:
        Path of the written file
    """
    jobs_dir = jobs_path or DEFAULT_JOBS_DIR
    jobs_dir.mkdir(parents=True, exist_ok=True)

    if isinstance(job, JobConfig):
        job_dict = job.model_dump(mode="json", exclude_none=True)
    else:
        job_dict = dict(job)

    name = job_dict.get("name")
    if not name:
        raise ConfigError("Cannot save a job without a name")

    job_file = jobs_dir / f"{name}.yaml"
    with open(job_file, "w") as f:
        yaml.dump(job_dict, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    logger.debug(f"Saved job '{name}' to {job_file}")
    return job_file


def create_default_config(config_dir: Path | None = None) -> Path:
    """Create default configuration files if they don't exist."""
    base = ensure_config_dir(config_dir)
    config_file = base / "cronmaster.yaml"
    jobs_dir = base / "jobs"

    if not config_file.exists():
        config = CronMasterConfig()
        with open(config_file, "w") as f:
            yaml.safe_dump(
                config.model_dump(mode="json"),
                f,
                default_flow_style=False,
                sort_keys=False,
            )
        logger.info(f"Created default config at {config_file}")

    if not list(jobs_dir.glob("*.yaml")):
        for name, definition in DEFAULT_JOBS.items():
            save_job({"name": name, **definition}, jobs_dir)
        logger.info(f"Created {len(DEFAULT_JOBS)} default jobs in {jobs_dir}")

    return base
