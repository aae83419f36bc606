"""Pydantic models for CronMaster configuration and state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import pytz
from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# Scheduling
# ============================================================================


class ScheduleKind(str, Enum):
    """How a job's due time is decided."""

    INTERVAL = "interval"
    CRON = "cron"


class RunStatus(str, Enum):
    """Outcome of a single execution attempt."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"
    DEGRADED = "DEGRADED"
    TIMEOUT = "TIMEOUT"
    SKIPPED = "SKIPPED"


# Statuses that extend a job's failure streak
FAILURE_STATUSES = frozenset({RunStatus.FAIL, RunStatus.TIMEOUT})

# Legacy millisecond keys accepted at the model boundary
_MS_FIELDS = {
    "timeout_ms": "timeout_seconds",
    "backoff_ms": "backoff_seconds",
    "cooldown_ms": "cooldown_seconds",
}


def _convert_ms_keys(data: Any) -> Any:
    """Rewrite ``*_ms`` keys into their ``*_seconds`` counterparts."""
    if not isinstance(data, dict):
        return data
    data = dict(data)
    for ms_key, seconds_key in _MS_FIELDS.items():
        if ms_key in data:
            value = data.pop(ms_key)
            if seconds_key not in data and value is not None:
                data[seconds_key] = float(value) / 1000.0
    return data


class JobConfig(BaseModel):
    """Definition of a schedulable job (as seeded from a job file)."""

    name: str
    handler: str
    description: str = ""
    enabled: bool = True

    schedule_kind: ScheduleKind = ScheduleKind.INTERVAL
    interval_seconds: int | None = None
    cron_expression: str | None = None
    timezone: str = "UTC"

    timeout_seconds: float = 60.0
    max_retries: int = 3
    backoff_seconds: float = 15.0
    cooldown_seconds: int = 0
    priority: int = 50  # escalation only, 0-100

    config: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize_units(cls, data: Any) -> Any:
        return _convert_ms_keys(data)

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v

    @field_validator("backoff_seconds")
    @classmethod
    def _positive_duration(cls, v: float) -> float:
        if v < 0:
            raise ValueError("durations must not be negative")
        return v

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone '{v}'") from None
        return v

    @field_validator("cooldown_seconds", "max_retries")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @model_validator(mode="after")
    def _check_schedule(self) -> "JobConfig":
        if self.schedule_kind == ScheduleKind.INTERVAL:
            if not self.interval_seconds or self.interval_seconds <= 0:
                raise ValueError(f"Interval job '{self.name}' needs a positive interval_seconds")
        elif not self.cron_expression:
            raise ValueError(f"Cron job '{self.name}' needs a cron_expression")
        return self


class Job(JobConfig):
    """A job definition plus the runtime state the scheduler maintains."""

    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    last_status: RunStatus | None = None
    last_error: str | None = None
    consecutive_failures: int = 0


class JobRun(BaseModel):
    """Record of one execution attempt of a job."""

    id: int | None = None
    job_name: str
    started_at: datetime
    completed_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    duration_seconds: float | None = None
    issues_detected_count: int = 0
    fixes_applied_count: int = 0
    verification_passed: bool = False
    heartbeat: bool = False
    summary: str | None = None
    error: str | None = None


# ============================================================================
# Work items
# ============================================================================


class Severity(str, Enum):
    """Issue severity."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


# Monotonic in severity: a higher severity always scores strictly higher
SEVERITY_PRIORITY: dict[Severity, int] = {
    Severity.CRITICAL: 95,
    Severity.HIGH: 80,
    Severity.MEDIUM: 50,
    Severity.LOW: 25,
    Severity.INFO: 5,
}

APPROVAL_SEVERITIES = frozenset({Severity.CRITICAL, Severity.HIGH})


class Category(str, Enum):
    """Closed set of work item categories."""

    OPS = "ops"
    SECURITY = "security"
    API = "api"
    SEO = "seo"
    ACCESSIBILITY = "accessibility"
    PERFORMANCE = "performance"
    UX = "ux"
    DATA = "data"
    PAYMENTS = "payments"
    AUTH = "auth"
    COST = "cost"
    LEARNING = "learning"
    OTHER = "other"


class WorkItemStatus(str, Enum):
    """Lifecycle states of a work item."""

    NEW = "NEW"
    DISPATCHED = "DISPATCHED"
    IN_PROGRESS = "IN_PROGRESS"
    PR_OPENED = "PR_OPENED"
    VERIFIED = "VERIFIED"
    MERGED = "MERGED"
    DEPLOYED = "DEPLOYED"
    BLOCKED = "BLOCKED"
    FAILED = "FAILED"
    SUPPRESSED = "SUPPRESSED"


class AssignedModel(str, Enum):
    """Builder assigned to a work item."""

    CLAUDE = "claude"
    OPENAI = "openai"
    LOCAL = "local"


class Issue(BaseModel):
    """An incoming detected problem, before it becomes a work item.

    Severity and category are free text here; they are normalized to the
    closed enums when the issue is turned into work.
    """

    title: str
    severity: str
    category: str
    description: str = ""
    locator: str | None = None  # URL, route or endpoint
    details: dict[str, Any] = Field(default_factory=dict)
    evidence_urls: list[str] = Field(default_factory=list)
    requires_approval: bool = False
    assigned_model: AssignedModel = AssignedModel.CLAUDE
    created_by: str = "auditops"
    source_run_id: int | None = None
    source_issue_id: str | None = None
    source_issue_fingerprint: str | None = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v


class WorkItem(BaseModel):
    """A deduplicated, stateful unit of remediation work."""

    id: int | None = None
    fingerprint: str
    title: str
    description: str = ""
    severity: Severity
    category: Category
    status: WorkItemStatus = WorkItemStatus.NEW
    priority_score: int = 50
    attempts: int = 0
    cooldown_until: datetime | None = None
    requires_approval: bool = False
    approved_at: datetime | None = None
    approved_by: str | None = None

    locator: str | None = None
    recommended_fix: str | None = None
    acceptance_criteria: list[str] = Field(default_factory=list)
    verification_plan: list[str] = Field(default_factory=list)
    rollback_plan: list[str] = Field(default_factory=list)
    evidence_urls: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    source_run_id: int | None = None
    source_issue_id: str | None = None
    source_issue_fingerprint: str | None = None

    assigned_to: str | None = None
    assigned_model: AssignedModel = AssignedModel.CLAUDE
    created_by: str = "auditops"
    last_error: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None


# ============================================================================
# Playbooks
# ============================================================================


class HealActionType(str, Enum):
    """Remediation action kinds."""

    RESTART = "RESTART"
    REDEPLOY = "REDEPLOY"
    ROLLBACK = "ROLLBACK"
    CACHE_PURGE = "CACHE_PURGE"
    FEATURE_FLAG_TOGGLE = "FEATURE_FLAG_TOGGLE"
    QUARANTINE = "QUARANTINE"
    NOTIFY = "NOTIFY"
    LEARN = "LEARN"


class TargetType(str, Enum):
    """What a heal action operates on."""

    DOMAIN = "domain"
    PROJECT = "project"
    ENDPOINT = "endpoint"
    FLAG = "flag"
    DB = "db"


class VerifyType(str, Enum):
    """How an action's effect is verified."""

    HTTP = "http"
    API_CONTRACT = "api_contract"
    DB_QUERY = "db_query"
    CUSTOM = "custom"


class SafetyPolicy(BaseModel):
    """Safety block attached to a heal action."""

    requires_approval: bool = False
    max_attempts: int = 1
    cooldown_seconds: int = 0

    @model_validator(mode="before")
    @classmethod
    def _normalize_units(cls, data: Any) -> Any:
        return _convert_ms_keys(data)


class VerifyPolicy(BaseModel):
    """Verification block attached to a heal action."""

    type: VerifyType = VerifyType.CUSTOM
    url: str | None = None
    expected_status: int = 200
    retries: int = 1
    backoff_seconds: float = 0.0

    @model_validator(mode="before")
    @classmethod
    def _normalize_units(cls, data: Any) -> Any:
        return _convert_ms_keys(data)

    @field_validator("retries")
    @classmethod
    def _at_least_once(cls, v: int) -> int:
        return max(1, v)


class HealAction(BaseModel):
    """One ordered remediation step of a playbook."""

    action_type: HealActionType
    target_type: TargetType
    target_id: str
    reason: str = ""
    safety: SafetyPolicy = Field(default_factory=SafetyPolicy)
    verify: VerifyPolicy = Field(default_factory=VerifyPolicy)


class PlaybookMatch(BaseModel):
    """Predicate over incident attributes; unset fields are wildcards."""

    status_code: int | None = None
    locator_contains: str | None = None
    category: Category | None = None
    error_contains: str | None = None


class Playbook(BaseModel):
    """A predicate-matched, ordered set of remediation actions."""

    id: str
    name: str
    description: str = ""
    match: PlaybookMatch = Field(default_factory=PlaybookMatch)
    actions: list[HealAction] = Field(default_factory=list)


class Incident(BaseModel):
    """Description of a live problem handed to the playbook matcher."""

    title: str = ""
    category: Category | None = None
    status_code: int | None = None
    locator: str | None = None
    error_message: str | None = None
    fingerprint: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Daemon configuration
# ============================================================================


class RemediationMode(str, Enum):
    """Whether heal actions are really executed."""

    SIMULATE = "simulate"
    EXECUTE = "execute"


class DaemonConfig(BaseModel):
    """Foreground loop configuration."""

    log_level: str = "INFO"
    tick_interval_seconds: int = 60


class SchedulerConfig(BaseModel):
    """Orchestrator configuration."""

    lock_key: str = "cronmaster_master_tick"
    lock_ttl_seconds: int = 600
    alert_priority_threshold: int = 80
    cron_fallback_interval_seconds: int = 60
    parallel: bool = False

    @field_validator("lock_ttl_seconds")
    @classmethod
    def _ttl_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("lock_ttl_seconds must be positive")
        return v


class AlertsConfig(BaseModel):
    """Alert channel configuration."""

    enabled: bool = True
    webhook_url: str | None = None
    required: bool = False
    timeout_seconds: float = 10.0


class ProofConfig(BaseModel):
    """Proof report configuration."""

    output_dir: str | None = None
    default_window_hours: int = 24
    sample_size: int = 50


class RemediationConfig(BaseModel):
    """Self-heal runner configuration."""

    mode: RemediationMode = RemediationMode.SIMULATE


class CronMasterConfig(BaseModel):
    """Main CronMaster configuration."""

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    proof: ProofConfig = Field(default_factory=ProofConfig)
    remediation: RemediationConfig = Field(default_factory=RemediationConfig)

