"""Self-heal playbooks for CronMaster.

A playbook pairs an incident predicate with an ordered list of heal
actions. The matcher only selects playbooks; the remediation runner walks
the selected actions while honoring each one's safety and verification
blocks.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
import yaml
from loguru import logger

from cronmaster.core.fingerprint import fingerprint
from cronmaster.models import (
    Category,
    HealAction,
    HealActionType,
    Incident,
    Playbook,
    RemediationMode,
    VerifyPolicy,
    VerifyType,
    utcnow,
)

if TYPE_CHECKING:
    from cronmaster.db import Database


def _action(
    action_type: HealActionType,
    target_type: str,
    target_id: str,
    reason: str,
    *,
    approval: bool = False,
    max_attempts: int = 1,
    cooldown: int = 0,
    verify: dict | None = None,
) -> HealAction:
    return HealAction(
        action_type=action_type,
        target_type=target_type,
        target_id=target_id,
        reason=reason,
        safety={"requires_approval": approval, "max_attempts": max_attempts, "cooldown_seconds": cooldown},
        verify=verify or {"type": "custom", "retries": 1, "backoff_seconds": 0},
    )


DEFAULT_PLAYBOOKS: list[Playbook] = [
    Playbook(
        id="pb_503_dynamic_pages",
        name="503 on Dynamic Pages",
        description="Handle 503 errors on dynamic pages such as /apps",
        match={"status_code": 503, "locator_contains": "/apps"},
        actions=[
            _action(
                HealActionType.CACHE_PURGE, "domain", "primary",
                "Clear CDN cache to ensure fresh content",
                cooldown=60,
                verify={"type": "http", "expected_status": 200, "retries": 3, "backoff_seconds": 5},
            ),
            _action(
                HealActionType.RESTART, "project", "web",
                "503 on a dynamic page; restart the project runtime",
                max_attempts=2, cooldown=120,
                verify={"type": "http", "expected_status": 200, "retries": 5, "backoff_seconds": 5},
            ),
            _action(
                HealActionType.REDEPLOY, "project", "web",
                "Restart did not help; redeploy the latest stable build",
                approval=True, cooldown=600,
                verify={"type": "http", "expected_status": 200, "retries": 10, "backoff_seconds": 8},
            ),
        ],
    ),
    Playbook(
        id="pb_api_500",
        name="API 500 Errors",
        description="Handle internal server errors on API endpoints",
        match={"status_code": 500, "locator_contains": "/api/"},
        actions=[
            _action(
                HealActionType.FEATURE_FLAG_TOGGLE, "flag", "API_SAFE_MODE",
                "Enable safe mode to return minimal responses while investigating",
                cooldown=60,
                verify={"type": "http", "retries": 3, "backoff_seconds": 3},
            ),
            _action(
                HealActionType.NOTIFY, "domain", "engineering",
                "Alert engineering about API failures",
                cooldown=300,
            ),
            _action(
                HealActionType.LEARN, "db", "knowledge_base",
                "Record the incident for later analysis",
            ),
        ],
    ),
    Playbook(
        id="pb_db_connection",
        name="Database Connection Issues",
        description="Handle database connection failures",
        match={"error_contains": "connection"},
        actions=[
            _action(
                HealActionType.CACHE_PURGE, "project", "all",
                "Clear connection pools and caches",
                cooldown=30,
                verify={"type": "db_query", "retries": 5, "backoff_seconds": 2},
            ),
            _action(
                HealActionType.NOTIFY, "domain", "engineering",
                "Database connectivity issues require immediate attention",
                cooldown=60,
            ),
        ],
    ),
    Playbook(
        id="pb_high_latency",
        name="High Latency Response",
        description="Handle endpoints responding slower than 5 seconds",
        match={"category": Category.PERFORMANCE},
        actions=[
            _action(
                HealActionType.CACHE_PURGE, "domain", "primary",
                "Purge cache to clear stale data",
                cooldown=300,
                verify={"type": "http", "retries": 3, "backoff_seconds": 3},
            ),
            _action(
                HealActionType.LEARN, "db", "knowledge_base",
                "Record the latency pattern for analysis",
            ),
        ],
    ),
    Playbook(
        id="pb_cron_limit",
        name="Cron Job Limit Reached",
        description="Handle a saturated platform cron quota",
        match={"error_contains": "cron_jobs_limits_reached"},
        actions=[
            _action(
                HealActionType.FEATURE_FLAG_TOGGLE, "flag", "DISABLE_NONCRITICAL_CRONS",
                "Disable non-critical schedules to free up slots",
                approval=True, cooldown=3600,
            ),
            _action(
                HealActionType.NOTIFY, "domain", "engineering",
                "Schedules need consolidating behind the tick entry point",
                cooldown=300,
            ),
        ],
    ),
]


def load_playbooks(path: Path) -> list[Playbook]:
    """Load playbooks from a YAML file with a top-level ``playbooks`` list."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    entries = data.get("playbooks", []) if isinstance(data, dict) else data
    playbooks = [Playbook.model_validate(entry) for entry in entries]
    logger.debug(f"Loaded {len(playbooks)} playbooks from {path}")
    return playbooks


def playbook_matches(playbook: Playbook, incident: Incident) -> bool:
    """Check every predicate the playbook declares; undeclared ones match anything."""
    match = playbook.match

    if match.status_code is not None and incident.status_code != match.status_code:
        return False
    if match.locator_contains is not None and match.locator_contains not in (incident.locator or ""):
        return False
    if match.category is not None and incident.category != match.category:
        return False
    if match.error_contains is not None and match.error_contains not in (incident.error_message or ""):
        return False
    return True


class PlaybookMatcher:
    """Selects playbooks for an incident, in table order."""

    def __init__(self, playbooks: list[Playbook] | None = None):
        self.playbooks = list(DEFAULT_PLAYBOOKS if playbooks is None else playbooks)

    def match(self, incident: Incident) -> list[Playbook]:
        return [pb for pb in self.playbooks if playbook_matches(pb, incident)]


# ============================================================================
# Remediation
# ============================================================================


class ActionStatus:
    """Recorded outcome of one heal action."""

    EXECUTED = "executed"
    SIMULATED = "simulated"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"
    SKIPPED_MAX_ATTEMPTS = "skipped_max_attempts"
    SKIPPED_COOLDOWN = "skipped_cooldown"


# Statuses that count as an attempt for max_attempts and cooldown
ATTEMPT_STATUSES = (ActionStatus.EXECUTED, ActionStatus.SIMULATED, ActionStatus.FAILED)


@dataclass
class ActionReport:
    """What happened to one action."""

    playbook_id: str
    action_type: str
    target: str
    status: str
    verified: bool = False
    detail: str | None = None

    def to_dict(self) -> dict:
        return {
            "playbook_id": self.playbook_id,
            "action_type": self.action_type,
            "target": self.target,
            "status": self.status,
            "verified": self.verified,
            "detail": self.detail,
        }


@dataclass
class RemediationResult:
    """Outcome of remediating one incident."""

    incident_fingerprint: str
    mode: RemediationMode
    playbooks: list[str] = field(default_factory=list)
    actions: list[ActionReport] = field(default_factory=list)
    resolved: bool = False

    @property
    def awaiting_approval(self) -> list[ActionReport]:
        return [a for a in self.actions if a.status == ActionStatus.AWAITING_APPROVAL]

    def to_dict(self) -> dict:
        return {
            "incident_fingerprint": self.incident_fingerprint,
            "mode": self.mode.value,
            "playbooks": list(self.playbooks),
            "resolved": self.resolved,
            "actions": [a.to_dict() for a in self.actions],
        }


class ActionExecutor(ABC):
    """Performs a heal action against the outside world."""

    @abstractmethod
    async def execute(self, action: HealAction, incident: Incident) -> str:
        """Carry out ``action``; return a short detail line or raise."""
        pass


class SimulatedExecutor(ActionExecutor):
    """Describes what would be done without doing it."""

    async def execute(self, action: HealAction, incident: Incident) -> str:
        return (
            f"would {action.action_type.value} {action.target_type.value}:{action.target_id}"
            f" ({action.reason})"
        )


class Verifier:
    """Runs an action's verification block."""

    def __init__(
        self,
        db: "Database | None" = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timeout_seconds: float = 10.0,
    ):
        self._db = db
        self._transport = transport
        self._sleep = sleep
        self._timeout = timeout_seconds

    async def verify(self, policy: VerifyPolicy, incident: Incident | None = None) -> bool:
        """Poll until the expected result shows up or retries run out."""
        for attempt in range(policy.retries):
            if await self._check(policy, incident):
                return True
            if attempt < policy.retries - 1 and policy.backoff_seconds:
                await self._sleep(policy.backoff_seconds)
        return False

    async def _check(self, policy: VerifyPolicy, incident: Incident | None) -> bool:
        if policy.type == VerifyType.CUSTOM:
            return True

        if policy.type == VerifyType.DB_QUERY:
            if self._db is None:
                return False
            try:
                return self._db.ping()
            except Exception as e:
                logger.debug(f"DB verification failed: {e}")
                return False

        url = policy.url or (incident.locator if incident else None)
        if not url or not url.startswith(("http://", "https://")):
            logger.debug(f"No URL to verify for {policy.type.value} check")
            return False

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug(f"Verification request to {url} failed: {e}")
            return False
        return response.status_code == policy.expected_status


def incident_key(incident: Incident) -> str:
    """Stable key used to scope per-incident attempt counts."""
    if incident.fingerprint:
        return incident.fingerprint
    return fingerprint(
        incident.category or Category.OTHER,
        str(incident.status_code or ""),
        incident.title,
        incident.locator,
    )


class RemediationRunner:
    """Walks matched playbooks and applies their actions in order."""

    def __init__(
        self,
        db: "Database",
        matcher: PlaybookMatcher | None = None,
        mode: RemediationMode = RemediationMode.SIMULATE,
        executor: ActionExecutor | None = None,
        verifier: Verifier | None = None,
    ):
        if mode == RemediationMode.EXECUTE and executor is None:
            raise ValueError("execute mode needs an ActionExecutor")
        self._db = db
        self._matcher = matcher or PlaybookMatcher()
        self._mode = mode
        self._executor = executor
        self._simulator = SimulatedExecutor()
        self._verifier = verifier or Verifier(db=db)

    async def remediate(
        self,
        incident: Incident,
        approved: bool = False,
        now: datetime | None = None,
    ) -> RemediationResult:
        """Apply the first action that verifies, skipping what policy forbids.

        Args:
            incident: The live problem
            approved: Whether an operator approved higher-risk actions
            now: Reference time for cooldown checks
        """
        now = now or utcnow()
        key = incident_key(incident)
        playbooks = self._matcher.match(incident)
        result = RemediationResult(
            incident_fingerprint=key,
            mode=self._mode,
            playbooks=[pb.id for pb in playbooks],
        )

        if not playbooks:
            logger.info(f"No playbook matches incident '{incident.title}'")
            return result

        for playbook in playbooks:
            for action in playbook.actions:
                report = await self._apply(playbook, action, incident, key, approved, now)
                result.actions.append(report)
                if report.verified:
                    result.resolved = True
                    logger.info(
                        f"Incident '{incident.title}' resolved by {playbook.id}/{action.action_type.value}"
                    )
                    return result

        return result

    async def _apply(
        self,
        playbook: Playbook,
        action: HealAction,
        incident: Incident,
        key: str,
        approved: bool,
        now: datetime,
    ) -> ActionReport:
        report = ActionReport(
            playbook_id=playbook.id,
            action_type=action.action_type.value,
            target=f"{action.target_type.value}:{action.target_id}",
            status=ActionStatus.AWAITING_APPROVAL,
        )

        if action.safety.requires_approval and not approved:
            logger.info(f"{playbook.id}/{action.action_type.value} needs approval, not executed")
            return report

        attempts = self._db.get_heal_actions(
            action.action_type.value, action.target_id, ATTEMPT_STATUSES, incident_fingerprint=key
        )
        if len(attempts) >= action.safety.max_attempts:
            report.status = ActionStatus.SKIPPED_MAX_ATTEMPTS
            report.detail = f"{len(attempts)} of {action.safety.max_attempts} attempts used"
            return report

        if action.safety.cooldown_seconds:
            recent = self._db.get_heal_actions(
                action.action_type.value, action.target_id, ATTEMPT_STATUSES
            )
            if recent:
                ready_at = recent[0]["created_at"] + timedelta(seconds=action.safety.cooldown_seconds)
                if ready_at > now:
                    report.status = ActionStatus.SKIPPED_COOLDOWN
                    report.detail = f"cooling down until {ready_at.isoformat()}"
                    return report

        if self._mode == RemediationMode.SIMULATE:
            report.status = ActionStatus.SIMULATED
            report.detail = await self._simulator.execute(action, incident)
            logger.info(f"[simulate] {report.detail}")
        else:
            try:
                report.detail = await self._executor.execute(action, incident)
                report.status = ActionStatus.EXECUTED
                report.verified = await self._verifier.verify(action.verify, incident)
            except Exception as e:
                report.status = ActionStatus.FAILED
                report.detail = str(e)
                logger.warning(f"{playbook.id}/{action.action_type.value} failed: {e}")

        self._db.add_heal_action(
            playbook_id=playbook.id,
            action_type=action.action_type.value,
            target_type=action.target_type.value,
            target_id=action.target_id,
            status=report.status,
            incident_fingerprint=key,
            verification_passed=report.verified,
            detail=report.detail,
            now=now,
        )
        return report
