"""Work item lifecycle for CronMaster.

Turns detected issues into deduplicated work items and moves them through
a fixed state machine. Every state change is a conditional update against
the row's current status, so two dispatchers racing for the same item
cannot both win.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable

from loguru import logger

from cronmaster.core.fingerprint import fingerprint as compute_fingerprint
from cronmaster.models import (
    APPROVAL_SEVERITIES,
    SEVERITY_PRIORITY,
    Category,
    Issue,
    Severity,
    WorkItem,
    WorkItemStatus,
    utcnow,
)

if TYPE_CHECKING:
    from cronmaster.db import Database


S = WorkItemStatus

TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    S.NEW: frozenset({S.DISPATCHED, S.SUPPRESSED}),
    S.DISPATCHED: frozenset({S.IN_PROGRESS, S.FAILED, S.BLOCKED}),
    S.IN_PROGRESS: frozenset({S.PR_OPENED, S.FAILED, S.BLOCKED}),
    S.PR_OPENED: frozenset({S.VERIFIED, S.FAILED, S.BLOCKED}),
    S.VERIFIED: frozenset({S.MERGED, S.FAILED, S.BLOCKED}),
    S.MERGED: frozenset({S.DEPLOYED, S.FAILED}),
    S.DEPLOYED: frozenset({S.SUPPRESSED}),
    S.BLOCKED: frozenset({S.DISPATCHED, S.FAILED, S.SUPPRESSED}),
    S.FAILED: frozenset({S.DISPATCHED, S.SUPPRESSED}),
    S.SUPPRESSED: frozenset(),
}

# Already being handled or resolved; regeneration leaves these alone
SKIP_STATUSES = frozenset({S.IN_PROGRESS, S.PR_OPENED, S.VERIFIED, S.MERGED, S.DEPLOYED})

# Dormant; regeneration overwrites and resets them to NEW
REOPEN_STATUSES = frozenset({S.NEW, S.FAILED, S.BLOCKED, S.SUPPRESSED})

DISPATCHABLE_STATUSES = frozenset({S.NEW, S.FAILED, S.BLOCKED})


def can_transition(from_status: WorkItemStatus, to_status: WorkItemStatus) -> bool:
    """Check the transition table."""
    return to_status in TRANSITIONS.get(from_status, frozenset())


# ============================================================================
# Normalization
# ============================================================================


def map_severity(text: str | Severity) -> Severity:
    """Map free-text severity onto the closed set; unknown text is INFO."""
    up = str(getattr(text, "value", text) or "").upper()
    if "CRIT" in up:
        return Severity.CRITICAL
    if "HIGH" in up:
        return Severity.HIGH
    if "MED" in up:
        return Severity.MEDIUM
    if "LOW" in up:
        return Severity.LOW
    return Severity.INFO


_CATEGORY_KEYWORDS: list[tuple[tuple[str, ...], Category]] = [
    (("SEC",), Category.SECURITY),
    (("API",), Category.API),
    (("SEO",), Category.SEO),
    (("A11Y", "ACCESS"), Category.ACCESSIBILITY),
    (("PERF",), Category.PERFORMANCE),
    (("DATA", "DB"), Category.DATA),
    (("AUTH",), Category.AUTH),
    (("PAY",), Category.PAYMENTS),
    (("OPS",), Category.OPS),
    (("COST",), Category.COST),
    (("LEARN",), Category.LEARNING),
    (("UX",), Category.UX),
]


def map_category(text: str | Category) -> Category:
    """Map free-text category onto the closed set; unknown text is OTHER."""
    up = str(getattr(text, "value", text) or "").upper()
    for keywords, category in _CATEGORY_KEYWORDS:
        if any(keyword in up for keyword in keywords):
            return category
    return Category.OTHER


# ============================================================================
# Enrichment
# ============================================================================


def recommended_fix(title: str, locator: str | None) -> str:
    """Suggest first remediation steps from the issue title."""
    lowered = title.lower()

    if "cron" in lowered and "limit" in lowered:
        return "\n".join([
            "Consolidate scheduled jobs behind the single tick entry point.",
            "1. Register each per-project job as a job file",
            "2. Remove the per-project schedules",
            "3. Verify the heartbeat job keeps running",
        ])

    for code, target, steps in (
        ("503", "page", [
            "Check function logs",
            "Verify environment variables",
            "Check the database connection",
            "Add graceful error handling",
        ]),
        ("500", "endpoint", [
            "Check server logs for the stack trace",
            "Verify database queries",
            "Return structured errors",
            "Validate input parameters",
        ]),
        ("404", "route", [
            "Verify the route exists",
            "Check for case-sensitive typos",
            "Add the missing handler",
        ]),
    ):
        if code in lowered:
            lines = [f"Fix {code} on {locator or target}:"]
            lines.extend(f"{i}. {step}" for i, step in enumerate(steps, 1))
            return "\n".join(lines)

    return "\n".join([
        f"Resolve: {title}",
        "1. Investigate root cause",
        "2. Implement fix with tests",
        "3. Verify in preview",
        "4. Document solution",
    ])


def acceptance_criteria(issue: Issue) -> list[str]:
    criteria = [
        f'Issue "{issue.title}" is fully resolved',
        "No new errors introduced",
        "All tests pass",
    ]
    if issue.locator:
        criteria.insert(0, f"{issue.locator} returns 200 OK")
    return criteria


def verification_plan(issue: Issue) -> list[str]:
    plan = ["Run lint and type checks", "Run the test suite", "Re-run the canary audit"]
    if issue.locator:
        plan.insert(0, f"HEAD {issue.locator} and check the status line")
    return plan


def rollback_plan() -> list[str]:
    return [
        "Revert the change or roll back the deployment",
        "Disable new feature flags",
        "Re-run the canary audit",
        "Notify the team if needed",
    ]


def build_work_item(issue: Issue) -> WorkItem | None:
    """Translate an issue into a NEW work item, or None for INFO issues."""
    severity = map_severity(issue.severity)
    if severity == Severity.INFO:
        return None
    category = map_category(issue.category)

    description = issue.description or issue.title
    if issue.details:
        description += f"\n\nDetails:\n{json.dumps(issue.details, indent=2, default=str)}"

    return WorkItem(
        fingerprint=compute_fingerprint(category, severity, issue.title, issue.locator),
        title=issue.title.strip(),
        description=description,
        severity=severity,
        category=category,
        status=S.NEW,
        priority_score=SEVERITY_PRIORITY[severity],
        requires_approval=issue.requires_approval or severity in APPROVAL_SEVERITIES,
        locator=issue.locator,
        recommended_fix=recommended_fix(issue.title, issue.locator),
        acceptance_criteria=acceptance_criteria(issue),
        verification_plan=verification_plan(issue),
        rollback_plan=rollback_plan(),
        evidence_urls=[str(url) for url in issue.evidence_urls if url],
        tags=[category.value, severity.value.lower()],
        source_run_id=issue.source_run_id,
        source_issue_id=issue.source_issue_id,
        source_issue_fingerprint=issue.source_issue_fingerprint,
        assigned_model=issue.assigned_model,
        created_by=issue.created_by,
    )


# ============================================================================
# Results
# ============================================================================


@dataclass
class CreateResult:
    """Outcome of turning one issue into work."""

    action: str  # created, reopened, skipped, filtered
    work_item_id: int | None = None
    status: WorkItemStatus | None = None
    fingerprint: str | None = None


@dataclass
class GenerationResult:
    """Outcome of turning a batch of issues into work."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    work_item_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "total": self.total,
            "work_item_ids": list(self.work_item_ids),
        }


@dataclass
class ClaimResult:
    """Outcome of a dispatch attempt."""

    work_item_id: int
    dispatched: bool
    reason: str


@dataclass
class QueryResult:
    """Filtered work items plus counts over the whole filtered set."""

    total: int
    items: list[WorkItem]
    by_status: dict[str, int]
    by_severity: dict[str, int]

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "summary": {"by_status": self.by_status, "by_severity": self.by_severity},
            "items": [item.model_dump(mode="json") for item in self.items],
        }


# ============================================================================
# Store
# ============================================================================


class WorkItemStore:
    """The only writer of work items."""

    def __init__(self, db: "Database"):
        self._db = db

    def get(self, item_id: int) -> WorkItem | None:
        return self._db.get_work_item(item_id)

    def events(self, item_id: int) -> list[dict]:
        return self._db.get_work_item_events(item_id)

    # =========================================================================
    # Generation
    # =========================================================================

    def create(self, issue: Issue) -> CreateResult:
        """Create a work item for an issue, or reopen/skip its existing one."""
        item = build_work_item(issue)
        if item is None:
            logger.debug(f"Filtered INFO issue '{issue.title}'")
            return CreateResult(action="filtered")

        # Two passes cover a concurrent writer inserting or moving the row
        for _ in range(2):
            existing = self._db.get_work_item_by_fingerprint(item.fingerprint)

            if existing is None:
                try:
                    item_id = self._db.insert_work_item(item)
                except sqlite3.IntegrityError:
                    continue
                logger.info(f"Created work item {item_id}: {item.title} [{item.severity.value}]")
                return CreateResult("created", item_id, S.NEW, item.fingerprint)

            if existing.status in SKIP_STATUSES:
                logger.debug(
                    f"Skipping '{item.title}': work item {existing.id} is {existing.status.value}"
                )
                return CreateResult("skipped", existing.id, existing.status, item.fingerprint)

            if self._db.reopen_work_item(existing.id, item, existing.status):
                logger.info(
                    f"Reopened work item {existing.id} ({existing.status.value} -> NEW): {item.title}"
                )
                return CreateResult("reopened", existing.id, S.NEW, item.fingerprint)

        current = self._db.get_work_item_by_fingerprint(item.fingerprint)
        logger.warning(f"Work item for '{item.title}' changed concurrently, skipping")
        return CreateResult(
            "skipped",
            current.id if current else None,
            current.status if current else None,
            item.fingerprint,
        )

    def generate(self, issues: Iterable[Issue], source_run_id: int | None = None) -> GenerationResult:
        """Turn a batch of issues into work items."""
        result = GenerationResult()
        for issue in issues:
            result.total += 1
            if source_run_id is not None and issue.source_run_id is None:
                issue = issue.model_copy(update={"source_run_id": source_run_id})

            outcome = self.create(issue)
            if outcome.action == "created":
                result.created += 1
            elif outcome.action == "reopened":
                result.updated += 1
            else:
                result.skipped += 1
                continue
            result.work_item_ids.append(outcome.work_item_id)

        logger.info(
            f"Work item generation: created={result.created}, updated={result.updated}, "
            f"skipped={result.skipped}"
        )
        return result

    # =========================================================================
    # State machine
    # =========================================================================

    def transition(
        self,
        item_id: int,
        to_status: WorkItemStatus,
        *,
        expected_from: WorkItemStatus | None = None,
        error: str | None = None,
        cooldown_seconds: int | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Move a work item to ``to_status`` if the table allows it.

        Returns False, without touching the row, for unknown items, illegal
        transitions, or when the row no longer holds the expected status.
        """
        now = now or utcnow()
        from_status = expected_from
        if from_status is None:
            item = self._db.get_work_item(item_id)
            if item is None:
                logger.warning(f"Work item {item_id} not found")
                return False
            from_status = item.status

        if not can_transition(from_status, to_status):
            logger.warning(
                f"Invalid transition for work item {item_id}: {from_status.value} -> {to_status.value}"
            )
            return False

        cooldown_until = now + timedelta(seconds=cooldown_seconds) if cooldown_seconds else None
        applied = self._db.transition_work_item(
            item_id,
            from_status,
            to_status,
            reason=reason,
            error=error,
            cooldown_until=cooldown_until,
            now=now,
        )
        if applied:
            logger.info(f"Work item {item_id}: {from_status.value} -> {to_status.value}")
        else:
            logger.debug(f"Work item {item_id} is no longer {from_status.value}, transition dropped")
        return applied

    def approve(self, item_id: int, approved_by: str = "operator", now: datetime | None = None) -> bool:
        """Record approval; the next dispatch will let the item through."""
        approved = self._db.approve_work_item(item_id, approved_by, now)
        if approved:
            logger.info(f"Work item {item_id} approved by {approved_by}")
        return approved

    # =========================================================================
    # Dispatch
    # =========================================================================

    def next_item(self, now: datetime | None = None) -> WorkItem | None:
        """Highest-priority NEW item that is not cooling down."""
        items = self._db.next_work_items([S.NEW], now=now, limit=1)
        return items[0] if items else None

    def claim(self, item_id: int, now: datetime | None = None) -> ClaimResult:
        """Try to dispatch one item.

        Items that require approval and have none are parked in BLOCKED.
        """
        now = now or utcnow()
        item = self._db.get_work_item(item_id)
        if item is None:
            return ClaimResult(item_id, False, "not_found")
        if item.status not in DISPATCHABLE_STATUSES:
            return ClaimResult(item_id, False, "not_dispatchable")
        if item.cooldown_until is not None and item.cooldown_until > now:
            return ClaimResult(item_id, False, "cooldown")

        if not self.transition(item_id, S.DISPATCHED, expected_from=item.status, reason="dispatch", now=now):
            return ClaimResult(item_id, False, "conflict")

        if item.requires_approval and item.approved_at is None:
            self.transition(
                item_id,
                S.BLOCKED,
                expected_from=S.DISPATCHED,
                error="Requires approval",
                reason="approval_required",
                now=now,
            )
            return ClaimResult(item_id, False, "approval_required")

        return ClaimResult(item_id, True, "dispatched")

    def dispatch_batch(
        self,
        limit: int = 1,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> list[ClaimResult]:
        """Claim up to ``limit`` dispatchable items, best first."""
        now = now or utcnow()
        candidates = self._db.next_work_items(
            DISPATCHABLE_STATUSES, now=now, max_attempts=max_attempts, limit=limit
        )
        return [self.claim(item.id, now=now) for item in candidates]

    # =========================================================================
    # Query
    # =========================================================================

    def query(
        self,
        status: str | WorkItemStatus | None = None,
        severity: str | Severity | None = None,
        limit: int = 50,
    ) -> QueryResult:
        """List items filtered by status and/or severity."""
        statuses = [WorkItemStatus(str(getattr(status, "value", status)).upper())] if status else None
        severities = [Severity(str(getattr(severity, "value", severity)).upper())] if severity else None

        by_status = self._db.count_work_items_by("status", statuses, severities)
        by_severity = self._db.count_work_items_by("severity", statuses, severities)
        items = self._db.list_work_items(statuses, severities, limit=limit)
        return QueryResult(
            total=sum(by_status.values()),
            items=items,
            by_status=by_status,
            by_severity=by_severity,
        )
