"""Uptime proof reports for CronMaster.

Rebuilds heartbeat continuity and success rate from run history. The same
window over the same history always produces the same numbers, so a report
can be regenerated at any time.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from cronmaster.models import JobRun, RunStatus, utcnow

if TYPE_CHECKING:
    from cronmaster.db import Database


GAP_THRESHOLD_MINUTES = 2.0
CRITICAL_GAP_MINUTES = 5.0
UPTIME_THRESHOLD_PCT = 99.5
MIN_RUN_RATIO = 0.9  # of one run per minute

REPORT_FILENAME = "self_healing_proof.json"


@dataclass
class Gap:
    """A stretch between two heartbeats longer than the threshold."""

    start: datetime
    end: datetime
    minutes: float

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "minutes": self.minutes,
        }


def compute_gaps(timestamps: list[datetime], threshold_minutes: float = GAP_THRESHOLD_MINUTES) -> list[Gap]:
    """Find gaps between consecutive timestamps, largest first."""
    ordered = sorted(timestamps)
    gaps = []
    for current, following in zip(ordered, ordered[1:]):
        minutes = (following - current).total_seconds() / 60
        if minutes > threshold_minutes:
            gaps.append(Gap(start=current, end=following, minutes=round(minutes, 1)))
    return sorted(gaps, key=lambda g: g.minutes, reverse=True)


def uptime_pct(successes: int, total: int) -> float:
    """Success share as a percentage with one decimal, 0 with no runs."""
    if total <= 0:
        return 0.0
    return round(successes / total * 100, 1)


@dataclass
class ProofSummary:
    total_runs: int
    successes: int
    failures: int
    degraded: int
    timeouts: int
    uptime_pct: float
    heartbeat_count: int
    expected_heartbeats: int

    def to_dict(self) -> dict:
        return {
            "total_runs": self.total_runs,
            "successes": self.successes,
            "failures": self.failures,
            "degraded": self.degraded,
            "timeouts": self.timeouts,
            "uptime_pct": self.uptime_pct,
            "heartbeat_count": self.heartbeat_count,
            "expected_heartbeats": self.expected_heartbeats,
        }


@dataclass
class ProofVerification:
    heartbeat_continuous: bool
    uptime_threshold_met: bool
    no_critical_gaps: bool
    overall_healthy: bool

    def to_dict(self) -> dict:
        return {
            "heartbeat_continuous": self.heartbeat_continuous,
            "uptime_threshold_met": self.uptime_threshold_met,
            "no_critical_gaps": self.no_critical_gaps,
            "overall_healthy": self.overall_healthy,
        }


@dataclass
class ProofReport:
    """Certifiable summary of one window of run history."""

    generated_at: datetime
    window_hours: int
    summary: ProofSummary
    verification: ProofVerification
    gaps: list[Gap] = field(default_factory=list)
    max_gap_minutes: float = 0.0
    issues_detected: int = 0
    fixes_applied: int = 0
    sample_runs: list[JobRun] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "generated_at": self.generated_at.isoformat(),
            "window_hours": self.window_hours,
            "summary": self.summary.to_dict(),
            "gaps": [g.to_dict() for g in self.gaps],
            "max_gap_minutes": self.max_gap_minutes,
            "issues_detected": self.issues_detected,
            "fixes_applied": self.fixes_applied,
            "verification": self.verification.to_dict(),
            "sample_runs": [r.model_dump(mode="json") for r in self.sample_runs],
        }


@dataclass
class ProofCheckResult:
    """Pass/fail verdict with the reasons for failing."""

    passed: bool
    failures: list[str]
    report: ProofReport

    def to_dict(self) -> dict:
        return {
            "pass": self.passed,
            "failures": list(self.failures),
            "report": self.report.to_dict(),
        }


class ProofEngine:
    """Builds proof reports from the run store."""

    def __init__(self, db: "Database", output_dir: Path | None = None, sample_size: int = 50):
        self._db = db
        self._output_dir = output_dir
        self._sample_size = sample_size

    def generate(self, hours: int = 24, now: datetime | None = None) -> ProofReport:
        """Compute the report for the last ``hours`` hours.

        Runs still marked RUNNING are left out.
        """
        now = now or utcnow()
        since = now - timedelta(hours=hours)

        runs = [
            r
            for r in self._db.get_runs(since=since, until=now, limit=None, ascending=True)
            if r.status != RunStatus.RUNNING
        ]
        heartbeats = [r for r in runs if r.heartbeat]

        total = len(runs)
        successes = sum(1 for r in runs if r.status == RunStatus.SUCCESS)
        failures = sum(1 for r in runs if r.status == RunStatus.FAIL)
        degraded = sum(1 for r in runs if r.status == RunStatus.DEGRADED)
        timeouts = sum(1 for r in runs if r.status == RunStatus.TIMEOUT)
        pct = uptime_pct(successes, total)

        gaps = compute_gaps([r.started_at for r in heartbeats])
        max_gap = max((g.minutes for g in gaps), default=0.0)

        verification = ProofVerification(
            heartbeat_continuous=not gaps,
            uptime_threshold_met=pct >= UPTIME_THRESHOLD_PCT,
            no_critical_gaps=max_gap < CRITICAL_GAP_MINUTES,
            overall_healthy=(
                not gaps
                and pct >= UPTIME_THRESHOLD_PCT
                and max_gap < CRITICAL_GAP_MINUTES
                and failures == 0
            ),
        )

        report = ProofReport(
            generated_at=now,
            window_hours=hours,
            summary=ProofSummary(
                total_runs=total,
                successes=successes,
                failures=failures,
                degraded=degraded,
                timeouts=timeouts,
                uptime_pct=pct,
                heartbeat_count=len(heartbeats),
                expected_heartbeats=hours * 60,
            ),
            verification=verification,
            gaps=gaps,
            max_gap_minutes=max_gap,
            issues_detected=sum(r.issues_detected_count for r in runs),
            fixes_applied=sum(r.fixes_applied_count for r in runs),
            sample_runs=runs[-self._sample_size:] if self._sample_size else [],
        )

        logger.info(
            f"Proof report ({hours}h): uptime {pct}%, {len(gaps)} gaps, "
            f"healthy={verification.overall_healthy}"
        )
        return report

    def write(self, report: ProofReport, output_dir: Path | None = None) -> Path:
        """Write the report as JSON and return its path."""
        target = output_dir or self._output_dir
        if target is None:
            raise ValueError("No output directory configured for proof reports")
        target.mkdir(parents=True, exist_ok=True)

        path = target / REPORT_FILENAME
        with open(path, "w") as f:
            json.dump(report.to_dict(), f, indent=2)
        logger.debug(f"Wrote proof report to {path}")
        return path

    def check(self, hours: int = 24, now: datetime | None = None) -> ProofCheckResult:
        """Generate a report and list every way it falls short."""
        report = self.generate(hours, now)
        failures = []

        if report.summary.uptime_pct < UPTIME_THRESHOLD_PCT:
            failures.append(
                f"Uptime below threshold: {report.summary.uptime_pct}% < {UPTIME_THRESHOLD_PCT}%"
            )

        if report.max_gap_minutes > CRITICAL_GAP_MINUTES:
            failures.append(f"Gap detected > {CRITICAL_GAP_MINUTES:g} minutes: {report.max_gap_minutes} min")

        expected_min_runs = math.floor(hours * 60 * MIN_RUN_RATIO)
        if report.summary.total_runs < expected_min_runs:
            failures.append(f"Too few runs: {report.summary.total_runs} < {expected_min_runs}")

        if report.summary.failures > 0:
            failures.append(f"{report.summary.failures} failed runs detected")

        return ProofCheckResult(passed=not failures, failures=failures, report=report)
