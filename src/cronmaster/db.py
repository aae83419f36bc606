"""SQLite database for CronMaster jobs, runs, locks and work items."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator, Iterable

from loguru import logger
from pydantic import ValidationError

from cronmaster.config import DEFAULT_DB_FILE
from cronmaster.models import (
    Job,
    JobConfig,
    JobRun,
    RunStatus,
    WorkItem,
    WorkItemStatus,
    utcnow,
)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Job definitions and scheduler bookkeeping
CREATE TABLE IF NOT EXISTS jobs (
    name TEXT PRIMARY KEY,
    handler TEXT NOT NULL,
    description TEXT DEFAULT '',
    enabled INTEGER NOT NULL DEFAULT 1,
    schedule_kind TEXT NOT NULL DEFAULT 'interval',
    interval_seconds INTEGER,
    cron_expression TEXT,
    timezone TEXT DEFAULT 'UTC',
    timeout_seconds REAL NOT NULL DEFAULT 60,
    max_retries INTEGER DEFAULT 3,
    backoff_seconds REAL DEFAULT 15,
    cooldown_seconds INTEGER DEFAULT 0,
    priority INTEGER DEFAULT 50,
    config TEXT,
    last_run_at TEXT,
    next_run_at TEXT,
    last_status TEXT,
    last_error TEXT,
    consecutive_failures INTEGER DEFAULT 0
);

-- Run history (append-only once completed)
CREATE TABLE IF NOT EXISTS job_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'RUNNING',
    duration_seconds REAL,
    issues_detected_count INTEGER DEFAULT 0,
    fixes_applied_count INTEGER DEFAULT 0,
    verification_passed INTEGER DEFAULT 0,
    heartbeat INTEGER DEFAULT 0,
    summary TEXT,
    error TEXT
);

-- Tick locks
CREATE TABLE IF NOT EXISTS locks (
    lock_key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

-- Work items, deduplicated by fingerprint
CREATE TABLE IF NOT EXISTS work_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    fingerprint TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    severity TEXT NOT NULL,
    category TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'NEW',
    priority_score INTEGER NOT NULL DEFAULT 50,
    attempts INTEGER NOT NULL DEFAULT 0,
    cooldown_until TEXT,
    requires_approval INTEGER DEFAULT 0,
    approved_at TEXT,
    approved_by TEXT,
    locator TEXT,
    recommended_fix TEXT,
    acceptance_criteria TEXT,
    verification_plan TEXT,
    rollback_plan TEXT,
    evidence_urls TEXT,
    tags TEXT,
    source_run_id INTEGER,
    source_issue_id TEXT,
    source_issue_fingerprint TEXT,
    assigned_to TEXT,
    assigned_model TEXT DEFAULT 'claude',
    created_by TEXT DEFAULT 'auditops',
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Transition audit trail
CREATE TABLE IF NOT EXISTS work_item_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_item_id INTEGER NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    reason TEXT,
    created_at TEXT NOT NULL
);

-- Executed or simulated remediation actions
CREATE TABLE IF NOT EXISTS heal_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    playbook_id TEXT NOT NULL,
    action_type TEXT NOT NULL,
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    incident_fingerprint TEXT,
    status TEXT NOT NULL,
    verification_passed INTEGER DEFAULT 0,
    detail TEXT,
    created_at TEXT NOT NULL
);

-- Alert history
CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT,
    severity TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT,
    channel TEXT NOT NULL,
    delivered INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_job_runs_job_name ON job_runs(job_name);
CREATE INDEX IF NOT EXISTS idx_job_runs_started_at ON job_runs(started_at);
CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items(status);
CREATE INDEX IF NOT EXISTS idx_work_item_events_item ON work_item_events(work_item_id);
CREATE INDEX IF NOT EXISTS idx_heal_actions_target ON heal_actions(action_type, target_id);
"""

_WORK_ITEM_LIST_FIELDS = (
    "acceptance_criteria",
    "verification_plan",
    "rollback_plan",
    "evidence_urls",
    "tags",
)

# Fields overwritten when a dormant work item is reopened
_REOPEN_FIELDS = (
    "title",
    "description",
    "severity",
    "category",
    "priority_score",
    "requires_approval",
    "locator",
    "recommended_fix",
    *_WORK_ITEM_LIST_FIELDS,
    "source_run_id",
    "source_issue_id",
    "source_issue_fingerprint",
    "assigned_model",
    "created_by",
)


def _ts(value: datetime | None) -> str | None:
    """Serialize a datetime as a sortable UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class Database:
    """SQLite database manager for CronMaster.

    One instance is constructed at startup and handed to every component
    that needs persistence. Each method opens its own short-lived
    connection, so an instance is safe to share between threads.
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize the database."""
        self.db_path = Path(db_path or DEFAULT_DB_FILE)
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure the database exists and is up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)

            cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
            row = cursor.fetchone()

            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                logger.debug(f"Initialized database at {self.db_path}")
            elif row[0] > SCHEMA_VERSION:
                raise sqlite3.DatabaseError(
                    f"Database {self.db_path} has schema version {row[0]}, "
                    f"newer than supported version {SCHEMA_VERSION}"
                )

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ping(self) -> bool:
        """Check the store answers a trivial query."""
        with self._connect() as conn:
            return conn.execute("SELECT 1").fetchone()[0] == 1

    # =========================================================================
    # Job Methods
    # =========================================================================

    def upsert_job_definition(self, job: JobConfig) -> bool:
        """Insert a job or refresh its definition, keeping runtime state.

        Returns:
            True if the job was newly inserted
        """
        definition = (
            job.handler,
            job.description,
            1 if job.enabled else 0,
            job.schedule_kind.value,
            job.interval_seconds,
            job.cron_expression,
            job.timezone,
            job.timeout_seconds,
            job.max_retries,
            job.backoff_seconds,
            job.cooldown_seconds,
            job.priority,
            json.dumps(job.config),
        )

        with self._connect() as conn:
            exists = conn.execute(
                "SELECT 1 FROM jobs WHERE name = ?", (job.name,)
            ).fetchone() is not None

            if exists:
                conn.execute(
                    """
                    UPDATE jobs SET
                        handler = ?, description = ?, enabled = ?,
                        schedule_kind = ?, interval_seconds = ?, cron_expression = ?,
                        timezone = ?, timeout_seconds = ?, max_retries = ?,
                        backoff_seconds = ?, cooldown_seconds = ?, priority = ?,
                        config = ?
                    WHERE name = ?
                    """,
                    (*definition, job.name),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO jobs (
                        handler, description, enabled, schedule_kind,
                        interval_seconds, cron_expression, timezone,
                        timeout_seconds, max_retries, backoff_seconds,
                        cooldown_seconds, priority, config, name
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (*definition, job.name),
                )
            return not exists

    def get_job(self, name: str) -> Job | None:
        """Get a job by name."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE name = ?", (name,)).fetchone()
            return self._row_to_job(row) if row else None

    def get_jobs(self, enabled_only: bool = False) -> list[Job]:
        """Get all jobs, ordered by name.

        Rows that no longer validate are logged and left out.
        """
        query = "SELECT * FROM jobs"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY name"

        with self._connect() as conn:
            rows = conn.execute(query).fetchall()

        jobs = []
        for row in rows:
            try:
                jobs.append(self._row_to_job(row))
            except ValidationError as e:
                logger.error(f"Skipping invalid job row '{row['name']}': {e}")
        return jobs

    def update_job_state(
        self,
        name: str,
        *,
        last_run_at: datetime,
        next_run_at: datetime | None,
        last_status: RunStatus,
        last_error: str | None,
        consecutive_failures: int,
    ) -> None:
        """Record the outcome of an execution attempt on the job row."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE jobs SET
                    last_run_at = ?, next_run_at = ?, last_status = ?,
                    last_error = ?, consecutive_failures = ?
                WHERE name = ?
                """,
                (
                    _ts(last_run_at),
                    _ts(next_run_at),
                    last_status.value,
                    last_error,
                    consecutive_failures,
                    name,
                ),
            )

    def set_job_enabled(self, name: str, enabled: bool) -> bool:
        """Enable or disable a job. Jobs are never deleted."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET enabled = ? WHERE name = ?",
                (1 if enabled else 0, name),
            )
            return cursor.rowcount > 0

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert a database row to a Job."""
        return Job(
            name=row["name"],
            handler=row["handler"],
            description=row["description"] or "",
            enabled=bool(row["enabled"]),
            schedule_kind=row["schedule_kind"],
            interval_seconds=row["interval_seconds"],
            cron_expression=row["cron_expression"],
            timezone=row["timezone"] or "UTC",
            timeout_seconds=row["timeout_seconds"],
            max_retries=row["max_retries"] or 0,
            backoff_seconds=row["backoff_seconds"] or 0,
            cooldown_seconds=row["cooldown_seconds"] or 0,
            priority=row["priority"] if row["priority"] is not None else 50,
            config=json.loads(row["config"]) if row["config"] else {},
            last_run_at=_dt(row["last_run_at"]),
            next_run_at=_dt(row["next_run_at"]),
            last_status=RunStatus(row["last_status"]) if row["last_status"] else None,
            last_error=row["last_error"],
            consecutive_failures=row["consecutive_failures"] or 0,
        )

    # =========================================================================
    # Job Run Methods
    # =========================================================================

    def add_run(self, run: JobRun) -> int:
        """Add a job run record."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO job_runs (
                    job_name, started_at, completed_at, status, duration_seconds,
                    issues_detected_count, fixes_applied_count,
                    verification_passed, heartbeat, summary, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.job_name,
                    _ts(run.started_at),
                    _ts(run.completed_at),
                    run.status.value,
                    run.duration_seconds,
                    run.issues_detected_count,
                    run.fixes_applied_count,
                    1 if run.verification_passed else 0,
                    1 if run.heartbeat else 0,
                    run.summary,
                    run.error,
                ),
            )
            return cursor.lastrowid or 0

    def finish_run(self, run: JobRun) -> None:
        """Finalize a job run record."""
        if run.id is None:
            raise ValueError("Cannot finish run without ID")

        with self._connect() as conn:
            conn.execute(
                """
                UPDATE job_runs SET
                    completed_at = ?,
                    status = ?,
                    duration_seconds = ?,
                    issues_detected_count = ?,
                    fixes_applied_count = ?,
                    verification_passed = ?,
                    summary = ?,
                    error = ?
                WHERE id = ?
                """,
                (
                    _ts(run.completed_at),
                    run.status.value,
                    run.duration_seconds,
                    run.issues_detected_count,
                    run.fixes_applied_count,
                    1 if run.verification_passed else 0,
                    run.summary,
                    run.error,
                    run.id,
                ),
            )

    def get_run(self, run_id: int) -> JobRun | None:
        """Get a single run by ID."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM job_runs WHERE id = ?", (run_id,)).fetchone()
            return self._row_to_run(row) if row else None

    def get_runs(
        self,
        job_name: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        statuses: Iterable[RunStatus] | None = None,
        heartbeat_only: bool = False,
        limit: int | None = 100,
        ascending: bool = False,
    ) -> list[JobRun]:
        """Get job run history."""
        query = "SELECT * FROM job_runs WHERE 1=1"
        params: list = []

        if job_name:
            query += " AND job_name = ?"
            params.append(job_name)

        if since:
            query += " AND started_at >= ?"
            params.append(_ts(since))

        if until:
            query += " AND started_at <= ?"
            params.append(_ts(until))

        if statuses is not None:
            values = [_enum_value(s) for s in statuses]
            if not values:
                return []
            query += f" AND status IN ({','.join('?' * len(values))})"
            params.extend(values)

        if heartbeat_only:
            query += " AND heartbeat = 1"

        order = "ASC" if ascending else "DESC"
        query += f" ORDER BY started_at {order}, id {order}"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            return [self._row_to_run(row) for row in conn.execute(query, params).fetchall()]

    def _row_to_run(self, row: sqlite3.Row) -> JobRun:
        """Convert a database row to a JobRun."""
        return JobRun(
            id=row["id"],
            job_name=row["job_name"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            status=RunStatus(row["status"]),
            duration_seconds=row["duration_seconds"],
            issues_detected_count=row["issues_detected_count"] or 0,
            fixes_applied_count=row["fixes_applied_count"] or 0,
            verification_passed=bool(row["verification_passed"]),
            heartbeat=bool(row["heartbeat"]),
            summary=row["summary"],
            error=row["error"],
        )

    # =========================================================================
    # Lock Methods
    # =========================================================================

    def acquire_lock(
        self,
        lock_key: str,
        owner: str,
        ttl_seconds: int,
        now: datetime | None = None,
    ) -> bool:
        """Try to acquire a lock.

        Expired rows are removed first; the insert then succeeds only when
        no unexpired row exists for the key.
        """
        now = now or utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)

        with self._connect() as conn:
            conn.execute(
                "DELETE FROM locks WHERE expires_at < ?",
                (_ts(now),),
            )

            try:
                conn.execute(
                    """
                    INSERT INTO locks (lock_key, owner, acquired_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (lock_key, owner, _ts(now), _ts(expires_at)),
                )
                return True
            except sqlite3.IntegrityError:
                return False

    def release_lock(self, lock_key: str) -> bool:
        """Release a lock unconditionally."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM locks WHERE lock_key = ?", (lock_key,))
            return cursor.rowcount > 0

    def get_lock(self, lock_key: str) -> dict | None:
        """Get the raw lock row for a key, expired or not."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM locks WHERE lock_key = ?", (lock_key,)
            ).fetchone()
            if row is None:
                return None
            return {
                "lock_key": row["lock_key"],
                "owner": row["owner"],
                "acquired_at": _dt(row["acquired_at"]),
                "expires_at": _dt(row["expires_at"]),
            }

    # =========================================================================
    # Work Item Methods
    # =========================================================================

    def insert_work_item(self, item: WorkItem) -> int:
        """Insert a new work item.

        Raises:
            sqlite3.IntegrityError: if the fingerprint already exists
        """
        now = utcnow()
        values = self._work_item_values(item)
        values["status"] = item.status.value
        values["attempts"] = item.attempts
        values["fingerprint"] = item.fingerprint
        values["created_at"] = _ts(item.created_at or now)
        values["updated_at"] = _ts(item.updated_at or now)

        columns = ", ".join(values)
        placeholders = ", ".join("?" * len(values))
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO work_items ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            item_id = cursor.lastrowid or 0
            self._add_event(conn, item_id, None, item.status.value, "created", now)
            return item_id

    def reopen_work_item(
        self,
        item_id: int,
        item: WorkItem,
        expected_status: WorkItemStatus,
        reason: str = "reopened",
    ) -> bool:
        """Overwrite a dormant item's fields and reset it to NEW.

        Only applies if the row is still in ``expected_status``. An item that
        is already NEW is refreshed in place without an audit event.
        """
        now = utcnow()
        values = self._work_item_values(item)
        assignments = ", ".join(f"{column} = ?" for column in values)

        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE work_items SET {assignments}, status = ?, last_error = NULL,
                    updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    *values.values(),
                    WorkItemStatus.NEW.value,
                    _ts(now),
                    item_id,
                    expected_status.value,
                ),
            )
            if cursor.rowcount == 0:
                return False
            if expected_status != WorkItemStatus.NEW:
                self._add_event(
                    conn, item_id, expected_status.value, WorkItemStatus.NEW.value, reason, now
                )
            return True

    def transition_work_item(
        self,
        item_id: int,
        from_status: WorkItemStatus,
        to_status: WorkItemStatus,
        *,
        reason: str | None = None,
        error: str | None = None,
        cooldown_until: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Conditionally move a work item between states.

        The update only applies while the row still holds ``from_status``;
        a concurrent writer that got there first makes this return False.
        """
        now = now or utcnow()
        attempts_delta = 1 if to_status == WorkItemStatus.FAILED else 0

        query = """
            UPDATE work_items SET
                status = ?, last_error = ?, attempts = attempts + ?, updated_at = ?
        """
        params: list = [to_status.value, error, attempts_delta, _ts(now)]
        if cooldown_until is not None:
            query += ", cooldown_until = ?"
            params.append(_ts(cooldown_until))
        query += " WHERE id = ? AND status = ?"
        params.extend([item_id, from_status.value])

        with self._connect() as conn:
            cursor = conn.execute(query, params)
            if cursor.rowcount == 0:
                return False
            self._add_event(conn, item_id, from_status.value, to_status.value, reason, now)
            return True

    def approve_work_item(self, item_id: int, approved_by: str, now: datetime | None = None) -> bool:
        """Record an approval on a work item."""
        now = now or utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE work_items SET approved_at = ?, approved_by = ?, updated_at = ?
                WHERE id = ?
                """,
                (_ts(now), approved_by, _ts(now), item_id),
            )
            return cursor.rowcount > 0

    def get_work_item(self, item_id: int) -> WorkItem | None:
        """Get a work item by ID."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM work_items WHERE id = ?", (item_id,)).fetchone()
            return self._row_to_work_item(row) if row else None

    def get_work_item_by_fingerprint(self, fingerprint: str) -> WorkItem | None:
        """Get a work item by its fingerprint."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM work_items WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
            return self._row_to_work_item(row) if row else None

    def _filter_clause(
        self,
        statuses: Iterable[WorkItemStatus] | None,
        severities: Iterable[Any] | None,
    ) -> tuple[str, list]:
        clause = " WHERE 1=1"
        params: list = []
        if statuses:
            values = [_enum_value(s) for s in statuses]
            clause += f" AND status IN ({','.join('?' * len(values))})"
            params.extend(values)
        if severities:
            values = [_enum_value(s) for s in severities]
            clause += f" AND severity IN ({','.join('?' * len(values))})"
            params.extend(values)
        return clause, params

    def list_work_items(
        self,
        statuses: Iterable[WorkItemStatus] | None = None,
        severities: Iterable[Any] | None = None,
        limit: int = 50,
    ) -> list[WorkItem]:
        """List work items, newest first."""
        clause, params = self._filter_clause(statuses, severities)
        query = f"SELECT * FROM work_items{clause} ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [self._row_to_work_item(row) for row in conn.execute(query, params).fetchall()]

    def count_work_items_by(
        self,
        column: str,
        statuses: Iterable[WorkItemStatus] | None = None,
        severities: Iterable[Any] | None = None,
    ) -> dict[str, int]:
        """Count work items grouped by ``status`` or ``severity``."""
        if column not in ("status", "severity"):
            raise ValueError(f"Cannot group work items by '{column}'")
        clause, params = self._filter_clause(statuses, severities)
        query = f"SELECT {column} AS key, COUNT(*) AS n FROM work_items{clause} GROUP BY {column}"
        with self._connect() as conn:
            return {row["key"]: row["n"] for row in conn.execute(query, params).fetchall()}

    def next_work_items(
        self,
        statuses: Iterable[WorkItemStatus],
        now: datetime | None = None,
        max_attempts: int | None = None,
        limit: int = 1,
    ) -> list[WorkItem]:
        """Get the next items out of cooldown, highest priority first.

        Items blocked only because they still wait for approval are left out.
        """
        now = now or utcnow()
        clause, params = self._filter_clause(statuses, None)
        clause += " AND (cooldown_until IS NULL OR cooldown_until <= ?)"
        params.append(_ts(now))
        clause += (
            " AND NOT (status = 'BLOCKED' AND requires_approval = 1 AND approved_at IS NULL)"
        )
        if max_attempts is not None:
            clause += " AND attempts < ?"
            params.append(max_attempts)
        query = (
            f"SELECT * FROM work_items{clause}"
            " ORDER BY priority_score DESC, created_at ASC, id ASC LIMIT ?"
        )
        params.append(limit)
        with self._connect() as conn:
            return [self._row_to_work_item(row) for row in conn.execute(query, params).fetchall()]

    def get_work_item_events(self, item_id: int) -> list[dict]:
        """Get the transition history of a work item, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM work_item_events WHERE work_item_id = ? ORDER BY id",
                (item_id,),
            ).fetchall()
            return [
                {
                    "from_status": row["from_status"],
                    "to_status": row["to_status"],
                    "reason": row["reason"],
                    "at": _dt(row["created_at"]),
                }
                for row in rows
            ]

    def _add_event(
        self,
        conn: sqlite3.Connection,
        item_id: int,
        from_status: str | None,
        to_status: str,
        reason: str | None,
        now: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO work_item_events (work_item_id, from_status, to_status, reason, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (item_id, from_status, to_status, reason, _ts(now)),
        )

    def _work_item_values(self, item: WorkItem) -> dict[str, Any]:
        """Column values for the fields a reopen overwrites."""
        values: dict[str, Any] = {}
        for field in _REOPEN_FIELDS:
            value = getattr(item, field)
            if field in _WORK_ITEM_LIST_FIELDS:
                value = json.dumps(value)
            elif field == "requires_approval":
                value = 1 if value else 0
            else:
                value = _enum_value(value)
            values[field] = value
        return values

    def _row_to_work_item(self, row: sqlite3.Row) -> WorkItem:
        """Convert a database row to a WorkItem."""
        lists = {
            field: json.loads(row[field]) if row[field] else []
            for field in _WORK_ITEM_LIST_FIELDS
        }
        return WorkItem(
            id=row["id"],
            fingerprint=row["fingerprint"],
            title=row["title"],
            description=row["description"] or "",
            severity=row["severity"],
            category=row["category"],
            status=WorkItemStatus(row["status"]),
            priority_score=row["priority_score"],
            attempts=row["attempts"] or 0,
            cooldown_until=_dt(row["cooldown_until"]),
            requires_approval=bool(row["requires_approval"]),
            approved_at=_dt(row["approved_at"]),
            approved_by=row["approved_by"],
            locator=row["locator"],
            recommended_fix=row["recommended_fix"],
            source_run_id=row["source_run_id"],
            source_issue_id=row["source_issue_id"],
            source_issue_fingerprint=row["source_issue_fingerprint"],
            assigned_to=row["assigned_to"],
            assigned_model=row["assigned_model"] or "claude",
            created_by=row["created_by"] or "auditops",
            last_error=row["last_error"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            **lists,
        )

    # =========================================================================
    # Heal Action Methods
    # =========================================================================

    def add_heal_action(
        self,
        playbook_id: str,
        action_type: str,
        target_type: str,
        target_id: str,
        status: str,
        incident_fingerprint: str | None = None,
        verification_passed: bool = False,
        detail: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Record a remediation action attempt."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO heal_actions (
                    playbook_id, action_type, target_type, target_id,
                    incident_fingerprint, status, verification_passed, detail, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    playbook_id,
                    action_type,
                    target_type,
                    target_id,
                    incident_fingerprint,
                    status,
                    1 if verification_passed else 0,
                    detail,
                    _ts(now or utcnow()),
                ),
            )
            return cursor.lastrowid or 0

    def get_heal_actions(
        self,
        action_type: str,
        target_id: str,
        statuses: Iterable[str] | None = None,
        incident_fingerprint: str | None = None,
    ) -> list[dict]:
        """Get recorded attempts of one action on one target, newest first."""
        query = "SELECT * FROM heal_actions WHERE action_type = ? AND target_id = ?"
        params: list = [action_type, target_id]
        if statuses:
            values = list(statuses)
            query += f" AND status IN ({','.join('?' * len(values))})"
            params.extend(values)
        if incident_fingerprint:
            query += " AND incident_fingerprint = ?"
            params.append(incident_fingerprint)
        query += " ORDER BY created_at DESC, id DESC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [
                {**dict(row), "created_at": _dt(row["created_at"]),
                 "verification_passed": bool(row["verification_passed"])}
                for row in rows
            ]

    # =========================================================================
    # Alert Methods
    # =========================================================================

    def add_alert(
        self,
        severity: str,
        title: str,
        message: str,
        channel: str,
        delivered: bool,
        job_name: str | None = None,
    ) -> int:
        """Record a sent (or attempted) alert."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alerts (job_name, severity, title, message, channel, delivered, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (job_name, severity, title, message, channel, 1 if delivered else 0, _ts(utcnow())),
            )
            return cursor.lastrowid or 0

    def get_alerts(self, limit: int = 50) -> list[dict]:
        """Get recent alerts, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM alerts ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [
                {**dict(row), "delivered": bool(row["delivered"]), "created_at": _dt(row["created_at"])}
                for row in rows
            ]
