"""Shared fixtures for CronMaster tests."""

from datetime import datetime, timezone

import pytest

from cronmaster.core.locks import LockManager, SQLiteLockProvider
from cronmaster.core.workitems import WorkItemStore
from cronmaster.db import Database
from cronmaster.models import Issue, JobConfig


@pytest.fixture
def db(tmp_path):
    """Fresh database per test."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def store(db):
    return WorkItemStore(db)


@pytest.fixture
def locks(db):
    return LockManager(SQLiteLockProvider(db))


@pytest.fixture
def now():
    return datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_job(name: str = "test-job", handler: str = "ok", **kwargs) -> JobConfig:
    """Build an interval job definition with test-friendly defaults."""
    data = {
        "name": name,
        "handler": handler,
        "schedule_kind": "interval",
        "interval_seconds": 60,
        "timeout_seconds": 5,
    }
    data.update(kwargs)
    return JobConfig.model_validate(data)


def make_issue(title: str = "Route /apps returns 503", severity: str = "MEDIUM", **kwargs) -> Issue:
    data = {"title": title, "severity": severity, "category": "ops", "locator": "https://example.com/apps"}
    data.update(kwargs)
    return Issue.model_validate(data)
