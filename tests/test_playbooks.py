"""Tests for playbook matching and the remediation runner."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from cronmaster.core.playbooks import (
    DEFAULT_PLAYBOOKS,
    ActionExecutor,
    ActionStatus,
    PlaybookMatcher,
    RemediationRunner,
    Verifier,
    load_playbooks,
)
from cronmaster.models import (
    Category,
    HealActionType,
    Incident,
    RemediationMode,
    VerifyPolicy,
    VerifyType,
)


def incident_503(**kwargs):
    data = {
        "title": "Apps page returns 503",
        "status_code": 503,
        "locator": "https://example.com/apps/dashboard",
    }
    data.update(kwargs)
    return Incident(**data)


class RecordingExecutor(ActionExecutor):
    def __init__(self, fail_on=None):
        self.calls = []
        self._fail_on = fail_on

    async def execute(self, action, incident):
        self.calls.append(action.action_type)
        if action.action_type == self._fail_on:
            raise RuntimeError("provider rejected the request")
        return f"did {action.action_type.value}"


def verifier_returning(status_code, sleep=None):
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code))
    return Verifier(transport=transport, sleep=sleep or AsyncMock())


class TestMatching:
    def test_503_on_dynamic_page(self):
        matched = PlaybookMatcher().match(incident_503())
        assert [pb.id for pb in matched] == ["pb_503_dynamic_pages"]

    def test_500_on_api(self):
        incident = Incident(title="API error", status_code=500, locator="https://example.com/api/users")
        assert [pb.id for pb in PlaybookMatcher().match(incident)] == ["pb_api_500"]

    def test_status_and_locator_both_required(self):
        assert PlaybookMatcher().match(Incident(status_code=503, locator="https://example.com/api/x")) == []
        assert PlaybookMatcher().match(Incident(status_code=500, locator="https://example.com/apps")) == []

    def test_error_text(self):
        incident = Incident(error_message="connection refused by upstream")
        assert [pb.id for pb in PlaybookMatcher().match(incident)] == ["pb_db_connection"]

    def test_error_text_is_case_sensitive(self):
        assert PlaybookMatcher().match(Incident(error_message="Connection reset")) == []

    def test_category(self):
        incident = Incident(category=Category.PERFORMANCE)
        assert [pb.id for pb in PlaybookMatcher().match(incident)] == ["pb_high_latency"]

    def test_cron_limit(self):
        incident = Incident(error_message="deploy failed: cron_jobs_limits_reached")
        assert [pb.id for pb in PlaybookMatcher().match(incident)] == ["pb_cron_limit"]

    def test_nothing_matches_empty_incident(self):
        assert PlaybookMatcher().match(Incident()) == []

    def test_custom_table(self):
        assert PlaybookMatcher([]).match(incident_503()) == []

    def test_default_table_ids_unique(self):
        ids = [pb.id for pb in DEFAULT_PLAYBOOKS]
        assert len(ids) == len(set(ids))


class TestLoadPlaybooks:
    def test_yaml_with_millisecond_keys(self, tmp_path):
        path = tmp_path / "playbooks.yaml"
        path.write_text(
            """
playbooks:
  - id: pb_custom
    name: Custom
    match:
      status_code: 502
    actions:
      - action_type: RESTART
        target_type: project
        target_id: api
        safety:
          max_attempts: 2
          cooldown_ms: 60000
        verify:
          type: http
          retries: 0
          backoff_ms: 1500
"""
        )

        playbooks = load_playbooks(path)

        assert len(playbooks) == 1
        action = playbooks[0].actions[0]
        assert action.action_type == HealActionType.RESTART
        assert action.safety.cooldown_seconds == 60
        assert action.verify.backoff_seconds == 1.5
        assert action.verify.retries == 1
        assert PlaybookMatcher(playbooks).match(Incident(status_code=502))[0].id == "pb_custom"


class TestSimulate:
    def test_records_simulated_actions_and_waits_for_approval(self, db, now):
        runner = RemediationRunner(db)

        result = asyncio.run(runner.remediate(incident_503(), now=now))

        assert result.playbooks == ["pb_503_dynamic_pages"]
        assert not result.resolved
        assert [a.status for a in result.actions] == [
            ActionStatus.SIMULATED,
            ActionStatus.SIMULATED,
            ActionStatus.AWAITING_APPROVAL,
        ]
        assert result.actions[0].detail.startswith("would CACHE_PURGE")
        assert [a.action_type for a in result.awaiting_approval] == ["REDEPLOY"]
        assert len(db.get_heal_actions("CACHE_PURGE", "primary")) == 1

    def test_attempt_and_cooldown_limits(self, db, now):
        runner = RemediationRunner(db)
        asyncio.run(runner.remediate(incident_503(), now=now))

        result = asyncio.run(runner.remediate(incident_503(), now=now + timedelta(seconds=30)))

        statuses = {a.action_type: a.status for a in result.actions}
        assert statuses["CACHE_PURGE"] == ActionStatus.SKIPPED_MAX_ATTEMPTS
        assert statuses["RESTART"] == ActionStatus.SKIPPED_COOLDOWN

    def test_cooldown_expires(self, db, now):
        runner = RemediationRunner(db)
        asyncio.run(runner.remediate(incident_503(), now=now))

        result = asyncio.run(runner.remediate(incident_503(), now=now + timedelta(seconds=121)))

        statuses = {a.action_type: a.status for a in result.actions}
        assert statuses["RESTART"] == ActionStatus.SIMULATED

    def test_attempts_are_per_incident(self, db, now):
        runner = RemediationRunner(db)
        asyncio.run(runner.remediate(incident_503(), now=now))

        other = incident_503(title="Another page", locator="https://example.com/apps/other")
        result = asyncio.run(runner.remediate(other, now=now + timedelta(seconds=61)))

        assert result.actions[0].status == ActionStatus.SIMULATED

    def test_no_match(self, db):
        result = asyncio.run(RemediationRunner(db).remediate(Incident(title="quiet")))
        assert result.playbooks == []
        assert result.actions == []
        assert not result.resolved


class TestExecute:
    def test_needs_executor(self, db):
        with pytest.raises(ValueError):
            RemediationRunner(db, mode=RemediationMode.EXECUTE)

    def test_stops_at_first_verified_action(self, db, now):
        executor = RecordingExecutor()
        runner = RemediationRunner(
            db, mode=RemediationMode.EXECUTE, executor=executor, verifier=verifier_returning(200)
        )

        result = asyncio.run(runner.remediate(incident_503(), now=now))

        assert result.resolved
        assert executor.calls == [HealActionType.CACHE_PURGE]
        assert result.actions[0].status == ActionStatus.EXECUTED
        assert result.actions[0].verified
        assert db.get_heal_actions("CACHE_PURGE", "primary")[0]["verification_passed"]

    def test_failed_verification_moves_on(self, db, now):
        sleep = AsyncMock()
        executor = RecordingExecutor()
        runner = RemediationRunner(
            db,
            mode=RemediationMode.EXECUTE,
            executor=executor,
            verifier=verifier_returning(503, sleep=sleep),
        )

        result = asyncio.run(runner.remediate(incident_503(), now=now))

        assert not result.resolved
        assert executor.calls == [HealActionType.CACHE_PURGE, HealActionType.RESTART]
        assert result.actions[-1].status == ActionStatus.AWAITING_APPROVAL
        # 3 and 5 retries, backing off between attempts
        assert sleep.await_count == 2 + 4

    def test_approved_runs_gated_action(self, db, now):
        executor = RecordingExecutor()
        runner = RemediationRunner(
            db, mode=RemediationMode.EXECUTE, executor=executor, verifier=verifier_returning(503)
        )

        asyncio.run(runner.remediate(incident_503(), approved=True, now=now))

        assert HealActionType.REDEPLOY in executor.calls

    def test_executor_error_is_recorded(self, db, now):
        executor = RecordingExecutor(fail_on=HealActionType.CACHE_PURGE)
        runner = RemediationRunner(
            db, mode=RemediationMode.EXECUTE, executor=executor, verifier=verifier_returning(200)
        )

        result = asyncio.run(runner.remediate(incident_503(), now=now))

        assert result.actions[0].status == ActionStatus.FAILED
        assert "provider rejected" in result.actions[0].detail
        assert result.actions[1].status == ActionStatus.EXECUTED
        assert result.resolved


class TestVerifier:
    def test_custom_always_passes(self):
        assert asyncio.run(Verifier().verify(VerifyPolicy(type=VerifyType.CUSTOM)))

    def test_db_query(self, db):
        assert asyncio.run(Verifier(db=db).verify(VerifyPolicy(type=VerifyType.DB_QUERY)))
        assert not asyncio.run(Verifier().verify(VerifyPolicy(type=VerifyType.DB_QUERY)))

    def test_http_needs_url(self):
        verifier = verifier_returning(200)
        assert not asyncio.run(verifier.verify(VerifyPolicy(type=VerifyType.HTTP)))
        assert not asyncio.run(
            verifier.verify(VerifyPolicy(type=VerifyType.HTTP), Incident(locator="/apps"))
        )

    def test_http_expected_status(self):
        verifier = verifier_returning(204)
        policy = VerifyPolicy(type=VerifyType.HTTP, url="https://example.com/health", expected_status=204)
        assert asyncio.run(verifier.verify(policy))

    def test_http_recovers_on_retry(self):
        responses = iter([503, 503, 200])
        transport = httpx.MockTransport(lambda request: httpx.Response(next(responses)))
        verifier = Verifier(transport=transport, sleep=AsyncMock())
        policy = VerifyPolicy(type=VerifyType.HTTP, url="https://example.com", retries=3, backoff_seconds=1)
        assert asyncio.run(verifier.verify(policy))
