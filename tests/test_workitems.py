"""Tests for work item generation, state machine and dispatch."""

import threading
from datetime import timedelta

import pytest

from conftest import make_issue
from cronmaster.core.workitems import (
    TRANSITIONS,
    WorkItemStore,
    build_work_item,
    can_transition,
    map_category,
    map_severity,
)
from cronmaster.db import Database
from cronmaster.models import Category, Severity, WorkItemStatus as S


class TestNormalization:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("crit", Severity.CRITICAL),
            ("Critical", Severity.CRITICAL),
            ("high", Severity.HIGH),
            ("med", Severity.MEDIUM),
            ("medium", Severity.MEDIUM),
            ("low", Severity.LOW),
            ("whatever", Severity.INFO),
            ("", Severity.INFO),
        ],
    )
    def test_severity(self, text, expected):
        assert map_severity(text) == expected

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("sec", Category.SECURITY),
            ("a11y", Category.ACCESSIBILITY),
            ("perf", Category.PERFORMANCE),
            ("db", Category.DATA),
            ("payments", Category.PAYMENTS),
            ("ops", Category.OPS),
            ("mystery", Category.OTHER),
        ],
    )
    def test_category(self, text, expected):
        assert map_category(text) == expected


class TestBuild:
    def test_info_issues_are_filtered(self):
        assert build_work_item(make_issue(severity="info")) is None

    def test_priority_follows_severity(self):
        scores = [
            build_work_item(make_issue(severity=s)).priority_score
            for s in ("CRITICAL", "HIGH", "MEDIUM", "LOW")
        ]
        assert scores == sorted(scores, reverse=True)
        assert len(set(scores)) == 4

    def test_high_severity_requires_approval(self):
        assert build_work_item(make_issue(severity="HIGH")).requires_approval
        assert build_work_item(make_issue(severity="CRITICAL")).requires_approval
        assert not build_work_item(make_issue(severity="LOW")).requires_approval
        assert build_work_item(make_issue(severity="LOW", requires_approval=True)).requires_approval

    def test_enrichment(self):
        item = build_work_item(make_issue())
        assert item.status == S.NEW
        assert item.tags == ["ops", "medium"]
        assert "503" in item.recommended_fix
        assert item.acceptance_criteria[0] == "https://example.com/apps returns 200 OK"
        assert item.rollback_plan


class TestStateMachine:
    def test_table_edges(self):
        assert can_transition(S.NEW, S.DISPATCHED)
        assert can_transition(S.BLOCKED, S.DISPATCHED)
        assert can_transition(S.FAILED, S.DISPATCHED)
        assert not can_transition(S.NEW, S.DEPLOYED)
        assert not can_transition(S.DEPLOYED, S.NEW)

    def test_suppressed_is_terminal(self):
        assert TRANSITIONS[S.SUPPRESSED] == frozenset()
        assert all(not can_transition(S.SUPPRESSED, to) for to in S)

    def test_happy_path(self, store):
        item_id = store.create(make_issue(severity="LOW")).work_item_id
        for to in (S.DISPATCHED, S.IN_PROGRESS, S.PR_OPENED, S.VERIFIED, S.MERGED, S.DEPLOYED):
            assert store.transition(item_id, to)
        assert store.get(item_id).status == S.DEPLOYED

        events = store.events(item_id)
        assert events[0]["from_status"] is None
        assert events[0]["to_status"] == "NEW"
        assert [e["to_status"] for e in events[1:]] == [
            "DISPATCHED", "IN_PROGRESS", "PR_OPENED", "VERIFIED", "MERGED", "DEPLOYED"
        ]

    def test_illegal_transition_leaves_row_alone(self, store):
        item_id = store.create(make_issue(severity="LOW")).work_item_id
        before = store.get(item_id)

        assert not store.transition(item_id, S.DEPLOYED, error="nope")

        after = store.get(item_id)
        assert after.status == S.NEW
        assert after.last_error is None
        assert after.updated_at == before.updated_at
        assert len(store.events(item_id)) == 1

    def test_stale_expected_status_rejected(self, store):
        item_id = store.create(make_issue(severity="LOW")).work_item_id
        assert store.transition(item_id, S.DISPATCHED)

        assert not store.transition(item_id, S.DISPATCHED, expected_from=S.NEW)

    def test_unknown_item(self, store):
        assert not store.transition(999, S.DISPATCHED)

    def test_failure_counts_attempt_and_sets_cooldown(self, store, now):
        item_id = store.create(make_issue(severity="LOW")).work_item_id
        store.transition(item_id, S.DISPATCHED, now=now)

        assert store.transition(item_id, S.FAILED, error="tests broke", cooldown_seconds=600, now=now)

        item = store.get(item_id)
        assert item.attempts == 1
        assert item.last_error == "tests broke"
        assert item.cooldown_until == now + timedelta(seconds=600)

    def test_concurrent_transition_single_winner(self, tmp_path):
        path = tmp_path / "race.db"
        item_id = WorkItemStore(Database(path)).create(make_issue(severity="LOW")).work_item_id
        barrier = threading.Barrier(6)
        results = []

        def worker():
            local = WorkItemStore(Database(path))
            barrier.wait()
            results.append(local.transition(item_id, S.DISPATCHED, expected_from=S.NEW))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestGeneration:
    def test_duplicate_issue_is_skipped_while_in_progress(self, store):
        first = store.create(make_issue(severity="LOW"))
        store.transition(first.work_item_id, S.DISPATCHED)
        store.transition(first.work_item_id, S.IN_PROGRESS)

        again = store.create(make_issue(severity="LOW"))

        assert again.action == "skipped"
        assert again.work_item_id == first.work_item_id
        assert store.get(first.work_item_id).status == S.IN_PROGRESS

    def test_dormant_item_is_reopened(self, store):
        first = store.create(make_issue(severity="LOW"))
        store.transition(first.work_item_id, S.SUPPRESSED)

        again = store.create(make_issue(severity="LOW", description="seen again"))

        assert again.action == "reopened"
        item = store.get(first.work_item_id)
        assert item.status == S.NEW
        assert item.description == "seen again"

    def test_reopen_keeps_attempts(self, store):
        item_id = store.create(make_issue(severity="LOW")).work_item_id
        store.transition(item_id, S.DISPATCHED)
        store.transition(item_id, S.FAILED, error="x")

        store.create(make_issue(severity="LOW"))

        item = store.get(item_id)
        assert item.status == S.NEW
        assert item.attempts == 1
        assert item.last_error is None

    def test_regenerating_new_item_adds_no_event(self, store):
        item_id = store.create(make_issue(severity="LOW")).work_item_id
        before = store.events(item_id)

        for _ in range(3):
            store.create(make_issue(severity="LOW", description="still broken"))

        assert store.events(item_id) == before
        assert not any(e["from_status"] == e["to_status"] == "NEW" for e in store.events(item_id))
        assert store.get(item_id).description == "still broken"

    def test_reopen_is_audited(self, store):
        item_id = store.create(make_issue(severity="LOW")).work_item_id
        store.transition(item_id, S.SUPPRESSED)

        store.create(make_issue(severity="LOW"))

        last = store.events(item_id)[-1]
        assert (last["from_status"], last["to_status"], last["reason"]) == ("SUPPRESSED", "NEW", "reopened")

    def test_generate_counts(self, store):
        issues = [
            make_issue("A", severity="HIGH"),
            make_issue("B", severity="LOW"),
            make_issue("A", severity="HIGH"),
            make_issue("Note", severity="info"),
        ]

        result = store.generate(issues, source_run_id=7)

        assert result.total == 4
        assert result.created == 2
        assert result.updated == 1
        assert result.skipped == 1
        assert len(result.work_item_ids) == 3
        assert store.get(result.work_item_ids[0]).source_run_id == 7

    def test_locator_distinguishes_items(self, store):
        a = store.create(make_issue(locator="/a"))
        b = store.create(make_issue(locator="/b"))
        assert a.work_item_id != b.work_item_id


class TestDispatch:
    def test_next_item_prefers_priority_then_age(self, store):
        low = store.create(make_issue("low", severity="LOW")).work_item_id
        first_med = store.create(make_issue("med 1", severity="MEDIUM")).work_item_id
        store.create(make_issue("med 2", severity="MEDIUM"))

        assert store.next_item().id == first_med
        store.transition(first_med, S.SUPPRESSED)
        assert store.next_item().title == "med 2"
        assert low != first_med

    def test_next_item_skips_cooldown(self, store, now):
        item_id = store.create(make_issue(severity="LOW")).work_item_id
        store.transition(item_id, S.DISPATCHED, now=now)
        store.transition(item_id, S.FAILED, cooldown_seconds=300, now=now)

        assert store.claim(item_id, now=now + timedelta(seconds=10)).reason == "cooldown"
        assert store.claim(item_id, now=now + timedelta(seconds=301)).dispatched

    def test_claim_not_dispatchable(self, store):
        item_id = store.create(make_issue(severity="LOW")).work_item_id
        store.transition(item_id, S.SUPPRESSED)

        result = store.claim(item_id)

        assert not result.dispatched
        assert result.reason == "not_dispatchable"

    def test_claim_not_found(self, store):
        assert store.claim(42).reason == "not_found"

    def test_approval_gate(self, store):
        item_id = store.create(make_issue(severity="HIGH")).work_item_id

        result = store.claim(item_id)

        assert not result.dispatched
        assert result.reason == "approval_required"
        item = store.get(item_id)
        assert item.status == S.BLOCKED
        assert item.last_error == "Requires approval"

        # Waiting for approval keeps it out of the dispatch queue
        assert store.dispatch_batch(limit=5) == []

        assert store.approve(item_id, "alice")
        claims = store.dispatch_batch(limit=5)
        assert [(c.work_item_id, c.dispatched) for c in claims] == [(item_id, True)]
        assert store.get(item_id).status == S.DISPATCHED
        assert store.get(item_id).approved_by == "alice"

    def test_dispatch_batch_respects_limit_and_attempts(self, store):
        ids = [store.create(make_issue(f"issue {i}", severity="LOW")).work_item_id for i in range(3)]
        store.transition(ids[0], S.DISPATCHED)
        store.transition(ids[0], S.FAILED)

        claims = store.dispatch_batch(limit=5, max_attempts=1)

        assert {c.work_item_id for c in claims} == {ids[1], ids[2]}

    def test_approve_unknown(self, store):
        assert not store.approve(404)


class TestQuery:
    def test_counts_cover_filtered_set(self, store):
        for i in range(4):
            store.create(make_issue(f"low {i}", severity="LOW"))
        store.create(make_issue("high", severity="HIGH"))

        result = store.query(limit=2)

        assert len(result.items) == 2
        assert result.total == 5
        assert result.by_status == {"NEW": 5}
        assert result.by_severity == {"LOW": 4, "HIGH": 1}

    def test_filters(self, store):
        store.create(make_issue("a", severity="LOW"))
        item_id = store.create(make_issue("b", severity="HIGH")).work_item_id
        store.transition(item_id, S.SUPPRESSED)

        assert store.query(status="new").total == 1
        assert store.query(severity="high").items[0].id == item_id
        assert store.query(status="SUPPRESSED", severity="LOW").total == 0

    def test_newest_first(self, store):
        store.create(make_issue("old", severity="LOW"))
        store.create(make_issue("new", severity="LOW"))

        assert [i.title for i in store.query().items] == ["new", "old"]

    def test_invalid_status(self, store):
        with pytest.raises(ValueError):
            store.query(status="bogus")

    def test_to_dict(self, store):
        store.create(make_issue(severity="LOW"))
        data = store.query().to_dict()
        assert data["total"] == 1
        assert data["summary"]["by_severity"] == {"LOW": 1}
        assert data["items"][0]["status"] == "NEW"
