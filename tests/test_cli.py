"""Tests for the command line interface."""

import pytest
import yaml
from loguru import logger
from typer.testing import CliRunner

from cronmaster.cli.main import app
from cronmaster.config import DEFAULT_JOBS
from cronmaster.db import Database
from cronmaster.models import WorkItemStatus

runner = CliRunner()


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger.remove()


@pytest.fixture
def home(tmp_path):
    result = runner.invoke(app, ["--home", str(tmp_path), "init"])
    assert result.exit_code == 0, result.output
    return tmp_path


def invoke(home, *args):
    return runner.invoke(app, ["--home", str(home), *args])


def test_init_seeds_config_and_jobs(home):
    assert (home / "cronmaster.yaml").exists()
    assert {p.stem for p in (home / "jobs").glob("*.yaml")} == set(DEFAULT_JOBS)


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "CronMaster v" in result.output


class TestTick:
    def test_tick_runs_default_jobs(self, home):
        result = invoke(home, "tick")

        assert result.exit_code == 0, result.output
        db = Database(home / "cronmaster.db")
        assert db.get_job("heartbeat").last_status is not None
        assert db.get_runs(job_name="heartbeat")[0].heartbeat

    def test_tick_json(self, home):
        result = invoke(home, "tick", "--json")

        assert result.exit_code == 0, result.output
        assert '"lock_acquired": true' in result.output

    def test_tick_skips_when_locked(self, home):
        invoke(home, "jobs")
        Database(home / "cronmaster.db").acquire_lock("cronmaster_master_tick", "elsewhere", 55)

        result = invoke(home, "tick")

        assert result.exit_code == 0
        assert "skipped" in result.output
        assert Database(home / "cronmaster.db").get_runs() == []

    def test_unknown_handler_is_a_config_error(self, home):
        (home / "jobs" / "broken.yaml").write_text(
            yaml.safe_dump({"handler": "does.not.exist", "interval_seconds": 60})
        )

        result = invoke(home, "tick")

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_trigger(self, home):
        result = invoke(home, "trigger", "heartbeat")

        assert result.exit_code == 0, result.output
        assert "SUCCESS" in result.output

    def test_trigger_unknown(self, home):
        result = invoke(home, "trigger", "nope")
        assert result.exit_code == 1


class TestListings:
    def test_jobs(self, home):
        result = invoke(home, "jobs")
        assert result.exit_code == 0, result.output
        assert "heartbeat" in result.output

    def test_runs_empty_then_filled(self, home):
        assert "No runs found" in invoke(home, "runs").output

        invoke(home, "trigger", "heartbeat")
        result = invoke(home, "runs", "--job", "heartbeat")

        assert result.exit_code == 0
        assert "SUCCESS" in result.output

    def test_runs_bad_status(self, home):
        assert invoke(home, "runs", "--status", "bogus").exit_code == 1


class TestWork:
    def test_add_list_show(self, home):
        result = invoke(home, "work", "add", "--title", "Checkout returns 500", "--severity", "low",
                        "--locator", "/api/checkout")
        assert result.exit_code == 0, result.output
        assert "Created work item 1" in result.output

        duplicate = invoke(home, "work", "add", "--title", "Checkout returns 500", "--severity", "low",
                           "--locator", "/api/checkout")
        assert "Reopened work item 1" in duplicate.output

        listing = invoke(home, "work", "list", "--json")
        assert listing.exit_code == 0
        assert '"total": 1' in listing.output

        shown = invoke(home, "work", "show", "1")
        assert shown.exit_code == 0
        assert "Checkout returns 500" in shown.output
        assert "Status: NEW" in shown.output

    def test_info_issue_filtered(self, home):
        result = invoke(home, "work", "add", "--title", "FYI", "--severity", "info")
        assert "no work item created" in result.output

    def test_transition(self, home):
        invoke(home, "work", "add", "--title", "Broken", "--severity", "low")

        ok = invoke(home, "work", "transition", "1", "dispatched")
        assert ok.exit_code == 0, ok.output

        rejected = invoke(home, "work", "transition", "1", "deployed")
        assert rejected.exit_code == 1

        unknown = invoke(home, "work", "transition", "1", "sideways")
        assert unknown.exit_code == 1

        item = Database(home / "cronmaster.db").get_work_item(1)
        assert item.status == WorkItemStatus.DISPATCHED

    def test_approve(self, home):
        invoke(home, "work", "add", "--title", "Data leak", "--severity", "critical")

        result = invoke(home, "work", "approve", "1", "--by", "alice")

        assert result.exit_code == 0
        assert Database(home / "cronmaster.db").get_work_item(1).approved_by == "alice"
        assert invoke(home, "work", "approve", "99").exit_code == 1

    def test_show_missing(self, home):
        assert invoke(home, "work", "show", "7").exit_code == 1

    def test_bad_filter(self, home):
        assert invoke(home, "work", "list", "--status", "bogus").exit_code == 1


class TestProofCommand:
    def test_proof_writes_report(self, home):
        invoke(home, "trigger", "heartbeat")

        result = invoke(home, "proof", "--hours", "1")

        assert result.exit_code == 0, result.output
        assert "Uptime: 100.0%" in result.output
        assert (home / "proof" / "self_healing_proof.json").exists()

    def test_proof_check_fails_on_thin_history(self, home):
        result = invoke(home, "proof", "--hours", "1", "--check", "--no-write")

        assert result.exit_code == 1
        assert not (home / "proof" / "self_healing_proof.json").exists()


class TestPlaybooks:
    def test_list(self, home):
        result = invoke(home, "playbooks", "list")
        assert result.exit_code == 0
        assert "pb_api_500" in result.output

    def test_match(self, home):
        result = invoke(home, "playbooks", "match", "--status-code", "503", "--locator", "https://example.com/apps")

        assert result.exit_code == 0, result.output
        assert "pb_503_dynamic_pages" in result.output
        assert "REDEPLOY" in result.output

    def test_match_and_simulate(self, home):
        result = invoke(
            home, "playbooks", "match", "--status-code", "503", "--locator", "https://example.com/apps",
            "--remediate",
        )

        assert result.exit_code == 0, result.output
        assert "simulated" in result.output
        assert "awaiting_approval" in result.output

    def test_no_match(self, home):
        result = invoke(home, "playbooks", "match", "--status-code", "418")
        assert "No playbook matches" in result.output
