"""
Tests for the command-line interface.
"""

import json
import logging

import pytest

from agent_autopilot.cli import main

from conftest import ROUTER, TOKEN


@pytest.fixture
def run(tmp_path, monkeypatch, capsys):
    """Run the CLI against a temporary state file and return (code, stdout, stderr)."""
    monkeypatch.chdir(tmp_path)
    state = str(tmp_path / "state.json")
    logger = logging.getLogger("agent_autopilot")
    saved_handlers, saved_level = list(logger.handlers), logger.level
    logger.handlers = []

    def _run(*args):
        code = main(["--state", state, "--log-level", "ERROR", *args])
        captured = capsys.readouterr()
        return code, captured.out, captured.err

    yield _run

    logger.handlers = saved_handlers
    logger.setLevel(saved_level)


def _grant(run, max_spend="100"):
    code, out, _ = run("grant", "--token", TOKEN, "--max", max_spend, "--contract", ROUTER)
    assert code == 0
    return json.loads(out)


def test_grant_and_list(run):
    permission = _grant(run)

    assert permission["status"] == "active"
    assert permission["allowed_contracts"] == [ROUTER]

    code, out, _ = run("permissions", "--status", "active")
    assert code == 0
    assert [p["id"] for p in json.loads(out)] == [permission["id"]]


def test_invalid_grant_reports_error(run):
    code, out, err = run("grant", "--token", "USDC", "--max", "100", "--contract", ROUTER)

    assert code == 1
    assert out == ""
    assert "Invalid token address" in err


def test_revoke_across_invocations(run):
    permission = _grant(run)

    code, out, _ = run("revoke", permission["id"])
    assert code == 0
    assert json.loads(out)["status"] == "revoked"

    code, _, err = run("revoke", permission["id"])
    assert code == 1
    assert "can only revoke active permissions" in err


def test_spend_ledger(run):
    permission = _grant(run)

    code, out, _ = run("spend", permission["id"])
    assert code == 0
    assert json.loads(out)["remaining_allowance"] == "100"

    code, _, err = run("spend", "perm_missing")
    assert code == 1
    assert "No spend ledger" in err


def test_submit_recurring_intent(run):
    permission = _grant(run)

    code, out, _ = run(
        "submit", "swap 5 USDC every 2 hours",
        "--permission", permission["id"], "--token", TOKEN, "--amount", "5", "--contract", ROUTER,
    )
    assert code == 0
    execution = json.loads(out)
    assert execution["status"] in ("executed", "blocked")
    assert execution["schedule_id"].startswith("schedule_")

    code, out, _ = run("schedules")
    info = json.loads(out)
    assert info["total_schedules"] == 1
    assert info["schedules"][0]["frequency"] == "hourly"
    # a fresh process loads schedules without arming them
    assert info["armed_timers"] == 0

    code, out, _ = run("executions", "--limit", "1")
    assert [e["id"] for e in json.loads(out)] == [execution["id"]]

    code, out, _ = run("stop", execution["schedule_id"])
    assert code == 0
    assert out.strip() == f"Stopped {execution['schedule_id']}"


def test_stop_unknown_schedule(run):
    code, _, err = run("stop", "schedule_missing")

    assert code == 1
    assert "Schedule not found" in err
