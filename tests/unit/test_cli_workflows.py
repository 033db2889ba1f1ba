import asyncio

import pytest
from typer.testing import CliRunner

import flowguard.persistence as persistence
from flowguard.cli import app
from flowguard.persistence import InMemoryWorkflowRepository


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("FLOWGUARD_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("FLOWGUARD_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def test_seed_start_event_and_show():
    repo = _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "seed"])
    assert result.exit_code == 0, f"Seed failed: {result.stdout}"
    assert "ORDER_FLOW" in result.stdout
    assert "SERVICE_FLOW" in result.stdout

    result = runner.invoke(app, ["workflow", "start", "ORDER_FLOW", "ORDER", "42"])
    assert result.exit_code == 0, f"Start failed: {result.stdout}"
    assert "Instance 1 started in CREATED" in result.stdout

    result = runner.invoke(app, ["workflow", "event", "1", "ORDER_CANCELLED", "--actor", "user-7"])
    assert result.exit_code == 0, f"Event failed: {result.stdout}"
    assert "Instance 1 is now CANCELLED" in result.stdout

    result = runner.invoke(app, ["workflow", "show", "1"])
    assert result.exit_code == 0, f"Show failed: {result.stdout}"
    assert "Instance 1 (ORDER:42): CANCELLED" in result.stdout
    assert "- CREATED -> CANCELLED by user-7" in result.stdout

    assert len(asyncio.run(repo.list_pending_outbox())) == 1


def test_illegal_event_exits_with_error():
    _setup_repo()
    runner = CliRunner()
    runner.invoke(app, ["workflow", "seed"])
    runner.invoke(app, ["workflow", "start", "ORDER_FLOW", "ORDER", "7"])

    result = runner.invoke(app, ["workflow", "event", "1", "JOB_DONE"])

    assert result.exit_code == 1
    assert "JOB_DONE" in result.stdout


def test_unknown_workflow_and_instance():
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "start", "NOPE_FLOW", "ORDER", "1"])
    assert result.exit_code == 1
    assert "Workflow not found: NOPE_FLOW" in result.stdout

    result = runner.invoke(app, ["workflow", "show", "99"])
    assert result.exit_code == 1
    assert "Instance not found" in result.stdout


def test_move_by_state_name():
    _setup_repo()
    runner = CliRunner()
    runner.invoke(app, ["workflow", "seed"])
    runner.invoke(app, ["workflow", "start", "ORDER_FLOW", "ORDER", "8"])

    result = runner.invoke(app, ["workflow", "move", "1", "PAID", "--actor", "ops"])

    assert result.exit_code == 0, f"Move failed: {result.stdout}"
    assert "Instance 1 moved" in result.stdout
    shown = runner.invoke(app, ["workflow", "show", "1"])
    assert "ORDER:8): PAID" in shown.stdout


def test_load_reports_missing_path(tmp_path):
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "load", str(tmp_path / "absent.yaml")])

    assert result.exit_code == 1
    assert "Specified path does not exist" in result.stdout


def test_load_creates_workflows_from_yaml(tmp_path):
    repo = _setup_repo()
    path = tmp_path / "flows.yaml"
    path.write_text(
        """
workflows:
  - name: RETURN_FLOW
    states: [REQUESTED, APPROVED, REFUNDED]
    transitions:
      - {from: REQUESTED, to: APPROVED, event: APPROVE}
      - {from: APPROVED, to: REFUNDED, event: REFUND}
    final_states: [REFUNDED]
"""
    )
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "load", str(path)])

    assert result.exit_code == 0, f"Load failed: {result.stdout}"
    assert "RETURN_FLOW" in result.stdout
    assert asyncio.run(repo.get_workflow_by_name("RETURN_FLOW")) is not None


def test_ops_commands_on_an_idle_queue():
    _setup_repo()
    runner = CliRunner()

    health = runner.invoke(app, ["ops", "queue-health"])
    assert health.exit_code == 0, f"queue-health failed: {health.stdout}"
    assert "waiting\t0" in health.stdout
    assert "dead\t0" in health.stdout

    dead = runner.invoke(app, ["ops", "dlq", "list"])
    assert dead.exit_code == 0
    assert "No dead letters" in dead.stdout

    breakers = runner.invoke(app, ["ops", "breakers"])
    assert breakers.exit_code == 0
    assert "No breakers" in breakers.stdout
