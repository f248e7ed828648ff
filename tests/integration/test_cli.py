import asyncio
import re

from typer.testing import CliRunner

import drillbook.persistence as persistence
from drillbook.cli import app
from drillbook.constants import RunStatus
from drillbook.persistence import InMemoryRunRepository

PLAYBOOK_YAML = """
name: Viral complaint drill
steps:
  - id: acknowledge
    action:
      type: social_reply
      payload:
        simulated_result:
          outcome: Acknowledged publicly
          impact_metrics:
            sentiment_delta: 2
  - id: statement
    action: publish_statement
    depends_on: [acknowledge]
    requires_approval: true
  - id: follow_up
    action: email_customer
    depends_on: [statement]
"""


def _setup_repo() -> InMemoryRunRepository:
    repo = InMemoryRunRepository()
    persistence._repository_instance = repo
    return repo


def _register(runner, tmp_path) -> str:
    path = tmp_path / "playbook.yaml"
    path.write_text(PLAYBOOK_YAML)
    result = runner.invoke(app, ["playbook", "register", str(path)])
    assert result.exit_code == 0, result.output
    match = re.search(r"Registered playbook (\S+)", result.output)
    assert match, result.output
    return match.group(1)


def test_register_start_approve_flow(tmp_path):
    repo = _setup_repo()
    runner = CliRunner()
    playbook_id = _register(runner, tmp_path)

    listed = runner.invoke(app, ["playbook", "list"])
    assert playbook_id in listed.output
    assert "Viral complaint drill" in listed.output

    started = runner.invoke(app, ["run", "start", playbook_id, "--param", "severity=4", "--label", "q3"])
    assert started.exit_code == 0, started.output
    assert "awaiting_approval" in started.output
    run = asyncio.run(repo.list_runs("default"))[0]
    assert run.state.parameters == {"severity": 4}
    assert run.label == "q3"

    steps = asyncio.run(repo.list_step_runs("default", run.id))
    statement = next(s for s in steps if s.step_id == "statement")

    approved = runner.invoke(app, ["run", "approve", statement.id, "--notes", "legal ok"])
    assert approved.exit_code == 0, approved.output
    assert "statement: executed" in approved.output

    shown = runner.invoke(app, ["run", "show", run.id])
    assert shown.exit_code == 0, shown.output
    assert f"Run {run.id}: completed" in shown.output
    assert "follow_up: executed" in shown.output
    assert "Narrative: Completed 3 steps with 0 failures." in shown.output

    audit = runner.invoke(app, ["audit", "list", run.id, "--event-type", "step_approved"])
    assert audit.exit_code == 0, audit.output
    assert "step_approved" in audit.output
    assert "legal ok" in audit.output

    runs = runner.invoke(app, ["run", "list", "--status", "completed"])
    assert run.id in runs.output


def test_reject_cancel_and_errors(tmp_path):
    repo = _setup_repo()
    runner = CliRunner()
    playbook_id = _register(runner, tmp_path)

    runner.invoke(app, ["run", "start", playbook_id])
    run = asyncio.run(repo.list_runs("default"))[0]

    paused = runner.invoke(app, ["run", "pause", run.id])
    assert "paused" in paused.output
    resumed = runner.invoke(app, ["run", "resume", run.id])
    assert "awaiting_approval" in resumed.output

    cancelled = runner.invoke(app, ["run", "cancel", run.id, "--reason", "drill aborted"])
    assert cancelled.exit_code == 0, cancelled.output
    assert "cancelled" in cancelled.output
    assert asyncio.run(repo.get_run("default", run.id)).status == RunStatus.CANCELLED

    again = runner.invoke(app, ["run", "cancel", run.id, "--reason", "twice"])
    assert again.exit_code == 1
    assert "already cancelled" in again.output

    missing = runner.invoke(app, ["run", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Run missing-id not found" in missing.output

    bad_param = runner.invoke(app, ["run", "start", playbook_id, "--param", "oops"])
    assert bad_param.exit_code == 1


def test_register_rejects_invalid_playbook(tmp_path):
    _setup_repo()
    path = tmp_path / "broken.yaml"
    path.write_text(
        "name: broken\nsteps:\n  - id: a\n    action: x\n    depends_on: [ghost]\n"
    )

    result = CliRunner().invoke(app, ["playbook", "register", str(path)])

    assert result.exit_code == 1
    assert "ghost" in result.output


def test_scheduler_tick_and_empty_listings():
    _setup_repo()
    runner = CliRunner()

    assert "No runs found" in runner.invoke(app, ["run", "list"]).output
    assert "No playbooks found" in runner.invoke(app, ["playbook", "list"]).output
    tick = runner.invoke(app, ["scheduler", "tick"])
    assert tick.exit_code == 0, tick.output
    assert "Advanced 0 runs" in tick.output


def test_run_start_with_schedule_time(tmp_path):
    repo = _setup_repo()
    runner = CliRunner()
    playbook_id = _register(runner, tmp_path)

    result = runner.invoke(app, ["run", "start", playbook_id, "--at", "2099-01-01T00:00:00"])

    assert result.exit_code == 0, result.output
    assert "pending" in result.output
    run = asyncio.run(repo.list_runs("default"))[0]
    assert run.status == RunStatus.PENDING
    assert run.scheduled_at.year == 2099
    assert run.scheduled_at.tzinfo is not None
