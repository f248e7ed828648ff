"""Command line interface for drillbook runs."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from drillbook.config import load_config
from drillbook.constants import RunStatus
from drillbook.context import RequestContext
from drillbook.definitions import load_playbook
from drillbook.engine import AdvanceResult, PlaybookEngine, RunDetails
from drillbook.errors import DrillbookError
from drillbook.persistence import get_repository
from drillbook.scheduler import RunScheduler

app = typer.Typer(help="CLI for drillbook playbook runs")

# Command groups
playbook_app = typer.Typer(help="Commands for managing playbook definitions")
run_app = typer.Typer(help="Commands for starting and driving runs")
audit_app = typer.Typer(help="Commands for inspecting the audit log")
scheduler_app = typer.Typer(help="Commands for the run scheduler")

app.add_typer(playbook_app, name="playbook")
app.add_typer(run_app, name="run")
app.add_typer(audit_app, name="audit")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main() -> None:
    """drillbook CLI entry point."""
    pass


def _engine() -> tuple[PlaybookEngine, RequestContext]:
    config = load_config()
    engine = PlaybookEngine.from_config(config, repository=get_repository())
    return engine, RequestContext(org_id=config.org_id, actor=config.actor)


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except DrillbookError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_params(params: Optional[List[str]]) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    for item in params or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            typer.secho(f"Invalid parameter '{item}', expected key=value", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        parsed[key] = yaml.safe_load(value)
    return parsed


def _echo_details(details: RunDetails) -> None:
    run = details.run
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Playbook: {run.definition.name} ({run.playbook_id})")
    if run.label:
        typer.echo(f"Label: {run.label}")
    if run.error_message:
        typer.echo(f"Error: {run.error_message}")
    if run.is_terminal and run.risk_score is not None:
        typer.echo(
            f"Scores: risk={run.risk_score:g} opportunity={run.opportunity_score:g} "
            f"confidence={run.confidence_score:g}"
        )
    if run.narrative:
        typer.echo(f"Narrative: {run.narrative}")
    for step in details.step_runs:
        line = f"- [{step.ordinal}] {step.step_id}: {step.status.value} ({step.id})"
        if step.skip_reason:
            line += f" reason={step.skip_reason}"
        if step.error_message:
            line += f" error={step.error_message}"
        typer.echo(line)


def _echo_advance(result: AdvanceResult) -> None:
    typer.echo(f"Run {result.run.id}: {result.run.status.value}")
    for step in result.processed:
        typer.echo(f"- {step.step_id}: {step.status.value}")
    if result.next_step is not None:
        typer.echo(f"Next step: {result.next_step.step_id} ({result.next_step.id})")


@playbook_app.command("register")
def playbook_register(path: Path) -> None:
    """Load a playbook definition from YAML and store it."""
    engine, ctx = _engine()

    async def _register():
        playbook = load_playbook(path, ctx.org_id)
        return await engine.register_playbook(ctx, playbook)

    playbook = _run(_register())
    typer.echo(f"Registered playbook {playbook.id} ({playbook.name}, {len(playbook.steps)} steps)")


@playbook_app.command("list")
def playbook_list() -> None:
    """List playbook definitions for the configured organization."""
    engine, ctx = _engine()
    playbooks = _run(engine.repository.list_playbooks(ctx.org_id))
    if not playbooks:
        typer.echo("No playbooks found")
        return
    for playbook in playbooks:
        typer.echo(f"{playbook.id}\t{playbook.name}\tv{playbook.version}")


@run_app.command("start")
def run_start(
    playbook_id: str,
    param: Optional[List[str]] = typer.Option(None, "--param", "-p", help="Seed parameter as key=value"),
    label: Optional[str] = typer.Option(None, help="Free-form run label"),
    at: Optional[datetime] = typer.Option(None, help="Schedule the run for later"),
) -> None:
    """Start a run of a registered playbook."""
    engine, ctx = _engine()
    details = _run(
        engine.start_run(ctx, playbook_id, parameters=_parse_params(param), scheduled_at=at, label=label)
    )
    _echo_details(details)


@run_app.command("advance")
def run_advance(run_id: str) -> None:
    """Advance a run as far as it can go."""
    engine, ctx = _engine()
    _echo_advance(_run(engine.advance(ctx, run_id)))


@run_app.command("approve")
def run_approve(
    step_run_id: str,
    reject: bool = typer.Option(False, "--reject", help="Reject instead of approve"),
    notes: Optional[str] = typer.Option(None, help="Approval notes"),
) -> None:
    """Approve (or reject) a step waiting for approval."""
    engine, ctx = _engine()
    step = _run(engine.decide(ctx, step_run_id, approved=not reject, notes=notes))
    typer.echo(f"Step {step.step_id}: {step.status.value}")


@run_app.command("cancel")
def run_cancel(
    run_id: str,
    reason: str = typer.Option(..., help="Why the run is cancelled"),
) -> None:
    """Cancel a run."""
    engine, ctx = _engine()
    run = _run(engine.cancel(ctx, run_id, reason))
    typer.echo(f"Run {run.id}: {run.status.value}")


@run_app.command("pause")
def run_pause(run_id: str) -> None:
    """Pause a run."""
    engine, ctx = _engine()
    run = _run(engine.pause(ctx, run_id))
    typer.echo(f"Run {run.id}: {run.status.value}")


@run_app.command("resume")
def run_resume(run_id: str) -> None:
    """Resume a paused run."""
    engine, ctx = _engine()
    _echo_advance(_run(engine.resume(ctx, run_id)))


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show a run with its step runs."""
    engine, ctx = _engine()
    _echo_details(_run(engine.get_run(ctx, run_id)))


@run_app.command("list")
def run_list(
    status: Optional[List[RunStatus]] = typer.Option(None, help="Filter by status"),
) -> None:
    """List runs with their current status."""
    engine, ctx = _engine()
    runs = _run(engine.list_runs(ctx, status or None))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.status.value}\t{run.definition.name}")


@audit_app.command("list")
def audit_list(
    run_id: str,
    event_type: Optional[str] = typer.Option(None, help="Only this event type"),
    limit: int = typer.Option(50, help="Page size"),
    offset: int = typer.Option(0, help="Page offset"),
) -> None:
    """List audit events of a run in order."""
    engine, ctx = _engine()
    events = _run(
        engine.list_audit_events(ctx, run_id=run_id, event_type=event_type, limit=limit, offset=offset)
    )
    if not events:
        typer.echo("No audit events found")
        return
    for event in events:
        typer.echo(f"{event.created_at.isoformat()}\t{event.event_type}\t{event.actor_id}\t{event.payload}")


@scheduler_app.command("tick")
def scheduler_tick() -> None:
    """Advance every due run once."""
    engine, _ = _engine()
    results = _run(RunScheduler(engine).tick())
    typer.echo(f"Advanced {len(results)} runs")


@scheduler_app.command("start")
def scheduler_start(
    interval: float = typer.Option(5.0, help="Seconds between ticks"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """Run the scheduler loop."""
    engine, _ = _engine()
    typer.echo("Starting scheduler")
    _run(RunScheduler(engine).start(interval=interval, lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
