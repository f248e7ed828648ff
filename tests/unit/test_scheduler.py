"""Scheduler tick tests."""

from datetime import timedelta

import pytest

from drillbook.constants import RunStatus
from drillbook.contracts import utcnow
from drillbook.scheduler import RunScheduler


@pytest.mark.asyncio
async def test_tick_advances_due_runs(engine, ctx, make_playbook):
    playbook = make_playbook({"id": "a", "action": "post"})
    await engine.register_playbook(ctx, playbook)
    at = utcnow() + timedelta(minutes=10)
    details = await engine.start_run(ctx, playbook.id, scheduled_at=at)
    scheduler = RunScheduler(engine)

    assert await scheduler.tick() == []

    results = await scheduler.tick(now=at + timedelta(seconds=1))

    assert [r.run.id for r in results] == [details.run.id]
    assert results[0].run.status == RunStatus.COMPLETED
    started = await engine.list_audit_events(
        ctx, run_id=details.run.id, event_type="state_changed", actor_id="scheduler"
    )
    assert started


@pytest.mark.asyncio
async def test_tick_skips_runs_waiting_for_approval(engine, ctx, make_playbook):
    playbook = make_playbook({"id": "a", "action": "post", "requires_approval": True})
    await engine.register_playbook(ctx, playbook)
    await engine.start_run(ctx, playbook.id)

    assert await RunScheduler(engine).tick() == []


@pytest.mark.asyncio
async def test_tick_continues_after_a_failing_run(engine, ctx, make_playbook, monkeypatch):
    playbook = make_playbook({"id": "a", "action": "post"})
    await engine.register_playbook(ctx, playbook)
    at = utcnow() + timedelta(minutes=10)
    broken = await engine.start_run(ctx, playbook.id, scheduled_at=at)
    healthy = await engine.start_run(ctx, playbook.id, scheduled_at=at)

    original = engine.advance

    async def advance(ctx, run_id, now=None):
        if run_id == broken.run.id:
            raise RuntimeError("database hiccup")
        return await original(ctx, run_id, now=now)

    monkeypatch.setattr(engine, "advance", advance)

    results = await RunScheduler(engine).tick(now=at + timedelta(seconds=1))

    assert [r.run.id for r in results] == [healthy.run.id]


@pytest.mark.asyncio
async def test_start_stops_after_lifespan(engine):
    scheduler = RunScheduler(engine)
    await scheduler.start(interval=0.01, lifespan=0.05)
