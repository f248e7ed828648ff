"""Finalizer scoring and best-effort narrative generation."""

from types import SimpleNamespace

import pytest

from drillbook.actions import StaticActionExecutor
from drillbook.constants import RiskLevel, RunStatus, StepStatus
from drillbook.contracts import OutcomeEntry
from drillbook.engine import PlaybookEngine
from drillbook.errors import InvalidStateError
from drillbook.finalizer import compute_scores
from drillbook.narrative import (
    AgentSummarizer,
    NarrativeDraft,
    Recommendation,
    RunSummary,
    StepSummary,
    build_risk_graph,
)
from drillbook.profiles import PLAYBOOK_PROFILE


def _simulated(**result):
    return {"type": "simulate", "payload": {"simulated_result": result}}


class BrokenSummarizer:
    async def summarize(self, summary):
        raise RuntimeError("text service unavailable")


class DummyAgent:
    def __init__(self, output):
        self.output = output
        self.prompts = []

    async def run(self, prompt):
        self.prompts.append(prompt)
        return SimpleNamespace(output=self.output)


def test_compute_scores():
    risk, opportunity, confidence = compute_scores(
        {"sentiment_delta": 10, "coverage_delta": 5}, failed=0, executed=3, considered=4
    )
    assert risk == 0
    assert opportunity == 25
    assert confidence == 0.75

    risk, opportunity, _ = compute_scores(
        {"sentiment_delta": -10, "engagement_delta": -4}, failed=0, executed=1, considered=1
    )
    assert risk == 24
    assert opportunity == 0

    risk, _, _ = compute_scores({}, failed=7, executed=0, considered=7)
    assert risk == 100

    _, opportunity, confidence = compute_scores(
        {"sentiment_delta": 40, "coverage_delta": 50}, failed=0, executed=0, considered=0
    )
    assert opportunity == 100
    assert confidence == 0.0


@pytest.mark.asyncio
async def test_finalizer_aggregates_scores(engine, ctx, make_playbook):
    playbook = make_playbook(
        {
            "id": "a",
            "action": _simulated(
                impact_metrics={"sentiment_delta": 4, "coverage_delta": 2},
                risk_level="medium",
            ),
        },
        {
            "id": "b",
            "action": _simulated(impact_metrics={"sentiment_delta": 1}, risk_level="high"),
        },
    )
    await engine.register_playbook(ctx, playbook)

    details = await engine.start_run(ctx, playbook.id)
    run = details.run

    assert run.status == RunStatus.COMPLETED
    assert run.risk_score == 0
    assert run.opportunity_score == 12
    assert run.confidence_score == 1.0
    assert run.aggregate_risk_level == RiskLevel.HIGH
    assert run.result_summary["steps_executed"] == 2
    assert run.result_summary["metrics"] == {"sentiment_delta": 5, "coverage_delta": 2}
    assert run.risk_graph == {}

    events = await engine.list_audit_events(ctx, run_id=run.id, event_type="run_completed")
    assert events[0].payload["opportunity_score"] == 12
    assert events[0].payload["aggregate_risk_level"] == "high"


@pytest.mark.asyncio
async def test_narrative_failure_is_swallowed(repo, ctx, make_playbook, caplog):
    profile = PLAYBOOK_PROFILE.model_copy(update={"narrative_enabled": True})
    engine = PlaybookEngine(
        repo, StaticActionExecutor(), profile=profile, summarizer=BrokenSummarizer()
    )
    playbook = make_playbook({"id": "a", "action": "post"})
    await engine.register_playbook(ctx, playbook)

    details = await engine.start_run(ctx, playbook.id)

    assert details.run.status == RunStatus.COMPLETED
    assert details.run.narrative == "Completed 1 steps with 0 failures."
    assert "text service unavailable" in caplog.text
    types = [e.event_type for e in await engine.list_audit_events(ctx, run_id=details.run.id)]
    assert "narrative_generated" not in types


@pytest.mark.asyncio
async def test_agent_summarizer_narrative_is_stored(repo, ctx, make_playbook):
    draft = NarrativeDraft(
        narrative="The drill went well.",
        recommendations=[Recommendation(title="Brief spokespeople", priority="high")],
    )
    agent = DummyAgent(draft)
    profile = PLAYBOOK_PROFILE.model_copy(
        update={"narrative_enabled": True, "risk_map_enabled": True}
    )
    engine = PlaybookEngine(
        repo,
        StaticActionExecutor(),
        profile=profile,
        summarizer=AgentSummarizer(agent=agent),
    )
    playbook = make_playbook({"id": "a", "action": "post"}, {"id": "b", "action": "post", "depends_on": ["a"]})
    await engine.register_playbook(ctx, playbook)

    details = await engine.start_run(ctx, playbook.id)
    run = details.run

    assert run.narrative == "The drill went well."
    assert run.recommendations == [
        {"title": "Brief spokespeople", "description": "", "priority": "high"}
    ]
    assert {n["id"] for n in run.risk_graph["nodes"]} == {"a", "b"}
    assert run.risk_graph["edges"] == [{"source": "a", "target": "b", "label": "triggered"}]
    assert run.id in agent.prompts[0]
    types = [e.event_type for e in await engine.list_audit_events(ctx, run_id=run.id)]
    assert "narrative_generated" in types


@pytest.mark.asyncio
async def test_finalize_refuses_open_steps(engine, repo, ctx, make_playbook):
    playbook = make_playbook({"id": "a", "action": "post", "requires_approval": True})
    await engine.register_playbook(ctx, playbook)
    details = await engine.start_run(ctx, playbook.id)

    with pytest.raises(InvalidStateError):
        await engine.finalizer.finalize(ctx, details.run, details.step_runs)


def test_build_risk_graph_links_findings():
    summary = RunSummary(
        run_id="r1",
        playbook_name="drill",
        steps=[
            StepSummary(step_id="scan", name="Scan", status=StepStatus.EXECUTED),
            StepSummary(
                step_id="reply",
                name="Reply",
                status=StepStatus.SKIPPED,
                depends_on=["scan"],
                outcomes=[OutcomeEntry(category="risk", description="leak", severity=RiskLevel.HIGH)],
            ),
        ],
    )

    graph = build_risk_graph(summary)

    assert [n["id"] for n in graph["nodes"]] == ["scan", "reply", "reply:risk:0"]
    assert {"source": "scan", "target": "reply", "label": "skipped"} in graph["edges"]
    assert {"source": "reply", "target": "reply:risk:0", "label": "reported"} in graph["edges"]
