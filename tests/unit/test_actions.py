"""Action executor tests."""

from types import SimpleNamespace

import pytest

from drillbook.actions import (
    AgentActionExecutor,
    HandlerActionExecutor,
    SimulatedImpact,
    SimulatedOutcome,
    StaticActionExecutor,
    get_executor,
)
from drillbook.config import DrillbookConfig, ExecutorConfig
from drillbook.contracts import ActionDescriptor, ActionFailed, ActionResult, RunState
from drillbook.utils.retry import compute_backoff


class DummyAgent:
    def __init__(self, output=None, error=None):
        self.output = output
        self.error = error
        self.prompts = []

    async def run(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(output=self.output)


@pytest.mark.asyncio
async def test_static_executor_replays_payload():
    executor = StaticActionExecutor()
    action = ActionDescriptor(
        type="post",
        payload={"simulated_result": {"outcome": "posted", "impact_metrics": {"reach": 3}}},
    )

    result = await executor.execute(action, RunState())

    assert result.success is True
    assert result.outcome == "posted"
    assert result.impact_metrics == {"reach": 3}

    default = await executor.execute(ActionDescriptor(type="post"), RunState())
    assert default.outcome == "Executed post"


@pytest.mark.asyncio
async def test_static_executor_failure_flags():
    executor = StaticActionExecutor()
    with pytest.raises(ActionFailed) as exc_info:
        await executor.execute(
            ActionDescriptor(type="post", payload={"fail": "timeout", "retryable": True}),
            RunState(),
        )
    assert exc_info.value.retryable is True
    assert str(exc_info.value) == "timeout"

    with pytest.raises(ActionFailed):
        await executor.execute(
            ActionDescriptor(type="post", payload={"simulated_result": {"success": "maybe"}}),
            RunState(),
        )


@pytest.mark.asyncio
async def test_handler_executor_dispatches_by_type():
    executor = HandlerActionExecutor()

    @executor.handler("email")
    async def send_email(action, state):
        return ActionResult(outcome=f"emailed {action.payload['to']}")

    executor.register("noop", lambda action, state: None)

    emailed = await executor.execute(
        ActionDescriptor(type="email", payload={"to": "press@example.com"}), RunState()
    )
    assert emailed.outcome == "emailed press@example.com"
    assert (await executor.execute(ActionDescriptor(type="noop"), RunState())).success is True

    with pytest.raises(ActionFailed):
        await executor.execute(ActionDescriptor(type="fax"), RunState())


@pytest.mark.asyncio
async def test_agent_executor_maps_simulated_outcome():
    agent = DummyAgent(
        SimulatedOutcome(
            outcome="Statement well received",
            simulated_impact=SimulatedImpact(sentiment_delta=2.5, coverage_delta=10),
            risk_level="low",
            notes=["journalists asked follow-ups"],
        )
    )
    executor = AgentActionExecutor(agent=agent)
    state = RunState(parameters={"brand": "Acme"})

    result = await executor.execute(ActionDescriptor(type="statement", payload={"tone": "calm"}), state)

    assert result.success is True
    assert result.impact_metrics["sentiment_delta"] == 2.5
    assert result.impact_metrics["coverage_delta"] == 10
    assert result.data["notes"] == ["journalists asked follow-ups"]
    assert "Action Type: statement" in agent.prompts[0]
    assert "Acme" in agent.prompts[0]


@pytest.mark.asyncio
async def test_agent_executor_errors_are_retryable():
    executor = AgentActionExecutor(agent=DummyAgent(error=ConnectionError("reset")))
    with pytest.raises(ActionFailed) as exc_info:
        await executor.execute(ActionDescriptor(type="statement"), RunState())
    assert exc_info.value.retryable is True


def test_get_executor_uses_config():
    assert isinstance(get_executor(DrillbookConfig()), StaticActionExecutor)
    agent_config = DrillbookConfig(executor=ExecutorConfig(backend="agent", model="test"))
    assert isinstance(get_executor(agent_config), AgentActionExecutor)


def test_compute_backoff_growth():
    first = compute_backoff(1, base=2, jitter=0)
    second = compute_backoff(2, base=2, jitter=0)
    assert second > first
