"""Action executors carrying out (or simulating) a step's action."""

from __future__ import annotations

import abc
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .config import DrillbookConfig, load_config
from .constants import RiskLevel
from .contracts import ActionDescriptor, ActionFailed, ActionResult, OutcomeEntry, RunState

logger = logging.getLogger(__name__)

HandlerReturn = Union[ActionResult, Dict[str, Any], None]
ActionHandler = Callable[
    [ActionDescriptor, RunState], Union[HandlerReturn, Awaitable[HandlerReturn]]
]


class ActionExecutor(metaclass=abc.ABCMeta):
    """Performs one step's action.

    Implementations read the run state but never modify it; the engine
    merges the returned impact metrics itself.
    """

    @abc.abstractmethod
    async def execute(self, action: ActionDescriptor, state: RunState) -> ActionResult:
        """Carry out ``action`` and describe what happened.

        Raises:
            ActionFailed: If the action could not be carried out.
        """
        raise NotImplementedError


def _coerce_result(value: HandlerReturn) -> ActionResult:
    if value is None:
        return ActionResult()
    if isinstance(value, ActionResult):
        return value
    return ActionResult.model_validate(value)


class HandlerActionExecutor(ActionExecutor):
    """Dispatch actions to handlers registered per action type."""

    def __init__(self, handlers: Optional[Dict[str, ActionHandler]] = None) -> None:
        self._handlers: Dict[str, ActionHandler] = dict(handlers or {})

    def register(self, action_type: str, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def handler(self, action_type: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: ActionHandler) -> ActionHandler:
            self.register(action_type, func)
            return func

        return decorator

    async def execute(self, action: ActionDescriptor, state: RunState) -> ActionResult:
        handler = self._handlers.get(action.type)
        if handler is None:
            raise ActionFailed(f"No handler registered for action type '{action.type}'")
        value = handler(action, state)
        if inspect.isawaitable(value):
            value = await value
        return _coerce_result(value)


class StaticActionExecutor(ActionExecutor):
    """Replay the result written into the action payload.

    ``payload.simulated_result`` holds the :class:`ActionResult` fields;
    ``payload.fail`` makes the action raise with that message and
    ``payload.retryable`` marks such a failure as transient.
    """

    async def execute(self, action: ActionDescriptor, state: RunState) -> ActionResult:
        payload = action.payload
        if payload.get("fail"):
            raise ActionFailed(str(payload["fail"]), retryable=bool(payload.get("retryable")))
        raw = payload.get("simulated_result")
        if raw is None:
            return ActionResult(outcome=f"Executed {action.type}")
        try:
            return ActionResult.model_validate(raw)
        except ValidationError as exc:
            raise ActionFailed(f"Invalid simulated result for {action.type}: {exc}") from exc


class SimulatedImpact(BaseModel):
    sentiment_delta: float = Field(0.0, description="Sentiment change, -10 to 10")
    coverage_delta: float = Field(0.0, description="Coverage change in percent")
    engagement_delta: float = Field(0.0, description="Engagement change in percent")


class SimulatedOutcome(BaseModel):
    """Structured output requested from the simulation agent."""

    success: bool = True
    outcome: str = ""
    simulated_impact: SimulatedImpact = Field(default_factory=SimulatedImpact)
    findings: List[OutcomeEntry] = Field(default_factory=list)
    risk_level: Optional[RiskLevel] = None
    notes: List[str] = Field(default_factory=list)

    def to_result(self) -> ActionResult:
        return ActionResult(
            success=self.success,
            outcome=self.outcome,
            impact_metrics=self.simulated_impact.model_dump(),
            outcomes=list(self.findings),
            risk_level=self.risk_level,
            data={"notes": list(self.notes)},
            error=None if self.success else (self.outcome or "Simulated action failed"),
        )


SIMULATION_PROMPT = (
    "You simulate the execution of PR and communications action steps. "
    "Describe what plausibly happened, estimate the impact on sentiment, "
    "coverage and engagement, and list any risks or opportunities observed."
)


def build_simulation_prompt(action: ActionDescriptor, state: RunState) -> str:
    return (
        "Simulate the execution of this action step:\n\n"
        f"Action Type: {action.type}\n"
        f"Action Payload: {json.dumps(action.payload, indent=2, default=str)}\n"
        f"Run Parameters: {json.dumps(state.parameters, indent=2, default=str)}\n"
        f"Accumulated Metrics: {json.dumps(state.metrics, indent=2)}\n"
    )


class AgentActionExecutor(ActionExecutor):
    """Simulate actions with a pydantic-ai agent.

    Any error raised by the agent (provider outage, invalid output, ...) is
    reported as a retryable :class:`ActionFailed`.
    """

    def __init__(self, model: Optional[str] = None, agent: Any = None) -> None:
        self._model = model
        self._agent = agent

    @property
    def agent(self) -> Any:
        if self._agent is None:
            from pydantic_ai import Agent

            self._agent = Agent(
                self._model,
                output_type=SimulatedOutcome,
                system_prompt=SIMULATION_PROMPT,
            )
        return self._agent

    async def execute(self, action: ActionDescriptor, state: RunState) -> ActionResult:
        prompt = build_simulation_prompt(action, state)
        try:
            result = await self.agent.run(prompt)
        except Exception as exc:
            logger.error(f"Simulation of action {action.type} failed: {exc}")
            raise ActionFailed(f"Simulation unavailable: {exc}", retryable=True) from exc
        output = result.output
        if isinstance(output, SimulatedOutcome):
            return output.to_result()
        return _coerce_result(output)


def get_executor(config: Optional[DrillbookConfig] = None) -> ActionExecutor:
    """Factory returning the configured action executor."""
    config = config or load_config()
    backend = config.executor.backend
    if backend == "static":
        return StaticActionExecutor()
    if backend == "agent":
        return AgentActionExecutor(model=config.executor.model)
    raise ValueError(f"Unsupported executor backend: {backend}")
