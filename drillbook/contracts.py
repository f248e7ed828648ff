"""Core contracts shared by the definition, the engine and executors."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import RiskLevel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TriggerCondition(BaseModel):
    """Declarative gate as written in a playbook definition.

    The evaluator turns this into one of the typed variants in
    :mod:`drillbook.conditions`.
    """

    model_config = ConfigDict(frozen=True)

    type: str = "always"
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ActionDescriptor(BaseModel):
    """Opaque action payload interpreted by an :class:`ActionExecutor`."""

    model_config = ConfigDict(frozen=True)

    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class StepDefinition(BaseModel):
    """One step of a playbook."""

    model_config = ConfigDict(frozen=True)

    id: str
    ordinal: int
    name: str = ""
    description: Optional[str] = None
    action: ActionDescriptor
    depends_on: List[str] = Field(default_factory=list)
    condition: Optional[TriggerCondition] = None
    requires_approval: bool = False
    skip_on_failure: bool = False
    # Reserved for a surrounding scheduler, the engine never enforces them.
    wait_duration_minutes: Optional[int] = None
    timeout_minutes: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class PlaybookDefinition(BaseModel):
    """Immutable ordered set of dependency-linked steps."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    org_id: str
    name: str
    description: Optional[str] = None
    version: int = 1
    steps: List[StepDefinition] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def ordered_steps(self) -> List[StepDefinition]:
        return sorted(self.steps, key=lambda s: s.ordinal)

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.id == step_id), None)


class OutcomeEntry(BaseModel):
    """Categorised finding reported by an action (a risk, an opportunity, ...)."""

    category: str
    description: str = ""
    severity: Optional[RiskLevel] = None


class ActionResult(BaseModel):
    """Structured result returned by an action executor."""

    success: bool = True
    outcome: Optional[str] = None
    impact_metrics: Dict[str, float] = Field(default_factory=dict)
    outcomes: List[OutcomeEntry] = Field(default_factory=list)
    risk_level: Optional[RiskLevel] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    retryable: bool = False


class StepOutcome(BaseModel):
    """Outcome persisted on a step run once its action has been carried out."""

    success: bool
    summary: Optional[str] = None
    impact_metrics: Dict[str, float] = Field(default_factory=dict)
    outcomes: List[OutcomeEntry] = Field(default_factory=list)
    risk_level: Optional[RiskLevel] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: ActionResult) -> "StepOutcome":
        return cls(
            success=result.success,
            summary=result.outcome,
            impact_metrics=dict(result.impact_metrics),
            outcomes=list(result.outcomes),
            risk_level=result.risk_level,
            data=dict(result.data),
        )


class ActionFailed(Exception):
    """Raised by executors when an action could not be carried out.

    ``retryable`` marks transient infrastructure errors as opposed to
    business-logic failures.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class RunState(BaseModel):
    """Typed accumulator of a run's context.

    Only the engine mutates it, through :meth:`apply_outcome`. Executors and
    conditions receive it read-only.
    """

    parameters: Dict[str, Any] = Field(default_factory=dict)
    metrics: Dict[str, float] = Field(default_factory=dict)
    transcript: List[str] = Field(default_factory=list)
    outcomes: Dict[str, StepOutcome] = Field(default_factory=dict)
    last_step_id: Optional[str] = None

    def apply_outcome(self, step_id: str, outcome: StepOutcome) -> None:
        """Merge a step's outcome into the running totals."""
        for key, value in outcome.impact_metrics.items():
            self.metrics[key] = self.metrics.get(key, 0.0) + float(value)
        if outcome.summary:
            self.transcript.append(outcome.summary)
        self.outcomes[step_id] = outcome
        self.last_step_id = step_id

    def last_outcome(self) -> Optional[StepOutcome]:
        if self.last_step_id is None:
            return None
        return self.outcomes.get(self.last_step_id)

    def text_blob(self) -> str:
        return " ".join(self.transcript)
