"""Data models for persisted run state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import DEFAULT_ACTOR, RiskLevel, RunStatus, StepStatus
from ..contracts import PlaybookDefinition, RunState, StepOutcome, as_utc, new_id, utcnow


class Run(BaseModel):
    """One execution instance of a playbook definition."""

    id: str = Field(default_factory=new_id)
    org_id: str
    playbook_id: str
    definition: PlaybookDefinition
    profile: str = "playbook"
    status: RunStatus = RunStatus.INITIALIZING
    version: int = 0
    label: Optional[str] = None
    state: RunState = Field(default_factory=RunState)
    initial_state: RunState = Field(default_factory=RunState)

    steps_completed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0

    scheduled_at: Optional[datetime] = None
    next_step_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    started_by: str = DEFAULT_ACTOR
    error_message: Optional[str] = None

    # Populated by the finalizer only.
    risk_score: Optional[float] = None
    opportunity_score: Optional[float] = None
    confidence_score: Optional[float] = None
    aggregate_risk_level: Optional[RiskLevel] = None
    narrative: Optional[str] = None
    recommendations: list[dict[str, Any]] = Field(default_factory=list)
    risk_graph: dict[str, Any] = Field(default_factory=dict)
    result_summary: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("scheduled_at", "next_step_at", mode="after")
    @classmethod
    def _naive_is_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def is_terminal(self) -> bool:
        return RunStatus.is_terminal(self.status)


class StepRun(BaseModel):
    """Execution record of one step within one run."""

    id: str = Field(default_factory=new_id)
    org_id: str
    run_id: str
    step_id: str
    ordinal: int
    status: StepStatus = StepStatus.PENDING
    ready_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approval_notes: Optional[str] = None
    outcome: Optional[StepOutcome] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    condition_evaluated: bool = False
    condition_result: Optional[bool] = None
    condition_details: dict[str, Any] = Field(default_factory=dict)
    skip_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return StepStatus.is_terminal(self.status)


class AuditEvent(BaseModel):
    """Immutable lifecycle event."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    org_id: str
    run_id: str
    step_run_id: Optional[str] = None
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    actor_id: str = DEFAULT_ACTOR
    created_at: datetime = Field(default_factory=utcnow)
