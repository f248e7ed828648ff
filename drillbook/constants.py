"""Shared constants and status vocabularies."""

from __future__ import annotations

from enum import Enum


class RunStatus(str, Enum):
    """Lifecycle status of a run."""

    PENDING = "pending"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"

    @classmethod
    def is_terminal(cls, status: "RunStatus") -> bool:
        return status in TERMINAL_RUN_STATUSES

    @classmethod
    def is_advanceable(cls, status: "RunStatus") -> bool:
        """Only these statuses may be claimed by an advancer."""
        return status in (cls.INITIALIZING, cls.RUNNING)


class StepStatus(str, Enum):
    """Status of one step within a run."""

    PENDING = "pending"
    READY = "ready"
    APPROVED = "approved"
    EXECUTING = "executing"
    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def is_terminal(cls, status: "StepStatus") -> bool:
        return status in TERMINAL_STEP_STATUSES


class AuditEventType(str, Enum):
    RUN_STARTED = "run_started"
    STATE_CHANGED = "state_changed"
    STEP_CONDITION_EVALUATED = "step_condition_evaluated"
    STEP_READY = "step_ready"
    STEP_APPROVED = "step_approved"
    STEP_REJECTED = "step_rejected"
    STEP_EXECUTING = "step_executing"
    STEP_EXECUTED = "step_executed"
    STEP_SKIPPED = "step_skipped"
    STEP_FAILED = "step_failed"
    STEP_RETRY_SCHEDULED = "step_retry_scheduled"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    RUN_ABORTED = "run_aborted"
    NARRATIVE_GENERATED = "narrative_generated"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.ABORTED}
)

TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.EXECUTED, StepStatus.SKIPPED, StepStatus.FAILED, StepStatus.CANCELLED}
)

# Dependencies in these statuses unblock their dependents.
SATISFIED_STEP_STATUSES = frozenset({StepStatus.EXECUTED, StepStatus.SKIPPED})

RISK_ORDER: dict[str, int] = {
    RiskLevel.LOW.value: 1,
    RiskLevel.MEDIUM.value: 2,
    RiskLevel.HIGH.value: 3,
    RiskLevel.CRITICAL.value: 4,
}

DEFAULT_ACTOR = "system"
DEFAULT_ORG_ID = "default"
DEFAULT_AUDIT_PAGE_SIZE = 50
DEFAULT_AGENT_MODEL = "openai:gpt-4o-mini"
