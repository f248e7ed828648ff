"""Call-site configuration of the run engine.

Generic playbooks and scenario suites share one engine; they differ only in
what conditions read, whether a failed step fails the run immediately and
which status a cancelled run ends in.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from .conditions import EvaluationContext
from .config import EngineConfig, RetryConfig
from .constants import RunStatus, StepStatus
from .contracts import RunState
from .utils.retry import next_attempt_at


class EngineProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    condition_source: Literal["state", "last_outcome"] = "state"
    stop_on_failure: bool = True
    cancel_status: RunStatus = RunStatus.CANCELLED
    narrative_enabled: bool = False
    risk_map_enabled: bool = False

    def evaluation_context(
        self, state: RunState, step_statuses: Mapping[str, StepStatus]
    ) -> EvaluationContext:
        if self.condition_source == "last_outcome":
            return EvaluationContext.from_last_outcome(state, step_statuses)
        return EvaluationContext.from_run_state(state, step_statuses)


PLAYBOOK_PROFILE = EngineProfile(name="playbook")

SUITE_PROFILE = EngineProfile(
    name="suite",
    condition_source="last_outcome",
    stop_on_failure=True,
    cancel_status=RunStatus.ABORTED,
    narrative_enabled=True,
    risk_map_enabled=True,
)

PROFILES = {p.name: p for p in (PLAYBOOK_PROFILE, SUITE_PROFILE)}


def get_profile(name: str, config: Optional[EngineConfig] = None) -> EngineProfile:
    """Return the named profile with any configured overrides applied."""
    try:
        profile = PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown engine profile: {name}") from None
    if config is None:
        return profile
    overrides = {
        key: value
        for key, value in {
            "stop_on_failure": config.stop_on_failure,
            "narrative_enabled": config.narrative_enabled,
            "risk_map_enabled": config.risk_map_enabled,
        }.items()
        if value is not None
    }
    return profile.model_copy(update=overrides) if overrides else profile


class RetryPolicy(BaseModel):
    """How the engine treats transient action failures.

    With ``max_retries = 0`` every failure is final.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = 0
    backoff_base: float = 1.5
    jitter: float = 0.5

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(**config.model_dump())

    def should_retry(self, retry_count: int, retryable: bool) -> bool:
        """``retry_count`` already includes the failure being handled."""
        return retryable and retry_count <= self.max_retries

    def next_attempt_at(self, now: datetime, retry_count: int) -> datetime:
        return next_attempt_at(now, retry_count, self.backoff_base, self.jitter)
