"""Text-generation collaborator used by the finalizer.

Everything here is best effort: the finalizer logs and swallows any error
raised by a :class:`Summarizer`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from .config import DrillbookConfig
from .constants import RiskLevel, StepStatus
from .contracts import OutcomeEntry

logger = logging.getLogger(__name__)


class StepSummary(BaseModel):
    step_id: str
    name: str
    status: StepStatus
    depends_on: List[str] = Field(default_factory=list)
    outcome: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    outcomes: List[OutcomeEntry] = Field(default_factory=list)
    error: Optional[str] = None


class RunSummary(BaseModel):
    """Aggregate view of a finished run handed to the summarizer."""

    run_id: str
    playbook_name: str
    label: Optional[str] = None
    steps_executed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    steps_cancelled: int = 0
    metrics: Dict[str, float] = Field(default_factory=dict)
    risk_score: float = 0.0
    opportunity_score: float = 0.0
    confidence_score: float = 0.0
    aggregate_risk_level: RiskLevel = RiskLevel.LOW
    steps: List[StepSummary] = Field(default_factory=list)


class Recommendation(BaseModel):
    title: str
    description: str = ""
    priority: str = "medium"


class Narrative(BaseModel):
    narrative: Optional[str] = None
    recommendations: List[Recommendation] = Field(default_factory=list)
    risk_graph: Dict[str, Any] = Field(default_factory=dict)


class Summarizer(Protocol):
    async def summarize(self, summary: RunSummary) -> Narrative:
        ...


def fallback_narrative(summary: RunSummary) -> str:
    return (
        f"Completed {summary.steps_executed} steps with "
        f"{summary.steps_failed} failures."
    )


def build_risk_graph(summary: RunSummary) -> Dict[str, Any]:
    """Build a node/edge graph linking steps to each other and to their findings."""
    nodes: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []
    for step in summary.steps:
        nodes.append(
            {
                "id": step.step_id,
                "label": step.name,
                "type": "step",
                "status": step.status.value,
                "risk_level": step.risk_level.value if step.risk_level else None,
            }
        )
        for index, entry in enumerate(step.outcomes):
            node_id = f"{step.step_id}:{entry.category}:{index}"
            nodes.append(
                {
                    "id": node_id,
                    "label": entry.description or entry.category,
                    "type": entry.category,
                    "severity": entry.severity.value if entry.severity else None,
                }
            )
            edges.append({"source": step.step_id, "target": node_id, "label": "reported"})
        for dep in step.depends_on:
            label = "triggered" if step.status == StepStatus.EXECUTED else "skipped"
            edges.append({"source": dep, "target": step.step_id, "label": label})
    return {"nodes": nodes, "edges": edges}


class NarrativeDraft(BaseModel):
    """Structured output requested from the narrative agent."""

    narrative: str
    recommendations: List[Recommendation] = Field(default_factory=list)


NARRATIVE_PROMPT = (
    "You write concise after-action reports for PR crisis drills. "
    "Summarise what happened, call out the biggest risks, and give up to "
    "five concrete recommendations."
)


class AgentSummarizer:
    """Summarize runs with a pydantic-ai agent."""

    def __init__(
        self,
        model: Optional[str] = None,
        agent: Any = None,
        include_risk_graph: bool = True,
    ) -> None:
        self._model = model
        self._agent = agent
        self.include_risk_graph = include_risk_graph

    @property
    def agent(self) -> Any:
        if self._agent is None:
            from pydantic_ai import Agent

            self._agent = Agent(
                self._model,
                output_type=NarrativeDraft,
                system_prompt=NARRATIVE_PROMPT,
            )
        return self._agent

    async def summarize(self, summary: RunSummary) -> Narrative:
        prompt = "Run summary:\n" + json.dumps(
            summary.model_dump(mode="json"), indent=2
        )
        result = await self.agent.run(prompt)
        draft = result.output
        if not isinstance(draft, NarrativeDraft):
            draft = NarrativeDraft.model_validate(draft)
        logger.debug(f"Generated narrative for run {summary.run_id}")
        return Narrative(
            narrative=draft.narrative,
            recommendations=draft.recommendations,
            risk_graph=build_risk_graph(summary) if self.include_risk_graph else {},
        )


def get_summarizer(config: DrillbookConfig) -> Optional[Summarizer]:
    """Return the configured summarizer, or ``None`` when narratives are off."""
    if not config.narrative.enabled:
        return None
    return AgentSummarizer(model=config.narrative.model)
