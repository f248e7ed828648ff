"""Run finalizer: aggregate scores and close out a run."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .audit import AuditLog
from .constants import RISK_ORDER, AuditEventType, RiskLevel, RunStatus, StepStatus
from .context import RequestContext
from .contracts import utcnow
from .errors import ConcurrentUpdateError, InvalidStateError
from .narrative import (
    Narrative,
    RunSummary,
    StepSummary,
    Summarizer,
    build_risk_graph,
    fallback_narrative,
)
from .persistence.models import Run, StepRun
from .persistence.repository import RunRepository
from .profiles import EngineProfile

logger = logging.getLogger(__name__)

SENTIMENT_METRIC = "sentiment_delta"
COVERAGE_METRIC = "coverage_delta"


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def compute_scores(
    metrics: Dict[str, float], failed: int, executed: int, considered: int
) -> Tuple[float, float, float]:
    """Return ``(risk, opportunity, confidence)`` for a finished run.

    ``considered`` is the number of steps that were not cancelled.
    """
    sentiment = float(metrics.get(SENTIMENT_METRIC, 0.0))
    coverage = float(metrics.get(COVERAGE_METRIC, 0.0))
    others = [
        float(v)
        for k, v in metrics.items()
        if k not in (SENTIMENT_METRIC, COVERAGE_METRIC)
    ]
    negative = sum(-v for v in others if v < 0)
    positive = sum(v for v in others if v > 0)

    if failed:
        risk = 50.0 + 10.0 * failed
    else:
        risk = max(0.0, -2.0 * sentiment) + negative
    opportunity = max(0.0, 2.0 * sentiment + coverage) + positive
    confidence = executed / considered if considered else 0.0
    return _clamp(risk), _clamp(opportunity), round(confidence, 4)


def aggregate_risk_level(step_runs: List[StepRun]) -> RiskLevel:
    levels = [
        s.outcome.risk_level
        for s in step_runs
        if s.outcome is not None and s.outcome.risk_level is not None
    ]
    if not levels:
        return RiskLevel.LOW
    return max(levels, key=lambda level: RISK_ORDER[level.value])


class RunFinalizer:
    """Marks a run terminal once every step run is terminal.

    Narrative generation is best effort. Any error from the summarizer is
    logged and replaced by a deterministic narrative.
    """

    def __init__(
        self,
        repository: RunRepository,
        audit: AuditLog,
        profile: EngineProfile,
        summarizer: Optional[Summarizer] = None,
    ) -> None:
        self.repository = repository
        self.audit = audit
        self.profile = profile
        self.summarizer = summarizer

    def build_summary(self, run: Run, step_runs: List[StepRun]) -> RunSummary:
        counts = {status: 0 for status in StepStatus}
        for step_run in step_runs:
            counts[step_run.status] += 1
        executed = counts[StepStatus.EXECUTED]
        failed = counts[StepStatus.FAILED]
        cancelled = counts[StepStatus.CANCELLED]
        risk, opportunity, confidence = compute_scores(
            run.state.metrics, failed, executed, len(step_runs) - cancelled
        )
        steps = []
        for step_run in step_runs:
            definition = run.definition.get_step(step_run.step_id)
            outcome = step_run.outcome
            steps.append(
                StepSummary(
                    step_id=step_run.step_id,
                    name=definition.display_name if definition else step_run.step_id,
                    status=step_run.status,
                    depends_on=list(definition.depends_on) if definition else [],
                    outcome=outcome.summary if outcome else None,
                    risk_level=outcome.risk_level if outcome else None,
                    outcomes=list(outcome.outcomes) if outcome else [],
                    error=step_run.error_message,
                )
            )
        return RunSummary(
            run_id=run.id,
            playbook_name=run.definition.name,
            label=run.label,
            steps_executed=executed,
            steps_failed=failed,
            steps_skipped=counts[StepStatus.SKIPPED],
            steps_cancelled=cancelled,
            metrics=dict(run.state.metrics),
            risk_score=risk,
            opportunity_score=opportunity,
            confidence_score=confidence,
            aggregate_risk_level=aggregate_risk_level(step_runs),
            steps=steps,
        )

    async def _narrate(self, ctx: RequestContext, summary: RunSummary) -> Narrative:
        narrative = Narrative()
        if self.profile.narrative_enabled and self.summarizer is not None:
            try:
                narrative = await self.summarizer.summarize(summary)
            except Exception as exc:
                logger.warning(f"Narrative generation failed for run {summary.run_id}: {exc}")
            else:
                await self.audit.record(
                    ctx,
                    AuditEventType.NARRATIVE_GENERATED,
                    summary.run_id,
                    payload={"recommendations": len(narrative.recommendations)},
                )
        if not narrative.narrative:
            narrative = narrative.model_copy(update={"narrative": fallback_narrative(summary)})
        if self.profile.risk_map_enabled and not narrative.risk_graph:
            narrative = narrative.model_copy(update={"risk_graph": build_risk_graph(summary)})
        return narrative

    async def finalize(
        self, ctx: RequestContext, run: Run, step_runs: List[StepRun]
    ) -> Run:
        pending = [s.step_id for s in step_runs if not s.is_terminal]
        if pending:
            raise InvalidStateError(
                f"Run {run.id} cannot be finalized, steps still open: {', '.join(pending)}"
            )

        summary = self.build_summary(run, step_runs)
        narrative = await self._narrate(ctx, summary)

        status = RunStatus.FAILED if summary.steps_failed else RunStatus.COMPLETED
        expected_status, expected_version = run.status, run.version
        run.status = status
        run.completed_at = utcnow()
        run.next_step_at = None
        run.steps_completed = summary.steps_executed
        run.steps_failed = summary.steps_failed
        run.steps_skipped = summary.steps_skipped
        run.risk_score = summary.risk_score
        run.opportunity_score = summary.opportunity_score
        run.confidence_score = summary.confidence_score
        run.aggregate_risk_level = summary.aggregate_risk_level
        run.narrative = narrative.narrative
        run.recommendations = [r.model_dump() for r in narrative.recommendations]
        run.risk_graph = narrative.risk_graph
        run.result_summary = {
            "steps_executed": summary.steps_executed,
            "steps_failed": summary.steps_failed,
            "steps_skipped": summary.steps_skipped,
            "steps_cancelled": summary.steps_cancelled,
            "metrics": summary.metrics,
        }
        if status == RunStatus.FAILED and not run.error_message:
            failed = next(s for s in step_runs if s.status == StepStatus.FAILED)
            run.error_message = failed.error_message

        if not await self.repository.update_run(run, expected_status, expected_version):
            run.status = expected_status
            raise ConcurrentUpdateError("Run", run.id, expected_status.value)

        event = (
            AuditEventType.RUN_FAILED
            if status == RunStatus.FAILED
            else AuditEventType.RUN_COMPLETED
        )
        await self.audit.record(
            ctx,
            event,
            run.id,
            payload={
                **run.result_summary,
                "risk_score": run.risk_score,
                "opportunity_score": run.opportunity_score,
                "confidence_score": run.confidence_score,
                "aggregate_risk_level": run.aggregate_risk_level.value,
                "error": run.error_message,
            },
        )
        logger.info(f"Run {run.id} finalized as {status.value}")
        return run
