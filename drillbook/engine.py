"""Run engine: advancing runs, executing steps and the approval gate.

The persisted run status is the only concurrency token. Every run write is a
compare-and-swap on ``(status, version)`` so at most one advancer proceeds
per pass; step run writes compare on the step status.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .actions import ActionExecutor, get_executor
from .audit import AuditLog
from .conditions import evaluate_trigger
from .config import DrillbookConfig, load_config
from .constants import (
    DEFAULT_AUDIT_PAGE_SIZE,
    SATISFIED_STEP_STATUSES,
    AuditEventType,
    RunStatus,
    StepStatus,
)
from .context import RequestContext
from .contracts import (
    ActionFailed,
    ActionResult,
    PlaybookDefinition,
    RunState,
    StepDefinition,
    StepOutcome,
    as_utc,
    utcnow,
)
from .definitions import ensure_startable
from .errors import (
    ConcurrentUpdateError,
    InvalidStateError,
    PlaybookNotFoundError,
    RunNotFoundError,
    StepRunNotFoundError,
)
from .finalizer import RunFinalizer
from .narrative import Summarizer, get_summarizer
from .persistence import get_repository
from .persistence.models import AuditEvent, Run, StepRun
from .persistence.repository import RunRepository
from .profiles import PLAYBOOK_PROFILE, EngineProfile, RetryPolicy, get_profile

logger = logging.getLogger(__name__)


class RunDetails(BaseModel):
    """A run together with its step runs in ordinal order."""

    run: Run
    step_runs: List[StepRun] = Field(default_factory=list)

    def step(self, step_id: str) -> Optional[StepRun]:
        return next((s for s in self.step_runs if s.step_id == step_id), None)


class AdvanceResult(BaseModel):
    run: Run
    processed: List[StepRun] = Field(default_factory=list)
    next_step: Optional[StepRun] = None
    is_complete: bool = False


class _Pass(str, Enum):
    PROGRESS = "progress"
    IDLE = "idle"
    HALT = "halt"


def _next_open_step(step_runs: Iterable[StepRun]) -> Optional[StepRun]:
    return next(
        (
            s
            for s in sorted(step_runs, key=lambda s: s.ordinal)
            if s.status in (StepStatus.PENDING, StepStatus.READY)
        ),
        None,
    )


class PlaybookEngine:
    """Drives runs of playbook definitions to a terminal status."""

    def __init__(
        self,
        repository: RunRepository,
        executor: ActionExecutor,
        *,
        profile: EngineProfile = PLAYBOOK_PROFILE,
        retry_policy: Optional[RetryPolicy] = None,
        summarizer: Optional[Summarizer] = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.profile = profile
        self.retry_policy = retry_policy or RetryPolicy()
        self.audit = AuditLog(repository)
        self.finalizer = RunFinalizer(repository, self.audit, profile, summarizer)

    @classmethod
    def from_config(
        cls,
        config: Optional[DrillbookConfig] = None,
        repository: Optional[RunRepository] = None,
    ) -> "PlaybookEngine":
        config = config or load_config()
        return cls(
            repository or get_repository(config=config),
            get_executor(config),
            profile=get_profile(config.engine.profile, config.engine),
            retry_policy=RetryPolicy.from_config(config.engine.retry),
            summarizer=get_summarizer(config),
        )

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _load_run(self, ctx: RequestContext, run_id: str) -> Run:
        run = await self.repository.get_run(ctx.org_id, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def _save_run(self, run: Run) -> None:
        if not await self.repository.update_run(run, run.status, run.version):
            raise ConcurrentUpdateError("Run", run.id, run.status.value)

    async def _transition(
        self, ctx: RequestContext, run: Run, status: RunStatus, **payload: Any
    ) -> None:
        previous, version = run.status, run.version
        run.status = status
        if not await self.repository.update_run(run, previous, version):
            run.status = previous
            raise ConcurrentUpdateError("Run", run.id, previous.value)
        await self.audit.record(
            ctx,
            AuditEventType.STATE_CHANGED,
            run.id,
            payload={"from": previous.value, "to": status.value, **payload},
        )
        logger.info(f"Run {run.id} {previous.value} -> {status.value}")

    async def _save_step(self, step_run: StepRun, expected: StepStatus) -> None:
        if not await self.repository.update_step_run(step_run, expected):
            raise ConcurrentUpdateError("StepRun", step_run.id, expected.value)

    # ------------------------------------------------------------------
    # Definitions
    async def register_playbook(
        self, ctx: RequestContext, playbook: PlaybookDefinition
    ) -> PlaybookDefinition:
        """Validate and store a playbook definition for ``ctx.org_id``."""
        if playbook.org_id != ctx.org_id:
            playbook = playbook.model_copy(update={"org_id": ctx.org_id})
        ensure_startable(playbook)
        await self.repository.save_playbook(playbook)
        logger.info(f"Registered playbook {playbook.id} ({playbook.name})")
        return playbook

    # ------------------------------------------------------------------
    # Queries
    async def get_run(self, ctx: RequestContext, run_id: str) -> RunDetails:
        run = await self._load_run(ctx, run_id)
        step_runs = await self.repository.list_step_runs(ctx.org_id, run_id)
        return RunDetails(run=run, step_runs=step_runs)

    async def list_runs(
        self, ctx: RequestContext, statuses: Optional[Iterable[RunStatus]] = None
    ) -> List[Run]:
        return await self.repository.list_runs(ctx.org_id, statuses)

    async def list_audit_events(
        self,
        ctx: RequestContext,
        run_id: Optional[str] = None,
        step_run_id: Optional[str] = None,
        event_type: Optional[str] = None,
        actor_id: Optional[str] = None,
        limit: int = DEFAULT_AUDIT_PAGE_SIZE,
        offset: int = 0,
    ) -> List[AuditEvent]:
        return await self.repository.list_audit_events(
            ctx.org_id,
            run_id=run_id,
            step_run_id=step_run_id,
            event_type=event_type,
            actor_id=actor_id,
            limit=limit,
            offset=offset,
        )

    # ------------------------------------------------------------------
    # Starting runs
    async def start_run(
        self,
        ctx: RequestContext,
        playbook_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        scheduled_at: Optional[datetime] = None,
        label: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RunDetails:
        """Create a run of ``playbook_id`` and, unless scheduled later, advance it.

        Raises:
            DefinitionError: If the playbook is missing or cannot be started.
                Nothing is written in that case.
        """
        playbook = await self.repository.get_playbook(ctx.org_id, playbook_id)
        if playbook is None:
            raise PlaybookNotFoundError(playbook_id)
        ensure_startable(playbook)

        now = utcnow()
        scheduled_at = as_utc(scheduled_at)
        deferred = scheduled_at is not None and scheduled_at > now
        state = RunState(parameters=dict(parameters or {}))
        run = Run(
            org_id=ctx.org_id,
            playbook_id=playbook.id,
            definition=playbook.model_copy(deep=True),
            profile=self.profile.name,
            status=RunStatus.PENDING if deferred else RunStatus.INITIALIZING,
            label=label,
            state=state,
            initial_state=state.model_copy(deep=True),
            scheduled_at=scheduled_at,
            started_by=ctx.actor,
            metadata=dict(metadata or {}),
        )
        step_runs = [
            StepRun(
                org_id=ctx.org_id,
                run_id=run.id,
                step_id=step.id,
                ordinal=step.ordinal,
            )
            for step in playbook.ordered_steps()
        ]
        await self.repository.create_run(run, step_runs)
        await self.audit.record(
            ctx,
            AuditEventType.RUN_STARTED,
            run.id,
            payload={
                "playbook_id": playbook.id,
                "playbook_version": playbook.version,
                "step_count": len(step_runs),
                "scheduled_at": scheduled_at.isoformat() if scheduled_at else None,
            },
        )
        logger.info(f"Started run {run.id} of playbook {playbook.id}")

        if not deferred:
            await self.advance(ctx, run.id)
        return await self.get_run(ctx, run.id)

    # ------------------------------------------------------------------
    # Advancing
    async def _current(self, ctx: RequestContext, run_id: str) -> AdvanceResult:
        run = await self._load_run(ctx, run_id)
        step_runs = await self.repository.list_step_runs(ctx.org_id, run_id)
        return AdvanceResult(
            run=run,
            next_step=_next_open_step(step_runs),
            is_complete=run.is_terminal,
        )

    async def advance(
        self, ctx: RequestContext, run_id: str, now: Optional[datetime] = None
    ) -> AdvanceResult:
        """Admit and execute every step that can make progress.

        Calling this on a run that is not ``initializing``/``running`` (or
        that is waiting out a retry backoff) returns the current state
        without writing anything.
        """
        now = as_utc(now) or utcnow()
        run = await self._load_run(ctx, run_id)

        try:
            if run.status == RunStatus.PENDING:
                if run.scheduled_at is not None and run.scheduled_at > now:
                    return await self._current(ctx, run_id)
                await self._transition(ctx, run, RunStatus.INITIALIZING, reason="scheduled")

            if not RunStatus.is_advanceable(run.status):
                return await self._current(ctx, run_id)
            if run.next_step_at is not None and run.next_step_at > now:
                return await self._current(ctx, run_id)

            # Claim this pass. A competing advancer holding the same
            # version loses here.
            run.next_step_at = None
            if run.status == RunStatus.INITIALIZING:
                run.started_at = run.started_at or utcnow()
                await self._transition(ctx, run, RunStatus.RUNNING)
            else:
                await self._save_run(run)
        except ConcurrentUpdateError:
            logger.info(f"Run {run_id} is being advanced elsewhere, skipping")
            return await self._current(ctx, run_id)

        return await self._drive(ctx, run)

    async def _drive(self, ctx: RequestContext, run: Run) -> AdvanceResult:
        step_runs = await self.repository.list_step_runs(ctx.org_id, run.id)
        processed: List[StepRun] = []
        while True:
            outcome = await self._run_pass(ctx, run, step_runs, processed)
            if outcome is not _Pass.PROGRESS:
                break

        if all(s.is_terminal for s in step_runs):
            run = await self.finalizer.finalize(ctx, run, step_runs)
            return AdvanceResult(run=run, processed=processed, is_complete=True)
        return AdvanceResult(
            run=run,
            processed=processed,
            next_step=_next_open_step(step_runs),
            is_complete=False,
        )

    async def _run_pass(
        self,
        ctx: RequestContext,
        run: Run,
        step_runs: List[StepRun],
        processed: List[StepRun],
    ) -> _Pass:
        ordered = sorted(step_runs, key=lambda s: s.ordinal)
        by_step = {s.step_id: s for s in ordered}

        for step_run in ordered:
            if step_run.status == StepStatus.APPROVED:
                step = self._step(run, step_run)
                halted = await self._execute_step(ctx, run, step, step_run, step_runs, processed)
                return _Pass.HALT if halted else _Pass.PROGRESS

        if any(s.status == StepStatus.READY for s in ordered):
            await self._await_approval(ctx, run)
            return _Pass.HALT

        progressed = False
        for step_run in ordered:
            if step_run.status != StepStatus.PENDING:
                continue
            step = self._step(run, step_run)
            deps = [by_step[d] for d in step.depends_on if d in by_step]

            blocked_by = [
                d.step_id
                for d in deps
                if d.status in (StepStatus.FAILED, StepStatus.CANCELLED)
            ]
            if blocked_by:
                await self._skip(
                    ctx, run, step_run, "dependency_failed", failed_dependencies=blocked_by
                )
                processed.append(step_run)
                progressed = True
                continue
            if not all(d.status in SATISFIED_STEP_STATUSES for d in deps):
                continue

            if step.condition is not None and step.condition.type != "always":
                statuses = {s.step_id: s.status for s in step_runs}
                evaluation = self.profile.evaluation_context(run.state, statuses)
                result = evaluate_trigger(step.condition, evaluation)
                step_run.condition_evaluated = True
                step_run.condition_result = result.met
                step_run.condition_details = result.details
                await self.audit.record(
                    ctx,
                    AuditEventType.STEP_CONDITION_EVALUATED,
                    run.id,
                    step_run.id,
                    payload={
                        "step_id": step.id,
                        "condition_type": step.condition.type,
                        "met": result.met,
                        "details": result.details,
                    },
                )
                if not result.met:
                    await self._skip(ctx, run, step_run, "condition_not_met")
                    processed.append(step_run)
                    progressed = True
                    continue

            if step.requires_approval:
                step_run.status = StepStatus.READY
                step_run.ready_at = utcnow()
                await self._save_step(step_run, StepStatus.PENDING)
                await self.audit.record(
                    ctx,
                    AuditEventType.STEP_READY,
                    run.id,
                    step_run.id,
                    payload={"step_id": step.id, "name": step.display_name},
                )
                processed.append(step_run)
                await self._await_approval(ctx, run)
                return _Pass.HALT

            halted = await self._execute_step(ctx, run, step, step_run, step_runs, processed)
            if halted:
                return _Pass.HALT
            progressed = True

        return _Pass.PROGRESS if progressed else _Pass.IDLE

    def _step(self, run: Run, step_run: StepRun) -> StepDefinition:
        step = run.definition.get_step(step_run.step_id)
        if step is None:
            raise InvalidStateError(
                f"Step {step_run.step_id} is not part of the definition of run {run.id}"
            )
        return step

    async def _await_approval(self, ctx: RequestContext, run: Run) -> None:
        if run.status != RunStatus.AWAITING_APPROVAL:
            await self._transition(ctx, run, RunStatus.AWAITING_APPROVAL)

    async def _skip(
        self,
        ctx: RequestContext,
        run: Run,
        step_run: StepRun,
        reason: str,
        expected: StepStatus = StepStatus.PENDING,
        **payload: Any,
    ) -> None:
        step_run.status = StepStatus.SKIPPED
        step_run.skip_reason = reason
        await self._save_step(step_run, expected)
        run.steps_skipped += 1
        await self._save_run(run)
        await self.audit.record(
            ctx,
            AuditEventType.STEP_SKIPPED,
            run.id,
            step_run.id,
            payload={"step_id": step_run.step_id, "reason": reason, **payload},
        )
        logger.info(f"Skipped step {step_run.step_id} of run {run.id}: {reason}")

    async def _cancel_open_steps(self, step_runs: List[StepRun]) -> List[str]:
        cancelled = []
        for step_run in step_runs:
            if step_run.is_terminal:
                continue
            expected = step_run.status
            step_run.status = StepStatus.CANCELLED
            await self._save_step(step_run, expected)
            cancelled.append(step_run.step_id)
        return cancelled

    # ------------------------------------------------------------------
    # Step execution
    async def _execute_step(
        self,
        ctx: RequestContext,
        run: Run,
        step: StepDefinition,
        step_run: StepRun,
        step_runs: List[StepRun],
        processed: List[StepRun],
    ) -> bool:
        """Execute one step. Returns ``True`` when the pass must halt."""
        expected = step_run.status
        step_run.status = StepStatus.EXECUTING
        await self._save_step(step_run, expected)
        await self.audit.record(
            ctx,
            AuditEventType.STEP_EXECUTING,
            run.id,
            step_run.id,
            payload={"step_id": step.id, "action_type": step.action.type},
        )

        result: Optional[ActionResult] = None
        try:
            # Executors get a copy; only the engine mutates run state.
            result = await self.executor.execute(step.action, run.state.model_copy(deep=True))
        except ActionFailed as exc:
            error, retryable = str(exc), exc.retryable
        except Exception as exc:
            error, retryable = str(exc) or exc.__class__.__name__, False
        else:
            error = None if result.success else (result.error or "Action reported failure")
            retryable = result.retryable

        processed.append(step_run)
        if error is not None:
            return await self._handle_failure(
                ctx, run, step, step_run, step_runs, error, retryable, result
            )

        outcome = StepOutcome.from_result(result)
        step_run.status = StepStatus.EXECUTED
        step_run.executed_at = utcnow()
        step_run.outcome = outcome
        step_run.error_message = None
        await self._save_step(step_run, StepStatus.EXECUTING)
        run.state.apply_outcome(step.id, outcome)
        run.steps_completed += 1
        await self._save_run(run)
        await self.audit.record(
            ctx,
            AuditEventType.STEP_EXECUTED,
            run.id,
            step_run.id,
            payload={
                "step_id": step.id,
                "outcome": outcome.summary,
                "impact_metrics": outcome.impact_metrics,
            },
        )
        logger.info(f"Executed step {step.id} of run {run.id}")
        return False

    async def _handle_failure(
        self,
        ctx: RequestContext,
        run: Run,
        step: StepDefinition,
        step_run: StepRun,
        step_runs: List[StepRun],
        error: str,
        retryable: bool,
        result: Optional[ActionResult],
    ) -> bool:
        logger.error(f"Step {step.id} of run {run.id} failed: {error}")
        step_run.retry_count += 1
        step_run.error_message = error
        if result is not None:
            step_run.outcome = StepOutcome.from_result(result)

        if self.retry_policy.should_retry(step_run.retry_count, retryable):
            step_run.status = StepStatus.PENDING
            await self._save_step(step_run, StepStatus.EXECUTING)
            run.next_step_at = self.retry_policy.next_attempt_at(utcnow(), step_run.retry_count)
            await self._save_run(run)
            await self.audit.record(
                ctx,
                AuditEventType.STEP_RETRY_SCHEDULED,
                run.id,
                step_run.id,
                payload={
                    "step_id": step.id,
                    "error": error,
                    "retry_count": step_run.retry_count,
                    "next_attempt_at": run.next_step_at.isoformat(),
                },
            )
            return True

        if step.skip_on_failure:
            await self._skip(
                ctx, run, step_run, "action_failed", StepStatus.EXECUTING, error=error
            )
            return False

        step_run.status = StepStatus.FAILED
        await self._save_step(step_run, StepStatus.EXECUTING)
        run.steps_failed += 1
        await self.audit.record(
            ctx,
            AuditEventType.STEP_FAILED,
            run.id,
            step_run.id,
            payload={
                "step_id": step.id,
                "error": error,
                "retry_count": step_run.retry_count,
            },
        )
        if not self.profile.stop_on_failure:
            await self._save_run(run)
            return False

        run.error_message = error
        await self._cancel_open_steps(step_runs)
        await self._save_run(run)
        return True

    # ------------------------------------------------------------------
    # Approval gate
    async def decide(
        self,
        ctx: RequestContext,
        step_run_id: str,
        approved: bool,
        notes: Optional[str] = None,
    ) -> StepRun:
        """Approve or reject a ``ready`` step run and resume its run."""
        step_run = await self.repository.get_step_run(ctx.org_id, step_run_id)
        if step_run is None:
            raise StepRunNotFoundError(step_run_id)
        if step_run.status != StepStatus.READY:
            raise InvalidStateError(
                f"Step run {step_run_id} is {step_run.status.value}, not ready"
            )
        run = await self._load_run(ctx, step_run.run_id)
        if run.status != RunStatus.AWAITING_APPROVAL:
            raise InvalidStateError(
                f"Run {run.id} is {run.status.value}, not awaiting approval"
            )

        # Claim the run before recording the decision; a losing caller
        # leaves the step ready.
        await self._transition(ctx, run, RunStatus.RUNNING)

        step_run.approved_by = ctx.actor
        step_run.approval_notes = notes
        payload = {"step_id": step_run.step_id, "notes": notes}
        if approved:
            step_run.status = StepStatus.APPROVED
            step_run.approved_at = utcnow()
            await self._save_step(step_run, StepStatus.READY)
            await self.audit.record(
                ctx, AuditEventType.STEP_APPROVED, run.id, step_run.id, payload=payload
            )
        else:
            await self.audit.record(
                ctx, AuditEventType.STEP_REJECTED, run.id, step_run.id, payload=payload
            )
            await self._skip(ctx, run, step_run, "rejected", StepStatus.READY)

        await self._drive(ctx, run)
        return await self.repository.get_step_run(ctx.org_id, step_run_id)

    # ------------------------------------------------------------------
    # Cancel, pause and resume
    async def cancel(self, ctx: RequestContext, run_id: str, reason: str) -> Run:
        """Terminate a run without scoring it."""
        run = await self._load_run(ctx, run_id)
        if run.is_terminal:
            raise InvalidStateError(f"Run {run_id} is already {run.status.value}")

        status = get_profile(run.profile).cancel_status
        run.completed_at = utcnow()
        run.next_step_at = None
        run.error_message = reason
        await self._transition(ctx, run, status, reason=reason)

        step_runs = await self.repository.list_step_runs(ctx.org_id, run_id)
        cancelled = await self._cancel_open_steps(step_runs)
        event = (
            AuditEventType.RUN_ABORTED
            if status == RunStatus.ABORTED
            else AuditEventType.RUN_CANCELLED
        )
        await self.audit.record(
            ctx, event, run.id, payload={"reason": reason, "cancelled_steps": cancelled}
        )
        return run

    async def pause(self, ctx: RequestContext, run_id: str) -> Run:
        run = await self._load_run(ctx, run_id)
        if run.status not in (
            RunStatus.INITIALIZING,
            RunStatus.RUNNING,
            RunStatus.AWAITING_APPROVAL,
        ):
            raise InvalidStateError(f"Run {run_id} cannot be paused while {run.status.value}")
        previous = run.status
        await self._transition(ctx, run, RunStatus.PAUSED)
        await self.audit.record(
            ctx, AuditEventType.RUN_PAUSED, run.id, payload={"from": previous.value}
        )
        return run

    async def resume(self, ctx: RequestContext, run_id: str) -> AdvanceResult:
        run = await self._load_run(ctx, run_id)
        if run.status != RunStatus.PAUSED:
            raise InvalidStateError(f"Run {run_id} is {run.status.value}, not paused")
        run.started_at = run.started_at or utcnow()
        await self._transition(ctx, run, RunStatus.RUNNING)
        await self.audit.record(ctx, AuditEventType.RUN_RESUMED, run.id)
        return await self.advance(ctx, run_id)
