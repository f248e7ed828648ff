"""In-memory implementation of the run repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Iterable

from ..constants import RunStatus, StepStatus
from ..contracts import PlaybookDefinition
from .models import AuditEvent, Run, StepRun


def is_due(run: Run, now: datetime) -> bool:
    """Whether a scheduler should advance ``run`` at ``now``."""
    if run.status == RunStatus.PENDING:
        return run.scheduled_at is None or run.scheduled_at <= now
    if run.status in (RunStatus.INITIALIZING, RunStatus.RUNNING):
        return run.next_step_at is None or run.next_step_at <= now
    return False


class InMemoryRunRepository:
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._playbooks: Dict[str, PlaybookDefinition] = {}
        self._runs: Dict[str, Run] = {}
        self._step_runs: Dict[str, StepRun] = {}
        self._events: list[AuditEvent] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_playbook(self, playbook: PlaybookDefinition) -> None:
        self._playbooks[playbook.id] = playbook

    async def get_playbook(
        self, org_id: str, playbook_id: str
    ) -> PlaybookDefinition | None:
        playbook = self._playbooks.get(playbook_id)
        if playbook is None or playbook.org_id != org_id:
            return None
        return playbook

    async def list_playbooks(self, org_id: str) -> list[PlaybookDefinition]:
        return [p for p in self._playbooks.values() if p.org_id == org_id]

    # ------------------------------------------------------------------
    async def create_run(self, run: Run, step_runs: list[StepRun]) -> None:
        async with self._lock:
            if run.id in self._runs:
                raise ValueError(f"Run {run.id} already exists")
            self._runs[run.id] = run.model_copy(deep=True)
            for step_run in step_runs:
                self._step_runs[step_run.id] = step_run.model_copy(deep=True)

    async def get_run(self, org_id: str, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        if run is None or run.org_id != org_id:
            return None
        return run.model_copy(deep=True)

    async def list_runs(
        self, org_id: str, statuses: Iterable[RunStatus] | None = None
    ) -> list[Run]:
        wanted = set(statuses) if statuses is not None else None
        runs = [
            r.model_copy(deep=True)
            for r in self._runs.values()
            if r.org_id == org_id and (wanted is None or r.status in wanted)
        ]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    async def list_due_runs(self, now: datetime) -> list[Run]:
        return [r.model_copy(deep=True) for r in self._runs.values() if is_due(r, now)]

    async def update_run(
        self, run: Run, expected_status: RunStatus, expected_version: int
    ) -> bool:
        async with self._lock:
            stored = self._runs.get(run.id)
            if (
                stored is None
                or stored.org_id != run.org_id
                or stored.status != expected_status
                or stored.version != expected_version
            ):
                return False
            run.version = expected_version + 1
            self._runs[run.id] = run.model_copy(deep=True)
            return True

    # ------------------------------------------------------------------
    async def list_step_runs(self, org_id: str, run_id: str) -> list[StepRun]:
        steps = [
            s.model_copy(deep=True)
            for s in self._step_runs.values()
            if s.run_id == run_id and s.org_id == org_id
        ]
        return sorted(steps, key=lambda s: s.ordinal)

    async def get_step_run(self, org_id: str, step_run_id: str) -> StepRun | None:
        step = self._step_runs.get(step_run_id)
        if step is None or step.org_id != org_id:
            return None
        return step.model_copy(deep=True)

    async def update_step_run(
        self, step_run: StepRun, expected_status: StepStatus
    ) -> bool:
        async with self._lock:
            stored = self._step_runs.get(step_run.id)
            if (
                stored is None
                or stored.org_id != step_run.org_id
                or stored.status != expected_status
            ):
                return False
            self._step_runs[step_run.id] = step_run.model_copy(deep=True)
            return True

    # ------------------------------------------------------------------
    async def append_audit_event(self, event: AuditEvent) -> None:
        self._events.append(event)

    async def list_audit_events(
        self,
        org_id: str,
        run_id: str | None = None,
        step_run_id: str | None = None,
        event_type: str | None = None,
        actor_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]:
        events = [
            e
            for e in self._events
            if e.org_id == org_id
            and (run_id is None or e.run_id == run_id)
            and (step_run_id is None or e.step_run_id == step_run_id)
            and (event_type is None or e.event_type == event_type)
            and (actor_id is None or e.actor_id == actor_id)
        ]
        return events[offset : offset + limit]
