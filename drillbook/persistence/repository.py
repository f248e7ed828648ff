"""Repository abstraction for playbook and run persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from ..constants import RunStatus, StepStatus
from ..contracts import PlaybookDefinition
from .models import AuditEvent, Run, StepRun


class RunRepository(Protocol):
    """Protocol for persistence backends.

    Every read and write is scoped by ``org_id``. ``update_run`` and
    ``update_step_run`` are compare-and-swap writes: they only apply when the
    stored record still matches the expected prior state.
    """

    async def save_playbook(self, playbook: PlaybookDefinition) -> None:
        """Persist a playbook definition, replacing a previous version."""

    async def get_playbook(
        self, org_id: str, playbook_id: str
    ) -> PlaybookDefinition | None:
        """Retrieve a playbook definition by id."""

    async def list_playbooks(self, org_id: str) -> list[PlaybookDefinition]:
        """Return all playbook definitions of an organization."""

    async def create_run(self, run: Run, step_runs: list[StepRun]) -> None:
        """Persist a new run and its step runs atomically."""

    async def get_run(self, org_id: str, run_id: str) -> Run | None:
        """Retrieve a run by id."""

    async def list_runs(
        self, org_id: str, statuses: Iterable[RunStatus] | None = None
    ) -> list[Run]:
        """Return runs of an organization, newest first."""

    async def list_due_runs(self, now: datetime) -> list[Run]:
        """Return runs across organizations a scheduler should advance."""

    async def update_run(
        self, run: Run, expected_status: RunStatus, expected_version: int
    ) -> bool:
        """Write ``run`` only if the stored status and version still match.

        On success the stored version becomes ``expected_version + 1`` and
        ``run.version`` is updated to match.
        """

    async def list_step_runs(self, org_id: str, run_id: str) -> list[StepRun]:
        """Return the step runs of a run ordered by ordinal."""

    async def get_step_run(self, org_id: str, step_run_id: str) -> StepRun | None:
        """Retrieve a step run by id."""

    async def update_step_run(
        self, step_run: StepRun, expected_status: StepStatus
    ) -> bool:
        """Write ``step_run`` only if its stored status is ``expected_status``."""

    async def append_audit_event(self, event: AuditEvent) -> None:
        """Append an audit event."""

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
        """Return audit events in the order they were written."""
