"""Error taxonomy for the run engine."""

from __future__ import annotations

from typing import Iterable


class DrillbookError(Exception):
    """Base class for errors raised by drillbook."""


class DefinitionError(DrillbookError):
    """The playbook definition cannot be started."""

    def __init__(self, message: str, problems: Iterable[str] | None = None) -> None:
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: {'; '.join(self.problems)}"
        super().__init__(message)


class PlaybookNotFoundError(DefinitionError):
    def __init__(self, playbook_id: str) -> None:
        self.playbook_id = playbook_id
        super().__init__(f"Playbook {playbook_id} not found")


class InvalidStateError(DrillbookError):
    """An operation was requested in a status that does not allow it."""


class RunNotFoundError(DrillbookError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")


class StepRunNotFoundError(DrillbookError):
    def __init__(self, step_run_id: str) -> None:
        self.step_run_id = step_run_id
        super().__init__(f"Step run {step_run_id} not found")


class ConcurrentUpdateError(DrillbookError):
    """A conditional write lost against another writer."""

    def __init__(self, record: str, record_id: str, expected: str) -> None:
        self.record = record
        self.record_id = record_id
        self.expected = expected
        super().__init__(
            f"{record} {record_id} changed concurrently (expected {expected})"
        )
