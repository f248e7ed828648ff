"""Append-only audit log writer."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .constants import AuditEventType
from .context import RequestContext
from .persistence.models import AuditEvent
from .persistence.repository import RunRepository

logger = logging.getLogger(__name__)


class AuditLog:
    """Records lifecycle events for runs and step runs.

    Events are never updated or deleted once appended.
    """

    def __init__(self, repository: RunRepository) -> None:
        self.repository = repository

    async def record(
        self,
        ctx: RequestContext,
        event_type: AuditEventType | str,
        run_id: str,
        step_run_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        """Persist an audit log entry."""
        if isinstance(event_type, AuditEventType):
            event_type = event_type.value
        event = AuditEvent(
            org_id=ctx.org_id,
            run_id=run_id,
            step_run_id=step_run_id,
            event_type=event_type,
            payload=dict(payload or {}),
            actor_id=ctx.actor,
        )
        await self.repository.append_audit_event(event)
        logger.debug(f"Audit {event_type} for run {run_id} step {step_run_id}")
        return event
