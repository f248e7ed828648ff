"""Caller context passed to every engine operation."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_ACTOR, DEFAULT_ORG_ID


class RequestContext(BaseModel):
    """Identifies the tenant and the actor on whose behalf an operation runs.

    Every repository read and write is scoped by ``org_id``; ``actor`` ends
    up on audit events and approval records.
    """

    model_config = ConfigDict(frozen=True)

    org_id: str = Field(default=DEFAULT_ORG_ID, description="Tenant identifier")
    actor: str = Field(default=DEFAULT_ACTOR, description="Acting user or service")
