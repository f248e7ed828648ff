"""drillbook: dependency-ordered, approval-gated playbook runs."""

from .actions import (
    ActionExecutor,
    AgentActionExecutor,
    HandlerActionExecutor,
    StaticActionExecutor,
    get_executor,
)
from .conditions import EvaluationContext, evaluate
from .constants import AuditEventType, RiskLevel, RunStatus, StepStatus
from .context import RequestContext
from .contracts import (
    ActionDescriptor,
    ActionFailed,
    ActionResult,
    PlaybookDefinition,
    RunState,
    StepDefinition,
    TriggerCondition,
)
from .definitions import load_playbook, playbook_from_dict
from .engine import AdvanceResult, PlaybookEngine, RunDetails
from .persistence import get_repository
from .profiles import PLAYBOOK_PROFILE, SUITE_PROFILE, RetryPolicy, get_profile
from .scheduler import RunScheduler

__version__ = "0.1.0"
__all__ = [
    "ActionDescriptor",
    "ActionExecutor",
    "ActionFailed",
    "ActionResult",
    "AdvanceResult",
    "AgentActionExecutor",
    "AuditEventType",
    "EvaluationContext",
    "HandlerActionExecutor",
    "PLAYBOOK_PROFILE",
    "PlaybookDefinition",
    "PlaybookEngine",
    "RequestContext",
    "RetryPolicy",
    "RiskLevel",
    "RunDetails",
    "RunScheduler",
    "RunState",
    "RunStatus",
    "SUITE_PROFILE",
    "StaticActionExecutor",
    "StepDefinition",
    "StepStatus",
    "TriggerCondition",
    "evaluate",
    "get_executor",
    "get_profile",
    "get_repository",
    "load_playbook",
    "playbook_from_dict",
]
