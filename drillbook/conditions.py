"""Condition evaluation for step trigger conditions.

Each recognised condition kind is a pydantic model with its own
``evaluate`` method. Unknown kinds parse into :class:`UnevaluatedCondition`,
which is always met and says so in its details, so an unimplemented kind
never stalls a run.
"""

from __future__ import annotations

import logging
import operator
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, ClassVar, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .constants import RISK_ORDER, RiskLevel, StepStatus
from .contracts import RunState, StepOutcome, TriggerCondition

logger = logging.getLogger(__name__)

Comparator = Literal["gte", "gt", "eq", "lte", "lt"]

_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "gte": operator.ge,
    "gt": operator.gt,
    "eq": operator.eq,
    "lte": operator.le,
    "lt": operator.lt,
}


class ConditionResult(BaseModel):
    met: bool
    details: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class EvaluationContext:
    """Read-only view of run state handed to conditions.

    ``metrics`` and ``text`` come either from the accumulated run state or
    from the most recent step outcome, depending on the engine profile.
    """

    metrics: Mapping[str, Any] = field(default_factory=dict)
    text: str = ""
    source: Optional[StepOutcome] = None
    outcomes: Mapping[str, StepOutcome] = field(default_factory=dict)
    step_statuses: Mapping[str, StepStatus] = field(default_factory=dict)
    require_source: bool = False

    @classmethod
    def from_run_state(
        cls, state: RunState, step_statuses: Mapping[str, StepStatus]
    ) -> "EvaluationContext":
        metrics: Dict[str, Any] = dict(state.parameters)
        metrics.update(state.metrics)
        return cls(
            metrics=metrics,
            text=state.text_blob(),
            source=state.last_outcome(),
            outcomes=dict(state.outcomes),
            step_statuses=dict(step_statuses),
        )

    @classmethod
    def from_last_outcome(
        cls, state: RunState, step_statuses: Mapping[str, StepStatus]
    ) -> "EvaluationContext":
        source = state.last_outcome()
        return cls(
            metrics=dict(source.impact_metrics) if source else {},
            text=(source.summary or "") if source else "",
            source=source,
            outcomes=dict(state.outcomes),
            step_statuses=dict(step_statuses),
            require_source=True,
        )

    def outcome_for(self, step_id: Optional[str]) -> Optional[StepOutcome]:
        if step_id is None:
            return self.source
        return self.outcomes.get(step_id)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class _Condition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    needs_source: ClassVar[bool] = False

    def evaluate(self, context: EvaluationContext) -> ConditionResult:
        raise NotImplementedError


class AlwaysCondition(_Condition):
    type: Literal["always"] = "always"

    def evaluate(self, context: EvaluationContext) -> ConditionResult:
        return ConditionResult(met=True, details={"type": "always"})


class MetricThresholdCondition(_Condition):
    type: Literal["metric_threshold"] = "metric_threshold"
    field: str
    threshold: float
    comparator: Comparator = "gte"
    needs_source: ClassVar[bool] = True

    def evaluate(self, context: EvaluationContext) -> ConditionResult:
        details: Dict[str, Any] = {
            "type": self.type,
            "field": self.field,
            "threshold": self.threshold,
            "comparator": self.comparator,
        }
        value = context.metrics.get(self.field)
        if not _is_number(value):
            details["reason"] = "missing_field"
            details["value"] = None
            return ConditionResult(met=False, details=details)
        details["value"] = value
        met = _COMPARATORS[self.comparator](value, self.threshold)
        return ConditionResult(met=met, details=details)


class KeywordMatchCondition(_Condition):
    type: Literal["keyword_match"] = "keyword_match"
    keywords: List[str] = Field(default_factory=list)
    match_mode: Literal["any", "all"] = "any"
    case_sensitive: bool = False
    source_step_id: Optional[str] = None
    needs_source: ClassVar[bool] = True

    def evaluate(self, context: EvaluationContext) -> ConditionResult:
        details: Dict[str, Any] = {
            "type": self.type,
            "keywords": list(self.keywords),
            "match_mode": self.match_mode,
        }
        if self.source_step_id is not None:
            outcome = context.outcome_for(self.source_step_id)
            text = (outcome.summary or "") if outcome else ""
        else:
            text = context.text
        if not text:
            details["reason"] = "no_text"
            details["matched_keywords"] = []
            return ConditionResult(met=False, details=details)

        haystack = text if self.case_sensitive else text.lower()
        needles = self.keywords if self.case_sensitive else [k.lower() for k in self.keywords]
        matched = [k for k in needles if k in haystack]
        if self.match_mode == "all":
            met = len(matched) == len(needles)
        else:
            met = bool(matched)
        details["matched_keywords"] = matched
        return ConditionResult(met=met, details=details)


class OutcomeMatchCondition(_Condition):
    type: Literal["outcome_match"] = "outcome_match"
    category: str
    min_severity: Optional[RiskLevel] = None
    source_step_id: Optional[str] = None
    needs_source: ClassVar[bool] = True

    def evaluate(self, context: EvaluationContext) -> ConditionResult:
        details: Dict[str, Any] = {"type": self.type, "category": self.category}
        outcome = context.outcome_for(self.source_step_id)
        if outcome is None:
            details["reason"] = "no_source_outcome"
            return ConditionResult(met=False, details=details)

        matching = [o for o in outcome.outcomes if o.category == self.category]
        details["matching_outcomes"] = [o.model_dump(mode="json") for o in matching]
        if not matching:
            details["found"] = False
            return ConditionResult(met=False, details=details)
        if self.min_severity is None:
            return ConditionResult(met=True, details=details)

        floor = RISK_ORDER[self.min_severity.value]
        met = any(
            o.severity is not None and RISK_ORDER[o.severity.value] >= floor
            for o in matching
        )
        details["min_severity"] = self.min_severity.value
        return ConditionResult(met=met, details=details)


class RiskThresholdCondition(_Condition):
    type: Literal["risk_threshold"] = "risk_threshold"
    min_risk_level: RiskLevel
    comparator: Comparator = "gte"
    source_step_id: Optional[str] = None
    needs_source: ClassVar[bool] = True

    def evaluate(self, context: EvaluationContext) -> ConditionResult:
        details: Dict[str, Any] = {
            "type": self.type,
            "threshold": self.min_risk_level.value,
            "comparator": self.comparator,
        }
        outcome = context.outcome_for(self.source_step_id)
        if outcome is None or outcome.risk_level is None:
            details["reason"] = "no_risk_level"
            details["risk_level"] = None
            return ConditionResult(met=False, details=details)
        details["risk_level"] = outcome.risk_level.value
        met = _COMPARATORS[self.comparator](
            RISK_ORDER[outcome.risk_level.value], RISK_ORDER[self.min_risk_level.value]
        )
        return ConditionResult(met=met, details=details)


class DependencyResultCondition(_Condition):
    type: Literal["dependency_result"] = "dependency_result"
    step_id: str

    def evaluate(self, context: EvaluationContext) -> ConditionResult:
        outcome = context.outcomes.get(self.step_id)
        status = context.step_statuses.get(self.step_id)
        met = (
            status == StepStatus.EXECUTED
            and outcome is not None
            and outcome.success
        )
        return ConditionResult(
            met=met,
            details={
                "type": self.type,
                "step_id": self.step_id,
                "step_status": status.value if status is not None else None,
            },
        )


class UnevaluatedCondition(_Condition):
    """Condition kind with no evaluator; always met."""

    type: str
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def evaluate(self, context: EvaluationContext) -> ConditionResult:
        return ConditionResult(
            met=True,
            details={
                "type": self.type,
                "default_true": True,
                "note": f"Condition type '{self.type}' is not evaluated",
            },
        )


KnownCondition = Annotated[
    Union[
        AlwaysCondition,
        MetricThresholdCondition,
        KeywordMatchCondition,
        OutcomeMatchCondition,
        RiskThresholdCondition,
        DependencyResultCondition,
    ],
    Field(discriminator="type"),
]

Condition = Union[KnownCondition, UnevaluatedCondition]

_known_adapter: TypeAdapter = TypeAdapter(KnownCondition)

KNOWN_CONDITION_TYPES = frozenset(
    {
        "always",
        "metric_threshold",
        "keyword_match",
        "outcome_match",
        "risk_threshold",
        "dependency_result",
    }
)


def parse_condition(condition_type: str, parameters: Mapping[str, Any] | None = None) -> Condition:
    """Build the typed condition for ``condition_type``.

    Raises:
        pydantic.ValidationError: If a recognised kind has invalid parameters.
    """
    parameters = dict(parameters or {})
    if condition_type not in KNOWN_CONDITION_TYPES:
        return UnevaluatedCondition(type=condition_type, parameters=parameters)
    return _known_adapter.validate_python({**parameters, "type": condition_type})


def evaluate(
    condition_type: str,
    parameters: Mapping[str, Any] | None,
    context: EvaluationContext,
) -> ConditionResult:
    """Evaluate a condition against ``context``. Never mutates anything."""
    condition = parse_condition(condition_type, parameters)
    if context.require_source and condition.needs_source and context.source is None:
        # Nothing has completed yet to compare against.
        result = ConditionResult(
            met=True,
            details={
                "type": condition_type,
                "reason": "no_source_step",
                "default_true": True,
            },
        )
    else:
        result = condition.evaluate(context)
    logger.debug(f"Condition {condition_type} evaluated: {result.met} {result.details}")
    return result


def evaluate_trigger(
    trigger: TriggerCondition, context: EvaluationContext
) -> ConditionResult:
    return evaluate(trigger.type, trigger.parameters, context)
