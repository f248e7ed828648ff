"""Loading and validation of playbook definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml
from pydantic import ValidationError

from .conditions import parse_condition
from .contracts import PlaybookDefinition
from .errors import DefinitionError

logger = logging.getLogger(__name__)


def playbook_from_dict(data: Dict[str, Any], org_id: str) -> PlaybookDefinition:
    """Build a definition from plain data, defaulting ordinals to list order."""
    data = dict(data)
    steps = []
    for index, raw in enumerate(data.get("steps") or []):
        step = dict(raw)
        step.setdefault("ordinal", index)
        if isinstance(step.get("action"), str):
            step["action"] = {"type": step["action"]}
        steps.append(step)
    data["steps"] = steps
    data["org_id"] = org_id
    try:
        return PlaybookDefinition.model_validate(data)
    except ValidationError as exc:
        raise DefinitionError("Invalid playbook definition", [str(exc)]) from exc


def load_playbook(path: str | Path, org_id: str) -> PlaybookDefinition:
    """Load a playbook definition from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise DefinitionError(f"Playbook file {path} must contain a mapping")
    playbook = playbook_from_dict(data, org_id)
    logger.debug(f"Loaded playbook {playbook.name} with {len(playbook.steps)} steps")
    return playbook


def validate_definition(playbook: PlaybookDefinition) -> List[str]:
    """Return the problems that prevent ``playbook`` from being started."""
    problems: List[str] = []
    if not playbook.steps:
        problems.append("Playbook must have at least one step")
        return problems

    ids = [s.id for s in playbook.steps]
    if len(ids) != len(set(ids)):
        problems.append("Step ids must be unique")
    ordinals = [s.ordinal for s in playbook.steps]
    if len(ordinals) != len(set(ordinals)):
        problems.append("Step ordinals must be unique")

    known = set(ids)
    for step in playbook.steps:
        for dep in step.depends_on:
            if dep == step.id:
                problems.append(f"Step '{step.id}' depends on itself")
            elif dep not in known:
                problems.append(f"Step '{step.id}' depends on unknown step '{dep}'")
        if step.condition is not None:
            try:
                parse_condition(step.condition.type, step.condition.parameters)
            except ValidationError as exc:
                problems.append(
                    f"Step '{step.id}' has an invalid {step.condition.type} condition: "
                    f"{exc.errors()[0]['msg']}"
                )

    if not problems:
        cycle_from = _find_cycle(playbook)
        if cycle_from is not None:
            problems.append(f"Circular dependency detected starting from step '{cycle_from}'")
    return problems


def _find_cycle(playbook: PlaybookDefinition) -> Optional[str]:
    edges = {s.id: list(s.depends_on) for s in playbook.steps}
    visited: Set[str] = set()
    path: Set[str] = set()

    def has_cycle(step_id: str) -> bool:
        if step_id in path:
            return True
        if step_id in visited:
            return False
        visited.add(step_id)
        path.add(step_id)
        for dep in edges.get(step_id, []):
            if has_cycle(dep):
                return True
        path.remove(step_id)
        return False

    for step in playbook.ordered_steps():
        if has_cycle(step.id):
            return step.id
    return None


def ensure_startable(playbook: PlaybookDefinition) -> None:
    """Raise :class:`DefinitionError` if ``playbook`` cannot be started."""
    problems = validate_definition(playbook)
    if problems:
        raise DefinitionError(f"Playbook {playbook.id} cannot be started", problems)
