"""Playbook loading and validation."""

import pytest

from drillbook.definitions import (
    ensure_startable,
    load_playbook,
    playbook_from_dict,
    validate_definition,
)
from drillbook.errors import DefinitionError

PLAYBOOK_YAML = """
name: Product recall drill
description: Respond to a recall story breaking overnight
steps:
  - id: monitor
    name: Monitor coverage
    action: monitor_media
  - id: holding_statement
    action:
      type: publish_statement
      payload:
        channel: press
    depends_on: [monitor]
    requires_approval: true
  - id: escalate
    action: notify_exec
    depends_on: [monitor]
    condition:
      type: keyword_match
      parameters:
        keywords: [lawsuit, injury]
    wait_duration_minutes: 30
"""


def test_load_playbook_from_yaml(tmp_path):
    path = tmp_path / "recall.yaml"
    path.write_text(PLAYBOOK_YAML)

    playbook = load_playbook(path, "org-1")

    assert playbook.org_id == "org-1"
    assert [s.id for s in playbook.ordered_steps()] == ["monitor", "holding_statement", "escalate"]
    assert [s.ordinal for s in playbook.steps] == [0, 1, 2]
    statement = playbook.get_step("holding_statement")
    assert statement.action.type == "publish_statement"
    assert statement.action.payload == {"channel": "press"}
    assert statement.requires_approval is True
    assert playbook.get_step("monitor").display_name == "Monitor coverage"
    assert playbook.get_step("escalate").display_name == "escalate"
    assert playbook.get_step("escalate").wait_duration_minutes == 30
    assert validate_definition(playbook) == []


def test_load_playbook_rejects_non_mapping(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(DefinitionError):
        load_playbook(path, "org-1")


def test_invalid_shape_raises_definition_error():
    with pytest.raises(DefinitionError):
        playbook_from_dict({"name": "x", "steps": [{"id": "a"}]}, "org-1")


def test_validate_definition_reports_problems():
    playbook = playbook_from_dict(
        {
            "name": "broken",
            "steps": [
                {"id": "a", "action": "x", "depends_on": ["a"]},
                {"id": "b", "action": "x", "depends_on": ["ghost"]},
                {
                    "id": "c",
                    "action": "x",
                    "condition": {"type": "metric_threshold", "parameters": {"threshold": 1}},
                },
            ],
        },
        "org-1",
    )

    problems = validate_definition(playbook)

    assert any("depends on itself" in p for p in problems)
    assert any("unknown step 'ghost'" in p for p in problems)
    assert any("invalid metric_threshold condition" in p for p in problems)


def test_duplicate_ids_and_ordinals():
    playbook = playbook_from_dict(
        {
            "name": "dupes",
            "steps": [
                {"id": "a", "ordinal": 1, "action": "x"},
                {"id": "a", "ordinal": 1, "action": "x"},
            ],
        },
        "org-1",
    )
    problems = validate_definition(playbook)
    assert "Step ids must be unique" in problems
    assert "Step ordinals must be unique" in problems


def test_cycle_is_detected():
    playbook = playbook_from_dict(
        {
            "name": "loop",
            "steps": [
                {"id": "a", "action": "x", "depends_on": ["c"]},
                {"id": "b", "action": "x", "depends_on": ["a"]},
                {"id": "c", "action": "x", "depends_on": ["b"]},
            ],
        },
        "org-1",
    )
    with pytest.raises(DefinitionError) as exc_info:
        ensure_startable(playbook)
    assert "Circular dependency" in str(exc_info.value)
    assert exc_info.value.problems


def test_zero_steps_cannot_start():
    playbook = playbook_from_dict({"name": "empty"}, "org-1")
    assert validate_definition(playbook) == ["Playbook must have at least one step"]
