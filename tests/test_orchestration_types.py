"""Unit tests for orchestration value types."""

from __future__ import annotations

import pytest

from mithril.ai.orchestration.types import (
    Intent,
    IntentTarget,
    ReplacementTarget,
    Task,
    TaskStatus,
    ToolName,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("edit_file", ToolName.EDIT_FILE),
        ("  READ_FILE ", ToolName.READ_FILE),
        (ToolName.FIX_ISSUES, ToolName.FIX_ISSUES),
        ("delete_everything", None),
        (None, None),
    ],
)
def test_tool_name_parse(raw, expected) -> None:
    assert ToolName.parse(raw) is expected


def test_mutating_tools() -> None:
    mutating = {tool for tool in ToolName if tool.mutates_code}

    assert mutating == {
        ToolName.EDIT_FILE,
        ToolName.REFACTOR_CODE,
        ToolName.FIX_ISSUES,
        ToolName.OPTIMIZE_CODE,
    }


def test_intent_target_parse_and_terminal_statuses() -> None:
    assert IntentTarget.parse("current-todo") is IntentTarget.CURRENT_TODO
    assert IntentTarget.parse("everywhere") is None
    assert [status for status in TaskStatus if status.terminal] == [TaskStatus.COMPLETED, TaskStatus.FAILED]


def test_task_dict_round_trip() -> None:
    task = Task("step-1", "Create index.html", ToolName.CREATE_FILE, TaskStatus.IN_PROGRESS)

    restored = Task.from_dict(task.to_dict())

    assert restored == task
    assert Task.from_dict({"id": "x", "content": "y", "tool": "bogus"}).tool is ToolName.CHAT_RESPONSE


def test_intent_and_target_helpers() -> None:
    intent = Intent(ToolName.EXPLAIN_CODE, IntentTarget.SELECTION, 0.75, "explain this", "explain")
    target = ReplacementTarget("/w/a.py", "a.py", 4, 9, "pass")

    assert intent.to_dict() == {
        "tool": "explain_code",
        "target": "selection",
        "confidence": 0.75,
        "original_request": "explain this",
        "summary": "explain",
    }
    assert target.label == "a.py (Lines 4-9)"
    assert target.kind == "chunk"
