"""Tests for intent classification."""

from __future__ import annotations

import asyncio

import pytest

from mithril.ai.client import InferenceHTTPError
from mithril.ai.orchestration.intent import (
    IntentClassifier,
    WorkspaceContext,
    extract_json_value,
    fallback_intent,
    parse_intent_response,
)
from mithril.ai.orchestration.types import IntentTarget, ToolName
from mithril.editor.document_model import BufferEditor
from mithril.services.workspace import Selection

_SELECTION = Selection(text="color: #111;", start_line=2, end_line=2)


def _context(*, selection: bool = False, file: bool = False) -> WorkspaceContext:
    return WorkspaceContext(
        current_file_path="/work/style.css" if file or selection else None,
        current_file_name="style.css" if file or selection else None,
        selection=_SELECTION if selection else None,
        workspace_root="/work",
    )


def test_non_json_reply_falls_back_to_chat(scripted_client) -> None:
    classifier = IntentClassifier(scripted_client(replies=["I think you want to edit a file."]))

    intent = asyncio.run(classifier.classify("make it red", _context(file=True)))

    assert intent.tool is ToolName.CHAT_RESPONSE
    assert intent.target is IntentTarget.CHAT
    assert intent.confidence == 0.5
    assert intent.original_request == "make it red"


@pytest.mark.asyncio
async def test_service_failure_falls_back_to_chat(scripted_client, telemetry_events) -> None:
    classifier = IntentClassifier(scripted_client(replies=[InferenceHTTPError("boom", status_code=500)]))

    intent = await classifier.classify("hello", _context())

    assert intent == fallback_intent("hello")
    assert ("intent.classified", {"tool": "chat_response", "target": "chat", "confidence": 0.5}) in telemetry_events


@pytest.mark.asyncio
async def test_classifier_parses_fenced_json_and_passes_context(scripted_client) -> None:
    reply = 'Here:\n```json\n{"intent": "Recolor", "tool": "edit_file", "target": "selection", "confidence": 0.9}\n```'
    client = scripted_client(replies=[reply])
    classifier = IntentClassifier(client, model="tiny")

    intent = await classifier.classify('change "primary" to red', _context(selection=True))

    assert intent.tool is ToolName.EDIT_FILE
    assert intent.target is IntentTarget.SELECTION
    assert intent.confidence == pytest.approx(0.9)
    assert intent.summary == "Recolor"
    call = client.generate_calls[0]
    assert call["model"] == "tiny"
    assert "style.css" in call["prompt"]
    assert "lines 2-2" in call["prompt"]


def test_unknown_tool_is_unusable() -> None:
    assert parse_intent_response('{"tool": "delete_everything"}', "x", _context()) is None
    assert parse_intent_response("[1, 2]", "x", _context()) is None


@pytest.mark.parametrize(
    ("context", "expected"),
    [
        (_context(selection=True), IntentTarget.SELECTION),
        (_context(file=True), IntentTarget.FILE),
        (_context(), IntentTarget.CHAT),
    ],
)
def test_impossible_target_uses_default_tie_break(context: WorkspaceContext, expected: IntentTarget) -> None:
    intent = parse_intent_response('{"tool": "refactor_code", "target": "selection"}', "x", context)
    assert intent is not None and intent.target is expected

    todo = parse_intent_response('{"tool": "refactor_code", "target": "current-todo"}', "x", context)
    assert todo is not None and todo.target is expected


def test_confidence_is_clamped() -> None:
    high = parse_intent_response('{"tool": "chat_response", "target": "chat", "confidence": 7}', "x", _context())
    bad = parse_intent_response('{"tool": "chat_response", "confidence": "very"}', "x", _context())

    assert high is not None and high.confidence == 1.0
    assert bad is not None and bad.confidence == 0.5


def test_extract_json_value_skips_undecodable_openers() -> None:
    assert extract_json_value('note {not json} then {"a": 1}', "{") == {"a": 1}
    with pytest.raises(ValueError):
        extract_json_value("no json here", "{")


def test_workspace_context_from_editor(tmp_path) -> None:
    path = tmp_path / "main.py"
    path.write_text("a = 1\nb = 2\n", encoding="utf-8")
    editor = BufferEditor()

    assert WorkspaceContext.from_editor(None, "/w").default_target() is IntentTarget.CHAT

    editor.open(path)
    assert WorkspaceContext.from_editor(editor).default_target() is IntentTarget.FILE

    editor.select_lines(2, 2)
    context = WorkspaceContext.from_editor(editor, str(tmp_path))
    assert context.has_selection
    assert context.selection is not None and context.selection.text == "b = 2"
    assert context.default_target() is IntentTarget.SELECTION
