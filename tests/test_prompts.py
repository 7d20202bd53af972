"""Tests for prompt composition."""

from __future__ import annotations

from mithril.ai.orchestration import prompts
from mithril.ai.orchestration.types import ReplacementTarget, ToolName

TARGET = ReplacementTarget(
    file_path="/work/theme.css",
    file_name="theme.css",
    start_line=3,
    end_line=5,
    text=":root {\n  --primary: #333;\n}",
)


def test_compose_prompt_orders_sections() -> None:
    prompt = prompts.compose_prompt(
        "SYSTEM", "change the theme to blue", memory_context="Completed steps: 2", targets=[TARGET]
    )

    system, memory, context, *_ = prompt.split("\n\n")
    assert system == "SYSTEM"
    assert memory == "CONVERSATION MEMORY:\nCompleted steps: 2"
    assert context == "CONTEXT - the code this request refers to:"
    assert prompt.index("CODE CHUNK 1:\nFile: theme.css (Lines 3-5)") < prompt.index("REPLACE CHUNK 1:")
    assert "BLUE THEME" in prompt
    assert prompt.endswith("User: change the theme to blue")


def test_questions_about_chunks_get_no_replacement_format() -> None:
    prompt = prompts.compose_prompt("SYSTEM", "what does chunk 1 do?", targets=[TARGET])

    assert "REPLACE" not in prompt
    assert 'Refer to the chunks as "Chunk 1"' in prompt


def test_prompt_without_context_is_system_and_message() -> None:
    assert prompts.compose_prompt("  SYSTEM  ", "  hi  ") == "SYSTEM\n\nUser: hi"


def test_intent_prompt_describes_workspace() -> None:
    prompt = prompts.intent_prompt(
        'make "it" red',
        current_file="app.css",
        selection_lines=(2, 4),
        selection_preview="body {",
        workspace="/work",
    )

    assert "Current file: app.css" in prompt
    assert "Selected text: Yes (lines 2-4: 'body {')" in prompt
    assert "User message: \"make 'it' red\"" in prompt
    assert "read_file" in prompt


def test_helpers() -> None:
    assert prompts.is_modification_request("please refactor this")
    assert not prompts.is_modification_request("what is this?")
    assert prompts.theme_hint("go green").startswith("GREEN THEME")
    assert prompts.theme_hint("bigger font") == ""
    assert prompts.tool_instruction(ToolName.CHAT_RESPONSE) == prompts.CHAT_SYSTEM_PROMPT
    assert prompts.tool_instruction(ToolName.FIX_ISSUES).endswith("Find and fix the bugs in the code below.")
    assert 'file "a.md"' in prompts.file_content_instruction("a.md")
