"""Prompt templates for the orchestration pipeline."""

from __future__ import annotations

import re
from typing import Sequence

from .types import ReplacementTarget, ToolName

__all__ = [
    "INTENT_SYSTEM_PROMPT",
    "PLAN_DECISION_PROMPT",
    "PLAN_PROMPT",
    "CHAT_SYSTEM_PROMPT",
    "FILENAME_PROMPT",
    "FILE_CONTENT_PROMPT",
    "is_modification_request",
    "theme_hint",
    "format_chunk_block",
    "compose_prompt",
    "intent_prompt",
    "plan_decision_prompt",
    "plan_prompt",
    "tool_instruction",
    "file_content_instruction",
]

_MODIFICATION_WORDS = re.compile(r"\b(refactor|optimize|fix|change|update|modify|improve|edit)\b", re.IGNORECASE)
_THEME_HINTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\bred\b", re.IGNORECASE),
        "RED THEME: use distinctly red values such as #DC143C, #B22222 or #8B0000 for the "
        "primary color and #FF6B6B or #CD5C5C for the secondary color.",
    ),
    (
        re.compile(r"\bblue\b", re.IGNORECASE),
        "BLUE THEME: use values such as #0066CC, #1E90FF or #4169E1 for the primary color "
        "and #87CEEB or #6495ED for the secondary color.",
    ),
    (
        re.compile(r"\bgreen\b", re.IGNORECASE),
        "GREEN THEME: use values such as #228B22, #32CD32 or #006400 for the primary color "
        "and #90EE90 or #98FB98 for the secondary color.",
    ),
)

INTENT_SYSTEM_PROMPT = """You are the intent detection system of a coding assistant.
Classify the user's request and respond with a single JSON object and nothing else.

CONTEXT:
- Current file: {current_file}
- Selected text: {has_selection}{selection_info}
- Workspace folder: {workspace}

Available tools: {tools}

Respond with JSON only:
{{"intent": "brief description", "tool": "tool_name", "target": "selection|file|chat", "confidence": 0.9}}

Tool selection rules:
- Questions and general conversation -> "chat_response"
- Editing or modifying existing code -> "edit_file"
- Creating a new file -> "create_file"
- Creating a new folder or directory -> "create_folder"
- Running a shell command -> "run_command"
- Reviewing code for problems -> "analyze_code"
- Explaining what code does -> "explain_code"
- Restructuring code without changing behaviour -> "refactor_code"
- Fixing bugs or errors -> "fix_issues"
- Improving performance -> "optimize_code"
- Showing the contents of the current file -> "read_file"
Use target "selection" when text is selected, "file" when only a file is open, otherwise "chat".

User message: "{message}"
"""

PLAN_DECISION_PROMPT = """You decide whether a coding request must be split into several ordered steps.
A request needs a plan when it involves several file operations (for example creating
multiple files or folders) or when later work depends on earlier results.
Simple questions, single edits and single file creations do not need a plan.

Request: "{message}"
Detected tool: {tool}

Respond with JSON only: {{"needs_plan": true or false, "reason": "short reason"}}
"""

PLAN_PROMPT = """Break the following coding request into a short ordered list of concrete steps.
Each step must be executable by exactly one of these tools: {tools}.

Request: "{message}"

Respond with a JSON array only, for example:
[{{"id": "step-1", "content": "Create index.html with the page skeleton", "tool": "create_file"}},
 {{"id": "step-2", "content": "Create styles.css with the layout rules", "tool": "create_file"}}]
Use at most {max_steps} steps.
"""

CHAT_SYSTEM_PROMPT = (
    "You are a helpful coding assistant embedded in a code editor. Answer concisely, "
    "use fenced code blocks for code, and refer to attached code chunks by number."
)

FILENAME_PROMPT = """Suggest a file name for the following request.
Respond with the file name only, including its extension, for example "index.html".

Request: "{message}"
"""

FILE_CONTENT_PROMPT = (
    'Write the complete contents of the file "{file_name}" for the request below. '
    "Respond with the file contents only, inside a single fenced code block."
)

_ACTION_INSTRUCTIONS: dict[ToolName, str] = {
    ToolName.EDIT_FILE: "Edit the code below as requested.",
    ToolName.REFACTOR_CODE: "Refactor the code below for readability and structure without changing its behaviour.",
    ToolName.FIX_ISSUES: "Find and fix the bugs in the code below.",
    ToolName.OPTIMIZE_CODE: "Optimize the code below for performance.",
    ToolName.ANALYZE_CODE: "Analyze the code below. Point out problems, risks and possible improvements.",
    ToolName.EXPLAIN_CODE: "Explain what the code below does, step by step.",
}


def is_modification_request(message: str) -> bool:
    return _MODIFICATION_WORDS.search(message or "") is not None


def theme_hint(message: str) -> str:
    for pattern, hint in _THEME_HINTS:
        if pattern.search(message or ""):
            return hint
    return ""


def format_chunk_block(targets: Sequence[ReplacementTarget]) -> str:
    """Render attached chunks the way the replacement markers refer to them."""

    sections = []
    for index, target in enumerate(targets, start=1):
        sections.append(
            f"CODE CHUNK {index}:\n"
            f"File: {target.label}\n"
            f"Content:\n```\n{target.text}\n```"
        )
    return "\n\n".join(sections)


def _replacement_instructions(targets: Sequence[ReplacementTarget], message: str) -> str:
    first = targets[0]
    lines = [
        "IMPORTANT: You MUST actually change the code, do not return it unchanged.",
        "When you provide replacement code:",
        f'1. Start with a marker line such as "REPLACE CHUNK 1:" or "REPLACE {first.label}:"',
        "2. Put ONLY the replacement code after the marker, without explanations",
        "3. Use one marker per replaced chunk",
    ]
    hint = theme_hint(message)
    if hint:
        lines.append(hint)
    return "\n".join(lines)


def compose_prompt(
    system: str,
    message: str,
    *,
    memory_context: str = "",
    targets: Sequence[ReplacementTarget] = (),
    replacement_instructions: bool | None = None,
) -> str:
    """Assemble ``system + context + chunks + user message`` into one prompt.

    Replacement-marker instructions are added when ``replacement_instructions``
    is true, or, when it is ``None``, when the message asks for a modification.
    """

    parts = [system.strip()]
    if memory_context:
        parts.append(f"CONVERSATION MEMORY:\n{memory_context.strip()}")
    if targets:
        parts.append(
            "CONTEXT - the code this request refers to:\n\n" + format_chunk_block(targets)
        )
        wants_markers = (
            is_modification_request(message) if replacement_instructions is None else replacement_instructions
        )
        if wants_markers:
            parts.append(_replacement_instructions(targets, message))
        else:
            parts.append('Refer to the chunks as "Chunk 1", "Chunk 2", ... when relevant.')
    parts.append(f"User: {message.strip()}")
    return "\n\n".join(parts)


def intent_prompt(
    message: str,
    *,
    current_file: str | None,
    selection_lines: tuple[int, int] | None,
    selection_preview: str = "",
    workspace: str | None = None,
) -> str:
    selection_info = ""
    if selection_lines is not None:
        selection_info = f" (lines {selection_lines[0]}-{selection_lines[1]}: {selection_preview!r})"
    return INTENT_SYSTEM_PROMPT.format(
        current_file=current_file or "None",
        has_selection="Yes" if selection_lines is not None else "No",
        selection_info=selection_info,
        workspace=workspace or "None",
        tools=", ".join(tool.value for tool in ToolName),
        message=message.replace('"', "'"),
    )


def plan_decision_prompt(message: str, tool: ToolName) -> str:
    return PLAN_DECISION_PROMPT.format(message=message.replace('"', "'"), tool=tool.value)


def plan_prompt(message: str, *, max_steps: int = 8) -> str:
    return PLAN_PROMPT.format(
        message=message.replace('"', "'"),
        tools=", ".join(tool.value for tool in ToolName),
        max_steps=max_steps,
    )


def tool_instruction(tool: ToolName) -> str:
    """System text for a tool that works on attached, selected or open code."""

    instruction = _ACTION_INSTRUCTIONS.get(tool)
    if instruction is None:
        return CHAT_SYSTEM_PROMPT
    return f"{CHAT_SYSTEM_PROMPT}\n{instruction}"


def file_content_instruction(file_name: str) -> str:
    return FILE_CONTENT_PROMPT.format(file_name=file_name)
