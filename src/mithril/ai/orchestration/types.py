"""Shared value types for the orchestration pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class ToolName(str, Enum):
    """Closed set of actions the dispatcher knows how to execute."""

    CHAT_RESPONSE = "chat_response"
    RUN_COMMAND = "run_command"
    EDIT_FILE = "edit_file"
    CREATE_FILE = "create_file"
    CREATE_FOLDER = "create_folder"
    ANALYZE_CODE = "analyze_code"
    EXPLAIN_CODE = "explain_code"
    REFACTOR_CODE = "refactor_code"
    FIX_ISSUES = "fix_issues"
    OPTIMIZE_CODE = "optimize_code"
    READ_FILE = "read_file"

    @classmethod
    def parse(cls, value: Any) -> "ToolName | None":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None

    @property
    def mutates_code(self) -> bool:
        return self in _MUTATING_TOOLS


_MUTATING_TOOLS = frozenset(
    {ToolName.EDIT_FILE, ToolName.REFACTOR_CODE, ToolName.FIX_ISSUES, ToolName.OPTIMIZE_CODE}
)


class IntentTarget(str, Enum):
    SELECTION = "selection"
    FILE = "file"
    CHAT = "chat"
    CURRENT_TODO = "current-todo"

    @classmethod
    def parse(cls, value: Any) -> "IntentTarget | None":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class ReplacementOrigin(str, Enum):
    EXPLICIT_MARKER = "explicit-marker"
    SINGLE_CHUNK_INFERENCE = "single-chunk-inference"
    HEURISTIC_EXTRACTION = "heuristic-extraction"


@dataclass(slots=True, frozen=True)
class Intent:
    """Structured classification of one user request."""

    tool: ToolName
    target: IntentTarget
    confidence: float
    original_request: str
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool.value,
            "target": self.target.value,
            "confidence": self.confidence,
            "original_request": self.original_request,
            "summary": self.summary,
        }


@dataclass(slots=True)
class Task:
    """One step of a :class:`~mithril.ai.orchestration.planner.TaskPlan`."""

    id: str
    content: str
    tool: ToolName
    status: TaskStatus = TaskStatus.PENDING
    result: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "tool": self.tool.value,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Task":
        return cls(
            id=str(payload.get("id", "")),
            content=str(payload.get("content", "")),
            tool=ToolName.parse(payload.get("tool")) or ToolName.CHAT_RESPONSE,
            status=TaskStatus(payload.get("status", TaskStatus.PENDING.value)),
        )


@dataclass(slots=True, frozen=True)
class ReplacementTarget:
    """A span of text that generated code may overwrite.

    Either a pinned chunk (``chunk_id`` set), the editor selection, or the
    whole current file. Line numbers are 1-based and inclusive.
    """

    file_path: str | None
    file_name: str
    start_line: int
    end_line: int
    text: str
    chunk_id: str | None = None
    kind: str = "chunk"

    @property
    def label(self) -> str:
        return f"{self.file_name} (Lines {self.start_line}-{self.end_line})"


@dataclass(slots=True, frozen=True)
class ReplacementCandidate:
    target: ReplacementTarget
    proposed_text: str
    origin: ReplacementOrigin
    strategy: str = ""


@dataclass(slots=True)
class ValidationResult:
    accepted: bool
    reason: str = ""
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
