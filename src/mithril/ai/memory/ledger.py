"""Append-only session memory of conversation turns and completed plans."""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

from ...utils import file_io
from ..orchestration.types import Intent, Task, TaskStatus, ToolName

__all__ = [
    "ConversationRecord",
    "CompletedPlanRecord",
    "LedgerSession",
    "LedgerStore",
    "MemoryLedger",
    "extract_goals",
]

LOGGER = logging.getLogger(__name__)

_GOAL_KEYWORDS = (
    "create",
    "build",
    "make",
    "implement",
    "develop",
    "design",
    "add",
    "setup",
    "configure",
    "install",
    "generate",
)
_GOAL_PATTERN = re.compile(
    r"\b(" + "|".join(_GOAL_KEYWORDS) + r")\b((?:\s+[^\s]+){1,5})", re.IGNORECASE
)
_DONE_PHRASES = (
    "task completed",
    "all tasks completed",
    "successfully completed",
    "finished",
    "done",
    "created successfully",
)
_MAX_GOALS = 20


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(text: str, limit: int) -> str:
    flat = " ".join((text or "").split())
    return flat if len(flat) <= limit else flat[:limit].rstrip() + "..."


@dataclass(slots=True)
class ConversationRecord:
    user_message: str
    assistant_response: str
    intent: dict[str, Any] | None = None
    tools_called: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: f"conv_{uuid.uuid4().hex[:12]}")
    completed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "userMessage": self.user_message,
            "assistantResponse": self.assistant_response,
            "intent": self.intent,
            "toolsCalled": list(self.tools_called),
            "completed": self.completed,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConversationRecord":
        return cls(
            id=str(payload.get("id") or f"conv_{uuid.uuid4().hex[:12]}"),
            timestamp=str(payload.get("timestamp") or _utcnow()),
            user_message=str(payload.get("userMessage", "")),
            assistant_response=str(payload.get("assistantResponse", "")),
            intent=payload.get("intent") if isinstance(payload.get("intent"), dict) else None,
            tools_called=[str(tool) for tool in payload.get("toolsCalled", [])],
            completed=bool(payload.get("completed", True)),
        )


@dataclass(slots=True)
class CompletedPlanRecord:
    original_intent: dict[str, Any] | None
    original_message: str
    tasks: list[dict[str, Any]]
    success: bool
    summary: str
    timestamp: str = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: f"plan_{uuid.uuid4().hex[:12]}")

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    @property
    def completed_tasks(self) -> int:
        return sum(1 for task in self.tasks if task.get("status") == TaskStatus.COMPLETED.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "originalIntent": self.original_intent,
            "originalMessage": self.original_message,
            "tasks": [dict(task) for task in self.tasks],
            "totalTasks": self.total_tasks,
            "completedTasks": self.completed_tasks,
            "success": self.success,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CompletedPlanRecord":
        intent = payload.get("originalIntent")
        return cls(
            id=str(payload.get("id") or f"plan_{uuid.uuid4().hex[:12]}"),
            timestamp=str(payload.get("timestamp") or _utcnow()),
            original_intent=intent if isinstance(intent, dict) else None,
            original_message=str(payload.get("originalMessage", "")),
            tasks=[dict(task) for task in payload.get("tasks", []) if isinstance(task, Mapping)],
            success=bool(payload.get("success", False)),
            summary=str(payload.get("summary", "")),
        )


@dataclass(slots=True)
class LedgerSession:
    session_id: str = field(default_factory=lambda: f"session_{uuid.uuid4().hex[:12]}")
    start_time: str = field(default_factory=_utcnow)
    conversations: list[ConversationRecord] = field(default_factory=list)
    completed_tasks: list[CompletedPlanRecord] = field(default_factory=list)
    total_tasks_completed: int = 0
    tools_called: list[str] = field(default_factory=list)
    goals: list[str] = field(default_factory=list)
    context: str = ""
    last_updated: str = field(default_factory=_utcnow)

    @property
    def empty(self) -> bool:
        return not self.conversations and not self.completed_tasks

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "startTime": self.start_time,
            "conversations": [record.to_dict() for record in self.conversations],
            "completedTasks": [record.to_dict() for record in self.completed_tasks],
            "totalTasksCompleted": self.total_tasks_completed,
            "toolsCalled": list(self.tools_called),
            "goals": list(self.goals),
            "context": self.context,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LedgerSession":
        return cls(
            session_id=str(payload.get("sessionId") or f"session_{uuid.uuid4().hex[:12]}"),
            start_time=str(payload.get("startTime") or _utcnow()),
            conversations=[
                ConversationRecord.from_dict(item)
                for item in payload.get("conversations", [])
                if isinstance(item, Mapping)
            ],
            completed_tasks=[
                CompletedPlanRecord.from_dict(item)
                for item in payload.get("completedTasks", [])
                if isinstance(item, Mapping)
            ],
            total_tasks_completed=int(payload.get("totalTasksCompleted", 0)),
            tools_called=[str(tool) for tool in payload.get("toolsCalled", [])],
            goals=[str(goal) for goal in payload.get("goals", [])],
            context=str(payload.get("context", "")),
            last_updated=str(payload.get("lastUpdated") or _utcnow()),
        )


class LedgerStore:
    """JSON files holding the current session and archived sessions."""

    def __init__(self, storage_dir: Path | str) -> None:
        self._storage_dir = Path(storage_dir).expanduser()

    @property
    def current_path(self) -> Path:
        return self._storage_dir / "current-session.json"

    @property
    def archive_dir(self) -> Path:
        return self._storage_dir / "archived"

    def load(self) -> dict[str, Any] | None:
        path = self.current_path
        if not path.exists():
            return None
        try:
            payload = json.loads(file_io.read_text(path))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.warning("Memory file %s is unreadable, starting a fresh session: %s", path, exc)
            return None
        if not isinstance(payload, dict):
            LOGGER.warning("Memory file %s does not hold a session object", path)
            return None
        return payload

    def save(self, payload: Mapping[str, Any]) -> Path:
        return file_io.write_text(
            self.current_path, json.dumps(payload, indent=2, ensure_ascii=False)
        )

    def archive(self, payload: Mapping[str, Any], session_id: str) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        target = self.archive_dir / f"session_{session_id}_{stamp}.json"
        return file_io.write_text(target, json.dumps(payload, indent=2, ensure_ascii=False))

    def archived_sessions(self) -> list[Path]:
        if not self.archive_dir.exists():
            return []
        return sorted(self.archive_dir.glob("session_*.json"))


def extract_goals(message: str, intent: Intent | None = None) -> list[str]:
    """Pull short goal phrases such as ``"create a todo app"`` out of ``message``."""

    goals = []
    for match in _GOAL_PATTERN.finditer(message or ""):
        phrase = f"{match.group(1)}{match.group(2)}".strip().lower().rstrip(".,!?;:")
        goals.append(phrase)
    if intent is not None and intent.tool is not ToolName.CHAT_RESPONSE:
        goals.append(f"Use {intent.tool.value} tool for task completion")
    return goals


class MemoryLedger:
    """Records turns and plans for the current session and persists them.

    Every mutation is written through to the store immediately.  ``reset``
    archives a non-empty session before replacing it with a fresh one.
    """

    def __init__(
        self,
        store: LedgerStore | None = None,
        *,
        context_turns: int = 3,
        context_chars: int = 100,
        context_plans: int = 2,
    ) -> None:
        self._store = store
        self._context_turns = max(0, context_turns)
        self._context_chars = max(10, context_chars)
        self._context_plans = max(0, context_plans)
        payload = store.load() if store is not None else None
        self._session = LedgerSession.from_dict(payload) if payload else LedgerSession()
        if payload:
            LOGGER.debug(
                "Loaded memory session %s (%d conversation(s))",
                self._session.session_id,
                len(self._session.conversations),
            )

    @property
    def session(self) -> LedgerSession:
        return self._session

    def record_conversation(
        self,
        user_message: str,
        assistant_response: str,
        *,
        intent: Intent | None = None,
        tools_called: Sequence[str] = (),
    ) -> ConversationRecord:
        record = ConversationRecord(
            user_message=user_message,
            assistant_response=assistant_response,
            intent=intent.to_dict() if intent is not None else None,
            tools_called=list(tools_called),
        )
        session = self._session
        session.conversations.append(record)
        for tool in tools_called:
            if tool not in session.tools_called:
                session.tools_called.append(tool)
        self._add_goals(extract_goals(user_message, intent))
        self._persist()
        return record

    def record_completed_plan(
        self, tasks: Sequence[Task], *, intent: Intent | None, message: str
    ) -> CompletedPlanRecord:
        completed = [task for task in tasks if task.status is TaskStatus.COMPLETED]
        failed = [task for task in tasks if task.status is TaskStatus.FAILED]
        summary = f"Completed {len(completed)}/{len(tasks)} tasks for: {_truncate(message, 120)}"
        if completed:
            summary += ". Successfully: " + ", ".join(task.content for task in completed)
        if failed:
            summary += ". Failed: " + ", ".join(task.content for task in failed)
        record = CompletedPlanRecord(
            original_intent=intent.to_dict() if intent is not None else None,
            original_message=message,
            tasks=[task.to_dict() for task in tasks],
            success=bool(tasks) and len(completed) == len(tasks),
            summary=summary,
        )
        session = self._session
        session.completed_tasks.append(record)
        session.total_tasks_completed += len(completed)
        for task in tasks:
            if task.tool.value not in session.tools_called:
                session.tools_called.append(task.tool.value)
        self._add_goals(extract_goals(message, intent))
        self._persist()
        return record

    def get_context_summary(self) -> str:
        """Text block used to ground later model calls in this session."""

        session = self._session
        if session.empty and not session.goals:
            return ""
        lines: list[str] = []
        if session.goals:
            lines.append("Session goals: " + "; ".join(session.goals[-5:]))
        lines.append(f"Completed steps: {session.total_tasks_completed}")
        recent = session.conversations[-self._context_turns :] if self._context_turns else []
        if recent:
            lines.append("Recent conversation:")
            for record in recent:
                lines.append(
                    f"- User: {_truncate(record.user_message, self._context_chars)}"
                    f" | Assistant: {_truncate(record.assistant_response, self._context_chars)}"
                )
        plans = session.completed_tasks[-self._context_plans :] if self._context_plans else []
        if plans:
            lines.append("Recent plans:")
            lines.extend(f"- {record.summary}" for record in plans)
        summary = "\n".join(lines)
        session.context = summary
        return summary

    def reset(self) -> Path | None:
        """Archive the current session if it holds anything, then start fresh."""

        archived: Path | None = None
        previous = self._session
        if self._store is not None and not previous.empty:
            archived = self._store.archive(previous.to_dict(), previous.session_id)
            LOGGER.info("Archived memory session %s to %s", previous.session_id, archived)
        self._session = LedgerSession()
        self._persist()
        return archived

    def stats(self) -> dict[str, Any]:
        session = self._session
        return {
            "session_id": session.session_id,
            "start_time": session.start_time,
            "conversations": len(session.conversations),
            "completed_plans": len(session.completed_tasks),
            "total_tasks_completed": session.total_tasks_completed,
            "goals": len(session.goals),
            "tools_used": list(session.tools_called),
        }

    @staticmethod
    def is_assistant_done(response: str) -> bool:
        lowered = (response or "").lower()
        return any(phrase in lowered for phrase in _DONE_PHRASES)

    def _add_goals(self, goals: Sequence[str]) -> None:
        existing = self._session.goals
        for goal in goals:
            lowered = goal.lower()
            if any(lowered in item.lower() or item.lower() in lowered for item in existing):
                continue
            existing.append(goal)
        if len(existing) > _MAX_GOALS:
            del existing[: len(existing) - _MAX_GOALS]

    def _persist(self) -> None:
        self._session.last_updated = _utcnow()
        if self._store is None:
            return
        try:
            self._store.save(self._session.to_dict())
        except OSError as exc:
            LOGGER.warning("Unable to persist memory session: %s", exc)
