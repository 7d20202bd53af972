"""Multi-step plans (todo lists) and the state machine that drives them."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

from ...services import telemetry
from ..client import InferenceError
from . import prompts
from .intent import extract_json_value
from .types import Intent, Task, TaskStatus, ToolName

__all__ = [
    "PlanStateError",
    "TaskPlan",
    "TaskPlanner",
    "infer_tool",
    "parse_plan_response",
    "parse_plan_decision",
]

LOGGER = logging.getLogger(__name__)

_TOOL_KEYWORDS: tuple[tuple[re.Pattern[str], ToolName], ...] = (
    (re.compile(r"\b(folder|directory)\b", re.I), ToolName.CREATE_FOLDER),
    (re.compile(r"\b(run|install|execute|npm|pip|yarn)\b", re.I), ToolName.RUN_COMMAND),
    (re.compile(r"\b(fix|bug|bugs|error|errors)\b", re.I), ToolName.FIX_ISSUES),
    (re.compile(r"\brefactor", re.I), ToolName.REFACTOR_CODE),
    (re.compile(r"\boptimi[sz]e", re.I), ToolName.OPTIMIZE_CODE),
    (re.compile(r"\bexplain", re.I), ToolName.EXPLAIN_CODE),
    (re.compile(r"\b(analy[sz]e|review)", re.I), ToolName.ANALYZE_CODE),
    (re.compile(r"\b(create|make|build|generate|write|set ?up)\b", re.I), ToolName.CREATE_FILE),
    (re.compile(r"\b(edit|update|change|modify|add|style)\b", re.I), ToolName.EDIT_FILE),
    (re.compile(r"\b(read|show|open)\b", re.I), ToolName.READ_FILE),
)
_TRUE_STRINGS = {"true", "yes", "1"}


class PlanStateError(RuntimeError):
    """Raised when a Task transition would break the plan's invariants."""


class TextGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> str:
        ...


CompletionCallback = Callable[["TaskPlan"], None]


class TaskPlan:
    """Ordered Tasks plus the request that produced them.

    At most one Task is ``in_progress`` at any time and terminal statuses
    never revert.  When every Task has reached a terminal status the plan is
    exhausted and its completion callbacks fire exactly once.
    """

    def __init__(
        self,
        tasks: Iterable[Task],
        *,
        intent: Intent,
        message: str,
        plan_id: str | None = None,
        on_all_completed: CompletionCallback | None = None,
    ) -> None:
        self.plan_id = plan_id or f"todo_{uuid.uuid4().hex[:12]}"
        self.tasks: list[Task] = list(tasks)
        if not self.tasks:
            raise ValueError("A plan needs at least one task")
        self.intent = intent
        self.message = message
        self.created_at = datetime.now(timezone.utc)
        self.halted = False
        self.cancelled = False
        self._finished = False
        self._callbacks: list[CompletionCallback] = []
        if on_all_completed is not None:
            self._callbacks.append(on_all_completed)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def current(self) -> Task | None:
        return next((task for task in self.tasks if task.status is TaskStatus.IN_PROGRESS), None)

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def exhausted(self) -> bool:
        return all(task.status.terminal for task in self.tasks)

    @property
    def success(self) -> bool:
        return all(task.status is TaskStatus.COMPLETED for task in self.tasks)

    def count(self, status: TaskStatus) -> int:
        return sum(1 for task in self.tasks if task.status is status)

    def position(self, task: Task) -> int:
        return self.tasks.index(task) + 1

    def step_message(self, task: Task) -> str:
        """Instruction for one step, re-grounded in the original request."""

        return (
            f"Original request: {self.message.strip()}\n\n"
            f"Current step ({self.position(task)}/{len(self.tasks)}): {task.content.strip()}\n\n"
            "Complete only the current step."
        )

    def snapshot(self) -> list[dict[str, Any]]:
        return [task.to_dict() for task in self.tasks]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def add_completion_listener(self, callback: CompletionCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def start(self) -> Task | None:
        """Move the first pending Task to ``in_progress`` if none is running."""

        if self._finished or self.cancelled:
            return None
        current = self.current
        if current is not None:
            return current
        return self._start_next()

    def advance(self, success: bool, result: str | None = None) -> Task | None:
        """Finish the running Task and start the next one.

        Returns the Task now ``in_progress`` or ``None`` when the plan halted
        on a failure or is exhausted.
        """

        task = self.current
        if task is None:
            raise PlanStateError(f"Plan {self.plan_id} has no task in progress")
        self._set_status(task, TaskStatus.COMPLETED if success else TaskStatus.FAILED)
        task.result = result
        if not success:
            self.halted = True
            LOGGER.info("Plan %s halted: task %s failed", self.plan_id, task.id)
            if self.exhausted:
                self._finish()
            return None
        return self._start_next()

    def resume(self) -> Task | None:
        """Continue a halted plan with the next pending Task.

        The failed Task is not retried.
        """

        if self._finished or self.cancelled:
            return None
        self.halted = False
        return self.start()

    def cancel(self) -> None:
        self.cancelled = True
        for task in self.tasks:
            if task.status is TaskStatus.IN_PROGRESS:
                task.status = TaskStatus.FAILED
                task.result = "cancelled"

    def _start_next(self) -> Task | None:
        next_task = next((task for task in self.tasks if task.status is TaskStatus.PENDING), None)
        if next_task is None:
            self._finish()
            return None
        self._set_status(next_task, TaskStatus.IN_PROGRESS)
        return next_task

    def _set_status(self, task: Task, status: TaskStatus) -> None:
        if task.status.terminal:
            raise PlanStateError(f"Task {task.id} is already {task.status.value}")
        if status is TaskStatus.IN_PROGRESS:
            running = self.current
            if running is not None and running is not task:
                raise PlanStateError(f"Task {running.id} is already in progress")
        task.status = status
        telemetry.emit(
            "plan.task_updated",
            {"plan_id": self.plan_id, "task_id": task.id, "status": status.value},
        )

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        LOGGER.info(
            "Plan %s finished: %d/%d tasks completed",
            self.plan_id,
            self.count(TaskStatus.COMPLETED),
            len(self.tasks),
        )
        for callback in list(self._callbacks):
            callback(self)


def infer_tool(content: str, default: ToolName) -> ToolName:
    for pattern, tool in _TOOL_KEYWORDS:
        if pattern.search(content):
            return tool
    return default


def parse_plan_decision(text: str) -> bool:
    """Read ``{"needs_plan": ...}``; raises ``ValueError`` if absent."""

    payload = extract_json_value(text, "{")
    if not isinstance(payload, dict) or "needs_plan" not in payload:
        raise ValueError("Plan decision is missing 'needs_plan'")
    value = payload["needs_plan"]
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def parse_plan_response(text: str, intent: Intent, *, max_steps: int = 8) -> list[Task]:
    """Turn the planner's JSON array into pending Tasks.

    Entries without usable text are skipped; unknown tools are inferred from
    the step text.
    """

    try:
        payload: Any = extract_json_value(text, "[")
    except ValueError:
        payload = extract_json_value(text, "{")
        if isinstance(payload, dict):
            payload = payload.get("tasks") or payload.get("steps")
    if not isinstance(payload, list):
        raise ValueError("Plan response is not a list")

    tasks: list[Task] = []
    seen: set[str] = set()
    for position, item in enumerate(payload, start=1):
        if isinstance(item, str):
            item = {"content": item}
        if not isinstance(item, Mapping):
            continue
        content = str(item.get("content") or item.get("task") or item.get("description") or "").strip()
        if not content:
            continue
        task_id = str(item.get("id") or f"step-{position}").strip() or f"step-{position}"
        while task_id in seen:
            task_id = f"{task_id}-{position}"
        seen.add(task_id)
        tool = ToolName.parse(item.get("tool")) or infer_tool(content, intent.tool)
        tasks.append(Task(id=task_id, content=content, tool=tool))
        if len(tasks) >= max_steps:
            break
    return tasks


class TaskPlanner:
    """Decides when to plan and produces :class:`TaskPlan` instances."""

    def __init__(self, client: TextGenerator, *, model: str | None = None, max_steps: int = 8) -> None:
        self._client = client
        self._model = model
        self._max_steps = max(1, max_steps)

    async def should_plan(self, message: str, intent: Intent) -> bool:
        """Ask the model whether ``message`` needs several steps.

        Any failure answers ``False`` so the request runs single-shot.
        """

        try:
            response = await self._client.generate(
                prompts.plan_decision_prompt(message, intent.tool), model=self._model
            )
            decision = parse_plan_decision(response)
        except (InferenceError, ValueError) as exc:
            LOGGER.debug("Plan decision unavailable, running single-shot: %s", exc)
            return False
        LOGGER.debug("Plan decision for %r: %s", message[:80], decision)
        return decision

    async def plan(
        self,
        message: str,
        intent: Intent,
        *,
        on_all_completed: CompletionCallback | None = None,
    ) -> TaskPlan:
        tasks: Sequence[Task] = []
        try:
            response = await self._client.generate(
                prompts.plan_prompt(message, max_steps=self._max_steps), model=self._model
            )
            tasks = parse_plan_response(response, intent, max_steps=self._max_steps)
        except (InferenceError, ValueError) as exc:
            LOGGER.warning("Plan generation failed, wrapping the request in one task: %s", exc)
        if not tasks:
            tasks = [Task(id="main-task", content=message.strip(), tool=intent.tool)]
        plan = TaskPlan(tasks, intent=intent, message=message, on_all_completed=on_all_completed)
        plan.start()
        telemetry.emit(
            "plan.created",
            {"plan_id": plan.plan_id, "tasks": len(plan.tasks), "tool": intent.tool.value},
        )
        return plan
