"""Single coordinator for user turns, plans and the active stream.

The orchestrator owns the mutable "current turn", "current plan" and
"current stream" state.  All of it is touched from the event loop only, so
preemption is a matter of cancelling the previous turn task before the new
one starts and letting the stream coordinator drop stale events.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping

from ...services import telemetry
from ...services.settings import Settings
from ...services.workspace import CommandRunner, EditorAdapter, FileSystem
from .chunk_context import ChunkContext
from .code_extractor import CodeExtractor
from .dispatcher import ActionDispatcher, DispatcherConfig, DispatchResult
from .intent import IntentClassifier, WorkspaceContext
from .planner import TaskPlan, TaskPlanner
from .stream_session import StreamCoordinator
from .types import Intent, IntentTarget, TaskStatus

if TYPE_CHECKING:
    from ..client import InferenceClient
    from ..memory.ledger import MemoryLedger

__all__ = ["OrchestratorConfig", "TurnResult", "Orchestrator"]

LOGGER = logging.getLogger(__name__)

ALL_TASKS_COMPLETED = "All tasks completed!"
CANCELLED_MESSAGE = "Request cancelled."

StatusCallback = Callable[[str], None]


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    model: str | None = None
    intent_model: str | None = None
    workspace_root: str | None = None
    planning_enabled: bool = True
    auto_replace: bool = True
    step_delay: float = 1.0
    plan_clear_delay: float = 8.0
    command_timeout: float = 60.0
    max_plan_steps: int = 8
    generation_options: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            model=settings.model,
            intent_model=settings.classifier_model,
            workspace_root=settings.workspace_root,
            planning_enabled=settings.planning_enabled,
            auto_replace=settings.auto_replace_enabled,
            step_delay=settings.step_delay,
            plan_clear_delay=settings.plan_clear_delay,
            command_timeout=settings.command_timeout,
            generation_options=settings.generation_options(),
        )


@dataclass(slots=True)
class TurnResult:
    """What one user turn produced."""

    response: str
    intent: Intent | None = None
    plan: TaskPlan | None = None
    success: bool = True
    cancelled: bool = False
    results: list[DispatchResult] = field(default_factory=list)


class Orchestrator:
    """Classify, optionally plan, dispatch and record each user turn."""

    def __init__(
        self,
        client: "InferenceClient",
        *,
        file_system: FileSystem,
        editor: EditorAdapter | None = None,
        command_runner: CommandRunner | None = None,
        memory: "MemoryLedger | None" = None,
        chunks: ChunkContext | None = None,
        config: OrchestratorConfig | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        self._config = config or OrchestratorConfig()
        self._editor = editor
        self._memory = memory
        self._on_status = on_status
        self._chunks = chunks if chunks is not None else ChunkContext()
        self._streams = StreamCoordinator(
            client,
            default_model=self._config.model,
            options=self._config.generation_options,
        )
        self._classifier = IntentClassifier(client, model=self._config.intent_model)
        self._planner = TaskPlanner(
            client, model=self._config.intent_model, max_steps=self._config.max_plan_steps
        )
        self._dispatcher = ActionDispatcher(
            client=client,
            streams=self._streams,
            file_system=file_system,
            editor=editor,
            command_runner=command_runner,
            chunks=self._chunks,
            memory=memory,
            extractor=CodeExtractor(),
            config=DispatcherConfig(
                workspace_root=self._config.workspace_root,
                model=self._config.model,
                classifier_model=self._config.intent_model,
                auto_replace=self._config.auto_replace,
                command_timeout=self._config.command_timeout,
            ),
        )
        self._turn: asyncio.Task[TurnResult] | None = None
        self._preempted: set[asyncio.Task[TurnResult]] = set()
        self._plan: TaskPlan | None = None
        self._clear_handle: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def streams(self) -> StreamCoordinator:
        return self._streams

    @property
    def chunks(self) -> ChunkContext:
        return self._chunks

    @property
    def memory(self) -> "MemoryLedger | None":
        return self._memory

    @property
    def current_plan(self) -> TaskPlan | None:
        return self._plan

    @property
    def busy(self) -> bool:
        return self._turn is not None and not self._turn.done()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    async def handle_message(self, message: str) -> TurnResult:
        """Run one user turn, preempting whatever turn is still running."""

        if not message.strip():
            return TurnResult(response="Please enter a request.", success=False)
        previous = self._preempt()
        return await self._launch(self._run_turn(message, previous))

    async def resume_plan(self) -> TurnResult:
        """Continue a plan halted by a failed step with its next pending step."""

        plan = self._plan
        if plan is None or plan.finished or not plan.halted:
            return TurnResult(response="There is no halted plan to resume.", success=False)
        if self.busy:
            return TurnResult(response="A request is still running.", success=False)
        return await self._launch(self._resume(plan))

    def cancel(self) -> bool:
        """Cancel the running turn, its stream and the current plan."""

        cancelled = self._streams.cancel_active("cancelled")
        turn = self._turn
        if turn is not None and not turn.done():
            self._preempted.add(turn)
            turn.cancel()
            cancelled = True
        if self._plan is not None:
            self._plan.cancel()
            self._clear_plan()
            cancelled = True
        if cancelled:
            LOGGER.info("Cancelled the current request")
        return cancelled

    async def aclose(self) -> None:
        turn = self._turn
        self.cancel()
        if turn is not None:
            await asyncio.wait([turn])
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None

    def _preempt(self) -> asyncio.Task[TurnResult] | None:
        previous = self._turn
        if previous is None or previous.done():
            return None
        LOGGER.info("Preempting the running request")
        self._preempted.add(previous)
        self._streams.cancel_active("preempted")
        previous.cancel()
        if self._plan is not None and not self._plan.finished and not self._plan.halted:
            self._plan.cancel()
            self._clear_plan()
        return previous

    async def _launch(self, coro: Any) -> TurnResult:
        task: asyncio.Task[TurnResult] = asyncio.create_task(coro)
        self._turn = task
        try:
            return await task
        except asyncio.CancelledError:
            if task not in self._preempted:
                raise
            return TurnResult(response=CANCELLED_MESSAGE, success=False, cancelled=True)
        except Exception:
            LOGGER.exception("Request failed")
            raise
        finally:
            self._preempted.discard(task)
            if self._turn is task:
                self._turn = None

    async def _run_turn(self, message: str, previous: asyncio.Task[TurnResult] | None) -> TurnResult:
        if previous is not None:
            await asyncio.wait([previous])

        context = WorkspaceContext.from_editor(self._editor, self._config.workspace_root)
        intent = await self._classifier.classify(message, context)
        LOGGER.info(
            "Intent: %s on %s (confidence %.2f)",
            intent.tool.value,
            intent.target.value,
            intent.confidence,
        )

        if self._config.planning_enabled and await self._planner.should_plan(message, intent):
            plan = await self._planner.plan(message, intent, on_all_completed=self._on_plan_completed)
            self._set_plan(plan)
            self._notify(f"Planned {len(plan.tasks)} step(s).")
            return await self._drive(plan)

        result = await self._dispatcher.execute(intent, message)
        if not result.cancelled:
            self._record(message, result, intent)
        return TurnResult(
            response=result.text,
            intent=intent,
            success=result.success,
            cancelled=result.cancelled,
            results=[result],
        )

    async def _resume(self, plan: TaskPlan) -> TurnResult:
        if plan.resume() is None:
            return TurnResult(
                response=self._plan_summary(plan), intent=plan.intent, plan=plan, success=plan.success
            )
        return await self._drive(plan)

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------
    async def _drive(self, plan: TaskPlan) -> TurnResult:
        """Execute steps until the plan halts, is cancelled or is exhausted."""

        results: list[DispatchResult] = []
        sections: list[str] = []
        task = plan.current
        while task is not None:
            header = f"Step {plan.position(task)}/{len(plan.tasks)}: {task.content}"
            self._notify(header)
            step_intent = Intent(
                tool=task.tool,
                target=IntentTarget.CURRENT_TODO,
                confidence=plan.intent.confidence,
                original_request=plan.message,
                summary=task.content,
            )
            try:
                result = await self._dispatcher.execute(step_intent, plan.step_message(task))
            except asyncio.CancelledError:
                plan.cancel()
                raise
            results.append(result)
            sections.append(f"{header}\n{result.text}")
            if result.cancelled:
                plan.cancel()
                self._clear_plan(plan)
                return TurnResult(
                    response="\n\n".join(sections),
                    intent=plan.intent,
                    plan=plan,
                    success=False,
                    cancelled=True,
                    results=results,
                )
            self._record(task.content, result, step_intent)
            task = plan.advance(result.success, result.text)
            if task is not None and self._config.step_delay > 0:
                await asyncio.sleep(self._config.step_delay)

        if plan.halted and not plan.finished:
            sections.append("A step failed. Use /resume to continue with the next step or /cancel to drop the plan.")
        else:
            sections.append(self._plan_summary(plan))
        return TurnResult(
            response="\n\n".join(sections),
            intent=plan.intent,
            plan=plan,
            success=plan.success and plan.finished,
            results=results,
        )

    def _on_plan_completed(self, plan: TaskPlan) -> None:
        if self._memory is not None:
            self._memory.record_completed_plan(plan.tasks, intent=plan.intent, message=plan.message)
        telemetry.emit(
            "plan.completed",
            {"plan_id": plan.plan_id, "success": plan.success, "tasks": len(plan.tasks)},
        )
        if self._plan is plan:
            loop = asyncio.get_running_loop()
            self._clear_handle = loop.call_later(
                self._config.plan_clear_delay, self._clear_plan, plan
            )

    def _set_plan(self, plan: TaskPlan) -> None:
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        self._plan = plan

    def _clear_plan(self, plan: TaskPlan | None = None) -> None:
        if plan is not None and self._plan is not plan:
            return
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        self._plan = None

    @staticmethod
    def _plan_summary(plan: TaskPlan) -> str:
        if plan.success:
            return ALL_TASKS_COMPLETED
        completed = plan.count(TaskStatus.COMPLETED)
        return f"Plan finished: {completed}/{len(plan.tasks)} tasks completed."

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _record(self, message: str, result: DispatchResult, intent: Intent) -> None:
        if self._memory is None:
            return
        self._memory.record_conversation(
            message, result.text, intent=intent, tools_called=[intent.tool.value]
        )

    def _notify(self, text: str) -> None:
        LOGGER.debug("Status: %s", text)
        if self._on_status is not None:
            self._on_status(text)
