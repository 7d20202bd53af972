"""Task orchestration: intent, planning, dispatch, streaming and code extraction."""

from .chunk_context import ChunkContext, CodeChunk
from .code_extractor import CodeExtractor, validate_replacement
from .dispatcher import ActionDispatcher, DispatcherConfig, DispatchResult
from .intent import IntentClassifier, WorkspaceContext
from .orchestrator import Orchestrator, OrchestratorConfig, TurnResult
from .planner import PlanStateError, TaskPlan, TaskPlanner
from .stream_session import (
    CancellationToken,
    CancelledEvent,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    StreamCoordinator,
    StreamOutcome,
    StreamSession,
    StreamStatus,
)
from .types import (
    Intent,
    IntentTarget,
    ReplacementCandidate,
    ReplacementOrigin,
    ReplacementTarget,
    Task,
    TaskStatus,
    ToolName,
    ValidationResult,
)

__all__ = [
    "ActionDispatcher",
    "CancellationToken",
    "CancelledEvent",
    "ChunkContext",
    "ChunkEvent",
    "CodeChunk",
    "CodeExtractor",
    "DispatchResult",
    "DispatcherConfig",
    "DoneEvent",
    "ErrorEvent",
    "Intent",
    "IntentClassifier",
    "IntentTarget",
    "Orchestrator",
    "OrchestratorConfig",
    "PlanStateError",
    "ReplacementCandidate",
    "ReplacementOrigin",
    "ReplacementTarget",
    "StreamCoordinator",
    "StreamOutcome",
    "StreamSession",
    "StreamStatus",
    "Task",
    "TaskPlan",
    "TaskPlanner",
    "TaskStatus",
    "ToolName",
    "TurnResult",
    "ValidationResult",
    "WorkspaceContext",
    "validate_replacement",
]
