"""Route an :class:`Intent` to the handler for its tool."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Protocol, Sequence

from ...services import telemetry
from ...services.workspace import CommandRunner, EditorAdapter, FileSystem, WriteResult
from ...utils import file_io
from ..client import InferenceError
from . import prompts
from .chunk_context import ChunkContext
from .code_extractor import CodeExtractor, validate_replacement
from .request_parsing import (
    clean_generated_content,
    extract_command,
    filename_from_message,
    filename_from_reply,
    folder_name_from_message,
)
from .stream_session import StreamCoordinator, StreamOutcome
from .types import Intent, ReplacementCandidate, ReplacementTarget, ToolName

if TYPE_CHECKING:
    from ..memory.ledger import MemoryLedger

__all__ = ["DispatchResult", "DispatcherConfig", "ActionDispatcher"]

LOGGER = logging.getLogger(__name__)

NO_WORKSPACE_MESSAGE = "No workspace folder selected. Please open a folder first."
NO_FILE_MESSAGE = "No file is currently open to read."

_TOOL_VERBS: dict[ToolName, str] = {
    ToolName.EDIT_FILE: "edit",
    ToolName.REFACTOR_CODE: "refactor",
    ToolName.FIX_ISSUES: "fix",
    ToolName.OPTIMIZE_CODE: "optimize",
    ToolName.ANALYZE_CODE: "analyze",
    ToolName.EXPLAIN_CODE: "explain",
}


class TextGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> str:
        ...


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one dispatched action."""

    text: str
    success: bool = True
    tool: ToolName | None = None
    applied: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    suggestions: list[ReplacementCandidate] = field(default_factory=list)
    cancelled: bool = False


@dataclass(slots=True)
class DispatcherConfig:
    workspace_root: str | None = None
    model: str | None = None
    classifier_model: str | None = None
    auto_replace: bool = True
    read_preview_chars: int = 1_000
    command_timeout: float = 60.0


Handler = Callable[[Intent, str], Awaitable[DispatchResult]]


class ActionDispatcher:
    """One handler per :class:`ToolName`; every tool must have one."""

    def __init__(
        self,
        *,
        client: TextGenerator,
        streams: StreamCoordinator,
        file_system: FileSystem,
        editor: EditorAdapter | None = None,
        command_runner: CommandRunner | None = None,
        chunks: ChunkContext | None = None,
        memory: "MemoryLedger | None" = None,
        extractor: CodeExtractor | None = None,
        config: DispatcherConfig | None = None,
    ) -> None:
        self._client = client
        self._streams = streams
        self._fs = file_system
        self._editor = editor
        self._runner = command_runner
        self._chunks = chunks if chunks is not None else ChunkContext()
        self._memory = memory
        self._extractor = extractor or CodeExtractor()
        self._config = config or DispatcherConfig()
        self._handlers: dict[ToolName, Handler] = {
            ToolName.CHAT_RESPONSE: self._chat_response,
            ToolName.RUN_COMMAND: self._run_command,
            ToolName.EDIT_FILE: self._modify_code,
            ToolName.CREATE_FILE: self._create_file,
            ToolName.CREATE_FOLDER: self._create_folder,
            ToolName.ANALYZE_CODE: self._review_code,
            ToolName.EXPLAIN_CODE: self._review_code,
            ToolName.REFACTOR_CODE: self._modify_code,
            ToolName.FIX_ISSUES: self._modify_code,
            ToolName.OPTIMIZE_CODE: self._modify_code,
            ToolName.READ_FILE: self._read_file,
        }
        missing = set(ToolName) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler registered for {sorted(tool.value for tool in missing)}")

    @property
    def config(self) -> DispatcherConfig:
        return self._config

    @property
    def chunks(self) -> ChunkContext:
        return self._chunks

    async def execute(self, intent: Intent, message: str) -> DispatchResult:
        """Run the handler for ``intent.tool``.

        Transport failures become a failed result; cancellation propagates.
        """

        handler = self._handlers[intent.tool]
        LOGGER.debug("Dispatching %s (target=%s)", intent.tool.value, intent.target.value)
        try:
            result = await handler(intent, message)
        except InferenceError as exc:
            LOGGER.warning("%s failed: %s", intent.tool.value, exc)
            result = DispatchResult(text=f"Error: {exc}", success=False)
        result.tool = intent.tool
        return result

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _chat_response(self, intent: Intent, message: str) -> DispatchResult:
        prompt = prompts.compose_prompt(
            prompts.CHAT_SYSTEM_PROMPT,
            message,
            memory_context=self._memory_context(),
            targets=self._chunks.targets(),
        )
        outcome = await self._stream(prompt)
        if not outcome.ok:
            return self._stream_failure(outcome)
        return DispatchResult(text=outcome.text)

    async def _review_code(self, intent: Intent, message: str) -> DispatchResult:
        targets = await self._resolve_targets()
        if not targets:
            verb = _TOOL_VERBS.get(intent.tool, "work on")
            return DispatchResult(
                text=f"Please select some code or attach a chunk to {verb}.", success=False
            )
        prompt = prompts.compose_prompt(
            prompts.tool_instruction(intent.tool),
            message,
            memory_context=self._memory_context(),
            targets=targets,
            replacement_instructions=False,
        )
        outcome = await self._stream(prompt)
        if not outcome.ok:
            return self._stream_failure(outcome)
        return DispatchResult(text=outcome.text)

    async def _modify_code(self, intent: Intent, message: str) -> DispatchResult:
        targets = await self._resolve_targets()
        if not targets:
            verb = _TOOL_VERBS.get(intent.tool, "edit")
            return DispatchResult(
                text=f"Please attach a code chunk, select some code, or open a file to {verb}.",
                success=False,
            )
        prompt = prompts.compose_prompt(
            prompts.tool_instruction(intent.tool),
            message,
            memory_context=self._memory_context(),
            targets=targets,
            replacement_instructions=True,
        )
        outcome = await self._stream(prompt)
        if not outcome.ok:
            return self._stream_failure(outcome)

        candidates = self._extractor.extract(outcome.text, targets)
        if not candidates:
            return DispatchResult(
                text=f"{outcome.text}\n\nNo replacement code could be identified in the response, "
                "so nothing was changed.",
                success=False,
            )

        result = DispatchResult(text=outcome.text, success=False)
        for candidate in _write_order(candidates):
            verdict = validate_replacement(candidate, message)
            if not verdict.accepted:
                LOGGER.info("Rejected replacement for %s: %s", candidate.target.label, verdict.reason)
                telemetry.emit(
                    "replacement.rejected",
                    {"target": candidate.target.label, "reason": verdict.reason},
                )
                result.rejected.append(verdict.message)
                continue
            if not self._config.auto_replace:
                result.suggestions.append(candidate)
                continue
            written = await self._apply(candidate)
            if not written.success:
                result.text = (
                    f"{outcome.text}\n\nFailed to write {candidate.target.label}: {written.error}"
                )
                result.success = False
                return result
            telemetry.emit(
                "replacement.applied",
                {"target": candidate.target.label, "origin": candidate.origin.value},
            )
            result.applied.append(candidate.target.label)

        result.success = bool(result.applied or result.suggestions)
        notes = [f"Applied changes to {label}." for label in result.applied]
        notes.extend(
            f"Suggested replacement for {candidate.target.label} (auto-replace is off)."
            for candidate in result.suggestions
        )
        notes.extend(result.rejected)
        if notes:
            result.text = outcome.text + "\n\n" + "\n".join(notes)
        return result

    async def _create_file(self, intent: Intent, message: str) -> DispatchResult:
        root = self._config.workspace_root
        if not root:
            return DispatchResult(text=NO_WORKSPACE_MESSAGE, success=False)
        name = filename_from_message(message) or await self._suggest_filename(message)
        name = file_io.sanitize_name(name, default="new-file.txt")
        path = await self._unique_path(os.path.join(root, name))

        prompt = prompts.compose_prompt(
            prompts.file_content_instruction(os.path.basename(path)),
            message,
            memory_context=self._memory_context(),
        )
        outcome = await self._stream(prompt)
        if not outcome.ok:
            return self._stream_failure(outcome)
        content = clean_generated_content(outcome.text)
        if not content.strip():
            return DispatchResult(text="The model did not return any file content.", success=False)

        written = await self._fs.write_file(path, content)
        if not written.success:
            return DispatchResult(text=f"Failed to create {path}: {written.error}", success=False)
        relative = os.path.relpath(path, root)
        return DispatchResult(text=f"Created file: {relative}", applied=[relative])

    async def _create_folder(self, intent: Intent, message: str) -> DispatchResult:
        root = self._config.workspace_root
        if not root:
            return DispatchResult(text=NO_WORKSPACE_MESSAGE, success=False)
        name = file_io.sanitize_name(folder_name_from_message(message) or "", default="new-folder")
        path = os.path.join(root, name)
        if await self._fs.exists(path):
            return DispatchResult(text=f"Folder already exists: {name}")
        created = await self._fs.create_directory(path)
        if not created.success:
            return DispatchResult(text=f"Failed to create folder {name}: {created.error}", success=False)
        return DispatchResult(text=f"Created folder: {name}", applied=[name])

    async def _read_file(self, intent: Intent, message: str) -> DispatchResult:
        path = self._editor.current_file_path if self._editor is not None else None
        if not path:
            return DispatchResult(text=NO_FILE_MESSAGE, success=False)
        content = self._editor.get_content() if self._editor is not None else None
        if content is None:
            read = await self._fs.read_file(path)
            if not read.success:
                return DispatchResult(text=f"Failed to read {path}: {read.error}", success=False)
            content = read.content
        limit = self._config.read_preview_chars
        preview = content if len(content) <= limit else content[:limit] + "\n..."
        name = os.path.basename(path)
        line_count = len(content.split("\n"))
        return DispatchResult(text=f"Contents of {name} ({line_count} lines):\n```\n{preview}\n```")

    async def _run_command(self, intent: Intent, message: str) -> DispatchResult:
        if self._runner is None:
            return DispatchResult(text="Command execution is not available.", success=False)
        command = extract_command(message)
        if not command:
            return DispatchResult(
                text="Could not determine the command to run. Put it in backticks, for example `npm install`.",
                success=False,
            )
        result = await self._runner.run(
            command,
            cwd=self._config.workspace_root,
            timeout=self._config.command_timeout,
        )
        lines = [f"$ {command}"]
        if result.output.strip():
            lines.append(result.output.rstrip())
        if result.error.strip():
            lines.append(result.error.rstrip())
        lines.append(f"(exit code {result.exit_code})" if result.exit_code is not None else "(not started)")
        return DispatchResult(text="\n".join(lines), success=result.success)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _resolve_targets(self) -> list[ReplacementTarget]:
        """Attached chunks, else the editor selection, else the whole open file."""

        if self._chunks:
            return self._chunks.targets()
        editor = self._editor
        if editor is None:
            return []
        path = editor.current_file_path
        name = editor.current_file_name or (os.path.basename(path) if path else "untitled")
        selection = editor.get_selection()
        if selection is not None:
            return [
                ReplacementTarget(
                    file_path=path,
                    file_name=name,
                    start_line=selection.start_line,
                    end_line=selection.end_line,
                    text=selection.text,
                    kind="selection",
                )
            ]
        content = editor.get_content()
        if path and content is not None and content.strip():
            return [
                ReplacementTarget(
                    file_path=path,
                    file_name=name,
                    start_line=1,
                    end_line=len(content.split("\n")),
                    text=content,
                    kind="file",
                )
            ]
        return []

    async def _apply(self, candidate: ReplacementCandidate) -> WriteResult:
        target = candidate.target
        editor = self._editor
        if editor is not None and target.file_path and _same_path(editor.current_file_path, target.file_path):
            if not editor.replace_range(target.start_line, target.end_line, candidate.proposed_text):
                return WriteResult(success=False, path=target.file_path, error="the editor rejected the edit")
            editor.set_dirty(True)
            written = WriteResult(success=True, path=target.file_path)
        else:
            if not target.file_path:
                return WriteResult(success=False, error="the target has no file path")
            read = await self._fs.read_file(target.file_path)
            if not read.success:
                return WriteResult(success=False, path=target.file_path, error=read.error)
            try:
                updated = file_io.splice_lines(
                    read.content, target.start_line, target.end_line, candidate.proposed_text
                )
            except ValueError as exc:
                return WriteResult(success=False, path=target.file_path, error=str(exc))
            written = await self._fs.write_file(target.file_path, updated)
            if not written.success:
                return written
        if target.chunk_id:
            self._chunks.update_text(target.chunk_id, candidate.proposed_text)
        return written

    async def _stream(self, prompt: str) -> StreamOutcome:
        return await self._streams.run(prompt, model=self._config.model)

    def _stream_failure(self, outcome: StreamOutcome) -> DispatchResult:
        if outcome.cancelled:
            return DispatchResult(
                text=outcome.text or "Generation was cancelled.", success=False, cancelled=True
            )
        raise InferenceError(outcome.error or "generation failed")

    def _memory_context(self) -> str:
        return self._memory.get_context_summary() if self._memory is not None else ""

    async def _suggest_filename(self, message: str) -> str:
        try:
            reply = await self._client.generate(
                prompts.FILENAME_PROMPT.format(message=message.replace('"', "'")),
                model=self._config.classifier_model,
            )
        except InferenceError as exc:
            LOGGER.warning("File name suggestion failed: %s", exc)
            return "new-file.txt"
        return filename_from_reply(reply) or "new-file.txt"

    async def _unique_path(self, path: str) -> str:
        if not await self._fs.exists(path):
            return path
        stem, suffix = os.path.splitext(path)
        counter = 1
        while await self._fs.exists(f"{stem}-{counter}{suffix}"):
            counter += 1
        return f"{stem}-{counter}{suffix}"


def _same_path(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return os.path.normcase(os.path.abspath(left)) == os.path.normcase(os.path.abspath(right))


def _write_order(candidates: Sequence[ReplacementCandidate]) -> list[ReplacementCandidate]:
    """Bottom-up per file so earlier line numbers stay valid while writing."""

    return sorted(
        candidates,
        key=lambda candidate: (candidate.target.file_path or "", -candidate.target.start_line),
    )
