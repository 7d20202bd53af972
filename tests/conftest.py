"""Shared pytest fixtures and in-memory collaborators."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping

import pytest

from mithril.ai.client import InferenceUnavailableError
from mithril.services import telemetry
from mithril.services.workspace import CommandResult, DirectoryEntry, ReadResult, WriteResult


class ScriptedClient:
    """Inference client double.

    ``generate`` pops the next scripted reply (an exception is raised instead
    of returned); ``stream_generate`` yields the next scripted list of NDJSON
    payloads.  An exhausted reply queue behaves like an unreachable service.
    """

    def __init__(
        self,
        replies: Iterable[Any] = (),
        streams: Iterable[Any] = (),
        *,
        stream_delay: float = 0.0,
    ) -> None:
        self.replies = list(replies)
        self.streams = list(streams)
        self.stream_delay = stream_delay
        self.generate_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []

    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> str:
        self.generate_calls.append({"prompt": prompt, "model": model})
        if not self.replies:
            raise InferenceUnavailableError("no scripted reply")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def stream_generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
        cancel_token: Any = None,
    ) -> AsyncIterator[dict[str, Any]]:
        self.stream_calls.append({"prompt": prompt, "model": model, "options": options})
        script = self.streams.pop(0) if self.streams else [{"response": "", "done": True}]
        if isinstance(script, Exception):
            raise script
        for payload in script:
            await asyncio.sleep(self.stream_delay)
            yield payload


def text_stream(text: str, *, pieces: int = 3) -> list[dict[str, Any]]:
    """Split ``text`` into a few NDJSON payloads ending with ``done``."""

    size = max(1, -(-len(text) // pieces))
    parts = [text[index : index + size] for index in range(0, len(text), size)] or [""]
    payloads: list[dict[str, Any]] = [{"response": part, "done": False} for part in parts]
    payloads.append({"response": "", "done": True})
    return payloads


class MemoryFileSystem:
    def __init__(self, files: Mapping[str, str] | None = None) -> None:
        self.files: dict[str, str] = dict(files or {})
        self.directories: set[str] = set()
        self.fail_writes = False
        self.writes: list[str] = []

    async def read_file(self, path: str) -> ReadResult:
        if path not in self.files:
            return ReadResult(success=False, error=f"{path} not found")
        return ReadResult(success=True, content=self.files[path])

    async def write_file(self, path: str, content: str) -> WriteResult:
        if self.fail_writes:
            return WriteResult(success=False, path=path, error="disk full")
        self.files[path] = content
        self.writes.append(path)
        return WriteResult(success=True, path=path)

    async def exists(self, path: str) -> bool:
        return path in self.files or path in self.directories

    async def create_directory(self, path: str) -> WriteResult:
        self.directories.add(path)
        return WriteResult(success=True, path=path)

    async def list_directory(self, path: str) -> list[DirectoryEntry]:
        prefix = path.rstrip("/") + "/"
        entries = [
            DirectoryEntry(name=name[len(prefix) :], path=name, is_directory=False)
            for name in self.files
            if name.startswith(prefix) and "/" not in name[len(prefix) :]
        ]
        entries.extend(
            DirectoryEntry(name=name[len(prefix) :], path=name, is_directory=True)
            for name in self.directories
            if name.startswith(prefix) and "/" not in name[len(prefix) :]
        )
        return sorted(entries, key=lambda entry: (not entry.is_directory, entry.name))


class RecordingCommandRunner:
    def __init__(self, result: CommandResult | None = None) -> None:
        self.result = result or CommandResult(success=True, output="ok\n", exit_code=0)
        self.calls: list[dict[str, Any]] = []

    async def run(
        self,
        command: str,
        shell: str | None = None,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.calls.append({"command": command, "cwd": cwd, "timeout": timeout})
        return self.result


@pytest.fixture
def scripted_client():
    return ScriptedClient


@pytest.fixture
def ndjson():
    return text_stream


@pytest.fixture
def memory_fs() -> MemoryFileSystem:
    return MemoryFileSystem()


@pytest.fixture
def command_runner() -> RecordingCommandRunner:
    return RecordingCommandRunner()


@pytest.fixture
def telemetry_events():
    """Capture every telemetry event emitted during the test."""

    captured: list[tuple[str, dict[str, Any]]] = []

    def _listener(payload: Mapping[str, Any]) -> None:
        event = dict(payload)
        captured.append((str(event.pop("event")), event))

    for name in telemetry.EVENT_NAMES:
        telemetry.register_event_listener(name, _listener)
    yield captured
    for name in telemetry.EVENT_NAMES:
        telemetry.unregister_event_listener(name, _listener)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root
