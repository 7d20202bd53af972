"""Collaborator interfaces the orchestrator uses to touch the outside world.

The orchestration core never performs I/O directly.  Files, the editor buffer
and shell commands are reached through the protocols below, each of which
reports failure through its return value instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..utils import file_io

__all__ = [
    "ReadResult",
    "WriteResult",
    "DirectoryEntry",
    "CommandResult",
    "Selection",
    "FileSystem",
    "EditorAdapter",
    "CommandRunner",
    "LocalFileSystem",
    "SubprocessCommandRunner",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ReadResult:
    success: bool
    content: str = ""
    error: str | None = None


@dataclass(slots=True)
class WriteResult:
    success: bool
    path: str | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class DirectoryEntry:
    name: str
    path: str
    is_directory: bool


@dataclass(slots=True)
class CommandResult:
    success: bool
    output: str = ""
    error: str = ""
    exit_code: int | None = None


@dataclass(slots=True, frozen=True)
class Selection:
    """Non-empty editor selection with 1-based inclusive line positions."""

    text: str
    start_line: int
    end_line: int

    @property
    def preview(self) -> str:
        first = self.text.strip().splitlines()[0] if self.text.strip() else ""
        return first[:80]


@runtime_checkable
class FileSystem(Protocol):
    async def read_file(self, path: str) -> ReadResult:
        ...

    async def write_file(self, path: str, content: str) -> WriteResult:
        ...

    async def exists(self, path: str) -> bool:
        ...

    async def create_directory(self, path: str) -> WriteResult:
        ...

    async def list_directory(self, path: str) -> list[DirectoryEntry]:
        ...


@runtime_checkable
class EditorAdapter(Protocol):
    """Minimal editor surface consumed by the dispatcher."""

    @property
    def current_file_path(self) -> str | None:
        ...

    @property
    def current_file_name(self) -> str | None:
        ...

    def get_selection(self) -> Selection | None:
        ...

    def get_content(self) -> str | None:
        ...

    def replace_range(self, start_line: int, end_line: int, text: str) -> bool:
        ...

    def set_dirty(self, dirty: bool = True) -> None:
        ...


@runtime_checkable
class CommandRunner(Protocol):
    async def run(
        self,
        command: str,
        shell: str | None = None,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        ...


class LocalFileSystem:
    """:class:`FileSystem` backed by the local disk.

    Blocking calls run in the default executor so the event loop keeps
    servicing the active stream.
    """

    async def read_file(self, path: str) -> ReadResult:
        try:
            content = await asyncio.to_thread(file_io.read_text, path)
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("Unable to read %s: %s", path, exc)
            return ReadResult(success=False, error=str(exc))
        return ReadResult(success=True, content=content)

    async def write_file(self, path: str, content: str) -> WriteResult:
        try:
            target = await asyncio.to_thread(file_io.write_text, path, content)
        except OSError as exc:
            LOGGER.warning("Unable to write %s: %s", path, exc)
            return WriteResult(success=False, path=path, error=str(exc))
        return WriteResult(success=True, path=str(target))

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(os.path.exists, path)

    async def create_directory(self, path: str) -> WriteResult:
        try:
            await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Unable to create directory %s: %s", path, exc)
            return WriteResult(success=False, path=path, error=str(exc))
        return WriteResult(success=True, path=path)

    async def list_directory(self, path: str) -> list[DirectoryEntry]:
        def _scan() -> list[DirectoryEntry]:
            with os.scandir(path) as entries:
                items = [
                    DirectoryEntry(name=entry.name, path=entry.path, is_directory=entry.is_dir())
                    for entry in entries
                ]
            return sorted(items, key=lambda item: (not item.is_directory, item.name.lower()))

        try:
            return await asyncio.to_thread(_scan)
        except OSError as exc:
            LOGGER.warning("Unable to list %s: %s", path, exc)
            return []


class SubprocessCommandRunner:
    """:class:`CommandRunner` that executes commands in a local subprocess."""

    def __init__(self, *, default_timeout: float = 60.0) -> None:
        self._default_timeout = default_timeout

    async def run(
        self,
        command: str,
        shell: str | None = None,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        if not command.strip():
            return CommandResult(success=False, error="No command provided.")
        LOGGER.info("Running command %r (cwd=%s)", command, cwd)
        try:
            if shell:
                process = await asyncio.create_subprocess_exec(
                    shell,
                    "-c",
                    command,
                    cwd=cwd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            else:
                process = await asyncio.create_subprocess_shell(
                    command,
                    cwd=cwd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
        except OSError as exc:
            LOGGER.warning("Unable to start %s: %s", shlex.quote(command), exc)
            return CommandResult(success=False, error=str(exc))

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout or self._default_timeout
            )
        except asyncio.CancelledError:
            LOGGER.info("Command %r cancelled; killing process %s", command, process.pid)
            await _kill(process)
            raise
        except asyncio.TimeoutError:
            await _kill(process)
            return CommandResult(
                success=False,
                error=f"Command timed out after {timeout or self._default_timeout:.0f}s",
                exit_code=process.returncode,
            )
        exit_code = process.returncode
        return CommandResult(
            success=exit_code == 0,
            output=stdout.decode("utf-8", errors="replace"),
            error=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()
