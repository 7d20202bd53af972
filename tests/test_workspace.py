"""Tests for the local workspace collaborators and the buffer editor."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from mithril.editor.document_model import BufferEditor
from mithril.services.workspace import (
    CommandRunner,
    EditorAdapter,
    FileSystem,
    LocalFileSystem,
    SubprocessCommandRunner,
)


def test_collaborators_satisfy_protocols() -> None:
    assert isinstance(LocalFileSystem(), FileSystem)
    assert isinstance(SubprocessCommandRunner(), CommandRunner)
    assert isinstance(BufferEditor(), EditorAdapter)


@pytest.mark.asyncio
async def test_local_file_system_round_trip(workspace: Path) -> None:
    fs = LocalFileSystem()
    target = workspace / "src" / "app.js"

    written = await fs.write_file(str(target), "console.log(1);\r\n")
    read = await fs.read_file(str(target))

    assert written.success
    assert read.success and read.content == "console.log(1);\n"
    assert await fs.exists(str(target))
    assert not await fs.exists(str(workspace / "missing.txt"))


@pytest.mark.asyncio
async def test_local_file_system_reports_failures(workspace: Path) -> None:
    fs = LocalFileSystem()

    missing = await fs.read_file(str(workspace / "nope.txt"))

    assert not missing.success
    assert missing.error
    assert await fs.list_directory(str(workspace / "nope")) == []


@pytest.mark.asyncio
async def test_create_and_list_directories(workspace: Path) -> None:
    fs = LocalFileSystem()
    (workspace / "b.txt").write_text("b", encoding="utf-8")

    created = await fs.create_directory(str(workspace / "assets" / "img"))
    entries = await fs.list_directory(str(workspace))

    assert created.success
    assert (workspace / "assets" / "img").is_dir()
    assert [(entry.name, entry.is_directory) for entry in entries] == [("assets", True), ("b.txt", False)]


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")
async def test_subprocess_runner_captures_output(workspace: Path) -> None:
    runner = SubprocessCommandRunner()

    result = await runner.run("echo hello && echo oops 1>&2", cwd=str(workspace))
    failed = await runner.run("exit 3", cwd=str(workspace))

    assert result.success
    assert result.output.strip() == "hello"
    assert result.error.strip() == "oops"
    assert result.exit_code == 0
    assert not failed.success
    assert failed.exit_code == 3


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")
async def test_subprocess_runner_times_out() -> None:
    result = await SubprocessCommandRunner().run("sleep 5", timeout=0.2)

    assert not result.success
    assert "timed out" in result.error


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")
async def test_cancelled_command_is_killed(workspace: Path) -> None:
    marker = workspace / "finished"
    running = asyncio.create_task(
        SubprocessCommandRunner().run(f"sleep 1; touch {marker}", cwd=str(workspace))
    )
    await asyncio.sleep(0.2)

    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running
    await asyncio.sleep(1.2)

    assert not marker.exists()


@pytest.mark.asyncio
async def test_subprocess_runner_rejects_empty_command() -> None:
    result = await SubprocessCommandRunner().run("   ")

    assert not result.success
    assert result.exit_code is None


def test_buffer_editor_selection_and_replace(workspace: Path) -> None:
    path = workspace / "main.py"
    path.write_text("a = 1\nb = 2\nc = 3\n", encoding="utf-8")
    editor = BufferEditor()

    assert editor.get_selection() is None
    assert editor.get_content() is None
    assert not editor.replace_range(1, 1, "x")

    editor.open(path)
    editor.select_lines(2, 2)
    selection = editor.get_selection()

    assert selection is not None and selection.text == "b = 2"
    assert editor.current_file_name == "main.py"
    assert editor.replace_range(2, 2, "b = 20\nb2 = 21")
    assert editor.get_content() == "a = 1\nb = 20\nb2 = 21\nc = 3\n"
    assert editor.get_selection().text == "b = 20\nb2 = 21"
    assert not editor.replace_range(9, 9, "z")


def test_buffer_editor_save_clears_dirty(workspace: Path) -> None:
    path = workspace / "notes.md"
    editor = BufferEditor()
    editor.open(path, text="# Notes\n")
    editor.set_dirty(True)

    assert editor.dirty
    assert editor.save() == path
    assert path.read_text(encoding="utf-8") == "# Notes\n"
    assert not editor.dirty


def test_whitespace_selection_counts_as_none(workspace: Path) -> None:
    editor = BufferEditor()
    editor.open(workspace / "blank.txt", text="x\n\n   \ny")
    editor.select_lines(2, 3)

    assert editor.get_selection() is None
