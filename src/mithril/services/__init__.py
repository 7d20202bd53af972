"""Service layer helpers (settings, telemetry, workspace collaborators)."""

from .settings import Settings, SettingsStore
from .workspace import (
    CommandResult,
    CommandRunner,
    DirectoryEntry,
    EditorAdapter,
    FileSystem,
    LocalFileSystem,
    ReadResult,
    Selection,
    SubprocessCommandRunner,
    WriteResult,
)

__all__ = [
    "CommandResult",
    "CommandRunner",
    "DirectoryEntry",
    "EditorAdapter",
    "FileSystem",
    "LocalFileSystem",
    "ReadResult",
    "Selection",
    "Settings",
    "SettingsStore",
    "SubprocessCommandRunner",
    "WriteResult",
]
