"""User-pinned code fragments that travel with a conversation turn."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator

from ...services import telemetry
from ...services.workspace import EditorAdapter
from .types import ReplacementTarget

__all__ = ["CodeChunk", "ChunkContext"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CodeChunk:
    """Snapshot of a file region taken when the user attached it."""

    id: str
    file_path: str
    file_name: str
    start_line: int
    end_line: int
    text: str
    modified: bool = False
    attached_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def as_target(self) -> ReplacementTarget:
        return ReplacementTarget(
            file_path=self.file_path,
            file_name=self.file_name,
            start_line=self.start_line,
            end_line=self.end_line,
            text=self.text,
            chunk_id=self.id,
            kind="chunk",
        )


class ChunkContext:
    """Ordered collection of :class:`CodeChunk` entries.

    Chunks are advisory: they never own the file they point at, and their
    ``text`` only changes through :meth:`update_text` after a replacement was
    written successfully.
    """

    def __init__(self) -> None:
        self._chunks: list[CodeChunk] = []

    def attach(self, file_path: str, start_line: int, end_line: int, text: str) -> CodeChunk:
        if start_line < 1 or end_line < start_line:
            raise ValueError(f"Invalid chunk line range {start_line}-{end_line}")
        if not text.strip():
            raise ValueError("Cannot attach an empty chunk")
        overlapping = self._find_overlapping(file_path, start_line, end_line)
        if overlapping:
            existing = overlapping[0]
            for stale in overlapping[1:]:
                self._chunks.remove(stale)
            existing.start_line = start_line
            existing.end_line = end_line
            existing.text = text
            existing.modified = False
            LOGGER.debug("Refreshed chunk %s for %s", existing.id, existing.file_name)
            return existing
        chunk = CodeChunk(
            id=f"chunk_{uuid.uuid4().hex[:12]}",
            file_path=file_path,
            file_name=os.path.basename(file_path) or file_path,
            start_line=start_line,
            end_line=end_line,
            text=text,
        )
        self._chunks.append(chunk)
        telemetry.emit(
            "chunk.attached",
            {"chunk_id": chunk.id, "file": chunk.file_name, "lines": chunk.line_count},
        )
        return chunk

    def attach_selection(self, editor: EditorAdapter) -> CodeChunk | None:
        """Pin the editor's current selection, if there is one."""

        selection = editor.get_selection()
        path = editor.current_file_path
        if selection is None or not path:
            return None
        return self.attach(path, selection.start_line, selection.end_line, selection.text)

    def remove(self, chunk_id: str) -> bool:
        for index, chunk in enumerate(self._chunks):
            if chunk.id == chunk_id:
                del self._chunks[index]
                return True
        return False

    def clear(self) -> None:
        self._chunks.clear()

    def get(self, chunk_id: str) -> CodeChunk | None:
        return next((chunk for chunk in self._chunks if chunk.id == chunk_id), None)

    def ordinal(self, chunk_id: str) -> int | None:
        """Return the 1-based position of ``chunk_id`` as shown to the model."""

        for index, chunk in enumerate(self._chunks, start=1):
            if chunk.id == chunk_id:
                return index
        return None

    def update_text(self, chunk_id: str, text: str) -> CodeChunk | None:
        """Record a written replacement; later chunks in the same file move with it."""

        chunk = self.get(chunk_id)
        if chunk is None:
            return None
        new_end = chunk.start_line + len(text.split("\n")) - 1
        delta = new_end - chunk.end_line
        if delta:
            for other in self._chunks:
                if other is not chunk and other.file_path == chunk.file_path and other.start_line > chunk.end_line:
                    other.start_line += delta
                    other.end_line += delta
        chunk.text = text
        chunk.end_line = new_end
        chunk.modified = True
        return chunk

    def targets(self) -> list[ReplacementTarget]:
        return [chunk.as_target() for chunk in self._chunks]

    @property
    def chunks(self) -> tuple[CodeChunk, ...]:
        return tuple(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)

    def __iter__(self) -> Iterator[CodeChunk]:
        return iter(list(self._chunks))

    def __bool__(self) -> bool:
        return bool(self._chunks)

    def _find_overlapping(self, file_path: str, start_line: int, end_line: int) -> list[CodeChunk]:
        return [
            chunk
            for chunk in self._chunks
            if chunk.file_path == file_path
            and chunk.start_line <= end_line
            and start_line <= chunk.end_line
        ]
