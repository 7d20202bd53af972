"""Headless editor buffer used when no interactive editor is attached."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from ..services.workspace import Selection
from ..utils import file_io

__all__ = ["DocumentState", "LineSelection", "BufferEditor"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class LineSelection:
    """1-based inclusive line selection; ``start_line == 0`` means nothing selected."""

    start_line: int = 0
    end_line: int = 0

    @property
    def empty(self) -> bool:
        return self.start_line <= 0 or self.end_line < self.start_line


@dataclass(slots=True)
class DocumentState:
    """Snapshot of an open buffer."""

    text: str = ""
    path: Path | None = None
    selection: LineSelection = field(default_factory=LineSelection)
    dirty: bool = False

    def update_text(self, new_text: str) -> None:
        self.text = new_text

    @property
    def line_count(self) -> int:
        return len(self.text.split("\n"))


class BufferEditor:
    """In-memory implementation of the editor collaborator."""

    def __init__(self, document: DocumentState | None = None) -> None:
        self._document = document

    @property
    def document(self) -> DocumentState | None:
        return self._document

    def open(self, path: Path | str, text: str | None = None) -> DocumentState:
        """Open ``path`` in the buffer, reading it from disk when ``text`` is omitted."""

        target = Path(path)
        content = file_io.read_text(target) if text is None else text
        self._document = DocumentState(text=content, path=target)
        LOGGER.debug("Opened %s (%d line(s))", target, self._document.line_count)
        return self._document

    def close(self) -> None:
        self._document = None

    def select_lines(self, start_line: int, end_line: int) -> None:
        if self._document is None:
            raise RuntimeError("No document is open")
        self._document.selection = LineSelection(start_line, end_line)

    def clear_selection(self) -> None:
        if self._document is not None:
            self._document.selection = LineSelection()

    @property
    def current_file_path(self) -> str | None:
        if self._document is None or self._document.path is None:
            return None
        return str(self._document.path)

    @property
    def current_file_name(self) -> str | None:
        if self._document is None or self._document.path is None:
            return None
        return self._document.path.name

    def get_selection(self) -> Selection | None:
        document = self._document
        if document is None or document.selection.empty:
            return None
        lines = document.text.split("\n")
        start = document.selection.start_line
        end = min(document.selection.end_line, len(lines))
        text = "\n".join(lines[start - 1 : end])
        if not text.strip():
            return None
        return Selection(text=text, start_line=start, end_line=end)

    def get_content(self) -> str | None:
        return None if self._document is None else self._document.text

    def replace_range(self, start_line: int, end_line: int, text: str) -> bool:
        document = self._document
        if document is None:
            return False
        try:
            updated = file_io.splice_lines(document.text, start_line, end_line, text)
        except ValueError as exc:
            LOGGER.warning("Rejected replace_range(%s, %s): %s", start_line, end_line, exc)
            return False
        document.update_text(updated)
        new_end = start_line + len(text.split("\n")) - 1
        if not document.selection.empty:
            document.selection = LineSelection(start_line, new_end)
        return True

    def set_dirty(self, dirty: bool = True) -> None:
        if self._document is not None:
            self._document.dirty = dirty

    @property
    def dirty(self) -> bool:
        return bool(self._document and self._document.dirty)

    def save(self) -> Path | None:
        """Write the buffer back to its path and clear the dirty flag."""

        document = self._document
        if document is None or document.path is None:
            return None
        target = file_io.write_text(document.path, document.text)
        document.dirty = False
        return target
