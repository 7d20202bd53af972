"""Editor-side document helpers."""

from .document_model import BufferEditor, DocumentState, LineSelection

__all__ = ["BufferEditor", "DocumentState", "LineSelection"]
