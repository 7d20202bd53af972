"""Map a user utterance plus workspace state onto an :class:`Intent`."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from ...services import telemetry
from ...services.workspace import EditorAdapter, Selection
from ..client import InferenceError
from . import prompts
from .types import Intent, IntentTarget, ToolName

__all__ = [
    "WorkspaceContext",
    "IntentClassifier",
    "fallback_intent",
    "parse_intent_response",
    "extract_json_value",
]

LOGGER = logging.getLogger(__name__)
_FENCE_MARKERS = re.compile(r"```(?:json)?", re.IGNORECASE)
_DECODER = json.JSONDecoder()


class TextGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> str:
        ...


@dataclass(slots=True, frozen=True)
class WorkspaceContext:
    """What the classifier is told about the editor and workspace."""

    current_file_path: str | None = None
    current_file_name: str | None = None
    selection: Selection | None = None
    workspace_root: str | None = None

    @classmethod
    def from_editor(cls, editor: EditorAdapter | None, workspace_root: str | None = None) -> "WorkspaceContext":
        if editor is None:
            return cls(workspace_root=workspace_root)
        return cls(
            current_file_path=editor.current_file_path,
            current_file_name=editor.current_file_name,
            selection=editor.get_selection(),
            workspace_root=workspace_root,
        )

    @property
    def has_selection(self) -> bool:
        return self.selection is not None and bool(self.selection.text.strip())

    def default_target(self) -> IntentTarget:
        if self.has_selection:
            return IntentTarget.SELECTION
        if self.current_file_path:
            return IntentTarget.FILE
        return IntentTarget.CHAT


def fallback_intent(message: str) -> Intent:
    return Intent(
        tool=ToolName.CHAT_RESPONSE,
        target=IntentTarget.CHAT,
        confidence=0.5,
        original_request=message,
        summary="General chat response",
    )


def extract_json_value(text: str, opener: str) -> Any:
    """Decode the first JSON value starting with ``opener`` inside ``text``.

    Markdown code fences are ignored. Raises ``ValueError`` when nothing
    decodable is found.
    """

    cleaned = _FENCE_MARKERS.sub("", text or "")
    start = cleaned.find(opener)
    while start != -1:
        try:
            value, _ = _DECODER.raw_decode(cleaned, start)
        except json.JSONDecodeError:
            start = cleaned.find(opener, start + 1)
            continue
        return value
    raise ValueError(f"No JSON value starting with {opener!r} found")


def parse_intent_response(text: str, message: str, context: WorkspaceContext) -> Intent | None:
    """Parse the classifier's reply, returning ``None`` if it is unusable."""

    try:
        payload = extract_json_value(text, "{")
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    tool = ToolName.parse(payload.get("tool"))
    if tool is None:
        LOGGER.debug("Classifier proposed unknown tool %r", payload.get("tool"))
        return None

    target = IntentTarget.parse(payload.get("target"))
    if (
        target is None
        or target is IntentTarget.CURRENT_TODO
        or (target is IntentTarget.SELECTION and not context.has_selection)
        or (target is IntentTarget.FILE and not context.current_file_path)
    ):
        target = context.default_target()

    try:
        confidence = float(payload.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    confidence = min(1.0, max(0.0, confidence))
    return Intent(
        tool=tool,
        target=target,
        confidence=confidence,
        original_request=message,
        summary=str(payload.get("intent") or ""),
    )


class IntentClassifier:
    """One non-streaming model call per user turn."""

    def __init__(self, client: TextGenerator, *, model: str | None = None) -> None:
        self._client = client
        self._model = model

    async def classify(self, message: str, context: WorkspaceContext) -> Intent:
        selection = context.selection
        prompt = prompts.intent_prompt(
            message,
            current_file=context.current_file_name,
            selection_lines=(selection.start_line, selection.end_line) if selection else None,
            selection_preview=selection.preview if selection else "",
            workspace=context.workspace_root,
        )
        try:
            response = await self._client.generate(prompt, model=self._model)
        except InferenceError as exc:
            LOGGER.warning("Intent classification failed, using chat fallback: %s", exc)
            intent = fallback_intent(message)
        else:
            intent = parse_intent_response(response, message, context)
            if intent is None:
                LOGGER.warning("Unusable classifier response %r, using chat fallback", response[:200])
                intent = fallback_intent(message)
        telemetry.emit(
            "intent.classified",
            {"tool": intent.tool.value, "target": intent.target.value, "confidence": intent.confidence},
        )
        return intent
