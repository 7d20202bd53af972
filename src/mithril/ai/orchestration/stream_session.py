"""Streaming generation sessions with cooperative cancellation.

A :class:`StreamSession` wraps one ``/api/generate`` exchange and exposes it
as an async generator of tagged events.  The :class:`StreamCoordinator` owns
the single active session: starting a new one cancels the previous one, and
events from any session that is no longer active are dropped before they can
touch the shared live transcript.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Mapping, Protocol, Union

from ...services import telemetry
from ..client import InferenceError

__all__ = [
    "StreamStatus",
    "CancellationToken",
    "ChunkEvent",
    "DoneEvent",
    "ErrorEvent",
    "CancelledEvent",
    "StreamEvent",
    "StreamOutcome",
    "StreamSession",
    "StreamCoordinator",
]

LOGGER = logging.getLogger(__name__)


class StreamStatus(str, Enum):
    CREATED = "created"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (StreamStatus.DONE, StreamStatus.ERROR, StreamStatus.CANCELLED)


class CancellationToken:
    """One-shot cancellation flag shared between a session and its transport."""

    __slots__ = ("_cancelled", "_callbacks", "reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str | None = None) -> bool:
        """Cancel the token; returns ``False`` if it was already cancelled."""

        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callbacks must not break cancel
                LOGGER.debug("Cancellation callback %s failed", callback, exc_info=True)
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)


@dataclass(slots=True, frozen=True)
class ChunkEvent:
    stream_id: str
    delta: str
    is_done: bool = False


@dataclass(slots=True, frozen=True)
class DoneEvent:
    stream_id: str
    full_text: str


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    stream_id: str
    error: str


@dataclass(slots=True, frozen=True)
class CancelledEvent:
    stream_id: str


StreamEvent = Union[ChunkEvent, DoneEvent, ErrorEvent, CancelledEvent]
_TERMINAL_EVENTS = (DoneEvent, ErrorEvent, CancelledEvent)


class StreamingBackend(Protocol):
    def stream_generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
        cancel_token: Any = None,
    ) -> AsyncIterator[dict[str, Any]]:
        ...


@dataclass(slots=True)
class StreamOutcome:
    """Final state of a finished session as seen by the caller."""

    stream_id: str
    status: StreamStatus
    text: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is StreamStatus.DONE

    @property
    def cancelled(self) -> bool:
        return self.status is StreamStatus.CANCELLED


class StreamSession:
    """One streaming request/response exchange."""

    def __init__(
        self,
        client: StreamingBackend,
        *,
        model: str | None,
        prompt: str,
        options: Mapping[str, Any] | None = None,
        stream_id: str | None = None,
    ) -> None:
        self.stream_id = stream_id or f"stream_{uuid.uuid4().hex}"
        self.model = model
        self.prompt = prompt
        self.options = dict(options) if options else None
        self.status = StreamStatus.CREATED
        self.accumulated_text = ""
        self.error: str | None = None
        self.token = CancellationToken()
        self._client = client

    def cancel(self, reason: str | None = None) -> bool:
        if self.status.terminal:
            return False
        return self.token.cancel(reason)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield chunk events followed by exactly one terminal event."""

        if self.status is not StreamStatus.CREATED:
            raise RuntimeError(f"Stream {self.stream_id} was already consumed")
        if self.token.cancelled:
            self.status = StreamStatus.CANCELLED
            yield CancelledEvent(self.stream_id)
            return

        self.status = StreamStatus.STREAMING
        source = self._client.stream_generate(
            self.prompt, model=self.model, options=self.options, cancel_token=self.token
        )
        try:
            async with contextlib.aclosing(source):
                async for payload in source:
                    if self.token.cancelled:
                        break
                    error = payload.get("error")
                    if error:
                        self._fail(str(error))
                        break
                    delta = payload.get("response")
                    if not isinstance(delta, str):
                        delta = ""
                    done = bool(payload.get("done"))
                    if delta or done:
                        self.accumulated_text += delta
                        yield ChunkEvent(self.stream_id, delta, done)
                    if done or self.token.cancelled:
                        break
        except InferenceError as exc:
            self._fail(str(exc))
        except asyncio.CancelledError:
            self.token.cancel("task cancelled")
            self.status = StreamStatus.CANCELLED
            raise
        finally:
            if self.status is StreamStatus.STREAMING and self.token.cancelled:
                self.status = StreamStatus.CANCELLED

        if self.status is StreamStatus.ERROR:
            yield ErrorEvent(self.stream_id, self.error or "unknown error")
            return
        if self.token.cancelled:
            self.status = StreamStatus.CANCELLED
            yield CancelledEvent(self.stream_id)
            return
        self.status = StreamStatus.DONE
        yield DoneEvent(self.stream_id, self.accumulated_text)

    def _fail(self, message: str) -> None:
        LOGGER.warning("Stream %s failed: %s", self.stream_id, message)
        self.error = message
        self.status = StreamStatus.ERROR


class StreamCoordinator:
    """Owns the single active :class:`StreamSession` of an orchestrator."""

    def __init__(
        self,
        client: StreamingBackend,
        *,
        default_model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> None:
        self._client = client
        self._default_model = default_model
        self._options = dict(options) if options else None
        self._active: StreamSession | None = None
        self._listeners: list[Callable[[StreamEvent], None]] = []
        self.live_text = ""

    @property
    def active(self) -> StreamSession | None:
        return self._active

    @property
    def active_stream_id(self) -> str | None:
        return self._active.stream_id if self._active is not None else None

    def add_listener(self, callback: Callable[[StreamEvent], None]) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[StreamEvent], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def start(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> StreamSession:
        """Create a new active session, preempting any previous one."""

        self.cancel_active("preempted")
        merged = dict(self._options or {})
        if options:
            merged.update(options)
        session = StreamSession(
            self._client,
            model=model or self._default_model,
            prompt=prompt,
            options=merged or None,
        )
        self._active = session
        self.live_text = ""
        telemetry.emit("stream.started", {"stream_id": session.stream_id, "model": session.model})
        return session

    def cancel_active(self, reason: str = "cancelled") -> bool:
        session = self._active
        if session is None:
            return False
        self._active = None
        cancelled = session.cancel(reason)
        if cancelled:
            LOGGER.debug("Cancelled stream %s (%s)", session.stream_id, reason)
        return cancelled

    def apply(self, event: StreamEvent) -> bool:
        """Apply ``event`` to shared state if it belongs to the active session."""

        session = self._active
        if session is None or event.stream_id != session.stream_id:
            LOGGER.debug("Dropping event from inactive stream %s", event.stream_id)
            return False
        if isinstance(event, ChunkEvent):
            self.live_text += event.delta
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # pragma: no cover - listeners must not break streaming
                LOGGER.debug("Stream listener %s failed", listener, exc_info=True)
        if isinstance(event, _TERMINAL_EVENTS):
            self._active = None
            telemetry.emit(
                "stream.finished",
                {"stream_id": event.stream_id, "status": session.status.value},
            )
        return True

    async def run(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> StreamOutcome:
        """Start a session and consume it until its terminal event."""

        session = self.start(prompt, model=model, options=options)
        try:
            async for event in session.events():
                if not self.apply(event):
                    session.cancel("superseded")
        except asyncio.CancelledError:
            if self._active is session:
                self.apply(CancelledEvent(session.stream_id))
            raise
        status = session.status
        if status is StreamStatus.STREAMING:
            status = StreamStatus.CANCELLED
        return StreamOutcome(
            stream_id=session.stream_id,
            status=status,
            text=session.accumulated_text,
            error=session.error,
        )
