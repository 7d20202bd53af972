"""Async client for a local Ollama-style text generation service."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

__all__ = [
    "ClientSettings",
    "InferenceClient",
    "InferenceError",
    "InferenceHTTPError",
    "InferenceUnavailableError",
    "SupportsCancel",
]

LOGGER = logging.getLogger(__name__)


class InferenceError(RuntimeError):
    """Base error raised when the inference service cannot serve a request."""


class InferenceHTTPError(InferenceError):
    """The service answered with a non-success HTTP status."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class InferenceUnavailableError(InferenceError):
    """The service could not be reached or the connection dropped."""


class SupportsCancel(Protocol):
    @property
    def cancelled(self) -> bool:
        ...

    def add_callback(self, callback: Callable[[], None]) -> None:
        ...


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the inference client."""

    base_url: str = "http://localhost:11434"
    model: str = "codellama:7b"
    options: Mapping[str, Any] = field(default_factory=dict)
    request_timeout: float | None = 120.0
    max_retries: int = 2
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: Any) -> "ClientSettings":
        return cls(
            base_url=settings.base_url,
            model=settings.model,
            options=settings.generation_options(),
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            debug_logging=settings.debug_logging,
        )


class InferenceClient:
    """Thin async wrapper over ``/api/generate`` and ``/api/tags``."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.request_timeout, connect=10.0),
        )
        self._owns_http = http_client is None
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> str:
        """Run a non-streaming generation and return the full response text.

        Transport failures are retried up to ``max_retries`` times; HTTP errors
        are raised immediately.
        """

        payload = self._build_payload(prompt, model=model, options=options, stream=False)
        LOGGER.debug("Generating with %s (%d prompt chars)", payload["model"], len(prompt))
        if self._settings.debug_logging:
            LOGGER.debug("Prompt payload: %s", prompt)

        async for attempt in self._retrying():
            with attempt:
                response = await self._post("/api/generate", payload)
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise InferenceError(f"Inference service returned invalid JSON: {exc}") from exc
        if not isinstance(body, Mapping):
            raise InferenceError("Inference service returned an unexpected payload")
        return str(body.get("response") or "")

    async def stream_generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: Mapping[str, Any] | None = None,
        cancel_token: SupportsCancel | None = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield each newline-delimited JSON object produced by a streaming generation.

        Lines that are not valid JSON objects are logged and skipped. Cancelling
        ``cancel_token`` abandons a pending line read and closes the response
        without waiting for the service to send more data.
        """

        payload = self._build_payload(prompt, model=model, options=options, stream=True)
        LOGGER.debug("Starting streamed generation via %s", payload["model"])
        if self._settings.debug_logging:
            LOGGER.debug("Prompt payload: %s", prompt)

        cancelled = asyncio.Event()
        if cancel_token is not None:
            cancel_token.add_callback(cancelled.set)
        try:
            async with self._http.stream("POST", "/api/generate", json=payload) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise InferenceHTTPError(
                        f"HTTP error {response.status_code}: {detail.strip()[:200]}",
                        status_code=response.status_code,
                    )
                lines = response.aiter_lines()
                while not cancelled.is_set():
                    line = await _next_line(lines, cancelled)
                    if line is None:
                        break
                    parsed = _parse_stream_line(line)
                    if parsed is not None:
                        yield parsed
                if cancelled.is_set():
                    LOGGER.debug("Stream cancelled; closing response")
        except httpx.HTTPError as exc:
            raise InferenceUnavailableError(f"Inference service unavailable: {exc}") from exc

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return the names of locally installed models."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            async for attempt in self._retrying():
                with attempt:
                    response = await self._request("GET", "/api/tags")
            try:
                body = response.json()
            except json.JSONDecodeError as exc:
                raise InferenceError(f"Inference service returned invalid JSON: {exc}") from exc
            entries = body.get("models", []) if isinstance(body, Mapping) else []
            models = [item["name"] for item in entries if isinstance(item, Mapping) and item.get("name")]
            self._models_cache = models
            return list(models)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _build_payload(
        self,
        prompt: str,
        *,
        model: str | None,
        options: Mapping[str, Any] | None,
        stream: bool,
    ) -> Dict[str, Any]:
        merged: Dict[str, Any] = dict(self._settings.options)
        if options:
            merged.update(options)
        return {
            "model": model or self._settings.model,
            "prompt": prompt,
            "stream": stream,
            "options": merged,
        }

    async def _post(self, path: str, payload: Mapping[str, Any]) -> httpx.Response:
        return await self._request("POST", path, json=payload)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise InferenceUnavailableError(f"Inference service unavailable: {exc}") from exc
        if response.status_code >= 400:
            raise InferenceHTTPError(
                f"HTTP error {response.status_code}: {response.text.strip()[:200]}",
                status_code=response.status_code,
            )
        return response

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(0, self._settings.max_retries) + 1),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(InferenceUnavailableError),
        )


async def _read_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await anext(lines)
    except StopAsyncIteration:
        return None


async def _next_line(lines: AsyncIterator[str], cancelled: asyncio.Event) -> str | None:
    """Return the next line, or ``None`` at end of stream or once ``cancelled`` is set."""

    reader = asyncio.ensure_future(_read_line(lines))
    waiter = asyncio.ensure_future(cancelled.wait())
    try:
        done, _ = await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = [task for task in (reader, waiter) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
    if reader in done:
        return reader.result()
    return None


def _parse_stream_line(line: str) -> Dict[str, Any] | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        LOGGER.warning("Dropping malformed stream line: %r", stripped[:120])
        return None
    if not isinstance(parsed, dict):
        LOGGER.warning("Dropping non-object stream line: %r", stripped[:120])
        return None
    return parsed
