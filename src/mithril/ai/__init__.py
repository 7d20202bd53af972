"""AI services for Mithril: inference client, prompts, orchestration and memory."""

from .client import (
    ClientSettings,
    InferenceClient,
    InferenceError,
    InferenceHTTPError,
    InferenceUnavailableError,
)

__all__ = [
    "ClientSettings",
    "InferenceClient",
    "InferenceError",
    "InferenceHTTPError",
    "InferenceUnavailableError",
]
