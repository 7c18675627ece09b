"""Upstream realtime speech-model providers.

The relay speaks one event contract (session.created, session.updated,
response.audio.delta, response.audio_transcript.delta/done, input speech
started/stopped, user transcription completed, error). Each provider maps
its own event names and session quirks onto that contract.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import urlencode

import websockets
from loguru import logger

from utils import (
    AZURE_OPENAI_API_KEY,
    AZURE_OPENAI_API_VERSION,
    AZURE_OPENAI_DEPLOYMENT,
    AZURE_OPENAI_ENDPOINT,
    GROK_MODEL,
    GROK_VOICE,
    OPENAI_API_KEY,
    OPENAI_REALTIME_MODEL,
    OPENAI_REALTIME_URL,
    REALTIME_PROVIDER,
    XAI_API_KEY,
    XAI_REALTIME_URL,
)


class ConfigurationError(RuntimeError):
    """Credentials or identifiers needed to reach the model are missing."""


class RealtimeProvider(ABC):
    """Base adapter: connection details plus event-name normalization."""

    name = "base"
    # Provider event type -> canonical event type
    EVENT_ALIASES: dict[str, str] = {}

    @abstractmethod
    def url(self) -> str:
        """WebSocket URL of the realtime endpoint."""

    @abstractmethod
    def headers(self) -> dict[str, str]:
        """Authentication headers for the handshake."""

    def normalize_event(self, event: dict[str, Any]) -> dict[str, Any]:
        canonical = self.EVENT_ALIASES.get(event.get("type", ""))
        if canonical is None:
            return event
        return {**event, "type": canonical}

    def adapt_session(self, update: dict[str, Any]) -> dict[str, Any]:
        """Provider-specific tweaks to a session.update event."""
        return update

    async def connect(self) -> websockets.ClientConnection:
        logger.info(f"Connecting to {self.name} realtime API")
        return await websockets.connect(
            self.url(),
            additional_headers=self.headers(),
            max_size=None,
        )


class OpenAIRealtimeProvider(RealtimeProvider):
    name = "openai"
    EVENT_ALIASES = {
        "response.output_audio.delta": "response.audio.delta",
        "response.output_audio_transcript.delta": "response.audio_transcript.delta",
        "response.output_audio_transcript.done": "response.audio_transcript.done",
    }

    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = OPENAI_REALTIME_MODEL):
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        self.api_key = api_key
        self.model = model

    def url(self) -> str:
        return f"{OPENAI_REALTIME_URL}?model={self.model}"

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }


class AzureOpenAIRealtimeProvider(RealtimeProvider):
    name = "azure"
    EVENT_ALIASES = OpenAIRealtimeProvider.EVENT_ALIASES

    def __init__(
        self,
        api_key: str = AZURE_OPENAI_API_KEY,
        endpoint: str = AZURE_OPENAI_ENDPOINT,
        deployment: str = AZURE_OPENAI_DEPLOYMENT,
        api_version: str = AZURE_OPENAI_API_VERSION,
    ):
        if not api_key or not endpoint:
            raise ConfigurationError("AZURE_OPENAI_API_KEY and AZURE_OPENAI_ENDPOINT are required")
        self.api_key = api_key
        self.endpoint = endpoint
        self.deployment = deployment
        self.api_version = api_version

    def url(self) -> str:
        host = self.endpoint.rstrip("/").replace("https://", "wss://", 1)
        if not host.startswith("wss://"):
            host = f"wss://{host}"
        query = urlencode({"api-version": self.api_version, "deployment": self.deployment})
        return f"{host}/openai/realtime?{query}"

    def headers(self) -> dict[str, str]:
        return {"api-key": self.api_key}


class GrokRealtimeProvider(RealtimeProvider):
    """xAI Grok Voice Agent API (OpenAI-compatible with renamed events)."""

    name = "grok"
    EVENT_ALIASES = {
        "conversation.created": "session.created",
        "response.output_audio.delta": "response.audio.delta",
        "response.output_audio_transcript.delta": "response.audio_transcript.delta",
        "response.output_audio_transcript.done": "response.audio_transcript.done",
    }

    def __init__(self, api_key: str = XAI_API_KEY, model: str = GROK_MODEL, voice: str = GROK_VOICE):
        if not api_key:
            raise ConfigurationError("XAI_API_KEY is not configured")
        self.api_key = api_key
        self.model = model
        self.voice = voice

    def url(self) -> str:
        return f"{XAI_REALTIME_URL}?model={self.model}"

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def adapt_session(self, update: dict[str, Any]) -> dict[str, Any]:
        adapted = copy.deepcopy(update)
        session = adapted.get("session", {})
        session["voice"] = self.voice
        session.pop("max_response_output_tokens", None)
        return adapted


PROVIDERS: dict[str, type[RealtimeProvider]] = {
    "openai": OpenAIRealtimeProvider,
    "azure": AzureOpenAIRealtimeProvider,
    "grok": GrokRealtimeProvider,
}


def create_provider(name: str | None = None) -> RealtimeProvider:
    """Instantiate the configured provider. Raises ConfigurationError."""
    key = (name or REALTIME_PROVIDER).strip().lower()
    provider_cls = PROVIDERS.get(key)
    if provider_cls is None:
        raise ConfigurationError(f"Unknown realtime provider: {key!r}")
    return provider_cls()
