"""Shared fakes for relay and server tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from relay import ClientLeg, RelaySession
from providers import RealtimeProvider


class FakeUpstream:
    """Scripted stand-in for the realtime model WebSocket.

    `replies` maps a sent event type to events pushed back in response.
    Pushing None ends the stream.
    """

    def __init__(self, initial: list[Any] | None = None, replies: dict[str, list[Any]] | None = None):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.replies = replies or {}
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        for item in initial or []:
            self.push(item)

    def push(self, item: Any) -> None:
        if item is None or isinstance(item, (str, bytes)):
            self.incoming.put_nowait(item)
        else:
            self.incoming.put_nowait(json.dumps(item))

    async def send(self, data: str) -> None:
        message = json.loads(data)
        self.sent.append(message)
        for item in self.replies.get(message.get("type"), []):
            self.push(item)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [m.get("type") for m in self.sent]


class FakeProvider(RealtimeProvider):
    name = "fake"

    def __init__(self, upstream: FakeUpstream | None = None, error: Exception | None = None):
        self.upstream = upstream
        self.error = error

    def url(self) -> str:
        return "wss://realtime.test/v1"

    def headers(self) -> dict[str, str]:
        return {}

    async def connect(self):
        if self.error is not None:
            raise self.error
        return self.upstream


class FakeLeg(ClientLeg):
    """Records everything the relay hands to the client side."""

    name = "fake"

    def __init__(self, leave_immediately: bool = False):
        self.leave = asyncio.Event()
        if leave_immediately:
            self.leave.set()
        self.ready = False
        self.audio: list[bytes] = []
        self.transcripts: list[tuple[str, str, bool]] = []
        self.errors: list[tuple[str, str]] = []
        self.speech_events: list[str] = []
        self.closed = False

    async def pump(self, session: RelaySession) -> None:
        await self.leave.wait()

    async def deliver_audio(self, pcm: bytes) -> None:
        self.audio.append(pcm)

    async def on_ready(self) -> None:
        self.ready = True

    async def on_transcript(self, role: str, text: str, final: bool) -> None:
        self.transcripts.append((role, text, final))

    async def on_speech_started(self) -> None:
        self.speech_events.append("started")

    async def on_speech_stopped(self) -> None:
        self.speech_events.append("stopped")

    async def on_error(self, code: str, message: str) -> None:
        self.errors.append((code, message))

    async def close(self) -> None:
        self.closed = True


def handshake_replies(*after_kickoff: Any) -> dict[str, list[Any]]:
    """Replies for a model that accepts configuration and then streams `after_kickoff`."""
    return {
        "session.update": [{"type": "session.updated"}],
        "response.create": list(after_kickoff),
    }
