"""Full-duplex relay between a client connection and a realtime speech model.

One RelaySession bridges one conversation:

    client leg (browser / Plivo stream / local mic)
        <-> RelaySession <->
    upstream realtime model (OpenAI / Azure OpenAI / Grok)

Lifecycle:
    connecting -> configuring -> active -> closing -> closed
Any path out of connecting/configuring/active goes through closing, which
closes both sides. A session is never left half-open.

The client leg is pumped from the start of configuring, so a client that
leaves during the handshake ends the session at once. Client input only
reaches the model once the session is active.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any

import websockets
from loguru import logger
from starlette.websockets import WebSocketDisconnect

from audio_codec import decode_from_transport, model_to_telephony, telephony_to_model
from interview import InterviewScript
from providers import RealtimeProvider
from session_config import SessionConfigurator
from store import TranscriptEntry
from utils import PLIVO_CHUNK_SIZE, PLIVO_SAMPLE_RATE, SESSION_SETUP_TIMEOUT_S

if TYPE_CHECKING:
    from fastapi import WebSocket

# Raised by a single badly shaped event; the event is dropped, the session survives.
MALFORMED_EVENT_ERRORS = (TypeError, ValueError, AttributeError, KeyError)


class RelayState(str, Enum):
    CONNECTING = "connecting"
    CONFIGURING = "configuring"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class RelaySetupError(RuntimeError):
    """The upstream session could not be brought to the active state."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


# =============================================================================
# Client legs
# =============================================================================


class ClientLeg(ABC):
    """The human-facing side of a relay."""

    name = "client"

    @abstractmethod
    async def pump(self, session: RelaySession) -> None:
        """Forward client input upstream until the client goes away."""

    @abstractmethod
    async def deliver_audio(self, pcm: bytes) -> None:
        """Play or forward a chunk of agent PCM16 24kHz audio."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection and any audio resources."""

    async def on_ready(self) -> None:
        pass

    async def on_transcript(self, role: str, text: str, final: bool) -> None:
        pass

    async def on_speech_started(self) -> None:
        pass

    async def on_speech_stopped(self) -> None:
        pass

    async def on_error(self, code: str, message: str) -> None:
        pass


class BrowserLeg(ClientLeg):
    """Browser client speaking JSON events over a WebSocket.

    Inbound: input_audio_buffer.append frames (already base64 PCM16 24kHz),
    typed messages, and session.end. Outbound: audio deltas, transcripts,
    and status events (ready, speaking started/stopped, error).
    """

    name = "browser"
    FORWARDED_EVENTS = frozenset({
        "input_audio_buffer.append",
        "conversation.item.create",
        "response.create",
        "response.cancel",
    })

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def _send(self, message: dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(message))

    async def pump(self, session: RelaySession) -> None:
        try:
            while True:
                data = await self.websocket.receive_text()
                try:
                    if await self._handle_message(session, data):
                        return
                except MALFORMED_EVENT_ERRORS as e:
                    logger.warning(f"Dropping malformed browser message ({e}): {data[:80]!r}")
        except WebSocketDisconnect:
            logger.info("Browser disconnected")

    async def _handle_message(self, session: RelaySession, data: str) -> bool:
        """Forward one browser event. Returns True when the browser ended the session."""
        message = json.loads(data)
        event_type = message.get("type") if isinstance(message, dict) else None
        if not isinstance(event_type, str):
            logger.warning(f"Dropping browser message without a valid type: {data[:80]!r}")
            return False

        if event_type in self.FORWARDED_EVENTS:
            await session.send_upstream(message)
        elif event_type == "session.end":
            logger.info("Browser requested end of conversation")
            session.end()
            return True
        else:
            logger.warning(f"Dropping unexpected browser event: {event_type}")
        return False

    async def deliver_audio(self, pcm: bytes) -> None:
        await self._send({
            "type": "response.audio.delta",
            "delta": base64.b64encode(pcm).decode("ascii"),
        })

    async def on_ready(self) -> None:
        await self._send({"type": "ready"})

    async def on_transcript(self, role: str, text: str, final: bool) -> None:
        await self._send({"type": f"{role}.message", "content": text, "final": final})

    async def on_speech_started(self) -> None:
        await self._send({"type": "user.speaking_started"})

    async def on_speech_stopped(self) -> None:
        await self._send({"type": "user.speaking_stopped"})

    async def on_error(self, code: str, message: str) -> None:
        with contextlib.suppress(Exception):
            await self._send({"type": "error", "error": {"code": code, "message": message}})

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self.websocket.close()


class TelephonyLeg(ClientLeg):
    """Plivo bidirectional media stream (μ-law 8kHz)."""

    name = "telephony"

    def __init__(self, websocket: WebSocket, stream_id: str = ""):
        self.websocket = websocket
        self.stream_id = stream_id
        self._out_buffer = bytearray()

    async def pump(self, session: RelaySession) -> None:
        try:
            while True:
                data = await self.websocket.receive_text()
                try:
                    if await self._handle_message(session, data):
                        return
                except MALFORMED_EVENT_ERRORS as e:
                    logger.warning(f"Dropping malformed Plivo message ({e}): {data[:80]!r}")
        except WebSocketDisconnect:
            logger.info("Plivo stream disconnected")

    async def _handle_message(self, session: RelaySession, data: str) -> bool:
        """Handle one Plivo stream event. Returns True on stream stop."""
        message = json.loads(data)
        if not isinstance(message, dict):
            return False

        event = message.get("event")
        if event == "media":
            media = message.get("media")
            payload = media.get("payload") if isinstance(media, dict) else None
            if not payload or not isinstance(payload, str):
                return False
            try:
                mulaw_audio = base64.b64decode(payload, validate=True)
            except binascii.Error as e:
                logger.warning(f"Dropping undecodable Plivo frame: {e}")
                return False
            pcm_24k = telephony_to_model(mulaw_audio)
            await session.send_upstream({
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(pcm_24k).decode("ascii"),
            })
        elif event == "start":
            start = message.get("start")
            stream_id = start.get("streamId") if isinstance(start, dict) else None
            if isinstance(stream_id, str):
                self.stream_id = stream_id
        elif event == "stop":
            logger.info("Plivo stream stopped")
            return True
        return False

    async def deliver_audio(self, pcm: bytes) -> None:
        self._out_buffer.extend(model_to_telephony(pcm))
        while len(self._out_buffer) >= PLIVO_CHUNK_SIZE:
            chunk = bytes(self._out_buffer[:PLIVO_CHUNK_SIZE])
            del self._out_buffer[:PLIVO_CHUNK_SIZE]
            await self.websocket.send_text(json.dumps({
                "event": "playAudio",
                "media": {
                    "contentType": "audio/x-mulaw",
                    "sampleRate": PLIVO_SAMPLE_RATE,
                    "payload": base64.b64encode(chunk).decode("ascii"),
                },
            }))

    async def on_speech_started(self) -> None:
        # Barge-in: drop audio the caller has not heard yet
        self._out_buffer.clear()
        await self.websocket.send_text(json.dumps({"event": "clearAudio", "streamId": self.stream_id}))

    async def on_transcript(self, role: str, text: str, final: bool) -> None:
        if final:
            logger.info(f"{role.capitalize()}: {text}")

    async def on_error(self, code: str, message: str) -> None:
        logger.error(f"Telephony relay error ({code}): {message}")

    async def close(self) -> None:
        self._out_buffer.clear()
        with contextlib.suppress(Exception):
            await self.websocket.close()


# =============================================================================
# Relay session
# =============================================================================


class RelaySession:
    """Bridges one client leg and one upstream realtime session."""

    def __init__(
        self,
        leg: ClientLeg,
        script: InterviewScript,
        provider: RealtimeProvider,
        configurator: SessionConfigurator | None = None,
        setup_timeout: float = SESSION_SETUP_TIMEOUT_S,
    ):
        self.leg = leg
        self.script = script
        self.provider = provider
        self.configurator = configurator or SessionConfigurator()
        self.setup_timeout = setup_timeout

        self.state = RelayState.CONNECTING
        self.transcript: list[TranscriptEntry] = []
        self._upstream = None
        self._events = None
        self._send_lock = asyncio.Lock()
        self._end_requested = asyncio.Event()
        self._assistant_buf: list[str] = []
        self._client_task: asyncio.Task | None = None
        self._configure_task: asyncio.Task | None = None

    def _set_state(self, state: RelayState) -> None:
        logger.info(f"Relay [{self.leg.name}] {self.state.value} -> {state.value}")
        self.state = state

    def end(self) -> None:
        """Request an orderly end of the conversation."""
        self._end_requested.set()

    async def send_upstream(self, message: dict[str, Any]) -> None:
        """Send a client event to the model. Dropped unless the session is active."""
        if self.state is not RelayState.ACTIVE:
            logger.debug(f"Relay {self.state.value}, dropping upstream event {message.get('type')}")
            return
        await self._send(message)

    async def _send(self, message: dict[str, Any]) -> None:
        if self._upstream is None:
            return
        async with self._send_lock:
            await self._upstream.send(json.dumps(message))

    async def run(self) -> None:
        """Run the session to completion. Always leaves both sides closed."""
        logger.info(f"Starting relay for interview '{self.script.title}' via {self.provider.name}")
        try:
            try:
                self._upstream = await self.provider.connect()
            except (OSError, websockets.InvalidHandshake, websockets.InvalidURI) as e:
                await self._fail_setup(RelaySetupError("upstream_unavailable", f"Could not reach {self.provider.name}: {e}"))
                return

            self._events = self._upstream_events()
            self._set_state(RelayState.CONFIGURING)
            self._client_task = asyncio.create_task(self.leg.pump(self), name="client_rx")
            if not await self._configure_while_client_present():
                return

            self._set_state(RelayState.ACTIVE)
            await self.leg.on_ready()
            await self._run_streaming_tasks()
        finally:
            await self.close()

    async def _configure_while_client_present(self) -> bool:
        """Run the handshake unless the client leaves first. True once configured."""
        self._configure_task = asyncio.create_task(
            asyncio.wait_for(self._configure(), timeout=self.setup_timeout),
            name="configure",
        )
        await asyncio.wait(
            [self._configure_task, self._client_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        if not self._configure_task.done():
            _log_task_failure(self._client_task)
            logger.info(f"Relay [{self.leg.name}] client left during configuration")
            return False

        try:
            self._configure_task.result()
        except TimeoutError:
            await self._fail_setup(RelaySetupError(
                "setup_timeout",
                f"Upstream session not configured within {self.setup_timeout:.1f}s",
            ))
            return False
        except RelaySetupError as e:
            await self._fail_setup(e)
            return False
        return True

    async def _fail_setup(self, error: RelaySetupError) -> None:
        logger.error(f"Relay setup failed ({error.code}): {error}")
        await self.leg.on_error(error.code, str(error))

    async def _upstream_events(self):
        """Parsed, normalized events from the model. Malformed ones are dropped."""
        async for raw in self._upstream:
            if isinstance(raw, (bytes, bytearray)):
                continue
            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Dropping malformed upstream event: {raw[:80]!r}")
                continue
            if not isinstance(event, dict) or not isinstance(event.get("type"), str) or not event["type"]:
                logger.warning(f"Dropping upstream event without type: {str(event)[:80]}")
                continue
            yield self.provider.normalize_event(event)

    async def _configure(self) -> None:
        """Handshake: session.created -> session.update -> session.updated -> kickoff."""
        async for event in self._events:
            event_type = event["type"]
            if event_type == "session.created":
                logger.info("Upstream session created, sending configuration")
                update = self.provider.adapt_session(self.configurator.session_update(self.script))
                await self._send(update)
            elif event_type == "session.updated":
                logger.info("Upstream session configured, starting interview")
                for message in self.configurator.kickoff():
                    await self._send(message)
                return
            elif event_type == "error":
                raise RelaySetupError("upstream_error", _error_message(event))
            else:
                logger.debug(f"Ignoring {event_type} during configuration")
        raise RelaySetupError("upstream_closed", "Upstream closed before the session was configured")

    async def _run_streaming_tasks(self) -> None:
        tasks = [
            self._client_task,
            asyncio.create_task(self._receive_from_upstream(), name="upstream_rx"),
            asyncio.create_task(self._end_requested.wait(), name="end_request"),
        ]
        try:
            done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                _log_task_failure(task)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

    async def _receive_from_upstream(self) -> None:
        try:
            async for event in self._events:
                try:
                    await self._dispatch(event)
                except MALFORMED_EVENT_ERRORS as e:
                    logger.warning(f"Dropping malformed upstream {event['type']} event: {e}")
            logger.info("Upstream session closed")
        except websockets.ConnectionClosedError as e:
            logger.error(f"Upstream connection dropped: {e}")
            await self.leg.on_error("upstream_disconnected", "The interviewer connection was lost")

    async def _dispatch(self, event: dict[str, Any]) -> None:
        event_type = event["type"]

        if event_type == "response.audio.delta":
            delta = event.get("delta")
            if not isinstance(delta, str):
                logger.warning(f"Dropping audio delta with non-string payload: {type(delta).__name__}")
                return
            try:
                pcm = decode_from_transport(delta)
            except (binascii.Error, ValueError) as e:
                logger.warning(f"Dropping undecodable audio delta: {e}")
                return
            if pcm:
                await self.leg.deliver_audio(pcm)

        elif event_type == "response.audio_transcript.delta":
            delta = event.get("delta")
            if delta and isinstance(delta, str):
                self._assistant_buf.append(delta)
                await self.leg.on_transcript("assistant", delta, False)

        elif event_type == "response.audio_transcript.done":
            text = _text_field(event, "transcript") or "".join(self._assistant_buf)
            self._assistant_buf.clear()
            if text:
                self.transcript.append(TranscriptEntry(role="assistant", text=text))
                await self.leg.on_transcript("assistant", text, True)

        elif event_type == "conversation.item.input_audio_transcription.completed":
            text = _text_field(event, "transcript").strip()
            if text:
                self.transcript.append(TranscriptEntry(role="user", text=text))
                await self.leg.on_transcript("user", text, True)

        elif event_type == "input_audio_buffer.speech_started":
            await self.leg.on_speech_started()

        elif event_type == "input_audio_buffer.speech_stopped":
            await self.leg.on_speech_stopped()

        elif event_type == "error":
            message = _error_message(event)
            logger.error(f"Upstream error: {message}")
            await self.leg.on_error("upstream_error", message)

        else:
            logger.debug(f"Upstream event: {event_type}")

    async def close(self) -> None:
        """Close both sides. Safe to call more than once."""
        if self.state is RelayState.CLOSED:
            return
        self._set_state(RelayState.CLOSING)
        for task in (self._configure_task, self._client_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if self._events is not None:
            with contextlib.suppress(Exception):
                await self._events.aclose()
        if self._upstream is not None:
            with contextlib.suppress(Exception):
                await self._upstream.close()
        await self.leg.close()
        self._set_state(RelayState.CLOSED)


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception():
        logger.error(f"Task {task.get_name()} failed: {task.exception()}")


def _text_field(event: dict[str, Any], key: str) -> str:
    value = event.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        logger.warning(f"Ignoring non-string {key} in {event['type']}: {type(value).__name__}")
        return ""
    return value


def _error_message(event: dict[str, Any]) -> str:
    error = event.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error or event)
