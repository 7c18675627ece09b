"""FastAPI server for Plivo webhooks, media streams and browser sessions."""

from __future__ import annotations

import base64
import contextlib
import json
import sys
from collections.abc import AsyncIterator

import plivo
import uvicorn
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from loguru import logger
from plivo import plivoxml

from interview import (
    ERROR_LINE,
    NOT_FOUND_LINE,
    SESSION_LOST_LINE,
    InterviewNotFoundError,
    InterviewRepository,
    greeting,
)
from providers import ConfigurationError, create_provider
from relay import BrowserLeg, RelaySession, TelephonyLeg
from store import InMemoryConversationStore
from turns import TurnStateMachine, render_turn_xml
from utils import (
    INTERVIEW_LANGUAGE,
    INTERVIEW_MODE,
    INTERVIEWS_FILE,
    LOG_LEVEL,
    PLIVO_AUTH_ID,
    PLIVO_AUTH_TOKEN,
    PLIVO_PHONE_NUMBER,
    PUBLIC_URL,
    REALTIME_PROVIDER,
    SERVER_PORT,
    SPEAK_VOICE,
    normalize_phone_number,
)

repository = InterviewRepository()
conversation_store = InMemoryConversationStore()
turn_machine = TurnStateMachine(repository, conversation_store)


@contextlib.asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    if INTERVIEWS_FILE:
        try:
            repository.load_file(INTERVIEWS_FILE)
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to load interviews from {INTERVIEWS_FILE}: {e}")
    yield


app = FastAPI(
    title="Voice Interview Engine",
    description="Spoken interviews over Plivo telephony and the browser, backed by a realtime speech model",
    version="0.1.0",
    lifespan=lifespan,
)


def configure_plivo_webhooks() -> bool:
    """Point the Plivo phone number at this server's webhooks."""
    if not all([PLIVO_AUTH_ID, PLIVO_AUTH_TOKEN, PLIVO_PHONE_NUMBER, PUBLIC_URL]):
        missing = [
            name
            for name, value in (
                ("PLIVO_AUTH_ID", PLIVO_AUTH_ID),
                ("PLIVO_AUTH_TOKEN", PLIVO_AUTH_TOKEN),
                ("PLIVO_PHONE_NUMBER", PLIVO_PHONE_NUMBER),
                ("PUBLIC_URL", PUBLIC_URL),
            )
            if not value
        ]
        logger.warning(f"Skipping Plivo auto-config. Missing: {', '.join(missing)}")
        return False

    try:
        client = plivo.RestClient(auth_id=PLIVO_AUTH_ID, auth_token=PLIVO_AUTH_TOKEN)

        app_name = "Voice_Interview_Engine"
        answer_url = f"{PUBLIC_URL}/answer"
        hangup_url = f"{PUBLIC_URL}/hangup"
        fallback_url = f"{PUBLIC_URL}/fallback"

        apps = client.applications.list()
        existing_app = next((a for a in apps["objects"] if a["app_name"] == app_name), None)

        if existing_app:
            client.applications.update(
                app_id=existing_app["app_id"],
                answer_url=answer_url,
                answer_method="POST",
                hangup_url=hangup_url,
                hangup_method="POST",
                fallback_answer_url=fallback_url,
                fallback_method="POST",
            )
            app_id = existing_app["app_id"]
            logger.info(f"Updated Plivo application: {app_name}")
        else:
            response = client.applications.create(
                app_name=app_name,
                answer_url=answer_url,
                answer_method="POST",
                hangup_url=hangup_url,
                hangup_method="POST",
                fallback_answer_url=fallback_url,
                fallback_method="POST",
            )
            app_id = response["app_id"]
            logger.info(f"Created Plivo application: {app_name}")

        phone_number = normalize_phone_number(PLIVO_PHONE_NUMBER)
        if not phone_number:
            logger.error(f"Invalid phone number format: {PLIVO_PHONE_NUMBER}")
            return False

        client.numbers.update(number=phone_number, app_id=app_id)

        logger.info(f"Plivo webhooks configured for +{phone_number}")
        logger.info(f"  Answer URL: {answer_url}")
        logger.info(f"  Hangup URL: {hangup_url}")
        return True

    except plivo.exceptions.ValidationError as e:
        logger.error(f"Plivo validation error: {e}")
        return False
    except Exception as e:
        logger.error(f"Failed to configure Plivo: {e}")
        return False


# =============================================================================
# Helpers
# =============================================================================


async def _call_params(request: Request, *names: str) -> dict[str, str]:
    """Webhook parameters from the query string, overlaid with form fields on POST."""
    params = {name: request.query_params.get(name, "") for name in names}
    if request.method == "POST":
        try:
            form_data = await request.form()
            for name in names:
                params[name] = params[name] or str(form_data.get(name, ""))
        except Exception as e:
            logger.warning(f"Failed to parse webhook form: {e}")
    return params


def _base_url(request: Request) -> str:
    return PUBLIC_URL.rstrip("/") if PUBLIC_URL else str(request.base_url).rstrip("/")


def _xml(response: plivoxml.ResponseElement | str) -> Response:
    content = response if isinstance(response, str) else response.to_string()
    return Response(content=content, media_type="application/xml")


def _speak_and_hangup(text: str) -> Response:
    response = plivoxml.ResponseElement()
    response.add(plivoxml.SpeakElement(text, voice=SPEAK_VOICE, language=INTERVIEW_LANGUAGE))
    response.add(plivoxml.HangupElement())
    return _xml(response)


def _turn_action_url(request: Request, interview_id: str) -> str:
    url = f"{_base_url(request)}/turn"
    return f"{url}?interview_id={interview_id}" if interview_id else url


# =============================================================================
# Routes
# =============================================================================


@app.get("/")
async def health_check() -> dict:
    """Health check endpoint."""
    phone = normalize_phone_number(PLIVO_PHONE_NUMBER)
    return {
        "status": "ok",
        "service": "voice-interview-engine",
        "mode": INTERVIEW_MODE,
        "provider": REALTIME_PROVIDER,
        "phone_number": f"+{phone}" if phone else "not configured",
    }


@app.get("/answer")
@app.post("/answer")
async def answer_webhook(request: Request) -> Response:
    """Plivo answer webhook.

    stream mode: greet, then hand the call to a realtime relay over /ws.
    gather mode: ask the first question and collect speech via /turn.
    """
    params = await _call_params(request, "CallUUID", "From", "To", "interview_id")
    call_uuid = params["CallUUID"]
    interview_id = params["interview_id"]
    logger.info(f"Incoming call: CallUUID={call_uuid}, From={params['From']}, To={params['To']}, mode={INTERVIEW_MODE}")

    try:
        script = repository.resolve(interview_id or None)
    except InterviewNotFoundError as e:
        logger.warning(f"No interview for call {call_uuid}: {e}")
        return _speak_and_hangup(NOT_FOUND_LINE)

    if INTERVIEW_MODE == "gather":
        decision = turn_machine.handle(call_uuid, "", script.id)
        return _xml(render_turn_xml(decision, _turn_action_url(request, script.id)))

    body_data = {
        "call_uuid": call_uuid,
        "from": params["From"],
        "to": params["To"],
        "interview_id": script.id,
    }
    body_b64 = base64.b64encode(json.dumps(body_data).encode()).decode()

    host = request.headers.get("host", f"localhost:{SERVER_PORT}")
    protocol = "wss" if request.url.scheme == "https" else "ws"
    ws_url = f"{protocol}://{host}/ws?body={body_b64}"
    logger.info(f"WebSocket URL: {ws_url}")

    response = plivoxml.ResponseElement()
    response.add(plivoxml.SpeakElement(greeting(script.title), voice=SPEAK_VOICE, language=INTERVIEW_LANGUAGE))
    response.add(
        plivoxml.StreamElement(
            ws_url,
            bidirectional=True,
            keepCallAlive=True,
            contentType="audio/x-mulaw;rate=8000",
        )
    )
    # Heard only if the stream ends before the interview does
    response.add(plivoxml.SpeakElement(SESSION_LOST_LINE, voice=SPEAK_VOICE, language=INTERVIEW_LANGUAGE))
    response.add(plivoxml.HangupElement())
    return _xml(response)


@app.get("/turn")
@app.post("/turn")
async def turn_webhook(request: Request) -> Response:
    """Speech result from GetInput: advance the interview by one turn."""
    params = await _call_params(request, "CallUUID", "From", "To", "Speech", "interview_id")
    call_uuid = params["CallUUID"]
    if not call_uuid:
        logger.warning("Turn webhook without CallUUID")
        return _speak_and_hangup(ERROR_LINE)

    logger.info(f"Turn for {call_uuid}: speech={params['Speech']!r}")
    decision = turn_machine.handle(call_uuid, params["Speech"], params["interview_id"] or None)
    return _xml(render_turn_xml(decision, _turn_action_url(request, params["interview_id"])))


@app.post("/hangup")
async def hangup_webhook(request: Request) -> Response:
    """Plivo hangup webhook - called when a call ends."""
    try:
        form_data = await request.form()
        call_uuid = str(form_data.get("CallUUID", ""))
        logger.info(
            f"Call ended: CallUUID={call_uuid}, "
            f"Duration={form_data.get('Duration')}s, "
            f"HangupCause={form_data.get('HangupCause')}"
        )
        state = conversation_store.get(call_uuid) if call_uuid else None
        if state is not None:
            logger.info(
                f"Interview {state.interview_id} for {call_uuid}: "
                f"{'completed' if state.completed else 'incomplete'}, {len(state.transcript)} transcript entries"
            )
    except Exception as e:
        logger.warning(f"Error parsing hangup webhook: {e}")

    return Response(content="OK", media_type="text/plain")


@app.post("/fallback")
async def fallback_webhook(request: Request) -> Response:
    """Fallback webhook if primary answer webhook fails."""
    logger.warning("Fallback webhook triggered")
    return _speak_and_hangup(ERROR_LINE)


@app.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    body: str = Query(default=""),
) -> None:
    """WebSocket endpoint for bidirectional audio streaming with Plivo."""
    await websocket.accept()
    logger.info("WebSocket connection accepted")

    call_data = {}
    if body:
        try:
            call_data = json.loads(base64.b64decode(body).decode())
            logger.info(f"Call metadata: {call_data}")
        except Exception as e:
            logger.warning(f"Failed to decode call metadata: {e}")

    try:
        start_data = await websocket.receive_text()
        start_message = json.loads(start_data)

        if start_message.get("event") != "start":
            logger.error(f"Expected start event, got: {start_message.get('event')}")
            return

        start_info = start_message.get("start", {})
        call_id = start_info.get("callId", call_data.get("call_uuid", "unknown"))
        stream_id = start_info.get("streamId", "")
        logger.info(f"Plivo stream started: callId={call_id}, streamId={stream_id}")

        script = repository.resolve(call_data.get("interview_id") or None)
        session = RelaySession(TelephonyLeg(websocket, stream_id), script, create_provider())
        await session.run()

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected")
    except (ConfigurationError, InterviewNotFoundError) as e:
        logger.error(f"Cannot start interview relay: {e}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        with contextlib.suppress(Exception):
            await websocket.close()


@app.websocket("/ws/browser")
async def browser_websocket_endpoint(
    websocket: WebSocket,
    interview_id: str = Query(default=""),
) -> None:
    """Browser conversation: JSON events carrying base64 PCM16 24kHz audio."""
    await websocket.accept()
    logger.info(f"Browser connected (interview_id={interview_id or 'latest'})")

    error: tuple[str, str] | None = None
    try:
        script = repository.resolve(interview_id or None)
        provider = create_provider()
    except InterviewNotFoundError:
        error = ("interview_not_found", "No active interview was found.")
    except ConfigurationError as e:
        logger.error(f"Realtime provider not configured: {e}")
        error = ("configuration_error", "The interviewer is not configured.")

    if error is not None:
        with contextlib.suppress(Exception):
            await websocket.send_text(json.dumps({"type": "error", "error": {"code": error[0], "message": error[1]}}))
            await websocket.close()
        return

    session = RelaySession(BrowserLeg(websocket), script, provider)
    try:
        await session.run()
    except Exception as e:
        logger.error(f"Browser relay error: {e}")


def main() -> None:
    """Run the server."""
    logger.remove()
    logger.add(sys.stderr, level=LOG_LEVEL)
    logger.info(f"Starting Voice Interview Engine on port {SERVER_PORT} (mode={INTERVIEW_MODE})")

    if PLIVO_PHONE_NUMBER and PUBLIC_URL:
        logger.info("Configuring Plivo webhooks...")
        phone = normalize_phone_number(PLIVO_PHONE_NUMBER)
        if configure_plivo_webhooks():
            logger.info(f"Ready! Call +{phone} to test")
        else:
            logger.warning("Plivo auto-configuration failed. Configure manually.")
    else:
        logger.info("To enable auto-configuration, set PUBLIC_URL and PLIVO_PHONE_NUMBER")

    uvicorn.run("server:app", host="0.0.0.0", port=SERVER_PORT, log_level="info")


if __name__ == "__main__":
    main()
