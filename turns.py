"""Half-duplex interview loop driven by telephony speech webhooks.

Each webhook invocation carries the call identifier and, after the first
turn, the caller's recognized utterance. The next spoken line is derived
from the stored ConversationState; state lives in the ConversationStore so
the process keeps nothing between invocations.

Store failures degrade rather than drop the call. Reads and writes are each
retried STORE_RETRY_ATTEMPTS times. If the read still fails the call is
treated as fresh and nothing is saved: the caller hears the first question
again, prefixed with LOST_TRACK_LINE when they had just answered. If the
write still fails the computed line is spoken but progress is not saved,
so the next invocation repeats this turn.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from loguru import logger
from plivo import plivoxml

from interview import (
    ACKNOWLEDGMENT,
    CLOSING_LINE,
    LOST_TRACK_LINE,
    NO_ANSWER_LINE,
    NOT_FOUND_LINE,
    REPROMPT_LINE,
    InterviewNotFoundError,
    InterviewRepository,
    InterviewScript,
)
from store import (
    ConcurrentUpdateError,
    ConversationState,
    ConversationStore,
    StoreUnavailableError,
)
from utils import (
    GATHER_EXECUTION_TIMEOUT_S,
    GATHER_SPEECH_END_TIMEOUT_S,
    INTERVIEW_LANGUAGE,
    SPEAK_VOICE,
    STORE_RETRY_ATTEMPTS,
)


@dataclass(frozen=True)
class TurnDecision:
    """Line to speak next and whether the call ends after it."""

    text: str
    hangup: bool = False


def advance(
    state: ConversationState | None,
    call_id: str,
    utterance: str,
    script: InterviewScript,
) -> tuple[ConversationState, TurnDecision]:
    """Compute the next state and spoken line. Pure; does not touch the store."""
    utterance = (utterance or "").strip()
    total = len(script)

    if state is None:
        state = ConversationState(call_id=call_id, interview_id=script.id)
        if utterance:
            # Webhook arrived with an answer but nothing was stored for the call
            state = state.with_entry("user", utterance)
        first = script.question(0)
        return state.with_entry("assistant", first), TurnDecision(first)

    if state.completed:
        return state, TurnDecision(CLOSING_LINE, hangup=True)

    if not utterance:
        current = script.question(min(state.question_index, total - 1))
        text = f"{REPROMPT_LINE} {current}"
        return state.with_entry("assistant", text), TurnDecision(text)

    state = state.with_entry("user", utterance)
    if state.question_index < total - 1:
        next_index = state.question_index + 1
        text = f"{ACKNOWLEDGMENT} {script.question(next_index)}"
        state = replace(state.with_entry("assistant", text), question_index=next_index)
        return state, TurnDecision(text)

    state = replace(state.with_entry("assistant", CLOSING_LINE), question_index=total, completed=True)
    return state, TurnDecision(CLOSING_LINE, hangup=True)


class TurnStateMachine:
    """Loads, advances and persists one call's interview progress per webhook."""

    def __init__(
        self,
        repository: InterviewRepository,
        store: ConversationStore,
        retry_attempts: int = STORE_RETRY_ATTEMPTS,
    ):
        self.repository = repository
        self.store = store
        self.retry_attempts = max(1, retry_attempts)

    def _load(self, call_id: str) -> tuple[ConversationState | None, bool]:
        """Read the call's state. Second value is False when the store is down."""
        last_error: Exception | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self.store.get(call_id), True
            except StoreUnavailableError as e:
                last_error = e
                logger.warning(f"Store read failed for {call_id} (attempt {attempt}/{self.retry_attempts}): {e}")
        logger.error(f"Store unavailable for {call_id}, continuing without persistence: {last_error}")
        return None, False

    def _persist(self, previous: ConversationState | None, state: ConversationState) -> ConversationState:
        """Write the new state, retrying transient store failures. Conflicts propagate."""
        last_error: StoreUnavailableError | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                if previous is None:
                    return self.store.create(state)
                return self.store.update(state, expected_version=previous.version)
            except StoreUnavailableError as e:
                last_error = e
                logger.warning(f"Store write failed for {state.call_id} (attempt {attempt}/{self.retry_attempts}): {e}")
        raise last_error

    def handle(self, call_id: str, utterance: str = "", interview_id: str | None = None) -> TurnDecision:
        """Process one webhook invocation and return what to say next."""
        previous, store_ok = self._load(call_id)

        try:
            script = self.repository.resolve(previous.interview_id if previous else interview_id)
        except InterviewNotFoundError as e:
            logger.warning(f"No interview for call {call_id}: {e}")
            return TurnDecision(NOT_FOUND_LINE, hangup=True)

        state, decision = advance(previous, call_id, utterance, script)
        if not store_ok:
            if (utterance or "").strip():
                # The caller answered something we can no longer place
                decision = replace(decision, text=f"{LOST_TRACK_LINE} {decision.text}")
            return decision
        if state is previous:
            return decision

        try:
            stored = self._persist(previous, state)
        except ConcurrentUpdateError as e:
            logger.warning(f"Concurrent turn for {call_id}, recomputing: {e}")
            try:
                latest = self.store.get(call_id)
                if latest is not None and _same_progress(latest, state):
                    # An earlier write attempt landed after reporting failure
                    stored = latest
                else:
                    state, decision = advance(latest, call_id, utterance, script)
                    stored = self._persist(latest, state) if state is not latest else state
            except (ConcurrentUpdateError, StoreUnavailableError) as retry_error:
                logger.error(f"Could not persist turn for {call_id}, progress not saved: {retry_error}")
                return decision
        except StoreUnavailableError as e:
            logger.error(f"Store write failed for {call_id}, progress not saved: {e}")
            return decision

        logger.info(
            f"Call {call_id}: question {stored.question_index + 1 if not stored.completed else 'done'}"
            f"/{len(script)} (v{stored.version})"
        )
        return decision


def _same_progress(a: ConversationState, b: ConversationState) -> bool:
    return (a.question_index, a.completed, a.transcript) == (b.question_index, b.completed, b.transcript)


# =============================================================================
# Plivo XML
# =============================================================================


def render_turn_xml(decision: TurnDecision, action_url: str) -> str:
    """Speak the line, then either collect speech or hang up."""
    response = plivoxml.ResponseElement()

    if decision.hangup:
        response.add(plivoxml.SpeakElement(decision.text, voice=SPEAK_VOICE, language=INTERVIEW_LANGUAGE))
        response.add(plivoxml.HangupElement())
        return response.to_string()

    response.add(
        plivoxml.GetInputElement()
        .set_action(action_url)
        .set_method("POST")
        .set_input_type("speech")
        .set_execution_timeout(GATHER_EXECUTION_TIMEOUT_S)
        .set_speech_end_timeout(GATHER_SPEECH_END_TIMEOUT_S)
        .set_language(INTERVIEW_LANGUAGE)
        .set_redirect(True)
        .add_speak(content=decision.text, voice=SPEAK_VOICE, language=INTERVIEW_LANGUAGE)
    )
    # Reached only when the caller says nothing before the input times out
    response.add(plivoxml.SpeakElement(NO_ANSWER_LINE, voice=SPEAK_VOICE, language=INTERVIEW_LANGUAGE))
    response.add(plivoxml.HangupElement())
    return response.to_string()
