"""Configuration handshake for the upstream realtime session.

The realtime model announces `session.created`; we answer with a
`session.update` carrying the interview instructions, voice, audio formats
and server VAD settings. Once the model confirms with `session.updated`, we
seed the conversation and request the first response so the interviewer
speaks first.
"""

from __future__ import annotations

from typing import Any

from interview import CLOSING_LINE, InterviewScript
from utils import (
    INTERVIEW_LANGUAGE,
    MAX_RESPONSE_OUTPUT_TOKENS,
    MAX_RESPONSE_WORDS,
    REALTIME_TEMPERATURE,
    REALTIME_VOICE,
    VAD_PREFIX_PADDING_MS,
    VAD_SILENCE_DURATION_MS,
    VAD_THRESHOLD,
)

AUDIO_FORMAT = "pcm16"
TRANSCRIPTION_MODEL = "whisper-1"
KICKOFF_MESSAGE = "Hello, I'm ready to start the interview."


class SessionConfigurator:
    """Builds the session.update payload and the first-turn trigger."""

    def __init__(
        self,
        voice: str = REALTIME_VOICE,
        temperature: float = REALTIME_TEMPERATURE,
        max_output_tokens: int | str = MAX_RESPONSE_OUTPUT_TOKENS,
        max_words: int = MAX_RESPONSE_WORDS,
        vad_threshold: float = VAD_THRESHOLD,
        vad_prefix_padding_ms: int = VAD_PREFIX_PADDING_MS,
        vad_silence_duration_ms: int = VAD_SILENCE_DURATION_MS,
        language: str = INTERVIEW_LANGUAGE,
    ):
        self.voice = voice
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.max_words = max_words
        self.vad_threshold = vad_threshold
        self.vad_prefix_padding_ms = vad_prefix_padding_ms
        self.vad_silence_duration_ms = vad_silence_duration_ms
        self.language = language

    def build_instructions(self, script: InterviewScript) -> str:
        """Natural-language instruction block for the interviewer model."""
        questions = script.effective_questions
        numbered = "\n".join(f"{i}. {q}" for i, q in enumerate(questions, start=1))
        return f"""You are a friendly voice interviewer conducting the "{script.title}" interview.
Speak in the language of the locale {self.language}.

START IMMEDIATELY: greet the participant, name the {script.title} interview, then ask: "{questions[0]}"

ASK THESE QUESTIONS IN ORDER:
{numbered}

RULES:
- Ask exactly one question at a time.
- Wait for the participant's answer before moving on.
- Ask a natural follow-up only when an answer is unclear or very short, and do so sparingly.
- Never invent questions that are not on the list.
- Keep every response short (under {self.max_words} words).
- When every question has been answered, close with exactly: {CLOSING_LINE}"""

    def session_update(self, script: InterviewScript) -> dict[str, Any]:
        """The session.update event sent after session.created."""
        return {
            "type": "session.update",
            "session": {
                "modalities": ["text", "audio"],
                "instructions": self.build_instructions(script),
                "voice": self.voice,
                "input_audio_format": AUDIO_FORMAT,
                "output_audio_format": AUDIO_FORMAT,
                "input_audio_transcription": {"model": TRANSCRIPTION_MODEL},
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": self.vad_threshold,
                    "prefix_padding_ms": self.vad_prefix_padding_ms,
                    "silence_duration_ms": self.vad_silence_duration_ms,
                },
                "temperature": self.temperature,
                "max_response_output_tokens": self.max_output_tokens,
            },
        }

    def kickoff(self) -> list[dict[str, Any]]:
        """Events that make the interviewer take the first turn."""
        return [
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": KICKOFF_MESSAGE}],
                },
            },
            {
                "type": "response.create",
                "response": {"modalities": ["text", "audio"]},
            },
        ]
