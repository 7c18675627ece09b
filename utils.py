"""Shared configuration and small helpers.

This module provides:
- Configuration loaded from environment variables
- Phone number normalization
"""

from __future__ import annotations

import os

import phonenumbers
from dotenv import load_dotenv
from loguru import logger

load_dotenv()

# =============================================================================
# Configuration
# =============================================================================

# Server
SERVER_PORT = int(os.getenv("SERVER_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Public URL for webhooks (ngrok URL or production domain)
PUBLIC_URL = os.getenv("PUBLIC_URL", "")

# Plivo credentials
PLIVO_AUTH_ID = os.getenv("PLIVO_AUTH_ID", "")
PLIVO_AUTH_TOKEN = os.getenv("PLIVO_AUTH_TOKEN", "")
PLIVO_PHONE_NUMBER = os.getenv("PLIVO_PHONE_NUMBER", "")
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "US")

# "stream" hands the call to a RelaySession, "gather" runs the webhook loop
INTERVIEW_MODE = os.getenv("INTERVIEW_MODE", "stream").strip().lower()

# Upstream realtime speech model
REALTIME_PROVIDER = os.getenv("REALTIME_PROVIDER", "openai").strip().lower()
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_REALTIME_MODEL = os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview")
OPENAI_REALTIME_URL = "wss://api.openai.com/v1/realtime"
AZURE_OPENAI_API_KEY = os.getenv("AZURE_OPENAI_API_KEY", "")
AZURE_OPENAI_ENDPOINT = os.getenv("AZURE_OPENAI_ENDPOINT", "")
AZURE_OPENAI_DEPLOYMENT = os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o-realtime-preview")
AZURE_OPENAI_API_VERSION = os.getenv("AZURE_OPENAI_API_VERSION", "2024-10-01-preview")
XAI_API_KEY = os.getenv("XAI_API_KEY", "")
GROK_MODEL = os.getenv("GROK_MODEL", "grok-3-fast-voice")
GROK_VOICE = os.getenv("GROK_VOICE", "Sal")
XAI_REALTIME_URL = "wss://api.x.ai/v1/realtime"

REALTIME_VOICE = os.getenv("REALTIME_VOICE", "alloy")
REALTIME_TEMPERATURE = float(os.getenv("REALTIME_TEMPERATURE", "0.7"))
MAX_RESPONSE_OUTPUT_TOKENS = int(os.getenv("MAX_RESPONSE_OUTPUT_TOKENS", "100"))
MAX_RESPONSE_WORDS = int(os.getenv("MAX_RESPONSE_WORDS", "20"))

# Server-side VAD (controls when the model thinks the caller stopped talking)
VAD_THRESHOLD = float(os.getenv("VAD_THRESHOLD", "0.5"))
VAD_PREFIX_PADDING_MS = int(os.getenv("VAD_PREFIX_PADDING_MS", "300"))
VAD_SILENCE_DURATION_MS = int(os.getenv("VAD_SILENCE_DURATION_MS", "1000"))

# Upper bound for connecting -> active before the session is abandoned
SESSION_SETUP_TIMEOUT_S = float(os.getenv("SESSION_SETUP_TIMEOUT_S", "10"))

# Telephony speech
INTERVIEW_LANGUAGE = os.getenv("INTERVIEW_LANGUAGE", "en-US")
SPEAK_VOICE = os.getenv("SPEAK_VOICE", "WOMAN")
GATHER_EXECUTION_TIMEOUT_S = int(os.getenv("GATHER_EXECUTION_TIMEOUT_S", "15"))
GATHER_SPEECH_END_TIMEOUT_S = int(os.getenv("GATHER_SPEECH_END_TIMEOUT_S", "3"))

# Conversation store
STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "2"))

# Optional JSON file with interviews to seed the lookup
INTERVIEWS_FILE = os.getenv("INTERVIEWS_FILE", "")

# Audio format constants
PLIVO_SAMPLE_RATE = 8000  # Plivo uses 8kHz μ-law
MODEL_SAMPLE_RATE = 24000  # Realtime models speak PCM16 at 24kHz
PLIVO_CHUNK_SIZE = 160  # 20ms at 8kHz μ-law

# =============================================================================
# Phone Number Utilities
# =============================================================================


def normalize_phone_number(phone: str, default_region: str = DEFAULT_COUNTRY_CODE) -> str:
    """Normalize phone number to E.164 format (digits only, no leading +)."""
    if not phone:
        return ""

    try:
        parsed = phonenumbers.parse(phone, default_region)
        e164 = phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
        return e164.lstrip("+")
    except phonenumbers.NumberParseException as e:
        logger.warning(f"Failed to parse phone number '{phone}': {e}")
        return "".join(c for c in phone if c.isdigit())
