"""Audio conversion between the representations used at the engine's edges.

Representations:
- float samples in [-1, 1] as captured from a microphone
- PCM16 little-endian mono bytes (internal processing)
- base64 text (wire transport to/from the realtime model)
- a WAV container for playback facilities that need a complete file
- μ-law 8kHz frames as streamed by Plivo
"""

from __future__ import annotations

import base64
import struct
from collections.abc import Sequence

import numpy as np
from scipy import signal as scipy_signal

from utils import MODEL_SAMPLE_RATE, PLIVO_SAMPLE_RATE

# Samples per encode window. 0x6000 samples is 49152 bytes, a multiple of 3,
# so base64 text of consecutive windows concatenates without padding.
ENCODE_WINDOW_SAMPLES = 0x6000

WAV_HEADER_SIZE = 44
CHANNELS = 1
BITS_PER_SAMPLE = 16

# =============================================================================
# Transport encoding (model wire format)
# =============================================================================


def float_to_pcm16(samples: Sequence[float] | np.ndarray) -> bytes:
    """Quantize float samples to PCM16 little-endian bytes.

    Samples are clamped to [-1, 1]; negative values scale by 32768 and
    non-negative values by 32767, truncating toward zero.
    """
    arr = np.nan_to_num(np.asarray(samples, dtype=np.float64), nan=0.0)
    arr = np.clip(arr, -1.0, 1.0)
    scaled = np.where(arr < 0, arr * 32768.0, arr * 32767.0)
    return scaled.astype("<i2").tobytes()


def encode_for_transport(samples: Sequence[float] | np.ndarray) -> str:
    """Encode float samples as base64 PCM16 for the realtime model.

    Long inputs are processed in bounded windows so no single intermediate
    buffer grows with the input length.
    """
    arr = np.asarray(samples, dtype=np.float64).reshape(-1)
    parts: list[str] = []
    for start in range(0, len(arr), ENCODE_WINDOW_SAMPLES):
        window = arr[start : start + ENCODE_WINDOW_SAMPLES]
        parts.append(base64.b64encode(float_to_pcm16(window)).decode("ascii"))
    return "".join(parts)


def decode_from_transport(audio_b64: str) -> bytes:
    """Decode a base64 PCM16 frame.

    Raises binascii.Error on malformed base64; callers drop the frame.
    """
    return base64.b64decode(audio_b64, validate=True)


def pcm16_to_float(pcm: bytes) -> np.ndarray:
    """Convert PCM16 bytes to float32 samples in [-1, 1]."""
    usable = len(pcm) - (len(pcm) % 2)
    samples = np.frombuffer(pcm[:usable], dtype="<i2").astype(np.float32)
    return samples / 32768.0


# =============================================================================
# Playable container
# =============================================================================


def wrap_as_playable_container(pcm: bytes, sample_rate: int = MODEL_SAMPLE_RATE) -> bytes:
    """Wrap raw PCM16 mono audio in a canonical 44-byte WAV header.

    An odd trailing byte cannot form a sample and is dropped; the header
    size fields always describe the payload that follows them.
    """
    payload = pcm[: len(pcm) - (len(pcm) % 2)]
    block_align = CHANNELS * BITS_PER_SAMPLE // 8
    byte_rate = sample_rate * block_align
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(payload),
        b"WAVE",
        b"fmt ",
        16,
        1,  # PCM
        CHANNELS,
        sample_rate,
        byte_rate,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        len(payload),
    )
    return header + payload


# =============================================================================
# Telephony codecs (Plivo μ-law 8kHz <-> model PCM16 24kHz)
# =============================================================================


def _build_ulaw_decode_table() -> np.ndarray:
    """ITU-T G.711 μ-law expansion table."""
    codes = ~np.arange(256, dtype=np.int32) & 0xFF
    sign = codes & 0x80
    exponent = (codes >> 4) & 0x07
    mantissa = codes & 0x0F
    magnitude = (((mantissa << 3) + 0x84) << exponent) - 0x84
    return np.where(sign != 0, -magnitude, magnitude).astype(np.int16)


_ULAW_DECODE_TABLE = _build_ulaw_decode_table()


def ulaw_to_pcm(ulaw_data: bytes) -> bytes:
    """Convert μ-law encoded audio to 16-bit PCM."""
    ulaw_samples = np.frombuffer(ulaw_data, dtype=np.uint8)
    return _ULAW_DECODE_TABLE[ulaw_samples].tobytes()


def pcm_to_ulaw(pcm_data: bytes) -> bytes:
    """Convert 16-bit PCM audio to μ-law encoding."""
    BIAS = 0x84
    CLIP = 32635

    pcm_samples = np.frombuffer(pcm_data, dtype=np.int16).astype(np.int32)
    sign = (pcm_samples >> 8) & 0x80
    pcm_samples = np.where(sign != 0, -pcm_samples, pcm_samples)
    pcm_samples = np.clip(pcm_samples, 0, CLIP) + BIAS

    segment = np.floor(np.log2(np.maximum(pcm_samples >> 7, 1))).astype(np.int32)
    segment = np.clip(segment, 0, 7)

    ulaw = sign | ((segment << 4) | ((pcm_samples >> (segment + 3)) & 0x0F))
    ulaw = ~ulaw & 0xFF

    return ulaw.astype(np.uint8).tobytes()


def resample_audio(audio_data: bytes, input_rate: int, output_rate: int) -> bytes:
    """Resample PCM16 audio from one sample rate to another."""
    if input_rate == output_rate or not audio_data:
        return audio_data

    samples = np.frombuffer(audio_data, dtype=np.int16)
    new_length = int(len(samples) * output_rate / input_rate)
    resampled = scipy_signal.resample(samples.astype(np.float64), new_length)
    return np.clip(resampled, -32768, 32767).astype(np.int16).tobytes()


def telephony_to_model(mulaw_8k: bytes) -> bytes:
    """Convert Plivo audio (μ-law 8kHz) to model format (PCM16 24kHz)."""
    return resample_audio(ulaw_to_pcm(mulaw_8k), PLIVO_SAMPLE_RATE, MODEL_SAMPLE_RATE)


def model_to_telephony(pcm_24k: bytes) -> bytes:
    """Convert model audio (PCM16 24kHz) to Plivo format (μ-law 8kHz)."""
    pcm_24k = pcm_24k[: len(pcm_24k) - (len(pcm_24k) % 2)]
    return pcm_to_ulaw(resample_audio(pcm_24k, MODEL_SAMPLE_RATE, PLIVO_SAMPLE_RATE))
