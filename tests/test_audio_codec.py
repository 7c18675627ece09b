"""Tests for audio conversion."""

from __future__ import annotations

import base64
import binascii
import io
import struct
import wave

import numpy as np
import pytest

from audio_codec import (
    ENCODE_WINDOW_SAMPLES,
    WAV_HEADER_SIZE,
    decode_from_transport,
    encode_for_transport,
    float_to_pcm16,
    model_to_telephony,
    pcm16_to_float,
    pcm_to_ulaw,
    resample_audio,
    telephony_to_model,
    ulaw_to_pcm,
    wrap_as_playable_container,
)


def _samples(pcm: bytes) -> list[int]:
    return list(struct.unpack(f"<{len(pcm) // 2}h", pcm))


class TestTransportEncoding:
    """Float capture -> base64 PCM16 for the model."""

    def test_quantization_is_asymmetric_and_clamped(self):
        pcm = float_to_pcm16([-1.0, 0.0, 1.0, 0.5, -0.5, 2.0, -3.0])
        assert _samples(pcm) == [-32768, 0, 32767, 16383, -16384, 32767, -32768]

    def test_nan_becomes_silence(self):
        assert _samples(float_to_pcm16([float("nan")])) == [0]

    def test_encode_decode(self):
        encoded = encode_for_transport([0.0, 0.25, -0.25])
        assert decode_from_transport(encoded) == float_to_pcm16([0.0, 0.25, -0.25])

    def test_empty_input(self):
        assert encode_for_transport([]) == ""
        assert decode_from_transport("") == b""

    def test_long_input_crosses_window_boundary(self):
        rng = np.random.default_rng(7)
        samples = rng.uniform(-1.0, 1.0, ENCODE_WINDOW_SAMPLES * 2 + 123)

        encoded = encode_for_transport(samples)

        assert "=" not in encoded[:-4]
        assert encoded == base64.b64encode(float_to_pcm16(samples)).decode("ascii")
        assert len(decode_from_transport(encoded)) == 2 * len(samples)

    def test_malformed_base64_raises(self):
        with pytest.raises(binascii.Error):
            decode_from_transport("not*base64!")

    def test_pcm16_to_float(self):
        floats = pcm16_to_float(float_to_pcm16([-1.0, 0.0]) + b"\x01")
        assert floats.tolist() == [-1.0, 0.0]


class TestPlayableContainer:
    """WAV wrapping."""

    @pytest.mark.parametrize("size", [0, 1, 2, 4801, 1_048_578])
    def test_header_describes_payload(self, size):
        pcm = bytes(range(256)) * (size // 256) + bytes(size % 256)
        wav = wrap_as_playable_container(pcm)

        payload_size = size - (size % 2)
        assert len(wav) == WAV_HEADER_SIZE + payload_size
        riff, riff_size, wave_id = struct.unpack("<4sI4s", wav[:12])
        assert (riff, wave_id) == (b"RIFF", b"WAVE")
        assert riff_size == 36 + payload_size
        assert struct.unpack("<I", wav[40:44])[0] == payload_size
        assert wav[WAV_HEADER_SIZE:] == pcm[:payload_size]

    def test_readable_by_wave_module(self):
        pcm = float_to_pcm16(np.linspace(-1, 1, 2400))
        with wave.open(io.BytesIO(wrap_as_playable_container(pcm, 24000)), "rb") as wav:
            assert wav.getnchannels() == 1
            assert wav.getsampwidth() == 2
            assert wav.getframerate() == 24000
            assert wav.readframes(wav.getnframes()) == pcm


class TestTelephonyConversion:
    """μ-law 8kHz <-> PCM16 24kHz."""

    def test_ulaw_silence(self):
        pcm = ulaw_to_pcm(b"\xff" * 160)
        assert len(pcm) == 320
        assert max(abs(s) for s in _samples(pcm)) < 100

    def test_ulaw_roundtrip_preserves_shape(self):
        tone = (np.sin(np.linspace(0, 8 * np.pi, 800)) * 12000).astype("<i2").tobytes()
        decoded = np.frombuffer(ulaw_to_pcm(pcm_to_ulaw(tone)), dtype="<i2").astype(np.int32)
        original = np.frombuffer(tone, dtype="<i2").astype(np.int32)
        assert np.max(np.abs(decoded - original)) < 1100

    def test_resample_lengths(self):
        pcm_8k = b"\x00\x00" * 160
        assert len(resample_audio(pcm_8k, 8000, 24000)) == 960
        assert resample_audio(pcm_8k, 8000, 8000) == pcm_8k
        assert resample_audio(b"", 8000, 24000) == b""

    def test_frame_sizes(self):
        assert len(telephony_to_model(b"\xff" * 160)) == 960
        assert len(model_to_telephony(b"\x00\x00" * 480)) == 160
