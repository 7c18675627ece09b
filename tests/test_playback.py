"""Tests for ordered, non-overlapping playback."""

from __future__ import annotations

import asyncio

import pytest

from audio_codec import WAV_HEADER_SIZE
from playback import PlaybackQueue


class RecordingPlayer:
    """Records payloads and how many plays overlap."""

    def __init__(self, fail_on: tuple[bytes, ...] = (), delay: float = 0.001):
        self.played: list[bytes] = []
        self.fail_on = set(fail_on)
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def __call__(self, wav: bytes) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            pcm = wav[WAV_HEADER_SIZE:]
            if pcm in self.fail_on:
                raise RuntimeError("output device rejected buffer")
            self.played.append(pcm)
        finally:
            self.active -= 1


class TestPlaybackQueue:
    """FIFO playback semantics."""

    @pytest.mark.asyncio
    async def test_plays_in_enqueue_order_without_overlap(self):
        player = RecordingPlayer()
        queue = PlaybackQueue(player)

        sequences = [queue.enqueue(chunk) for chunk in (b"\x01\x00", b"\x02\x00", b"\x03\x00")]
        await asyncio.wait_for(queue.wait_idle(), timeout=1.0)

        assert sequences == [0, 1, 2]
        assert player.played == [b"\x01\x00", b"\x02\x00", b"\x03\x00"]
        assert player.max_active == 1
        assert queue.played == 3
        assert not queue.is_playing

    @pytest.mark.asyncio
    async def test_concurrent_producers_keep_order(self):
        player = RecordingPlayer()
        queue = PlaybackQueue(player)

        async def produce(chunk: bytes, delay: float) -> None:
            await asyncio.sleep(delay)
            queue.enqueue(chunk)

        await asyncio.gather(
            produce(b"\x0a\x00", 0.0),
            produce(b"\x0b\x00", 0.0005),
            produce(b"\x0c\x00", 0.001),
        )
        await asyncio.wait_for(queue.wait_idle(), timeout=1.0)

        assert player.played == [b"\x0a\x00", b"\x0b\x00", b"\x0c\x00"]
        assert player.max_active == 1

    @pytest.mark.asyncio
    async def test_failed_chunk_is_skipped(self):
        player = RecordingPlayer(fail_on=(b"\x02\x00",))
        queue = PlaybackQueue(player)

        for chunk in (b"\x01\x00", b"\x02\x00", b"\x03\x00"):
            queue.enqueue(chunk)
        await asyncio.wait_for(queue.wait_idle(), timeout=1.0)

        assert player.played == [b"\x01\x00", b"\x03\x00"]
        assert queue.skipped == 1
        assert queue.played == 2

    @pytest.mark.asyncio
    async def test_restarts_after_going_idle(self):
        player = RecordingPlayer()
        queue = PlaybackQueue(player)

        queue.enqueue(b"\x01\x00")
        await asyncio.wait_for(queue.wait_idle(), timeout=1.0)
        queue.enqueue(b"\x02\x00")
        await asyncio.wait_for(queue.wait_idle(), timeout=1.0)

        assert player.played == [b"\x01\x00", b"\x02\x00"]

    @pytest.mark.asyncio
    async def test_close_discards_pending_audio(self):
        player = RecordingPlayer(delay=10.0)
        queue = PlaybackQueue(player)
        for chunk in (b"\x01\x00", b"\x02\x00", b"\x03\x00"):
            queue.enqueue(chunk)
        await asyncio.sleep(0)

        await asyncio.wait_for(queue.close(), timeout=1.0)

        assert queue.closed
        assert queue.pending == 0
        assert not queue.is_playing
        assert player.played == []
        assert queue.enqueue(b"\x04\x00") is None

    @pytest.mark.asyncio
    async def test_player_receives_wav(self):
        received: list[bytes] = []

        async def player(wav: bytes) -> None:
            received.append(wav)

        queue = PlaybackQueue(player, sample_rate=16000)
        queue.enqueue(b"\x00\x01\x02")
        await asyncio.wait_for(queue.wait_idle(), timeout=1.0)

        assert received[0][:4] == b"RIFF"
        assert int.from_bytes(received[0][24:28], "little") == 16000
        assert received[0][WAV_HEADER_SIZE:] == b"\x00\x01"
