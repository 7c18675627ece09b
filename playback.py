"""Ordered, non-overlapping playback of agent audio.

Chunks arrive from the realtime model faster than real time and at
irregular intervals. PlaybackQueue plays them strictly in enqueue order,
one at a time; a chunk that fails to play is skipped so the conversation
never stalls on a single bad frame.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from audio_codec import wrap_as_playable_container
from utils import MODEL_SAMPLE_RATE

# Plays one complete WAV buffer and returns when playback has finished.
Player = Callable[[bytes], Awaitable[None]]


@dataclass(frozen=True)
class PlaybackQueueEntry:
    sequence: int
    pcm: bytes


class PlaybackQueue:
    """FIFO of PCM chunks drained by a single playback task.

    One instance belongs to one playback destination. When the destination
    is replaced, close this queue and create a new one.
    """

    def __init__(self, player: Player, sample_rate: int = MODEL_SAMPLE_RATE) -> None:
        self._player = player
        self._sample_rate = sample_rate
        self._entries: deque[PlaybackQueueEntry] = deque()
        self._next_sequence = 0
        self._drain_task: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self.played = 0
        self.skipped = 0

    @property
    def is_playing(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    @property
    def pending(self) -> int:
        return len(self._entries)

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, pcm: bytes) -> int | None:
        """Append a chunk and start playback if idle. Returns its sequence number."""
        if self._closed:
            logger.debug(f"Playback queue closed, dropping {len(pcm)} bytes")
            return None

        entry = PlaybackQueueEntry(sequence=self._next_sequence, pcm=pcm)
        self._next_sequence += 1
        self._entries.append(entry)

        if not self.is_playing:
            self._idle.clear()
            self._drain_task = asyncio.create_task(self._drain(), name="playback_drain")
        return entry.sequence

    async def _drain(self) -> None:
        try:
            while self._entries and not self._closed:
                entry = self._entries.popleft()
                try:
                    await self._player(wrap_as_playable_container(entry.pcm, self._sample_rate))
                    self.played += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.skipped += 1
                    logger.warning(f"Skipping audio chunk {entry.sequence}: {e}")
        finally:
            self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until every queued chunk has been played or skipped."""
        await self._idle.wait()

    async def close(self) -> None:
        """Discard buffered audio and stop any playback in progress."""
        self._closed = True
        discarded = len(self._entries)
        self._entries.clear()
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._idle.set()
        if discarded:
            logger.debug(f"Playback queue closed, discarded {discarded} chunk(s)")
