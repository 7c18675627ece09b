"""Local microphone/speaker client for running an interview from a terminal.

Captures the microphone at 24kHz, relays it to the realtime model through a
RelaySession, and plays the interviewer's replies through a PlaybackQueue.
When the participant starts talking over the interviewer, queued replies
are dropped and a fresh queue takes over.

Usage:
    python client.py --interviews-file interviews.json --interview-id demo
"""

from __future__ import annotations

import argparse
import asyncio
import io
import sys
import wave

import numpy as np
from loguru import logger

from audio_codec import encode_for_transport
from interview import InterviewNotFoundError, InterviewRepository
from playback import PlaybackQueue
from providers import ConfigurationError, create_provider
from relay import ClientLeg, RelaySession
from utils import INTERVIEWS_FILE, LOG_LEVEL, MODEL_SAMPLE_RATE

BLOCK_SIZE = 2400  # 100ms at 24kHz


class AudioRecorder:
    """Microphone capture feeding float32 blocks into an asyncio queue."""

    def __init__(self, sample_rate: int = MODEL_SAMPLE_RATE, block_size: int = BLOCK_SIZE):
        import sounddevice as sd

        self._sd = sd
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.queue: asyncio.Queue[np.ndarray] = asyncio.Queue()
        self._stream = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _on_audio(self, data: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            logger.debug(f"Input stream status: {status}")
        block = data[:, 0].copy()
        self._loop.call_soon_threadsafe(self.queue.put_nowait, block)

    def start(self) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._stream = self._sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self.block_size,
            callback=self._on_audio,
        )
        self._stream.start()
        logger.info("Microphone recording started")

    def stop(self) -> None:
        if self._stream is None:
            return
        self._stream.stop()
        self._stream.close()
        self._stream = None
        logger.info("Microphone recording stopped")


class SoundDevicePlayer:
    """Plays one WAV buffer to the default output device."""

    def __init__(self):
        import sounddevice as sd

        self._sd = sd

    def _play_blocking(self, wav_bytes: bytes) -> None:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wav:
            rate = wav.getframerate()
            frames = wav.readframes(wav.getnframes())
        samples = np.frombuffer(frames, dtype="<i2")
        if samples.size == 0:
            return
        self._sd.play(samples, samplerate=rate, blocking=True)

    async def __call__(self, wav_bytes: bytes) -> None:
        await asyncio.to_thread(self._play_blocking, wav_bytes)

    def stop(self) -> None:
        self._sd.stop()


class LocalAudioLeg(ClientLeg):
    """Microphone in, speakers out, transcript to the terminal."""

    name = "local"

    def __init__(self, recorder: AudioRecorder, player: SoundDevicePlayer):
        self.recorder = recorder
        self.player = player
        self.playback = PlaybackQueue(player)

    async def pump(self, session: RelaySession) -> None:
        while True:
            block = await self.recorder.queue.get()
            await session.send_upstream({
                "type": "input_audio_buffer.append",
                "audio": encode_for_transport(block),
            })

    async def deliver_audio(self, pcm: bytes) -> None:
        self.playback.enqueue(pcm)

    async def on_ready(self) -> None:
        self.recorder.start()
        print("Interview started. Speak when the interviewer finishes. Ctrl+C to quit.")

    async def on_speech_started(self) -> None:
        # Barge-in: stop the current reply and start a fresh queue
        await self.playback.close()
        self.player.stop()
        self.playback = PlaybackQueue(self.player)

    async def on_transcript(self, role: str, text: str, final: bool) -> None:
        if final:
            label = "Interviewer" if role == "assistant" else "You"
            print(f"{label}: {text}")

    async def on_error(self, code: str, message: str) -> None:
        print(f"Error ({code}): {message}", file=sys.stderr)

    async def close(self) -> None:
        self.recorder.stop()
        await self.playback.close()


async def run_interview(repository: InterviewRepository, interview_id: str | None) -> None:
    script = repository.resolve(interview_id)
    leg = LocalAudioLeg(AudioRecorder(), SoundDevicePlayer())
    session = RelaySession(leg, script, create_provider())
    await session.run()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a voice interview from this machine's microphone")
    parser.add_argument("--interviews-file", default=INTERVIEWS_FILE, help="JSON file with interview definitions")
    parser.add_argument("--interview-id", default=None, help="Interview to run (default: most recent)")
    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stderr, level=LOG_LEVEL)

    if not args.interviews_file:
        parser.error("--interviews-file (or INTERVIEWS_FILE) is required")

    repository = InterviewRepository()
    repository.load_file(args.interviews_file)

    try:
        asyncio.run(run_interview(repository, args.interview_id))
    except (ConfigurationError, InterviewNotFoundError) as e:
        logger.error(f"Cannot start interview: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interview interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
