"""Audio playback for the room client CLI."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Final

import av
import sounddevice
from av.error import FFmpegError
from sounddevice import CallbackFlags

logger = logging.getLogger(__name__)

SAMPLE_RATE: Final[int] = 44_100
CHANNELS: Final[int] = 2
FRAME_SIZE: Final[int] = CHANNELS * 2
"""Bytes per interleaved 16-bit stereo frame."""


def decode_file(path: Path) -> bytes:
    """Decode a whole audio file to interleaved 16-bit stereo PCM at SAMPLE_RATE."""
    resampler = av.AudioResampler(format="s16", layout="stereo", rate=SAMPLE_RATE)
    chunks: list[bytes] = []
    with av.open(str(path)) as container:
        for frame in container.decode(audio=0):
            for out in resampler.resample(frame):
                chunks.append(bytes(out.planes[0])[: out.samples * FRAME_SIZE])
        for out in resampler.resample(None):
            chunks.append(bytes(out.planes[0])[: out.samples * FRAME_SIZE])
    return b"".join(chunks)


class AudioPlayer:
    """
    Plays one decoded track through the default output device.

    The whole track is decoded up front so seeking is instant. The sounddevice
    callback runs on its own thread and reads the shared playback cursor under
    a lock; rate adjustments pick the nearest source frame for every output
    frame, which is inaudible for the small deviations used to converge.
    """

    _loop: asyncio.AbstractEventLoop
    _on_end: Callable[[], None] | None

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_end: Callable[[], None] | None = None,
    ) -> None:
        """
        Initialize the audio player.

        Args:
            loop: The asyncio event loop end-of-track notifications are delivered on.
            on_end: Called when the loaded track played to its end.
        """
        self._loop = loop
        self._on_end = on_end
        self._lock = threading.Lock()
        self._pcm = b""
        self._frames = 0
        self._cursor = 0.0
        self._rate = 1.0
        self._playing = False
        self._stream: sounddevice.RawOutputStream | None = None
        self._loaded: Path | None = None

    @property
    def loaded(self) -> Path | None:
        """Path of the loaded track."""
        return self._loaded

    @property
    def position(self) -> float:
        """Current playback position in seconds."""
        with self._lock:
            return self._cursor / SAMPLE_RATE

    @property
    def duration(self) -> float:
        """Length of the loaded track in seconds."""
        with self._lock:
            return self._frames / SAMPLE_RATE

    @property
    def playing(self) -> bool:
        """True while audio is being output."""
        with self._lock:
            return self._playing

    async def load(self, path: Path) -> None:
        """Decode a track and make it the current one, paused at its start."""
        if path == self._loaded:
            return
        try:
            pcm = await self._loop.run_in_executor(None, decode_file, path)
        except (FFmpegError, OSError):
            logger.exception("Could not decode %s", path)
            raise
        with self._lock:
            self._pcm = pcm
            self._frames = len(pcm) // FRAME_SIZE
            self._cursor = 0.0
            self._playing = False
        self._loaded = path
        logger.info("Loaded %s (%.1fs)", path.name, self._frames / SAMPLE_RATE)

    def play(self) -> None:
        """Start or continue output."""
        with self._lock:
            if self._frames == 0 or self._playing:
                return
            self._playing = True
        self._ensure_stream()

    def pause(self) -> None:
        """Stop output, keeping the position."""
        with self._lock:
            self._playing = False

    def seek(self, position: float) -> None:
        """Jump to a position in seconds."""
        with self._lock:
            self._cursor = min(max(0.0, position * SAMPLE_RATE), float(self._frames))

    def set_rate(self, rate: float) -> None:
        """Set the playback rate."""
        with self._lock:
            self._rate = rate

    async def stop(self) -> None:
        """Stop playback and release the output device."""
        self.pause()
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception:  # pragma: no cover - backend failure
                logger.exception("Failed to close audio output stream")

    def _ensure_stream(self) -> None:
        if self._stream is not None:
            return
        self._stream = sounddevice.RawOutputStream(
            samplerate=SAMPLE_RATE,
            channels=CHANNELS,
            dtype="int16",
            blocksize=2048,
            callback=self._audio_callback,
        )
        self._stream.start()

    def _audio_callback(
        self,
        outdata: memoryview,
        frames: int,
        time: sounddevice.CallbackTimeInfo,  # noqa: ARG002
        status: CallbackFlags,
    ) -> None:
        """Fill the output buffer from the playback cursor."""
        if status:
            logger.debug("Audio callback status: %s", status)
        output_buffer = memoryview(outdata).cast("B")
        ended = False
        with self._lock:
            if not self._playing:
                output_buffer[:] = bytes(len(output_buffer))
                return
            start = int(self._cursor)
            if self._rate == 1.0:
                available = max(0, min(frames, self._frames - start))
                data = self._pcm[start * FRAME_SIZE : (start + available) * FRAME_SIZE]
                self._cursor += available
            else:
                indices = []
                cursor = self._cursor
                for _ in range(frames):
                    idx = int(cursor)
                    if idx >= self._frames:
                        break
                    indices.append(idx)
                    cursor += self._rate
                data = b"".join(self._pcm[i * FRAME_SIZE : (i + 1) * FRAME_SIZE] for i in indices)
                self._cursor = min(cursor, float(self._frames))
            if self._cursor >= self._frames:
                self._playing = False
                ended = True
        output_buffer[: len(data)] = data
        output_buffer[len(data) :] = bytes(len(output_buffer) - len(data))
        if ended and self._on_end is not None:
            self._loop.call_soon_threadsafe(self._on_end)
