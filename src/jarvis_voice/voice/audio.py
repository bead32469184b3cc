"""Audio output session for the Jarvis voice pipeline.

Owns the single process-wide output device:
- Lazy creation on first use, explicit release at teardown
- Suspend/resume of the output clock (pause/resume of a playing response)
- Decoded-buffer playback of synthesized speech
- Short synthetic cue tones, played on their own stream

Also provides the PCM16 decoding used for synthesized speech payloads.
"""

from __future__ import annotations

import asyncio
import base64
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import numpy as np
import structlog

from .errors import AudioDeviceError, AudioSessionClosedError

if TYPE_CHECKING:
    import pyaudio

logger = structlog.get_logger(__name__)

DEFAULT_SAMPLE_RATE = 24000
PCM16_SCALE = 32768.0

# Frames written per stream.write call; bounds stop/suspend latency
WRITE_CHUNK_FRAMES = 1024


# ─────────────────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AudioBuffer:
    """Decoded audio, one row of float32 samples per channel."""

    samples: np.ndarray
    sample_rate: int = DEFAULT_SAMPLE_RATE

    @property
    def num_channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_seconds(self) -> float:
        return self.frame_count / self.sample_rate

    def interleaved(self) -> np.ndarray:
        """Frames interleaved channel by channel, as output streams expect."""
        return np.ascontiguousarray(self.samples.T).reshape(-1)


def decode_base64(data: str) -> bytes:
    """Decode a base64 audio payload to raw bytes."""
    return base64.b64decode(data)


def decode_pcm16(
    data: bytes,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    num_channels: int = 1,
) -> AudioBuffer:
    """Decode 16-bit little-endian PCM into a normalized float buffer.

    A trailing orphan byte is dropped, since every sample is 2 bytes. A
    trailing partial frame (fewer samples than channels) is dropped too.

    Args:
        data: Raw PCM bytes.
        sample_rate: Sample rate of the payload.
        num_channels: Interleaved channel count.

    Returns:
        AudioBuffer with shape (num_channels, sample_count // num_channels).
    """
    if num_channels < 1:
        raise ValueError(f"num_channels must be >= 1, got {num_channels}")

    even_length = len(data) - (len(data) % 2)
    samples = np.frombuffer(data[:even_length], dtype="<i2")

    frame_count = len(samples) // num_channels
    frames = samples[: frame_count * num_channels].reshape(frame_count, num_channels)
    normalized = (frames.T.astype(np.float32) / PCM16_SCALE).copy()

    return AudioBuffer(samples=normalized, sample_rate=sample_rate)


# ─────────────────────────────────────────────────────────────────────────────
# Cue tones
# ─────────────────────────────────────────────────────────────────────────────


class CueKind(Enum):
    """Short UI tones."""

    START = "start"  # session activated
    END = "end"  # turn finished, command captured
    DETECT = "detect"  # speech detected


@dataclass(frozen=True)
class _ToneShape:
    start_hz: float
    end_hz: float
    sweep_seconds: float
    peak_gain: float
    attack_seconds: float
    duration_seconds: float


CUE_SHAPES: dict[CueKind, _ToneShape] = {
    CueKind.START: _ToneShape(880.0, 1320.0, 0.1, 0.1, 0.02, 0.15),
    CueKind.DETECT: _ToneShape(1100.0, 1100.0, 0.0, 0.05, 0.01, 0.05),
    CueKind.END: _ToneShape(660.0, 440.0, 0.1, 0.1, 0.02, 0.15),
}


def cue_tone(kind: CueKind, sample_rate: int = DEFAULT_SAMPLE_RATE) -> np.ndarray:
    """Synthesize a mono cue tone as float32 samples.

    Sine oscillator with an exponential frequency sweep and a linear
    attack/release gain envelope.
    """
    shape = CUE_SHAPES[kind]
    n = int(round(shape.duration_seconds * sample_rate))
    t = np.arange(n, dtype=np.float64) / sample_rate

    if shape.sweep_seconds > 0:
        progress = np.clip(t / shape.sweep_seconds, 0.0, 1.0)
        freq = shape.start_hz * (shape.end_hz / shape.start_hz) ** progress
    else:
        freq = np.full(n, shape.start_hz)
    phase = 2.0 * np.pi * np.cumsum(freq) / sample_rate

    envelope = np.interp(
        t,
        [0.0, shape.attack_seconds, shape.duration_seconds],
        [0.0, shape.peak_gain, 0.0],
    )
    return (np.sin(phase) * envelope).astype(np.float32)


# ─────────────────────────────────────────────────────────────────────────────
# Output device
# ─────────────────────────────────────────────────────────────────────────────


class OutputStream(Protocol):
    """Blocking output stream of interleaved float32 frames."""

    def write(self, frames: bytes) -> None: ...

    def stop_stream(self) -> None: ...

    def close(self) -> None: ...


class OutputBackend(Protocol):
    """Host audio output device."""

    def open_stream(self, sample_rate: int, channels: int) -> OutputStream: ...

    def close(self) -> None: ...


class PyAudioBackend:
    """Output device backed by PyAudio."""

    def __init__(self, output_device_index: int | None = None) -> None:
        try:
            import pyaudio
        except ImportError as e:
            raise AudioDeviceError(
                "PyAudio is not installed (pip install jarvis-voice[audio])",
                original_error=e,
                recoverable=False,
            ) from e

        self._format = pyaudio.paFloat32
        self._output_device_index = output_device_index
        self._pyaudio: pyaudio.PyAudio = pyaudio.PyAudio()
        logger.info("pyaudio_output_initialized", device_index=output_device_index)

    def open_stream(self, sample_rate: int, channels: int) -> OutputStream:
        return self._pyaudio.open(
            format=self._format,
            channels=channels,
            rate=sample_rate,
            output=True,
            output_device_index=self._output_device_index,
        )

    def close(self) -> None:
        self._pyaudio.terminate()


class DeviceState(Enum):
    """Lifecycle of the output device."""

    ABSENT = "absent"
    RUNNING = "running"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class BufferPlayback:
    """One decoded buffer being written to the device on a worker thread.

    on_finished runs on the event loop with True when the buffer played to
    the end, False when it was stopped or failed.
    """

    def __init__(
        self,
        session: AudioSession,
        buffer: AudioBuffer,
        on_finished: Callable[[bool], None],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._session = session
        self._buffer = buffer
        self._on_finished = on_finished
        self._loop = loop
        self._stopped = threading.Event()
        self._future: Future | None = None

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> None:
        self._future = self._session._executor_submit(self._run)

    def stop(self) -> None:
        """Stop writing. Idempotent; the finish callback reports False."""
        self._stopped.set()

    def _run(self) -> None:
        completed = False
        try:
            completed = self._write_all()
        except Exception as e:
            logger.error("buffer_playback_failed", error=str(e))
        finally:
            if not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._on_finished, completed)

    def _write_all(self) -> bool:
        frames = self._buffer.interleaved()
        step = WRITE_CHUNK_FRAMES * self._buffer.num_channels
        stream = self._session._open_stream(
            self._buffer.sample_rate, self._buffer.num_channels
        )
        try:
            for offset in range(0, len(frames), step):
                # Blocks while the device is suspended
                while not self._session._running.wait(timeout=0.05):
                    if self._stopped.is_set():
                        return False
                if self._stopped.is_set():
                    return False
                stream.write(frames[offset : offset + step].tobytes())
            return not self._stopped.is_set()
        finally:
            stream.stop_stream()
            stream.close()


@dataclass
class AudioSession:
    """Owns the single audio output device.

    Only the voice output player drives response playback through this
    session; cue tones are fire-and-forget and never count as the active
    playback.
    """

    sample_rate: int = DEFAULT_SAMPLE_RATE
    backend_factory: Callable[[], OutputBackend] = PyAudioBackend

    _backend: OutputBackend | None = field(default=None, repr=False)
    _state: DeviceState = field(default=DeviceState.ABSENT, repr=False)
    _running: threading.Event = field(default_factory=threading.Event, repr=False)
    _playbacks: set[BufferPlayback] = field(default_factory=set, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _executor: ThreadPoolExecutor | None = field(default=None, repr=False)

    @property
    def state(self) -> DeviceState:
        return self._state

    @property
    def is_suspended(self) -> bool:
        return self._state == DeviceState.SUSPENDED

    def _check_open(self) -> None:
        if self._state == DeviceState.CLOSED:
            raise AudioSessionClosedError()

    async def ensure_active(self) -> None:
        """Create the device if absent and resume it if suspended. Idempotent."""
        self._check_open()
        if self._backend is None:
            try:
                self._backend = await asyncio.to_thread(self.backend_factory)
            except AudioDeviceError:
                raise
            except Exception as e:
                raise AudioDeviceError("Failed to open audio output", original_error=e) from e
            self._state = DeviceState.RUNNING
            self._running.set()
            logger.info("audio_session_created", sample_rate=self.sample_rate)
        elif self._state == DeviceState.SUSPENDED:
            await self.resume()

    async def suspend(self) -> None:
        """Pause the output clock. No-op unless running."""
        if self._state != DeviceState.RUNNING:
            return
        self._running.clear()
        self._state = DeviceState.SUSPENDED
        logger.debug("audio_session_suspended")

    async def resume(self) -> None:
        """Resume the output clock. No-op unless suspended."""
        self.resume_nowait()

    def resume_nowait(self) -> None:
        """Resume from synchronous code, e.g. when a paused response is interrupted."""
        if self._state != DeviceState.SUSPENDED:
            return
        self._state = DeviceState.RUNNING
        self._running.set()
        logger.debug("audio_session_resumed")

    def play_cue(self, kind: CueKind) -> None:
        """Play a cue tone without blocking and without touching active playback."""
        if self._backend is None or self._state != DeviceState.RUNNING:
            logger.debug("cue_skipped", cue=kind.value, device_state=self._state.value)
            return
        tone = cue_tone(kind, self.sample_rate)
        future = self._executor_submit(self._write_cue, tone)
        future.add_done_callback(self._log_cue_failure)

    def _write_cue(self, tone: np.ndarray) -> None:
        stream = self._open_stream(self.sample_rate, 1)
        try:
            stream.write(tone.tobytes())
        finally:
            stream.stop_stream()
            stream.close()

    @staticmethod
    def _log_cue_failure(future: Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning("cue_playback_failed", error=str(future.exception()))

    def start_playback(
        self,
        buffer: AudioBuffer,
        on_finished: Callable[[bool], None],
    ) -> BufferPlayback:
        """Start writing a decoded buffer to the device.

        Must be called from the event loop after ensure_active().
        """
        self._check_open()
        if self._backend is None:
            raise AudioDeviceError("Audio session not active")
        loop = asyncio.get_running_loop()

        def finished(completed: bool) -> None:
            self._playbacks.discard(playback)
            on_finished(completed)

        playback = BufferPlayback(self, buffer, finished, loop)
        self._playbacks.add(playback)
        playback.start()
        logger.debug(
            "buffer_playback_started",
            frames=buffer.frame_count,
            duration_s=round(buffer.duration_seconds, 2),
        )
        return playback

    async def close(self) -> None:
        """Release the device. Safe to call when it was never created."""
        if self._state == DeviceState.CLOSED:
            return
        for playback in list(self._playbacks):
            playback.stop()
        # Unblock writers waiting on a suspended clock so they can exit
        self._running.set()
        self._state = DeviceState.CLOSED
        # Writers must leave stream.write before the backend is terminated
        executor, self._executor = self._executor, None
        if executor is not None:
            await asyncio.to_thread(executor.shutdown, wait=True, cancel_futures=True)
        backend, self._backend = self._backend, None
        if backend is not None:
            await asyncio.to_thread(backend.close)
            logger.info("audio_session_closed")

    def _open_stream(self, sample_rate: int, channels: int) -> OutputStream:
        with self._lock:
            if self._backend is None:
                raise AudioSessionClosedError()
            return self._backend.open_stream(sample_rate, channels)

    def _executor_submit(self, fn: Callable[..., object], *args: object) -> Future:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="jarvis-audio")
        return self._executor.submit(fn, *args)
