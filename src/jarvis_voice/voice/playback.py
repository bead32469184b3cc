"""Voice output for the Jarvis voice session.

VoiceOutputPlayer turns response text into audible speech:
1. Empty text completes immediately
2. Offline (or remote synthesis degraded) goes straight to the local voice
3. Otherwise the text is sanitized and synthesized remotely with retry
4. Decoded audio plays through the shared AudioSession
5. Any remote failure, including quota exhaustion, falls back to the local voice

Exactly one PlaybackHandle is active at a time. Every completion callback
checks handle identity before acting, and every speak() request carries a
generation number so a stale synthesis result is dropped.
"""

from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from jarvis_voice.errors.codes import ErrorCode
from jarvis_voice.utils.config import RetryConfig, SynthesisConfig
from jarvis_voice.voice.audio import (
    AudioBuffer,
    AudioSession,
    BufferPlayback,
    decode_base64,
    decode_pcm16,
)
from jarvis_voice.voice.errors import (
    AudioDeviceError,
    CollaboratorError,
    EmptyAudioPayloadError,
    FallbackSynthesisError,
)
from jarvis_voice.voice.fallback import LocalSpeechEngine, SpeechCallbacks
from jarvis_voice.voice.recovery import DegradedModeTracker, RetryPolicy, with_retry
from jarvis_voice.voice.synthesis import SpeechClient, sanitize_for_speech

logger = structlog.get_logger(__name__)

SYNTHESIS_COMPONENT = "synthesis"

_handle_ids = itertools.count(1)


class PlaybackPath(Enum):
    """Which output mechanism a handle uses."""

    PRIMARY = "primary"  # remote synthesis, decoded buffer on the AudioSession
    FALLBACK = "fallback"  # local device-native speech


class PlaybackOutcome(Enum):
    """Classified result of a speak() request."""

    EMPTY = "empty"  # nothing to say, done signalled immediately
    PRIMARY = "primary"
    FALLBACK = "fallback"
    SUPERSEDED = "superseded"  # a newer request or a stop arrived meanwhile
    FAILED = "failed"  # no output path could produce audio


class PlaybackHandle(ABC):
    """Live, stoppable reference to one in-progress audio output."""

    path: PlaybackPath

    def __init__(self) -> None:
        self.handle_id = next(_handle_ids)
        self._stopped = False
        self._on_done: Callable[[PlaybackHandle], None] | None = None
        self._on_failed: Callable[[PlaybackHandle, Exception], None] | None = None

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def start(
        self,
        on_done: Callable[[PlaybackHandle], None],
        on_failed: Callable[[PlaybackHandle, Exception], None] | None = None,
    ) -> None:
        self._on_done = on_done
        self._on_failed = on_failed
        self._start()

    def stop(self) -> None:
        """Stop output and release the handle. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._stop()

    def _finished(self) -> None:
        if not self._stopped and self._on_done:
            self._on_done(self)

    def _failed(self, error: Exception) -> None:
        if not self._stopped and self._on_failed:
            self._on_failed(self, error)

    @abstractmethod
    def _start(self) -> None: ...

    @abstractmethod
    def _stop(self) -> None: ...

    @abstractmethod
    async def pause(self) -> None: ...

    @abstractmethod
    async def resume(self) -> None: ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.handle_id}, stopped={self._stopped})"


class BufferPlaybackHandle(PlaybackHandle):
    """Decoded-buffer playback; pause suspends the shared audio device."""

    path = PlaybackPath.PRIMARY

    def __init__(self, audio: AudioSession, buffer: AudioBuffer) -> None:
        super().__init__()
        self._audio = audio
        self._buffer = buffer
        self._playback: BufferPlayback | None = None

    def _start(self) -> None:
        self._playback = self._audio.start_playback(self._buffer, self._on_playback_finished)

    def _on_playback_finished(self, completed: bool) -> None:
        if completed:
            self._finished()
        else:
            # Not stopped by us, so the device failed mid-buffer
            self._failed(AudioDeviceError("Buffer playback did not complete"))

    def _stop(self) -> None:
        if self._playback is not None:
            self._playback.stop()

    async def pause(self) -> None:
        await self._audio.suspend()

    async def resume(self) -> None:
        await self._audio.resume()


class FallbackPlaybackHandle(PlaybackHandle):
    """Local speech; pause/resume use the engine's own controls."""

    path = PlaybackPath.FALLBACK

    def __init__(
        self,
        engine: LocalSpeechEngine,
        text: str,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        super().__init__()
        self._engine = engine
        self._text = text
        self._loop = loop

    def _start(self) -> None:
        self._engine.speak(
            self._text,
            SpeechCallbacks(
                on_done=lambda: self._call_soon(self._finished),
                on_error=lambda e: self._call_soon(self._failed, e),
            ),
        )

    def _call_soon(self, callback: Callable[..., None], *args: Any) -> None:
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    def _stop(self) -> None:
        self._engine.stop()

    async def pause(self) -> None:
        self._engine.pause()

    async def resume(self) -> None:
        self._engine.resume()


@dataclass
class VoiceOutputPlayer:
    """Produces spoken output for response text.

    The player exclusively owns response playback on the AudioSession.
    """

    audio: AudioSession
    local_engine: LocalSpeechEngine
    speech_client: SpeechClient | None = None
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_attempts=2, initial_delay_seconds=0.3)
    )
    degraded: DegradedModeTracker = field(default_factory=DegradedModeTracker)
    sleep: Callable[[float], Coroutine[Any, Any, None]] | None = None

    _active: PlaybackHandle | None = field(default=None, repr=False)
    _generation: int = field(default=0, repr=False)
    _is_paused: bool = field(default=False, repr=False)

    @property
    def active_handle(self) -> PlaybackHandle | None:
        return self._active

    @property
    def is_playing(self) -> bool:
        return self._active is not None

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry.max_attempts,
            initial_delay_seconds=self.retry.initial_delay_seconds,
            backoff_factor=self.retry.backoff_factor,
            max_delay_seconds=self.retry.max_delay_seconds,
        )

    async def speak(
        self,
        text: str,
        *,
        offline: bool = False,
        on_speaking: Callable[[PlaybackPath], None] | None = None,
        on_done: Callable[[], None] | None = None,
        on_failed: Callable[[], None] | None = None,
    ) -> PlaybackOutcome:
        """Speak text, superseding any current output.

        on_speaking fires when a handle starts, on_done on natural completion
        of that handle (or immediately for empty text), on_failed if the
        local voice fails after it started.
        """
        self._generation += 1
        generation = self._generation

        if not text or not text.strip():
            logger.info("speak_empty_text")
            if on_done:
                on_done()
            return PlaybackOutcome.EMPTY

        sanitized = sanitize_for_speech(text, self.synthesis.acknowledgment_text)

        if offline or self.speech_client is None or self.degraded.is_degraded(SYNTHESIS_COMPONENT):
            logger.info(
                "speak_local_only",
                offline=offline,
                degraded=self.degraded.is_degraded(SYNTHESIS_COMPONENT),
            )
            return self._start_fallback(sanitized, generation, on_speaking, on_done, on_failed)

        try:
            buffer = await self._synthesize(sanitized)
        except Exception as e:
            if generation != self._generation:
                return PlaybackOutcome.SUPERSEDED
            if isinstance(e, CollaboratorError) and e.code == ErrorCode.RATE_LIMITED:
                self.degraded.enter_degraded_mode(
                    SYNTHESIS_COMPONENT,
                    reason="speech quota exhausted",
                    cooldown_seconds=self.synthesis.quota_cooldown_seconds,
                )
            logger.warning("synthesis_fallback", error=str(e), error_type=type(e).__name__)
            return self._start_fallback(sanitized, generation, on_speaking, on_done, on_failed)

        if generation != self._generation:
            logger.info("synthesis_result_superseded")
            return PlaybackOutcome.SUPERSEDED

        self.interrupt(invalidate=False)
        handle = BufferPlaybackHandle(self.audio, buffer)
        self._active = handle
        self._is_paused = False
        try:
            handle.start(
                on_done=lambda h: self._handle_done(h, on_done),
                on_failed=lambda h, e: self._handle_failed(h, e, on_failed),
            )
        except AudioDeviceError as e:
            self._active = None
            logger.warning("buffer_playback_start_failed", error=str(e))
            return self._start_fallback(sanitized, generation, on_speaking, on_done, on_failed)
        if on_speaking:
            on_speaking(PlaybackPath.PRIMARY)
        logger.info(
            "speech_playback_started",
            handle_id=handle.handle_id,
            path=handle.path.value,
            duration_s=round(buffer.duration_seconds, 2),
        )
        return PlaybackOutcome.PRIMARY

    async def _synthesize(self, text: str) -> AudioBuffer:
        await self.audio.ensure_active()
        kwargs = {"sleep": self.sleep} if self.sleep is not None else {}
        payload = await with_retry(
            lambda: self.speech_client.synthesize(text),
            self.policy,
            failure_type="synthesis",
            **kwargs,
        )
        buffer = decode_pcm16(
            decode_base64(payload),
            sample_rate=self.synthesis.sample_rate,
            num_channels=self.synthesis.channels,
        )
        if buffer.frame_count == 0:
            raise EmptyAudioPayloadError()
        return buffer

    def _start_fallback(
        self,
        text: str,
        generation: int,
        on_speaking: Callable[[PlaybackPath], None] | None,
        on_done: Callable[[], None] | None,
        on_failed: Callable[[], None] | None,
    ) -> PlaybackOutcome:
        if generation != self._generation:
            return PlaybackOutcome.SUPERSEDED
        if not self.local_engine.is_available:
            logger.error("local_voice_unavailable")
            return PlaybackOutcome.FAILED

        self.interrupt(invalidate=False)
        handle = FallbackPlaybackHandle(self.local_engine, text, asyncio.get_running_loop())
        self._active = handle
        self._is_paused = False
        try:
            handle.start(
                on_done=lambda h: self._handle_done(h, on_done),
                on_failed=lambda h, e: self._handle_failed(h, e, on_failed),
            )
        except FallbackSynthesisError as e:
            logger.error("local_voice_start_failed", error=str(e))
            self._active = None
            return PlaybackOutcome.FAILED
        if on_speaking:
            on_speaking(PlaybackPath.FALLBACK)
        logger.info("speech_playback_started", handle_id=handle.handle_id, path=handle.path.value)
        return PlaybackOutcome.FALLBACK

    def _handle_done(self, handle: PlaybackHandle, on_done: Callable[[], None] | None) -> None:
        if handle is not self._active:
            logger.debug("stale_playback_done_ignored", handle_id=handle.handle_id)
            return
        self._active = None
        self._is_paused = False
        logger.info("speech_playback_finished", handle_id=handle.handle_id)
        if on_done:
            on_done()

    def _handle_failed(
        self,
        handle: PlaybackHandle,
        error: Exception,
        on_failed: Callable[[], None] | None,
    ) -> None:
        if handle is not self._active:
            return
        self._active = None
        self._is_paused = False
        logger.error("speech_playback_failed", handle_id=handle.handle_id, error=str(error))
        if on_failed:
            on_failed()

    def interrupt(self, invalidate: bool = True) -> None:
        """Stop and release the active handle.

        With invalidate, any speak() still waiting on synthesis is superseded.
        """
        if invalidate:
            self._generation += 1
        handle, self._active = self._active, None
        was_paused, self._is_paused = self._is_paused, False
        if handle is not None:
            handle.stop()
            if was_paused and handle.path is PlaybackPath.PRIMARY:
                # A paused buffer left the shared device suspended
                self.audio.resume_nowait()
            logger.info("speech_playback_interrupted", handle_id=handle.handle_id)

    async def stop(self) -> None:
        """Explicit stop: interrupt output and leave the device running."""
        self.interrupt()
        await self.audio.resume()

    async def toggle_pause(self) -> bool:
        """Pause or resume the active output. Returns the new paused flag."""
        handle = self._active
        if handle is None:
            return False
        if self._is_paused:
            await handle.resume()
            self._is_paused = False
        else:
            await handle.pause()
            self._is_paused = True
        logger.info("speech_playback_paused" if self._is_paused else "speech_playback_resumed")
        return self._is_paused
