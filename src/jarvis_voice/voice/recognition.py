"""Continuous speech input for the Jarvis voice session.

The recognition primitive ends naturally after every utterance or silence
gap. SpeechInputStream supervises it: it restarts the primitive after a
short delay so consumers see one unbroken stream of transcript events,
until stop() is requested or the owner says restarting is not allowed.

Error classification:
- no-speech, audio-capture, aborted: transient, swallowed, cause a restart
- not-allowed (permission denied): fatal, surfaced once as an ERROR event
- anything else: logged and ignored
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import structlog

from jarvis_voice.errors.codes import ErrorCode
from jarvis_voice.utils.config import RecognitionConfig
from jarvis_voice.voice.errors import (
    RecognitionError,
    RecognitionPermissionError,
    RecognitionUnavailableError,
)

if TYPE_CHECKING:
    import pyaudio
    from vosk import Model as VoskModel

logger = structlog.get_logger(__name__)


class TranscriptKind(Enum):
    """Kinds of events produced by the speech input stream."""

    INTERIM = "interim"
    FINAL = "final"
    ERROR = "error"


@dataclass(frozen=True)
class TranscriptEvent:
    """One recognition event.

    Interim events replace each other for display; a final event is
    delivered exactly once per utterance.
    """

    kind: TranscriptKind
    text: str = ""
    code: ErrorCode | None = None

    @classmethod
    def interim(cls, text: str) -> TranscriptEvent:
        return cls(TranscriptKind.INTERIM, text)

    @classmethod
    def final(cls, text: str) -> TranscriptEvent:
        return cls(TranscriptKind.FINAL, text)

    @classmethod
    def error(cls, code: ErrorCode) -> TranscriptEvent:
        return cls(TranscriptKind.ERROR, code=code)


class Recognizer(Protocol):
    """A recognition capability.

    session() runs one recognition pass and finishes on its own after an
    utterance or silence gap; failures are raised as RecognitionError.
    """

    @property
    def is_available(self) -> bool: ...

    def session(self) -> AsyncIterator[TranscriptEvent]: ...

    def abort(self) -> None: ...


@dataclass
class SpeechInputStream:
    """Supervised, restartable stream of transcript events."""

    recognizer: Recognizer
    restart_delay_seconds: float = 0.1
    should_restart: Callable[[], bool] = field(default=lambda: True)

    _stop_requested: bool = field(default=False, repr=False)
    _restart_count: int = field(default=0, repr=False)

    @property
    def is_stopped(self) -> bool:
        return self._stop_requested

    @property
    def restart_count(self) -> int:
        return self._restart_count

    def stop(self) -> None:
        """Stop the stream without restart. Idempotent."""
        if self._stop_requested:
            return
        self._stop_requested = True
        self.recognizer.abort()
        logger.info("speech_input_stop_requested")

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        """Yield transcript events until stopped or a fatal error occurs.

        Calling events() again after the generator ended starts a fresh
        supervision loop (used when the user recovers from a fatal error).
        """
        self._stop_requested = False

        if not self.recognizer.is_available:
            logger.error("speech_recognition_unavailable")
            yield TranscriptEvent.error(ErrorCode.UNSUPPORTED)
            return

        logger.info("speech_input_started")
        while not self._stop_requested:
            fatal = None
            try:
                async for event in self.recognizer.session():
                    if self._stop_requested:
                        break
                    if event.kind == TranscriptKind.ERROR:
                        fatal = self._classify(event.code or ErrorCode.INTERNAL_ERROR)
                        if fatal:
                            break
                        continue
                    yield event
            except RecognitionError as e:
                fatal = self._classify(e.code, str(e))

            if fatal is not None:
                yield fatal
                return

            if self._stop_requested:
                break
            if not self.should_restart():
                logger.info("speech_input_restart_suppressed")
                return

            await asyncio.sleep(self.restart_delay_seconds)
            self._restart_count += 1
            logger.debug("speech_input_restarting", restarts=self._restart_count)

        logger.info("speech_input_stopped")

    def _classify(self, code: ErrorCode, message: str = "") -> TranscriptEvent | None:
        """Return an ERROR event for fatal codes, None for everything else."""
        if code.is_transient_recognition():
            logger.debug("recognition_transient_error", code=code.value)
            return None
        if code.is_session_fatal():
            logger.error("recognition_fatal_error", code=code.value, error=message)
            return TranscriptEvent.error(code)
        logger.warning("recognition_error_ignored", code=code.value, error=message)
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Vosk + PyAudio recognizer
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class VoskRecognizer:
    """Offline microphone recognizer using Vosk.

    Each session opens the microphone, emits partial results as interim
    events and ends after the first final result, or raises no-speech
    after max_silence_seconds without any partial text.
    """

    config: RecognitionConfig = field(default_factory=RecognitionConfig)

    _model: VoskModel | None = field(default=None, repr=False)
    _pyaudio: pyaudio.PyAudio | None = field(default=None, repr=False)
    _aborted: bool = field(default=False, repr=False)
    _load_attempted: bool = field(default=False, repr=False)

    @property
    def model_path(self) -> Path:
        return Path(self.config.model_path).expanduser()

    @property
    def is_available(self) -> bool:
        """Check that vosk, PyAudio and the acoustic model are present."""
        self._load()
        return self._model is not None and self._pyaudio is not None

    def _load(self) -> None:
        if self._load_attempted:
            return
        self._load_attempted = True
        try:
            import pyaudio
            from vosk import Model, SetLogLevel
        except ImportError:
            logger.warning(
                "vosk_or_pyaudio_not_installed",
                msg="pip install jarvis-voice[audio]",
            )
            return

        if not self.model_path.exists():
            logger.warning("vosk_model_missing", path=str(self.model_path))
            return

        SetLogLevel(-1)
        self._model = Model(str(self.model_path))
        self._pyaudio = pyaudio.PyAudio()
        logger.info(
            "vosk_recognizer_loaded",
            path=str(self.model_path),
            language=self.config.language,
            sample_rate=self.config.sample_rate,
        )

    def abort(self) -> None:
        self._aborted = True

    async def session(self) -> AsyncIterator[TranscriptEvent]:
        import pyaudio
        from vosk import KaldiRecognizer

        if self._model is None or self._pyaudio is None:
            raise RecognitionUnavailableError()

        self._aborted = False
        recognizer = KaldiRecognizer(self._model, self.config.sample_rate)
        stream = self._open_input(pyaudio)
        last_partial = ""
        last_activity = time.monotonic()

        try:
            while not self._aborted:
                try:
                    data = await asyncio.to_thread(
                        stream.read, self.config.chunk_size, exception_on_overflow=False
                    )
                except OSError as e:
                    raise RecognitionError(ErrorCode.AUDIO_CAPTURE, str(e)) from e

                if await asyncio.to_thread(recognizer.AcceptWaveform, data):
                    text = json.loads(recognizer.Result()).get("text", "").strip()
                    if text:
                        yield TranscriptEvent.final(text)
                        return
                    last_partial = ""
                    continue

                partial = json.loads(recognizer.PartialResult()).get("partial", "").strip()
                if partial and partial != last_partial:
                    last_partial = partial
                    last_activity = time.monotonic()
                    yield TranscriptEvent.interim(partial)
                elif time.monotonic() - last_activity > self.config.max_silence_seconds:
                    raise RecognitionError(ErrorCode.NO_SPEECH)

            raise RecognitionError(ErrorCode.ABORTED)
        finally:
            stream.stop_stream()
            stream.close()

    def _open_input(self, pyaudio_module: object) -> pyaudio.Stream:
        try:
            return self._pyaudio.open(
                format=pyaudio_module.paInt16,
                channels=1,
                rate=self.config.sample_rate,
                input=True,
                frames_per_buffer=self.config.chunk_size,
                input_device_index=self.config.input_device_index,
            )
        except OSError as e:
            message = str(e).lower()
            if "permission" in message or "not allowed" in message or "denied" in message:
                raise RecognitionPermissionError(str(e)) from e
            raise RecognitionError(ErrorCode.AUDIO_CAPTURE, str(e)) from e

    def close(self) -> None:
        self._aborted = True
        if self._pyaudio is not None:
            self._pyaudio.terminate()
            self._pyaudio = None
