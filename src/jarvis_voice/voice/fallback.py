"""Local device-native speech synthesis.

Used when remote synthesis is unavailable, exhausted or the session is
offline. The default engine drives pyttsx3 on a dedicated worker thread.

pyttsx3 has no native pause, so the text is spoken sentence by sentence
and a pause takes effect at the next sentence boundary.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from jarvis_voice.utils.config import FallbackVoiceConfig
from jarvis_voice.voice.errors import FallbackSynthesisError

logger = structlog.get_logger(__name__)

# pyttsx3 expresses rate as words per minute
BASE_WORDS_PER_MINUTE = 175

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def split_sentences(text: str) -> list[str]:
    return [s for s in (part.strip() for part in _SENTENCE_END.split(text)) if s]


def choose_voice(voices: Sequence[Any], preferred: Sequence[str]) -> Any | None:
    """Pick a voice by preference hints, then any English voice, then the first.

    Hints are matched case-insensitively against the voice name, id and
    declared languages, in preference order.
    """
    if not voices:
        return None

    def describe(voice: Any) -> str:
        languages = getattr(voice, "languages", None) or []
        langs = " ".join(
            lang.decode(errors="ignore") if isinstance(lang, bytes) else str(lang)
            for lang in languages
        )
        return f"{getattr(voice, 'name', '')} {getattr(voice, 'id', '')} {langs}".lower()

    described = [(voice, describe(voice)) for voice in voices]
    for hint in preferred:
        for voice, text in described:
            if hint.lower() in text:
                return voice
    for voice, text in described:
        if "en" in text.split() or "english" in text or "en_" in text or "en-" in text:
            return voice
    return voices[0]


@dataclass
class SpeechCallbacks:
    """Callbacks invoked from the engine's worker thread."""

    on_start: Callable[[], None] | None = None
    on_done: Callable[[], None] | None = None
    on_error: Callable[[Exception], None] | None = None


class LocalSpeechEngine(Protocol):
    """A device-native text-to-speech capability."""

    @property
    def is_available(self) -> bool: ...

    def speak(self, text: str, callbacks: SpeechCallbacks) -> None: ...

    def stop(self) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...


@dataclass
class Pyttsx3Engine:
    """Local speech through pyttsx3, one utterance at a time."""

    config: FallbackVoiceConfig = field(default_factory=FallbackVoiceConfig)

    _engine: Any = field(default=None, repr=False)
    _load_attempted: bool = field(default=False, repr=False)
    _resumed: threading.Event = field(default_factory=threading.Event, repr=False)
    # One runAndWait at a time across runs
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    # Stop flag of the current run; every run owns its own
    _run_stop: threading.Event | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self._resumed.set()

    @property
    def is_available(self) -> bool:
        self.load()
        return self._engine is not None

    def load(self) -> None:
        """Initialize pyttsx3 once. Blocking; call it off the event loop."""
        if self._load_attempted:
            return
        self._load_attempted = True
        try:
            import pyttsx3
        except ImportError:
            logger.warning("pyttsx3_not_installed", msg="pip install jarvis-voice[audio]")
            return

        try:
            engine = pyttsx3.init()
        except (RuntimeError, OSError) as e:
            logger.warning("pyttsx3_init_failed", error=str(e))
            return

        engine.setProperty("rate", int(BASE_WORDS_PER_MINUTE * self.config.rate))
        engine.setProperty("volume", self.config.volume)
        voice = choose_voice(engine.getProperty("voices") or [], self.config.preferred_voices)
        if voice is not None:
            engine.setProperty("voice", voice.id)
        self._engine = engine
        logger.info(
            "local_voice_initialized",
            voice=getattr(voice, "name", None),
            rate=self.config.rate,
            pitch=self.config.pitch,
        )

    def speak(self, text: str, callbacks: SpeechCallbacks) -> None:
        """Start speaking on a new worker thread and return immediately.

        A superseded run exits on its own once its current sentence ends.
        """
        if not self.is_available:
            raise FallbackSynthesisError("Local speech engine unavailable")
        self.stop()
        run_stop = threading.Event()
        self._run_stop = run_stop
        self._resumed.set()
        threading.Thread(
            target=self._run,
            args=(split_sentences(text) or [text], callbacks, run_stop),
            name="jarvis-local-voice",
            daemon=True,
        ).start()

    def _run(
        self, sentences: list[str], callbacks: SpeechCallbacks, run_stop: threading.Event
    ) -> None:
        try:
            if callbacks.on_start:
                callbacks.on_start()
            for sentence in sentences:
                while not self._resumed.wait(timeout=0.05):
                    if run_stop.is_set():
                        return
                with self._lock:
                    # Checked under the lock: a previous run may have held it until now
                    if run_stop.is_set():
                        return
                    self._engine.say(sentence)
                    self._engine.runAndWait()
            if not run_stop.is_set() and callbacks.on_done:
                callbacks.on_done()
        except Exception as e:
            logger.error("local_voice_failed", error=str(e))
            if callbacks.on_error:
                callbacks.on_error(e)

    def stop(self) -> None:
        if self._run_stop is not None:
            self._run_stop.set()
        self._resumed.set()
        if self._engine is not None:
            self._engine.stop()

    def pause(self) -> None:
        self._resumed.clear()

    def resume(self) -> None:
        self._resumed.set()
