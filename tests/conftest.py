"""Pytest fixtures for Jarvis Voice tests."""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np
import pytest

from jarvis_voice.errors.codes import ErrorCode
from jarvis_voice.utils.config import JarvisConfig, RetryConfig, TimingConfig
from jarvis_voice.voice.audio import AudioBuffer, CueKind
from jarvis_voice.voice.controller import TurnController
from jarvis_voice.voice.errors import (
    AudioDeviceError,
    FallbackSynthesisError,
    GenerationError,
    RecognitionError,
)
from jarvis_voice.voice.fallback import SpeechCallbacks
from jarvis_voice.voice.generation import CommandDispatcher, GenerationResult
from jarvis_voice.voice.history import ConversationHistory
from jarvis_voice.voice.playback import VoiceOutputPlayer
from jarvis_voice.voice.recognition import SpeechInputStream
from jarvis_voice.voice.recovery import DegradedModeTracker


async def settle(rounds: int = 50) -> None:
    """Let scheduled tasks and call_soon callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def pcm_payload(samples: list[int] | None = None) -> str:
    """Base64 PCM16 payload as the synthesis service returns it."""
    data = np.array(samples or [0, 1000, -1000, 32767, -32768, 0], dtype="<i2")
    return base64.b64encode(data.tobytes()).decode()


def rate_limited(error_cls: type = GenerationError) -> Exception:
    return error_cls("quota", code=ErrorCode.RATE_LIMITED, status_code=429)


def bad_request(error_cls: type = GenerationError) -> Exception:
    return error_cls("rejected", code=ErrorCode.BAD_REQUEST, status_code=400)


# ─────────────────────────────────────────────────────────────────────────────
# Audio
# ─────────────────────────────────────────────────────────────────────────────


class FakePlayback:
    """Buffer playback that completes only when the test says so."""

    def __init__(
        self,
        session: FakeAudioSession,
        buffer: AudioBuffer,
        on_finished: Callable[[bool], None],
    ) -> None:
        self.session = session
        self.buffer = buffer
        self.on_finished = on_finished
        self.stopped = False

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self.session.log.append(("stop", id(self)))
        self.session.active.discard(self)

    def finish(self, completed: bool = True) -> None:
        self.session.active.discard(self)
        self.on_finished(completed)


class FakeAudioSession:
    """Records device operations instead of opening a sound card."""

    def __init__(self, fail_activate: bool = False) -> None:
        self.fail_activate = fail_activate
        self.state = "absent"
        self.cues: list[CueKind] = []
        self.playbacks: list[FakePlayback] = []
        self.active: set[FakePlayback] = set()
        self.log: list[tuple[str, int]] = []
        self.max_concurrent = 0
        self.closed = False

    @property
    def is_suspended(self) -> bool:
        return self.state == "suspended"

    async def ensure_active(self) -> None:
        if self.fail_activate:
            raise AudioDeviceError("no output device")
        if self.state in ("absent", "suspended"):
            self.state = "running"

    async def suspend(self) -> None:
        if self.state == "running":
            self.state = "suspended"

    async def resume(self) -> None:
        if self.state == "suspended":
            self.state = "running"

    def resume_nowait(self) -> None:
        if self.state == "suspended":
            self.state = "running"

    def play_cue(self, kind: CueKind) -> None:
        self.cues.append(kind)

    def start_playback(
        self, buffer: AudioBuffer, on_finished: Callable[[bool], None]
    ) -> FakePlayback:
        playback = FakePlayback(self, buffer, on_finished)
        self.playbacks.append(playback)
        self.active.add(playback)
        self.log.append(("start", id(playback)))
        self.max_concurrent = max(self.max_concurrent, len(self.active))
        return playback

    async def close(self) -> None:
        self.closed = True
        self.state = "closed"
        for playback in list(self.active):
            playback.stop()


@pytest.fixture
def fake_audio() -> FakeAudioSession:
    return FakeAudioSession()


# ─────────────────────────────────────────────────────────────────────────────
# Local voice
# ─────────────────────────────────────────────────────────────────────────────


class FakeLocalEngine:
    """Device-native speech stand-in; the test drives completion."""

    def __init__(self, available: bool = True, fail_on_speak: bool = False) -> None:
        self.available = available
        self.fail_on_speak = fail_on_speak
        self.spoken: list[str] = []
        self.callbacks: SpeechCallbacks | None = None
        self.stop_calls = 0
        self.paused = False

    @property
    def is_available(self) -> bool:
        return self.available

    def speak(self, text: str, callbacks: SpeechCallbacks) -> None:
        if self.fail_on_speak:
            raise FallbackSynthesisError("engine refused")
        self.spoken.append(text)
        self.callbacks = callbacks

    def finish(self) -> None:
        assert self.callbacks is not None and self.callbacks.on_done is not None
        self.callbacks.on_done()

    def fail(self, error: Exception) -> None:
        assert self.callbacks is not None and self.callbacks.on_error is not None
        self.callbacks.on_error(error)

    def stop(self) -> None:
        self.stop_calls += 1

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False


@pytest.fixture
def fake_engine() -> FakeLocalEngine:
    return FakeLocalEngine()


# ─────────────────────────────────────────────────────────────────────────────
# Remote collaborators
# ─────────────────────────────────────────────────────────────────────────────


class ScriptedResults:
    """Returns (or raises) scripted results in order; the last one repeats."""

    def __init__(self, results: list[Any]) -> None:
        self.results = list(results)

    def next(self) -> Any:
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeGenerationClient:
    """Generation service stand-in.

    With hold=True every call waits on a future the test resolves through
    release(), so responses can be delivered out of order.
    """

    def __init__(self, *results: Any, hold: bool = False) -> None:
        self.script = ScriptedResults(list(results) or [GenerationResult("At your service.")])
        self.hold = hold
        self.calls: list[tuple[str, list[tuple[str, str]]]] = []
        self.pending: list[asyncio.Future] = []

    async def generate(self, utterance: str, history: Any) -> GenerationResult:
        self.calls.append((utterance, list(history)))
        if self.hold:
            future = asyncio.get_running_loop().create_future()
            self.pending.append(future)
            result = await future
            if isinstance(result, Exception):
                raise result
            return result
        return self.script.next()

    def release(self, index: int, result: Any) -> None:
        self.pending[index].set_result(result)


class FakeSpeechClient:
    """Speech service stand-in; optional gate holds every call."""

    def __init__(self, *results: Any, gate: asyncio.Event | None = None) -> None:
        self.script = ScriptedResults(list(results) or [pcm_payload()])
        self.gate = gate
        self.calls: list[str] = []

    async def synthesize(self, text: str) -> str:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        return self.script.next()


class FakeRecognizer:
    """Recognition capability driven by scripted sessions.

    Each session yields its scripted events (raising any exception in the
    script). Once the script runs out, sessions stay silent until abort().
    """

    def __init__(self, sessions: list[list[Any]] | None = None, available: bool = True) -> None:
        self.sessions = list(sessions or [])
        self.available = available
        self.session_count = 0
        self.aborted = False

    @property
    def is_available(self) -> bool:
        return self.available

    async def session(self):
        self.session_count += 1
        if not self.sessions:
            while not self.aborted:
                await asyncio.sleep(0.005)
            raise RecognitionError(ErrorCode.ABORTED)
        for item in self.sessions.pop(0):
            if isinstance(item, Exception):
                raise item
            yield item

    def abort(self) -> None:
        self.aborted = True


# ─────────────────────────────────────────────────────────────────────────────
# Configuration and session assembly
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def fast_config() -> JarvisConfig:
    """Defaults with timeouts and backoff shrunk for tests."""
    return JarvisConfig(
        timing=TimingConfig(
            wake_timeout_seconds=0.05,
            speech_activity_timeout_seconds=0.08,
            manual_timeout_seconds=0.1,
            error_recovery_seconds=0.05,
            voice_failure_recovery_seconds=0.05,
            recognition_restart_delay_seconds=0.0,
        ),
        dispatch_retry=RetryConfig(max_attempts=3, initial_delay_seconds=0.0),
        synthesis_retry=RetryConfig(max_attempts=2, initial_delay_seconds=0.0),
    )


@dataclass
class SessionHarness:
    """A TurnController wired to fakes."""

    controller: TurnController
    audio: FakeAudioSession
    engine: FakeLocalEngine
    generation: FakeGenerationClient
    speech: FakeSpeechClient
    states: list[str]


@pytest.fixture
def make_session(fast_config: JarvisConfig) -> Callable[..., SessionHarness]:
    """Factory building a controller around fake collaborators."""

    def _make(
        generation: FakeGenerationClient | None = None,
        speech: FakeSpeechClient | None = None,
        engine: FakeLocalEngine | None = None,
        audio: FakeAudioSession | None = None,
        recognizer: FakeRecognizer | None = None,
    ) -> SessionHarness:
        audio = audio or FakeAudioSession()
        engine = engine or FakeLocalEngine()
        generation = generation or FakeGenerationClient()
        speech = speech or FakeSpeechClient()
        player = VoiceOutputPlayer(
            audio=audio,
            local_engine=engine,
            speech_client=speech,
            synthesis=fast_config.synthesis,
            retry=fast_config.synthesis_retry,
            degraded=DegradedModeTracker(),
        )
        dispatcher = CommandDispatcher(
            client=generation,
            retry=fast_config.dispatch_retry,
            history_window=fast_config.generation.history_window,
        )
        states: list[str] = []
        controller = TurnController(
            audio=audio,
            dispatcher=dispatcher,
            player=player,
            speech_input=(
                SpeechInputStream(recognizer, restart_delay_seconds=0.0)
                if recognizer is not None
                else None
            ),
            config=fast_config,
            history=ConversationHistory(),
            on_state_change=lambda state: states.append(state.value),
        )
        return SessionHarness(controller, audio, engine, generation, speech, states)

    return _make

