"""Turn controller for the Jarvis voice session.

State machine that coordinates:
1. Wake phrase detection inside the continuous transcript stream
2. Turn boundaries (when a command is complete and should be dispatched)
3. Command dispatch to the generation service
4. Spoken responses through the voice output player
5. Inactivity and error-recovery timeouts

State machine features:
- Valid transition validation (invalid transitions are logged)
- Turn generation counter (stale dispatch results and playback callbacks
  are rejected)
- Cancellable timeouts (a stale timer is a no-op)

All mutations run on the event loop, so no locks are needed; every
completion callback re-checks that it still belongs to the current turn.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from jarvis_voice.errors.codes import ErrorCode
from jarvis_voice.utils.config import JarvisConfig
from jarvis_voice.voice.audio import AudioSession, CueKind
from jarvis_voice.voice.errors import AudioDeviceError
from jarvis_voice.voice.generation import CommandDispatcher
from jarvis_voice.voice.history import ChatMessage, ConversationHistory, Turn
from jarvis_voice.voice.playback import PlaybackOutcome, PlaybackPath, VoiceOutputPlayer
from jarvis_voice.voice.recognition import SpeechInputStream, TranscriptEvent, TranscriptKind
from jarvis_voice.voice.timers import CancellableTimeout
from jarvis_voice.voice.wake_word import WakePhraseMatcher

logger = structlog.get_logger(__name__)

WAKE_ACK_TEXT = "Yes, user?"
MANUAL_LISTENING_TEXT = "Listening..."
UPLINK_ERROR_TEXT = "Uplink Interrupted."
MIC_DENIED_TEXT = "Mic access denied."
RECOGNITION_UNAVAILABLE_TEXT = "Speech recognition unavailable."
VOICE_FAILURE_TEXT = "Vocal matrix critical failure."
OFFLINE_RESPONSE_TEXT = "Uplink offline. Operating on local systems only."

# Commands shorter than this (after trimming) are never dispatched
MIN_COMMAND_CHARS = 2


class AssistantState(Enum):
    """Turn controller states."""

    IDLE = "IDLE"  # Dormant, waiting for the wake phrase
    LISTENING = "LISTENING"  # Awake, waiting for a command
    THINKING = "THINKING"  # Command dispatched, waiting for the reply
    SPEAKING = "SPEAKING"  # Reply playing
    ERROR = "ERROR"  # Showing a diagnostic


# Valid state transitions (from_state -> set of allowed to_states)
VALID_TRANSITIONS: dict[AssistantState, set[AssistantState]] = {
    AssistantState.IDLE: {
        AssistantState.LISTENING,
        AssistantState.THINKING,  # Typed command
        AssistantState.ERROR,
    },
    AssistantState.LISTENING: {
        AssistantState.THINKING,
        AssistantState.IDLE,  # Wake timeout or manual deactivation
        AssistantState.ERROR,
    },
    AssistantState.THINKING: {
        AssistantState.SPEAKING,
        AssistantState.LISTENING,  # Inline wake command superseding a turn
        AssistantState.IDLE,  # Empty reply or stop
        AssistantState.ERROR,
    },
    AssistantState.SPEAKING: {
        AssistantState.IDLE,  # Playback done or stop
        AssistantState.LISTENING,  # Barge-in or manual activation
        AssistantState.THINKING,  # Typed barge-in
        AssistantState.ERROR,
    },
    AssistantState.ERROR: {
        AssistantState.IDLE,  # Recovery timeout or stop
        AssistantState.LISTENING,  # Manual activation
        AssistantState.THINKING,  # Typed command
    },
}


@dataclass
class TurnController:
    """Central orchestrator of one voice session.

    Consumes SpeechInputStream events, applies wake phrase and turn
    boundary rules, drives CommandDispatcher and VoiceOutputPlayer and
    exposes the current state to the presentation layer.
    """

    audio: AudioSession
    dispatcher: CommandDispatcher
    player: VoiceOutputPlayer
    speech_input: SpeechInputStream | None = None
    config: JarvisConfig = field(default_factory=JarvisConfig)
    history: ConversationHistory = field(default_factory=ConversationHistory)

    # Callbacks
    on_state_change: Callable[[AssistantState], None] | None = None
    on_transcript: Callable[[str], None] | None = None

    _state: AssistantState = field(default=AssistantState.IDLE, repr=False)
    _transcript: str = field(default="", repr=False)
    _is_online: bool = field(default=True, repr=False)
    _turn_generation: int = field(default=0, repr=False)
    _current_turn: Turn | None = field(default=None, repr=False)
    _speech_detected: bool = field(default=False, repr=False)
    _session_fatal: bool = field(default=False, repr=False)
    _closed: bool = field(default=False, repr=False)
    _matcher: WakePhraseMatcher = field(init=False, repr=False)
    _wake_timer: CancellableTimeout = field(
        default_factory=lambda: CancellableTimeout("wake"), repr=False
    )
    _error_timer: CancellableTimeout = field(
        default_factory=lambda: CancellableTimeout("error_recovery"), repr=False
    )
    _listen_task: asyncio.Task | None = field(default=None, repr=False)
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    def __post_init__(self) -> None:
        self._matcher = WakePhraseMatcher(self.config.wake)
        if self.speech_input is not None:
            self.speech_input.should_restart = lambda: self._state != AssistantState.ERROR

    # ─────────────────────────────────────────────────────────────────────
    # Observable state
    # ─────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> AssistantState:
        return self._state

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def is_awake(self) -> bool:
        """Eligible to accept a bare command (no wake phrase)."""
        return self._state == AssistantState.LISTENING

    @property
    def is_paused(self) -> bool:
        return self.player.is_paused

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def current_turn(self) -> Turn | None:
        return self._current_turn

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return self.history.snapshot()

    @property
    def degraded_modes(self) -> set[str]:
        return self.player.degraded.degraded_modes

    def _set_state(self, new_state: AssistantState) -> None:
        """Update the state, logging transitions outside VALID_TRANSITIONS.

        Invalid transitions are logged as warnings but not blocked; they
        indicate programming errors rather than user errors.
        """
        old_state = self._state
        if new_state == old_state:
            return

        valid_targets = VALID_TRANSITIONS.get(old_state, set())
        if new_state not in valid_targets:
            logger.warning(
                "invalid_state_transition",
                from_state=old_state.value,
                to_state=new_state.value,
                valid_targets=[s.value for s in valid_targets],
            )

        self._state = new_state
        logger.info("state_changed", old_state=old_state.value, new_state=new_state.value)
        if self.on_state_change:
            self.on_state_change(new_state)

    def _set_transcript(self, text: str) -> None:
        self._transcript = text
        if self.on_transcript:
            self.on_transcript(text)

    def _go_idle(self) -> None:
        self._wake_timer.cancel()
        self._set_state(AssistantState.IDLE)
        self._set_transcript("")

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Open the audio device and begin consuming speech input."""
        if self._closed:
            raise RuntimeError("Turn controller is closed")
        await self._ensure_audio()
        self._ensure_listening()
        logger.info("turn_controller_started", recognition=self.speech_input is not None)

    async def close(self) -> None:
        """Tear the session down. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._turn_generation += 1
        self._wake_timer.cancel()
        self._error_timer.cancel()
        if self.speech_input is not None:
            self.speech_input.stop()

        pending = [t for t in (self._listen_task, *self._tasks) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._listen_task = None
        self._tasks.clear()

        self.player.interrupt()
        await self.audio.close()
        logger.info("turn_controller_closed")

    async def _ensure_audio(self) -> None:
        try:
            await self.audio.ensure_active()
        except AudioDeviceError as e:
            logger.warning("audio_output_unavailable", error=str(e))

    def _ensure_listening(self) -> None:
        """Start the speech consumer unless it is already running."""
        if self.speech_input is None or self._closed:
            return
        if self._listen_task is not None and not self._listen_task.done():
            return
        self._listen_task = asyncio.get_running_loop().create_task(
            self._consume_speech(), name="speech-input"
        )

    async def _consume_speech(self) -> None:
        assert self.speech_input is not None
        async for event in self.speech_input.events():
            self.handle_event(event)
        logger.debug("speech_consumer_finished", state=self._state.value)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)
        return task

    def _task_finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "turn_task_failed",
                task=task.get_name(),
                error=str(task.exception()),
                error_type=type(task.exception()).__name__,
            )

    # ─────────────────────────────────────────────────────────────────────
    # Speech input
    # ─────────────────────────────────────────────────────────────────────

    def handle_event(self, event: TranscriptEvent) -> None:
        if event.kind == TranscriptKind.INTERIM:
            self.handle_interim(event.text)
        elif event.kind == TranscriptKind.FINAL:
            self.handle_final(event.text)
        elif event.kind == TranscriptKind.ERROR:
            self.handle_recognition_error(event.code or ErrorCode.INTERNAL_ERROR)

    def handle_interim(self, text: str) -> None:
        """Show interim text (replace, not append) and track speech activity."""
        if self._state == AssistantState.ERROR or not text:
            return
        if self.is_awake or self._matcher.contains_wake(text):
            self._set_transcript(text)
        if self._state == AssistantState.LISTENING and not self._speech_detected:
            self._speech_detected = True
            self.audio.play_cue(CueKind.DETECT)
            self._wake_timer.arm(
                self.config.timing.speech_activity_timeout_seconds, self._on_wake_timeout
            )

    def handle_final(self, text: str) -> None:
        """Apply wake phrase and turn boundary rules to a final transcript."""
        text = text.strip()
        self._speech_detected = False
        if not text or self._state == AssistantState.ERROR:
            return
        logger.debug("final_transcript", text=text, state=self._state.value)

        if self._state == AssistantState.LISTENING:
            command = self._matcher.strip_leading_wake(text)
            if len(command) >= MIN_COMMAND_CHARS:
                self.audio.play_cue(CueKind.END)
                self._dispatch(command)
            return

        if not self._matcher.contains_wake(text):
            return

        if self._matcher.has_inline_command(text):
            logger.info("wake_phrase_detected", inline_command=True, state=self._state.value)
            self._set_state(AssistantState.LISTENING)
            self.audio.play_cue(CueKind.END)
            if not self._dispatch(self._matcher.command_after_wake(text)):
                # Only separators followed the phrase
                self._interrupt_turn()
                self._enter_listening(self.config.timing.wake_timeout_seconds, WAKE_ACK_TEXT)
        elif self._state == AssistantState.THINKING:
            logger.info("bare_wake_ignored_while_thinking")
        else:
            logger.info("wake_phrase_detected", inline_command=False, state=self._state.value)
            self._interrupt_turn()
            self._enter_listening(self.config.timing.wake_timeout_seconds, WAKE_ACK_TEXT)

    def handle_recognition_error(self, code: ErrorCode) -> None:
        """Session-fatal recognition errors park the session in ERROR."""
        if not code.is_session_fatal():
            logger.debug("recognition_error_ignored", code=code.value)
            return
        if self._session_fatal and self._state == AssistantState.ERROR:
            return
        message = (
            MIC_DENIED_TEXT if code == ErrorCode.PERMISSION_DENIED else RECOGNITION_UNAVAILABLE_TEXT
        )
        self._session_fatal = True
        self._interrupt_turn()
        self._enter_error(message, recover_after=None)

    def _enter_listening(self, timeout: float, transcript: str) -> None:
        self._error_timer.cancel()
        self._speech_detected = False
        self._set_state(AssistantState.LISTENING)
        self._set_transcript(transcript)
        self._wake_timer.arm(timeout, self._on_wake_timeout)

    def _on_wake_timeout(self) -> None:
        if self._state != AssistantState.LISTENING:
            logger.debug("stale_wake_timeout_ignored", state=self._state.value)
            return
        logger.info("wake_timeout_expired")
        self._go_idle()

    # ─────────────────────────────────────────────────────────────────────
    # User signals
    # ─────────────────────────────────────────────────────────────────────

    async def activate(self) -> bool:
        """Manual activation: start listening without the wake phrase."""
        if self._state not in (AssistantState.IDLE, AssistantState.SPEAKING, AssistantState.ERROR):
            logger.debug("manual_activation_ignored", state=self._state.value)
            return False
        await self._ensure_audio()
        was_error = self._state == AssistantState.ERROR
        self._session_fatal = False
        self._interrupt_turn()
        self._enter_listening(self.config.timing.manual_timeout_seconds, MANUAL_LISTENING_TEXT)
        self.audio.play_cue(CueKind.START)
        if was_error:
            self._ensure_listening()
        logger.info("manual_activation", recovered_from_error=was_error)
        return True

    def deactivate(self) -> bool:
        """Manual deactivation while listening."""
        if self._state != AssistantState.LISTENING:
            return False
        self._go_idle()
        self.audio.play_cue(CueKind.END)
        logger.info("manual_deactivation")
        return True

    def submit_text(self, text: str) -> bool:
        """Typed command: same dispatch and playback path as speech."""
        self._session_fatal = False
        return self._dispatch(text)

    async def stop_voice(self) -> None:
        """Stop any response, resume the device and return to IDLE."""
        self._turn_generation += 1
        self._error_timer.cancel()
        await self.player.stop()
        self._go_idle()
        if not self._session_fatal:
            self._ensure_listening()
        logger.info("voice_stopped")

    async def toggle_pause(self) -> bool:
        """Pause or resume the playing response. Returns the paused flag."""
        if self._state != AssistantState.SPEAKING:
            return self.player.is_paused
        return await self.player.toggle_pause()

    def set_online(self, online: bool) -> None:
        if online == self._is_online:
            return
        self._is_online = online
        logger.info("connectivity_changed", online=online)

    # ─────────────────────────────────────────────────────────────────────
    # Turns
    # ─────────────────────────────────────────────────────────────────────

    def _interrupt_turn(self) -> None:
        """Invalidate the current turn and silence its output."""
        self._turn_generation += 1
        self.player.interrupt()

    def _is_current(self, generation: int) -> bool:
        return generation == self._turn_generation and not self._closed

    def _dispatch(self, command: str) -> bool:
        command = command.strip()
        if len(command) < MIN_COMMAND_CHARS:
            logger.debug("dispatch_ignored_short_command", length=len(command))
            return False

        # THINKING always begins with no competing timer or audio
        self._wake_timer.cancel()
        self._error_timer.cancel()
        self._interrupt_turn()
        generation = self._turn_generation

        recent = self.history.snapshot()
        self._current_turn = Turn(command)
        self._set_state(AssistantState.THINKING)
        self._set_transcript(f'Processing: "{command}"')
        self.history.add_user(command)

        if self._is_online:
            self._spawn(self._run_turn(command, recent, generation), name="turn")
        else:
            logger.info("offline_command", generation=generation)
            self._spawn(self._answer_offline(generation), name="offline-turn")
        return True

    async def _run_turn(
        self, command: str, recent: tuple[ChatMessage, ...], generation: int
    ) -> None:
        reply = await self.dispatcher.submit(command, recent)
        if not self._is_current(generation):
            logger.info("stale_dispatch_response_ignored", generation=generation)
            return
        if not reply.ok or reply.result is None:
            self._enter_error(
                UPLINK_ERROR_TEXT, recover_after=self.config.timing.error_recovery_seconds
            )
            return
        self.history.add_assistant(reply.result.text, reply.result.sources)
        await self._speak(reply.result.text, generation, offline=False)

    async def _answer_offline(self, generation: int) -> None:
        self.history.add_assistant(OFFLINE_RESPONSE_TEXT)
        await self._speak(OFFLINE_RESPONSE_TEXT, generation, offline=True)

    async def _speak(self, text: str, generation: int, offline: bool) -> None:
        outcome = await self.player.speak(
            text,
            offline=offline or not self._is_online,
            on_speaking=lambda path: self._on_speaking(generation, path),
            on_done=lambda: self._on_playback_done(generation),
            on_failed=lambda: self._on_voice_failure(generation),
        )
        if outcome == PlaybackOutcome.FAILED:
            self._on_voice_failure(generation)

    def _on_speaking(self, generation: int, path: PlaybackPath) -> None:
        if not self._is_current(generation):
            return
        logger.info("response_speaking", path=path.value)
        self._set_state(AssistantState.SPEAKING)

    def _on_playback_done(self, generation: int) -> None:
        if not self._is_current(generation):
            logger.debug("stale_playback_done_ignored", generation=generation)
            return
        self._go_idle()

    def _on_voice_failure(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        self._enter_error(
            VOICE_FAILURE_TEXT, recover_after=self.config.timing.voice_failure_recovery_seconds
        )

    # ─────────────────────────────────────────────────────────────────────
    # Errors
    # ─────────────────────────────────────────────────────────────────────

    def _enter_error(self, message: str, recover_after: float | None) -> None:
        """Show a diagnostic; recover_after=None waits for the user."""
        self._wake_timer.cancel()
        self._set_state(AssistantState.ERROR)
        self._set_transcript(message)
        if recover_after is None:
            self._error_timer.cancel()
            logger.error("session_error", message=message, auto_recover=False)
        else:
            self._error_timer.arm(recover_after, self._on_error_timeout)
            logger.warning("turn_error", message=message, recover_after_s=recover_after)

    def _on_error_timeout(self) -> None:
        if self._state != AssistantState.ERROR:
            return
        logger.info("auto_recovering_from_error_state")
        self._go_idle()
        self._ensure_listening()
