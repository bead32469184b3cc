"""Voice session for Jarvis.

Turns a continuous stream of speech-recognition events into discrete
turns, dispatches each turn to a text-generation service and speaks the
reply, falling back to a local voice when remote synthesis fails.

Components:
    - AudioSession: the single output device, PCM decoding and cue tones
    - SpeechInputStream: supervised, self-restarting recognition stream
    - CommandDispatcher: generation requests with retry/backoff
    - VoiceOutputPlayer: remote synthesis, local fallback, barge-in
    - TurnController: state machine orchestrating a session

Usage:
    from jarvis_voice.voice import TurnController

    controller = TurnController(audio=audio, dispatcher=dispatcher, player=player)
    await controller.start()  # Begins listening for "Jarvis"
"""

from jarvis_voice.voice.audio import AudioBuffer, AudioSession, CueKind, decode_pcm16
from jarvis_voice.voice.connectivity import ConnectivityMonitor
from jarvis_voice.voice.controller import AssistantState, TurnController
from jarvis_voice.voice.fallback import Pyttsx3Engine
from jarvis_voice.voice.generation import (
    CommandDispatcher,
    DispatchOutcome,
    GeminiGenerationClient,
    GenerationResult,
)
from jarvis_voice.voice.history import (
    ChatMessage,
    ConversationHistory,
    JsonHistoryStore,
    Role,
    Turn,
)
from jarvis_voice.voice.playback import (
    PlaybackHandle,
    PlaybackOutcome,
    PlaybackPath,
    VoiceOutputPlayer,
)
from jarvis_voice.voice.recognition import (
    SpeechInputStream,
    TranscriptEvent,
    TranscriptKind,
    VoskRecognizer,
)
from jarvis_voice.voice.synthesis import GeminiSpeechClient, sanitize_for_speech
from jarvis_voice.voice.wake_word import WakePhraseMatcher

__all__ = [
    # Audio
    "AudioBuffer",
    "AudioSession",
    "CueKind",
    "decode_pcm16",
    # Speech input
    "SpeechInputStream",
    "TranscriptEvent",
    "TranscriptKind",
    "VoskRecognizer",
    "WakePhraseMatcher",
    # Dispatch
    "CommandDispatcher",
    "DispatchOutcome",
    "GeminiGenerationClient",
    "GenerationResult",
    # Output
    "GeminiSpeechClient",
    "PlaybackHandle",
    "PlaybackOutcome",
    "PlaybackPath",
    "Pyttsx3Engine",
    "VoiceOutputPlayer",
    "sanitize_for_speech",
    # Session
    "AssistantState",
    "ChatMessage",
    "ConnectivityMonitor",
    "ConversationHistory",
    "JsonHistoryStore",
    "Role",
    "Turn",
    "TurnController",
]
