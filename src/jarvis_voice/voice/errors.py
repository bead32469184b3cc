"""Exception hierarchy for the Jarvis voice session.

Provides structured error types for:
- Audio output device failures
- Speech recognition capability and permission failures
- Generation and synthesis service errors
- Local fallback synthesis failures

Components raise these internally and classify them before anything
reaches the turn controller.
"""

from __future__ import annotations

from jarvis_voice.errors.codes import ErrorCode


class VoiceSessionError(Exception):
    """Base exception for all voice session errors."""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        super().__init__(message)
        self.recoverable = recoverable


# ─────────────────────────────────────────────────────────────────────────────
# Audio Device Errors
# ─────────────────────────────────────────────────────────────────────────────


class AudioDeviceError(VoiceSessionError):
    """Raised when the output device cannot be created or driven."""

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(message, recoverable)
        self.original_error = original_error


class AudioSessionClosedError(AudioDeviceError):
    """Raised when an operation is attempted after the session was closed."""

    def __init__(self) -> None:
        super().__init__("Audio session is closed", recoverable=False)


# ─────────────────────────────────────────────────────────────────────────────
# Recognition Errors
# ─────────────────────────────────────────────────────────────────────────────


class RecognitionError(VoiceSessionError):
    """Raised by a recognizer session; carries the recognizer's error code."""

    def __init__(self, code: ErrorCode, message: str = "") -> None:
        super().__init__(message or f"Recognition error: {code.value}")
        self.code = code


class RecognitionUnavailableError(RecognitionError):
    """Raised when no recognition capability exists on this host."""

    def __init__(self, message: str = "Speech recognition unavailable") -> None:
        super().__init__(ErrorCode.UNSUPPORTED, message)
        self.recoverable = False


class RecognitionPermissionError(RecognitionError):
    """Raised when microphone access is refused."""

    def __init__(self, message: str = "Microphone access denied") -> None:
        super().__init__(ErrorCode.PERMISSION_DENIED, message)
        self.recoverable = False


# ─────────────────────────────────────────────────────────────────────────────
# Remote Service Errors
# ─────────────────────────────────────────────────────────────────────────────


class CollaboratorError(VoiceSessionError):
    """Raised when a remote service request fails.

    The code decides retry behaviour: 429, 500 and transport failures are
    retryable, everything else fails the request immediately.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, recoverable=code.is_retryable())
        self.code = code
        self.status_code = status_code
        self.original_error = original_error

    @property
    def is_transient(self) -> bool:
        return self.code.is_retryable()


class GenerationError(CollaboratorError):
    """Raised when text generation fails."""


class SynthesisError(CollaboratorError):
    """Raised when remote speech synthesis fails."""


class EmptyAudioPayloadError(SynthesisError):
    """Raised when the synthesis service answers without audio."""

    def __init__(self) -> None:
        super().__init__("Empty audio payload", code=ErrorCode.EMPTY_PAYLOAD)


class FallbackSynthesisError(VoiceSessionError):
    """Raised when the local speech engine is missing or fails."""

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        super().__init__(message, recoverable=False)
        self.original_error = original_error
