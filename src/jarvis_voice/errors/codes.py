"""Structured error codes for Jarvis Voice.

These codes classify failures reported by the recognition capability and
by the remote generation and synthesis services, so each component can
decide locally whether to retry, restart, fall back or give up.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Structured error codes.

    Error codes are grouped by category:
    - recognition codes use the lower-case names the recognizer reports
    - RATE_LIMITED / SERVER_ERROR / NETWORK_ERROR / ...: remote services
    - UNSUPPORTED / INTERNAL_ERROR: system-level errors
    """

    # Recognition errors
    NO_SPEECH = "no-speech"
    """The recognizer heard nothing before its silence limit."""

    AUDIO_CAPTURE = "audio-capture"
    """Microphone capture failed momentarily."""

    ABORTED = "aborted"
    """The recognition session was aborted."""

    PERMISSION_DENIED = "not-allowed"
    """Microphone access was refused."""

    RECOGNITION_NETWORK = "network"
    """Recognition failed for a network reason."""

    # Remote service errors
    RATE_LIMITED = "RATE_LIMITED"
    """Quota or rate limit exceeded (status 429)."""

    SERVER_ERROR = "SERVER_ERROR"
    """The service failed internally (status 500)."""

    NETWORK_ERROR = "NETWORK_ERROR"
    """The request never completed (connect, read or timeout failure)."""

    BAD_REQUEST = "BAD_REQUEST"
    """The service rejected the request; retrying will not help."""

    EMPTY_PAYLOAD = "EMPTY_PAYLOAD"
    """The service answered without usable content."""

    # System errors
    UNSUPPORTED = "UNSUPPORTED"
    """A required capability is missing on this host."""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected internal error (bug or system issue)."""

    @classmethod
    def from_status(cls, status_code: int) -> ErrorCode:
        """Map an HTTP status code to an error code."""
        if status_code == 429:
            return cls.RATE_LIMITED
        if status_code == 500:
            return cls.SERVER_ERROR
        if 400 <= status_code < 500:
            return cls.BAD_REQUEST
        return cls.INTERNAL_ERROR

    @classmethod
    def from_recognition(cls, code: str) -> ErrorCode:
        """Map a recognizer error string to an error code.

        Unknown strings map to INTERNAL_ERROR, which is logged and ignored.
        """
        if code == "permission-denied":
            return cls.PERMISSION_DENIED
        try:
            return cls(code)
        except ValueError:
            return cls.INTERNAL_ERROR

    def is_retryable(self) -> bool:
        """Check if a remote request that failed with this code may be retried."""
        return self in {
            ErrorCode.RATE_LIMITED,
            ErrorCode.SERVER_ERROR,
            ErrorCode.NETWORK_ERROR,
        }

    def is_transient_recognition(self) -> bool:
        """Check if a recognition error only warrants a silent restart."""
        return self in {
            ErrorCode.NO_SPEECH,
            ErrorCode.AUDIO_CAPTURE,
            ErrorCode.ABORTED,
        }

    def is_session_fatal(self) -> bool:
        """Check if this error leaves the session unusable until the user acts."""
        return self in {
            ErrorCode.PERMISSION_DENIED,
            ErrorCode.UNSUPPORTED,
        }
