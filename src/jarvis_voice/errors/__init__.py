"""Structured error classification for Jarvis Voice."""

from jarvis_voice.errors.codes import ErrorCode

__all__ = ["ErrorCode"]
