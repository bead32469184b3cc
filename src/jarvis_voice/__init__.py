"""Jarvis Voice - wake-phrase voice assistant session."""

__version__ = "0.1.0"
