"""CLI module for Jarvis Voice.

Console front end for a voice session, using Rich for output and
prompt_toolkit for input handling.
"""

from jarvis_voice.cli.console import JarvisConsole, run_console

__all__ = ["JarvisConsole", "run_console"]
