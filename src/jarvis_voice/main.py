"""Jarvis Voice - Main entry point.

Run with: python -m jarvis_voice
Or: jarvis-voice (after installation)

Commands:
- run: Start a voice session with the interactive console
- version: Show version info
"""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path

import typer

from jarvis_voice.cli.console import run_console
from jarvis_voice.utils.config import JarvisConfig, get_env_settings, load_config
from jarvis_voice.utils.logging import (
    bind_session_context,
    clear_context,
    configure_logging,
    get_logger,
)
from jarvis_voice.voice.audio import AudioSession
from jarvis_voice.voice.connectivity import ConnectivityMonitor
from jarvis_voice.voice.controller import TurnController
from jarvis_voice.voice.fallback import Pyttsx3Engine
from jarvis_voice.voice.generation import CommandDispatcher, GeminiGenerationClient
from jarvis_voice.voice.history import ConversationHistory, JsonHistoryStore
from jarvis_voice.voice.playback import VoiceOutputPlayer
from jarvis_voice.voice.recognition import SpeechInputStream, VoskRecognizer
from jarvis_voice.voice.recovery import DegradedModeTracker
from jarvis_voice.voice.synthesis import GeminiSpeechClient

app = typer.Typer(
    name="jarvis-voice",
    help="Jarvis Voice - wake-phrase voice assistant",
)

log = get_logger(__name__)


def load_history(config: JarvisConfig) -> ConversationHistory:
    """Create the session history, seeded from and saved to the store."""
    if not config.persistence.enabled:
        return ConversationHistory()

    store = JsonHistoryStore(
        path=Path(config.persistence.path),
        max_messages=config.persistence.max_messages,
    )
    history = ConversationHistory(on_change=store.save_history)
    history.extend_loaded(store.load_history())
    log.info("Session preferences loaded", theme=store.load_theme())
    return history


async def async_main(config_path: Path | None, microphone: bool, log_file: Path | None) -> None:
    """Assemble the session components and run the console.

    Args:
        config_path: Path to configuration file.
        microphone: Whether to listen through the microphone.
        log_file: Optional JSON log file.
    """
    config = load_config(config_path)
    env = get_env_settings()

    configure_logging(
        level="DEBUG" if env.debug else "INFO",
        json_format=False,
        log_file=log_file,
    )
    bind_session_context(session_id=uuid.uuid4().hex[:8])

    if env.api_key is None:
        raise typer.BadParameter("GEMINI_API_KEY is not set", param_hint="environment")
    api_key = env.api_key.get_secret_value()

    generation_client = GeminiGenerationClient(api_key=api_key, config=config.generation)
    speech_client = GeminiSpeechClient(api_key=api_key, config=config.synthesis)
    recognizer = VoskRecognizer(config.recognition) if microphone else None

    audio = AudioSession(sample_rate=config.synthesis.sample_rate)
    local_engine = Pyttsx3Engine(config.fallback)
    # pyttsx3.init() can take seconds on some drivers
    await asyncio.to_thread(local_engine.load)
    player = VoiceOutputPlayer(
        audio=audio,
        local_engine=local_engine,
        speech_client=speech_client,
        synthesis=config.synthesis,
        retry=config.synthesis_retry,
        degraded=DegradedModeTracker(),
    )
    dispatcher = CommandDispatcher(
        client=generation_client,
        retry=config.dispatch_retry,
        history_window=config.generation.history_window,
        empty_response_text=config.generation.empty_response_text,
    )
    controller = TurnController(
        audio=audio,
        dispatcher=dispatcher,
        player=player,
        speech_input=(
            SpeechInputStream(
                recognizer,
                restart_delay_seconds=config.timing.recognition_restart_delay_seconds,
            )
            if recognizer is not None
            else None
        ),
        config=config,
        history=load_history(config),
    )
    monitor = ConnectivityMonitor(on_change=controller.set_online, config=config.connectivity)

    log.info(
        "Starting Jarvis Voice",
        generation_model=config.generation.model,
        synthesis_model=config.synthesis.model,
        microphone=microphone,
    )

    monitor.start()
    try:
        await run_console(controller)
    finally:
        await monitor.stop()
        await generation_client.aclose()
        await speech_client.aclose()
        if recognizer is not None:
            recognizer.close()
        clear_context()


@app.command()
def run(
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
    ),
    microphone: bool = typer.Option(
        True,
        "--mic/--no-mic",
        help="Listen through the microphone (requires jarvis-voice[audio] and a Vosk model)",
    ),
    log_file: Path | None = typer.Option(
        None,
        "--log-file",
        help="Also write JSON logs to this file",
    ),
) -> None:
    """Run a voice session.

    Say "Jarvis" followed by a command, or type commands at the prompt.
    Requires the GEMINI_API_KEY environment variable.
    """
    try:
        asyncio.run(async_main(config_path=config, microphone=microphone, log_file=log_file))
    except KeyboardInterrupt:
        print("\nGoodbye.")


@app.command()
def version() -> None:
    """Show version information."""
    from jarvis_voice import __version__

    print(f"Jarvis Voice v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
