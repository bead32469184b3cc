"""Configuration management for Jarvis Voice.

Loads configuration from YAML files and validates against Pydantic models.
Durations are seconds; the defaults are the product-tuned values the session
controller was calibrated with.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import AliasChoices, BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class WakeConfig(BaseModel):
    """Wake phrase matching configuration."""

    phrase: str = Field(default="jarvis", min_length=1, description="Wake phrase")
    greeting: str = Field(default="hey", description="Optional greeting before the phrase")
    min_inline_command_chars: int = Field(
        default=3,
        ge=1,
        description="Trailing text after the phrase must be at least this long to dispatch",
    )


class TimingConfig(BaseModel):
    """Timeouts owned by the turn controller."""

    wake_timeout_seconds: float = Field(default=6.0, gt=0.0)
    speech_activity_timeout_seconds: float = Field(default=8.0, gt=0.0)
    manual_timeout_seconds: float = Field(default=15.0, gt=0.0)
    error_recovery_seconds: float = Field(default=4.0, gt=0.0)
    voice_failure_recovery_seconds: float = Field(default=5.0, gt=0.0)
    recognition_restart_delay_seconds: float = Field(default=0.1, ge=0.0, le=1.0)


class RetryConfig(BaseModel):
    """Exponential backoff for a remote collaborator."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_delay_seconds: float = Field(default=1.0, ge=0.0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0)


class GenerationConfig(BaseModel):
    """Text-generation collaborator configuration."""

    base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    model: str = Field(default="gemini-3-flash-preview")
    system_instruction: str = Field(
        default=(
            "You are JARVIS. Respond instantly and concisely (max 20 words). "
            "Be professional and slightly witty. Use British English."
        )
    )
    history_window: int = Field(default=4, ge=0, le=50)
    empty_response_text: str = Field(default="Neural link unstable. Please repeat.")
    search_grounding: bool = Field(default=True)
    timeout_seconds: float = Field(default=30.0, ge=1.0)


class SynthesisConfig(BaseModel):
    """Remote speech-synthesis configuration."""

    base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    model: str = Field(default="gemini-2.5-flash-preview-tts")
    voice: str = Field(default="Kore")
    sample_rate: int = Field(default=24000, ge=8000, le=96000)
    channels: int = Field(default=1, ge=1, le=8)
    acknowledgment_text: str = Field(default="Command acknowledged.")
    quota_cooldown_seconds: float = Field(default=60.0, ge=0.0)
    timeout_seconds: float = Field(default=30.0, ge=1.0)


class FallbackVoiceConfig(BaseModel):
    """Local device-native speech synthesis configuration."""

    rate: float = Field(default=1.05, gt=0.0, le=4.0, description="Relative speaking rate")
    pitch: float = Field(default=0.9, gt=0.0, le=2.0)
    volume: float = Field(default=1.0, ge=0.0, le=1.0)
    preferred_voices: list[str] = Field(
        default_factory=lambda: ["daniel", "en-gb", "english (great britain)", "male"]
    )


class RecognitionConfig(BaseModel):
    """Continuous speech recognition configuration."""

    language: str = Field(default="en-US")
    model_path: str = Field(default="~/.jarvis/models/vosk-model-small-en-us")
    sample_rate: int = Field(default=16000, ge=8000, le=48000)
    chunk_size: int = Field(default=4000, ge=256)
    input_device_index: int | None = Field(default=None)
    max_silence_seconds: float = Field(
        default=8.0,
        gt=0.0,
        description="A recognition session ends after this much silence and is restarted",
    )


class PersistenceConfig(BaseModel):
    """History and preference persistence configuration."""

    enabled: bool = Field(default=True)
    path: str = Field(default="~/.jarvis/session.json")
    max_messages: int = Field(default=200, ge=1)


class ConnectivityConfig(BaseModel):
    """Online/offline probing configuration."""

    enabled: bool = Field(default=True)
    probe_url: str = Field(default="https://generativelanguage.googleapis.com/")
    interval_seconds: float = Field(default=15.0, ge=1.0)
    timeout_seconds: float = Field(default=3.0, gt=0.0)


def _dispatch_retry() -> RetryConfig:
    return RetryConfig(max_attempts=3, initial_delay_seconds=1.0)


def _synthesis_retry() -> RetryConfig:
    return RetryConfig(max_attempts=2, initial_delay_seconds=0.3)


class JarvisConfig(BaseModel):
    """Main Jarvis Voice configuration."""

    version: str = Field(default="1.0", pattern=r"^\d+\.\d+$")
    wake: WakeConfig = Field(default_factory=WakeConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    dispatch_retry: RetryConfig = Field(default_factory=_dispatch_retry)
    synthesis_retry: RetryConfig = Field(default_factory=_synthesis_retry)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    fallback: FallbackVoiceConfig = Field(default_factory=FallbackVoiceConfig)
    recognition: RecognitionConfig = Field(default_factory=RecognitionConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> JarvisConfig:
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML configuration file.

        Returns:
            Validated JarvisConfig instance.

        Raises:
            FileNotFoundError: If the config file doesn't exist.
            yaml.YAMLError: If the YAML is malformed.
            pydantic.ValidationError: If validation fails.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    def to_yaml(self, path: Path) -> None:
        """Save configuration to a YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(
                self.model_dump(mode="json"),
                f,
                default_flow_style=False,
                sort_keys=False,
            )


class EnvSettings(BaseSettings):
    """Environment variable settings.

    The collaborator credential is supplied out-of-band and kept as a
    SecretStr so it never appears in reprs or logs.
    """

    model_config = SettingsConfigDict(
        env_prefix="JARVIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("GEMINI_API_KEY", "API_KEY"),
        description="Credential for the generation and synthesis services",
    )
    debug: bool = Field(
        default=False,
        validation_alias=AliasChoices("JARVIS_DEBUG", "debug"),
        description="Enable debug logging",
    )


def load_config(
    config_path: Path | None = None,
    default_paths: list[Path] | None = None,
) -> JarvisConfig:
    """Load configuration from file or use defaults.

    Search order:
    1. Explicit config_path if provided
    2. Default paths in order: ./config/default.yaml, ~/.jarvis/config.yaml
    3. Built-in defaults if no file found
    """
    if default_paths is None:
        default_paths = [
            Path("config/default.yaml"),
            Path.home() / ".jarvis" / "config.yaml",
        ]

    if config_path is not None:
        return JarvisConfig.from_yaml(config_path)

    for path in default_paths:
        if path.exists():
            return JarvisConfig.from_yaml(path)

    return JarvisConfig()


def get_env_settings() -> EnvSettings:
    """Load environment settings."""
    return EnvSettings()
