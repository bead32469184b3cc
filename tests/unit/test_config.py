"""Unit tests for configuration management."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from jarvis_voice.utils.config import (
    EnvSettings,
    JarvisConfig,
    RetryConfig,
    TimingConfig,
    WakeConfig,
    load_config,
)


class TestTimingConfig:
    """Tests for TimingConfig."""

    def test_defaults(self) -> None:
        """Test the tuned timeout defaults."""
        config = TimingConfig()
        assert config.wake_timeout_seconds == 6.0
        assert config.speech_activity_timeout_seconds == 8.0
        assert config.manual_timeout_seconds == 15.0
        assert config.error_recovery_seconds == 4.0
        assert config.voice_failure_recovery_seconds == 5.0
        assert config.recognition_restart_delay_seconds == 0.1

    def test_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValidationError):
            TimingConfig(wake_timeout_seconds=0)


class TestJarvisConfig:
    """Tests for JarvisConfig."""

    def test_defaults(self) -> None:
        """Test default values."""
        config = JarvisConfig()
        assert config.wake.phrase == "jarvis"
        assert config.dispatch_retry.max_attempts == 3
        assert config.dispatch_retry.initial_delay_seconds == 1.0
        assert config.synthesis_retry.max_attempts == 2
        assert config.synthesis_retry.initial_delay_seconds == 0.3
        assert config.synthesis.sample_rate == 24000
        assert config.synthesis.quota_cooldown_seconds == 60.0
        assert config.generation.history_window == 4

    def test_retry_bounds(self) -> None:
        with pytest.raises(ValidationError):
            RetryConfig(max_attempts=0)

    def test_wake_phrase_required(self) -> None:
        with pytest.raises(ValidationError):
            WakeConfig(phrase="")

    def test_yaml_round_trip(self, tmp_path: Path) -> None:
        """Test saving and reloading a customized config."""
        config = JarvisConfig(wake=WakeConfig(phrase="friday", greeting="ok"))
        path = tmp_path / "nested" / "config.yaml"

        config.to_yaml(path)
        loaded = JarvisConfig.from_yaml(path)

        assert loaded.wake.phrase == "friday"
        assert loaded.wake.greeting == "ok"

    def test_partial_yaml_keeps_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("timing:\n  wake_timeout_seconds: 3.5\n")

        config = JarvisConfig.from_yaml(path)

        assert config.timing.wake_timeout_seconds == 3.5
        assert config.timing.manual_timeout_seconds == 15.0

    def test_empty_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert JarvisConfig.from_yaml(path) == JarvisConfig()

    def test_shipped_default_yaml_is_valid(self) -> None:
        path = Path(__file__).parents[2] / "config" / "default.yaml"

        config = JarvisConfig.from_yaml(path)

        assert config.timing.wake_timeout_seconds == 6.0


class TestLoadConfig:
    """Tests for load_config."""

    def test_builtin_defaults_when_nothing_found(self, tmp_path: Path) -> None:
        config = load_config(default_paths=[tmp_path / "missing.yaml"])
        assert config == JarvisConfig()

    def test_first_existing_default_path_wins(self, tmp_path: Path) -> None:
        first = tmp_path / "a.yaml"
        second = tmp_path / "b.yaml"
        second.write_text("wake:\n  phrase: computer\n")

        config = load_config(default_paths=[first, second])

        assert config.wake.phrase == "computer"

    def test_explicit_path_missing_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")


class TestEnvSettings:
    """Tests for EnvSettings."""

    def test_api_key_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GEMINI_API_KEY", "secret-value")

        settings = EnvSettings(_env_file=None)

        assert settings.api_key is not None
        assert settings.api_key.get_secret_value() == "secret-value"
        assert "secret-value" not in repr(settings)

    def test_api_key_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.delenv("API_KEY", raising=False)

        assert EnvSettings(_env_file=None).api_key is None
