"""
VOICETUTOR Configuration

Pydantic models for every configurable part of the voice conversation
orchestrator, plus YAML loading with environment variable overrides.

Resolution order (later wins):
    1. Model defaults
    2. YAML file (explicit path, or first existing file from get_config_paths())
    3. Environment variables named VOICETUTOR_<SECTION>_<FIELD>

Usage:
    from voicetutor.config import load_config

    config = load_config()                    # auto-discover
    config = load_config("voicetutor.yaml")   # explicit file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from voicetutor.exceptions import ConfigurationError

__all__ = [
    "AudioConfig",
    "ConversationConfig",
    "DialogueConfig",
    "PlaybackConfig",
    "RecognizerConfig",
    "StorageConfig",
    "VoiceTutorConfig",
    "get_config_paths",
    "load_config",
]

ENV_PREFIX = "VOICETUTOR_"


def _device_index(value: Any) -> Any:
    """sounddevice takes an integer index or a name; "3" from env means index 3."""
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return value


# =============================================================================
# Section Models
# =============================================================================


class AudioConfig(BaseModel):
    """Microphone capture and level analysis settings."""

    sample_rate: int = Field(default=16000, ge=8000, le=96000)
    channels: int = Field(default=1, ge=1, le=2)
    fft_size: int = 512
    input_device: Optional[Union[int, str]] = None

    # Analyser shaping (matches a browser AnalyserNode)
    smoothing: float = Field(default=0.8, ge=0.0, lt=1.0)
    min_decibels: float = -100.0
    max_decibels: float = -30.0
    level_divisor: float = Field(default=128.0, gt=0.0)

    # Voice activity
    speech_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    silence_window: float = Field(default=1.5, gt=0.0, le=30.0)

    @field_validator("input_device", mode="before")
    @classmethod
    def _input_device_index(cls, value: Any) -> Any:
        return _device_index(value)

    @field_validator("fft_size")
    @classmethod
    def _fft_power_of_two(cls, value: int) -> int:
        if value < 32 or value > 32768 or value & (value - 1):
            raise ValueError("fft_size must be a power of two between 32 and 32768")
        return value

    @model_validator(mode="after")
    def _decibel_range(self) -> "AudioConfig":
        if self.min_decibels >= self.max_decibels:
            raise ValueError("min_decibels must be lower than max_decibels")
        return self


class ConversationConfig(BaseModel):
    """Turn-taking behaviour."""

    restart_delay: float = Field(default=1.0, ge=0.0, le=10.0)
    auto_listen: bool = False
    history_limit: int = Field(default=0, ge=0)  # 0 = send the whole session


class DialogueConfig(BaseModel):
    """Remote tutor backend."""

    url: str = "http://localhost:54321/functions/v1/tutor-response"
    api_key: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0.0, le=300.0)

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value


class PlaybackConfig(BaseModel):
    """Speech output settings."""

    output_device: Optional[Union[int, str]] = None

    @field_validator("output_device", mode="before")
    @classmethod
    def _output_device_index(cls, value: Any) -> Any:
        return _device_index(value)


class RecognizerConfig(BaseModel):
    """Local whisper recognizer adapter."""

    model: str = "base"
    device: Literal["auto", "cpu", "cuda"] = "auto"
    compute_type: str = "int8"
    language: str = "en"
    speech_rms: float = Field(default=0.01, ge=0.0, le=1.0)
    no_speech_timeout: float = Field(default=8.0, gt=0.0, le=60.0)
    max_utterance: float = Field(default=30.0, gt=0.0, le=120.0)


class StorageConfig(BaseModel):
    """Where completed conversations and exports are written."""

    sessions_dir: str = "~/.voicetutor/sessions"
    transcripts_dir: str = "~/.voicetutor/transcripts"


class VoiceTutorConfig(BaseModel):
    """Root configuration object."""

    audio: AudioConfig = Field(default_factory=AudioConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    dialogue: DialogueConfig = Field(default_factory=DialogueConfig)
    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    recognizer: RecognizerConfig = Field(default_factory=RecognizerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_file: Optional[str] = None


# =============================================================================
# Loading
# =============================================================================


def get_config_paths() -> List[Path]:
    """Return candidate config file locations, highest priority first."""
    return [
        Path("./voicetutor.yaml"),
        Path.home() / ".voicetutor" / "config.yaml",
        Path("/etc/voicetutor/config.yaml"),
    ]


def _coerce_env_value(raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the existing value."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay VOICETUTOR_<SECTION>_<FIELD> variables onto raw config data."""
    defaults = VoiceTutorConfig().model_dump()

    for section, fields in defaults.items():
        if not isinstance(fields, dict):
            env_name = f"{ENV_PREFIX}{section.upper()}"
            if env_name in os.environ:
                data[section] = os.environ[env_name]
            continue

        for field_name, default_value in fields.items():
            env_name = f"{ENV_PREFIX}{section.upper()}_{field_name.upper()}"
            if env_name not in os.environ:
                continue
            section_data = data.setdefault(section, {})
            current = section_data.get(field_name, default_value)
            try:
                section_data[field_name] = _coerce_env_value(os.environ[env_name], current)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for {env_name}: {e}", config_key=env_name
                ) from e

    return data


def load_config(path: Optional[str | Path] = None) -> VoiceTutorConfig:
    """Load configuration from YAML and environment.

    Args:
        path: Explicit config file. When None, the first existing file from
              get_config_paths() is used, or defaults if none exists.

    Returns:
        Validated VoiceTutorConfig

    Raises:
        ConfigurationError: File missing, YAML invalid, or validation failed
    """
    data: Dict[str, Any] = {}
    config_file: Optional[Path] = None

    if path is not None:
        config_file = Path(path).expanduser()
        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}",
                config_file=str(config_file),
            )
    else:
        for candidate in get_config_paths():
            if candidate.exists():
                config_file = candidate
                break

    if config_file is not None:
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {e}",
                config_file=str(config_file),
            ) from e
        if not isinstance(loaded, dict):
            raise ConfigurationError(
                "Invalid YAML in configuration file: top level must be a mapping",
                config_file=str(config_file),
            )
        data = loaded

    data = _apply_env_overrides(data)

    try:
        return VoiceTutorConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Configuration validation failed: {e}",
            config_file=str(config_file) if config_file else None,
        ) from e
