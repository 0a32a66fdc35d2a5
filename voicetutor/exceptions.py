"""
VOICETUTOR Custom Exceptions

Provides the exception hierarchy for the voice conversation orchestrator.
Only resource acquisition failures are fatal to a session; every other
error is absorbed by the orchestrator and turned into a state transition
plus a user-visible message.

Exception Hierarchy:
    VoiceTutorError (base)
    ├── ConfigurationError
    ├── ResourceError
    ├── RecognitionError
    ├── DialogueError
    └── PlaybackError
"""

from typing import Any, Optional, Union


class VoiceTutorError(Exception):
    """Base exception for all VOICETUTOR errors.

    Attributes:
        message: Human-readable error description
        details: Optional dict with additional error context
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(VoiceTutorError):
    """Error in configuration file or settings.

    Raised when configuration validation fails, the file is missing, or the
    YAML cannot be parsed.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_file: Optional[str] = None,
    ) -> None:
        details = {}
        if config_key:
            details["config_key"] = config_key
        if config_file:
            details["config_file"] = config_file
        super().__init__(message, details)
        self.config_key = config_key
        self.config_file = config_file


# =============================================================================
# Session Errors
# =============================================================================

class ResourceError(VoiceTutorError):
    """Microphone or audio analysis graph could not be acquired.

    Fatal to session start; never retried automatically.
    """

    def __init__(
        self,
        message: str,
        device: Optional[Union[int, str]] = None,
        reason: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if device is not None:
            details["device"] = device
        if reason:
            details["reason"] = reason
        super().__init__(message, details)
        self.device = device
        self.reason = reason


class RecognitionError(VoiceTutorError):
    """Speech recognizer reported a failure.

    The ``kind`` is one of the recognizer error vocabulary values
    (see ``voicetutor.types.RecognitionErrorKind``).
    """

    def __init__(self, message: str, kind: Any = None) -> None:
        details: dict[str, Any] = {}
        if kind is not None:
            details["kind"] = getattr(kind, "value", kind)
        super().__init__(message, details)
        self.kind = kind


class DialogueError(VoiceTutorError):
    """Dialogue backend failed or returned an unusable payload."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        url: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if status is not None:
            details["status"] = status
        if url:
            details["url"] = url
        super().__init__(message, details)
        self.status = status
        self.url = url


class PlaybackError(VoiceTutorError):
    """Synthesized speech could not be decoded or played."""

    def __init__(self, message: str, payload_size: Optional[int] = None) -> None:
        details: dict[str, Any] = {}
        if payload_size is not None:
            details["payload_size"] = payload_size
        super().__init__(message, details)
        self.payload_size = payload_size


# Allow importing without prefix for common cases
Error = VoiceTutorError
