"""
VOICETUTOR Shared Type Definitions

Data structures shared by the orchestrator and its collaborators:
conversation phases, transcript turns, dialogue replies and the session
summary handed to persistence.

Usage:
    from voicetutor.types import Phase, Role, Turn
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# =============================================================================
# Enums
# =============================================================================


class Phase(Enum):
    """Position of the session within the turn cycle.

    INACTIVE is the super-state before start() and after stop(); the other
    four are only meaningful while the session is active.
    """
    INACTIVE = "inactive"
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


class Role(Enum):
    """Who produced a turn."""
    USER = "user"
    ASSISTANT = "assistant"


class RecognitionErrorKind(Enum):
    """Error vocabulary reported by speech recognizers."""
    NOT_ALLOWED = "not-allowed"
    PERMISSION_DENIED = "permission-denied"
    NO_SPEECH = "no-speech"
    AUDIO_CAPTURE = "audio-capture"
    NETWORK = "network"
    ABORTED = "aborted"
    NOT_SUPPORTED = "not-supported"
    SERVICE_NOT_ALLOWED = "service-not-allowed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "RecognitionErrorKind":
        """Map an engine error string (or enum) onto the vocabulary."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_silent(self) -> bool:
        """Errors absorbed without a user-visible message."""
        return self in (RecognitionErrorKind.NO_SPEECH, RecognitionErrorKind.ABORTED)


class PlaybackOutcome(Enum):
    """How a playback handle finished."""
    ENDED = "ended"
    ERROR = "error"
    STOPPED = "stopped"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Turn:
    """One utterance in the transcript. Immutable once appended."""
    id: str
    role: Role
    text: str
    created_at: datetime
    audio_ref: Optional[bytes] = field(default=None, repr=False)
    links: Tuple[str, ...] = ()

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_ref)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form (audio is reduced to its size)."""
        return {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "created_at": self.created_at.isoformat(),
            "audio_bytes": len(self.audio_ref) if self.audio_ref else 0,
            "links": list(self.links),
        }


@dataclass
class DialogueReply:
    """Canonical reply shape produced at the dialogue client boundary."""
    reply_text: str
    audio_payload: Optional[bytes] = None
    links: List[str] = field(default_factory=list)

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_payload)


@dataclass
class SessionSummary:
    """Completed conversation handed to the persistence collaborator."""
    session_id: str
    title: str
    turns: List[Turn]
    last_updated: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "title": self.title,
            "last_updated": self.last_updated.isoformat(),
            "turns": [turn.to_dict() for turn in self.turns],
        }
