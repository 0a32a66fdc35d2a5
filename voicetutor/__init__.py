"""
VOICETUTOR - Voice Conversation Orchestrator for an AI Tutor

Conducts a spoken, turn-based dialogue between a learner and a remote AI
tutor: microphone capture with amplitude voice-activity detection, speech
recognition, a dialogue request returning text plus synthesized speech,
and playback, coordinated into one non-overlapping turn cycle.

Architecture:
    - Single-owner actor: every state transition runs on one asyncio task
    - Pluggable collaborators: recognizer, dialogue client, audio output
    - Resilient turns: only microphone acquisition failures are fatal
"""

__version__ = "0.1.0"

# Version tuple for programmatic comparison
VERSION_INFO = (0, 1, 0)

# Core exceptions (import base class for convenience)
from voicetutor.exceptions import VoiceTutorError

# Core types
from voicetutor.types import (
    DialogueReply,
    Phase,
    Role,
    SessionSummary,
    Turn,
)

# Orchestrator (central control)
from voicetutor.orchestrator import (
    ConversationOrchestrator,
    EventType,
    create_orchestrator,
)

__all__ = [
    "__version__",
    "VERSION_INFO",
    "VoiceTutorError",
    "DialogueReply",
    "Phase",
    "Role",
    "SessionSummary",
    "Turn",
    "ConversationOrchestrator",
    "EventType",
    "create_orchestrator",
]
