"""
VOICETUTOR Test Fixtures Package.

Provides mock implementations of the conversation collaborators so the
orchestrator can be exercised without a microphone, speaker, speech
engine or network.

Available fixtures:
- MockRecognizer: Scriptable SpeechRecognizer
- MockDialogueClient: Queued replies/errors with an in-flight gate
- MockStreamFactory / MockInputStream: Stand-ins for sounddevice capture
- MockAudioOutput: Playback that lasts until the test ends it
- blocking_whisper_module: faster_whisper stand-in that transcribes on demand

Usage:
    from tests.fixtures import MockRecognizer, MockDialogueClient
"""

from tests.fixtures.helpers import wait_until
from tests.fixtures.mock_audio import (
    MockAudioOutput,
    MockInputStream,
    MockStreamFactory,
    noise_block,
    silent_block,
)
from tests.fixtures.mock_dialogue import FAKE_MPEG, MockDialogueClient
from tests.fixtures.mock_recognizer import MockRecognizer, blocking_whisper_module

__all__ = [
    "FAKE_MPEG",
    "MockAudioOutput",
    "MockDialogueClient",
    "MockInputStream",
    "MockRecognizer",
    "MockStreamFactory",
    "blocking_whisper_module",
    "noise_block",
    "silent_block",
    "wait_until",
]
