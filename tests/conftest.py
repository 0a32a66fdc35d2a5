"""
Pytest Fixtures for VOICETUTOR Testing.

Wires a ConversationOrchestrator to mock collaborators. The restart
debounce is shortened so full turn cycles complete quickly.

Usage:
    @pytest.mark.asyncio
    async def test_turn(running_orchestrator, mock_recognizer):
        ...
"""

from typing import AsyncGenerator, List

import pytest
import pytest_asyncio

from tests.fixtures import (
    MockAudioOutput,
    MockDialogueClient,
    MockRecognizer,
    MockStreamFactory,
)
from voicetutor.config import VoiceTutorConfig
from voicetutor.level_monitor import AudioLevelMonitor
from voicetutor.orchestrator import ConversationOrchestrator
from voicetutor.playback import PlaybackController
from voicetutor.types import SessionSummary

RESTART_DELAY = 0.05


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def fast_config() -> VoiceTutorConfig:
    """Configuration with a short restart debounce."""
    config = VoiceTutorConfig()
    config.conversation.restart_delay = RESTART_DELAY
    return config


@pytest.fixture
def stream_factory() -> MockStreamFactory:
    return MockStreamFactory()


@pytest.fixture
def monitor(fast_config, stream_factory) -> AudioLevelMonitor:
    return AudioLevelMonitor(fast_config.audio, stream_factory=stream_factory)


@pytest.fixture
def mock_recognizer() -> MockRecognizer:
    recognizer = MockRecognizer()
    yield recognizer
    recognizer.reset()


@pytest.fixture
def mock_dialogue() -> MockDialogueClient:
    return MockDialogueClient()


@pytest.fixture
def mock_output() -> MockAudioOutput:
    return MockAudioOutput()


@pytest.fixture
def playback(mock_output) -> PlaybackController:
    return PlaybackController(mock_output)


@pytest.fixture
def saved_sessions() -> List[SessionSummary]:
    """Sink list receiving summaries handed to persistence."""
    return []


# =============================================================================
# Orchestrator Fixtures
# =============================================================================


@pytest.fixture
def orchestrator(
    fast_config, monitor, mock_recognizer, mock_dialogue, playback, saved_sessions
) -> ConversationOrchestrator:
    """Orchestrator that has not been started."""
    return ConversationOrchestrator(
        fast_config,
        monitor,
        mock_recognizer,
        mock_dialogue,
        playback,
        on_session_complete=saved_sessions.append,
    )


@pytest_asyncio.fixture
async def running_orchestrator(orchestrator) -> AsyncGenerator[ConversationOrchestrator, None]:
    """
    Started orchestrator.

    Automatically stopped on teardown.
    """
    await orchestrator.start()
    yield orchestrator
    await orchestrator.stop()
