"""
Unit tests for VOICETUTOR ConversationOrchestrator.

Tests session lifecycle, transition guards, error absorption, silence
hints, the event system and metrics. Collaborators are mocks from
tests.fixtures; see tests/e2e for full conversation scenarios.
"""

import asyncio
import sys
import threading
from unittest.mock import AsyncMock, Mock, patch

import pytest

from tests.conftest import RESTART_DELAY
from tests.fixtures import (
    MockStreamFactory,
    blocking_whisper_module,
    noise_block,
    silent_block,
    wait_until,
)
from voicetutor.config import RecognizerConfig
from voicetutor.exceptions import DialogueError, ResourceError
from voicetutor.level_monitor import AudioLevelMonitor
from voicetutor.orchestrator import (
    ConversationMetrics,
    ConversationOrchestrator,
    EventType,
    OrchestratorEvent,
)
from voicetutor.recognizer import WhisperRecognizer
from voicetutor.types import Phase, RecognitionErrorKind, Role


async def listen(orchestrator):
    orchestrator.start_listening()
    await orchestrator.drain()
    assert orchestrator.phase is Phase.LISTENING


async def say(orchestrator, recognizer, text):
    """Deliver a final transcript and wait for the request to be issued."""
    recognizer.emit_final(text)
    await orchestrator.drain()


# =============================================================================
# Metrics and Events
# =============================================================================


class TestConversationMetrics:
    """Tests for ConversationMetrics."""

    def test_defaults(self):
        metrics = ConversationMetrics()
        data = metrics.to_dict()
        assert data["turns_completed"] == 0
        assert data["min_dialogue_ms"] == 0
        assert data["avg_dialogue_ms"] == 0.0

    def test_record_dialogue(self):
        metrics = ConversationMetrics()
        metrics.record_dialogue(100.0)
        metrics.record_dialogue(300.0)
        assert metrics.avg_dialogue_ms == 200.0
        assert metrics.min_dialogue_ms == 100.0
        assert metrics.max_dialogue_ms == 300.0

    def test_record_error(self):
        metrics = ConversationMetrics()
        metrics.record_error("network")
        metrics.record_error("network")
        metrics.record_error("dialogue")
        assert metrics.error_count == 3
        assert metrics.errors_by_kind == {"network": 2, "dialogue": 1}


class TestOrchestratorEvent:
    """Tests for OrchestratorEvent."""

    def test_defaults(self):
        event = OrchestratorEvent(event_type=EventType.ERROR)
        assert event.data == {}
        assert event.message == ""
        assert event.timestamp is not None


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for start() and stop()."""

    def test_initial_state(self, orchestrator):
        assert orchestrator.active is False
        assert orchestrator.phase is Phase.INACTIVE
        assert orchestrator.turns == []

    @pytest.mark.asyncio
    async def test_start_enters_idle(self, orchestrator, monitor, mock_recognizer):
        await orchestrator.start()
        try:
            assert orchestrator.active
            assert orchestrator.phase is Phase.IDLE
            assert monitor.is_acquired
            assert mock_recognizer.listener is orchestrator
            assert mock_recognizer.start_count == 0
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, running_orchestrator, stream_factory):
        await running_orchestrator.start()
        assert len(stream_factory.streams) == 1

    @pytest.mark.asyncio
    async def test_start_fails_without_microphone(
        self, fast_config, mock_recognizer, mock_dialogue, playback
    ):
        """Test microphone failure keeps the session inactive."""
        monitor = AudioLevelMonitor(
            fast_config.audio,
            stream_factory=MockStreamFactory(error=OSError("Permission denied")),
        )
        orchestrator = ConversationOrchestrator(
            fast_config, monitor, mock_recognizer, mock_dialogue, playback
        )
        errors = []
        orchestrator.subscribe(EventType.ERROR, errors.append)

        with pytest.raises(ResourceError):
            await orchestrator.start()

        assert orchestrator.active is False
        assert orchestrator.phase is Phase.INACTIVE
        assert len(errors) == 1
        assert "microphone" in orchestrator.last_error

    @pytest.mark.asyncio
    async def test_auto_listen(self, orchestrator, fast_config, mock_recognizer):
        fast_config.conversation.auto_listen = True
        await orchestrator.start()
        try:
            await orchestrator.drain()
            assert orchestrator.phase is Phase.LISTENING
            assert mock_recognizer.running
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, orchestrator, monitor, mock_recognizer):
        await orchestrator.start()
        await listen(orchestrator)

        summary = await orchestrator.stop()

        assert summary is None
        assert orchestrator.phase is Phase.INACTIVE
        assert not monitor.is_acquired
        assert not mock_recognizer.running
        assert not orchestrator.scheduler.pending

    @pytest.mark.asyncio
    async def test_stop_without_start(self, orchestrator):
        assert await orchestrator.stop() is None

    @pytest.mark.asyncio
    async def test_restart_after_stop_resets_transcript(
        self, orchestrator, mock_recognizer, mock_output
    ):
        await orchestrator.start()
        await listen(orchestrator)
        await say(orchestrator, mock_recognizer, "first session")
        await orchestrator.stop()

        await orchestrator.start()
        try:
            assert orchestrator.turns == []
            assert orchestrator.get_metrics()["turns_completed"] == 0
        finally:
            await orchestrator.stop()


# =============================================================================
# Listening
# =============================================================================


class TestStartListening:
    """Tests for the Idle -> Listening guard."""

    @pytest.mark.asyncio
    async def test_starts_recognizer(self, running_orchestrator, mock_recognizer):
        await listen(running_orchestrator)
        assert mock_recognizer.start_count == 1
        assert running_orchestrator.recognizer_running

    @pytest.mark.asyncio
    async def test_second_tap_is_noop(self, running_orchestrator, mock_recognizer):
        await listen(running_orchestrator)
        running_orchestrator.start_listening()
        await running_orchestrator.drain()

        assert mock_recognizer.start_count == 1
        assert mock_recognizer.double_starts == 0

    @pytest.mark.asyncio
    async def test_refused_while_processing(
        self, running_orchestrator, mock_recognizer, mock_dialogue
    ):
        mock_dialogue.hold()
        await listen(running_orchestrator)
        await say(running_orchestrator, mock_recognizer, "hello")

        running_orchestrator.start_listening()
        await running_orchestrator.drain()

        assert running_orchestrator.phase is Phase.PROCESSING
        assert mock_recognizer.start_count == 1
        mock_dialogue.release()

    @pytest.mark.asyncio
    async def test_recognizer_start_failure(self, running_orchestrator, mock_recognizer):
        """Test a failing recognizer start surfaces an error and stays Idle."""
        mock_recognizer.fail_on_start = True
        running_orchestrator.start_listening()
        await running_orchestrator.drain()

        assert running_orchestrator.phase is Phase.IDLE
        assert not running_orchestrator.recognizer_running
        assert running_orchestrator.last_error == (
            "Failed to start speech recognition. Please try again."
        )

    @pytest.mark.asyncio
    async def test_not_accepted_before_start(self, orchestrator, mock_recognizer):
        orchestrator.start_listening()
        assert mock_recognizer.start_count == 0

    @pytest.mark.asyncio
    async def test_interim_text_tracked(self, running_orchestrator, mock_recognizer):
        await listen(running_orchestrator)
        mock_recognizer.emit_interim("tell me ab")
        await running_orchestrator.drain()
        assert running_orchestrator.interim_text == "tell me ab"


# =============================================================================
# Turns
# =============================================================================


class TestTurnCycle:
    """Tests for transcript -> dialogue -> playback transitions."""

    @pytest.mark.asyncio
    async def test_final_transcript_starts_processing(
        self, running_orchestrator, mock_recognizer, mock_dialogue
    ):
        mock_dialogue.hold()
        await listen(running_orchestrator)
        await say(running_orchestrator, mock_recognizer, "  what is a gate?  ")

        assert running_orchestrator.phase is Phase.PROCESSING
        assert not mock_recognizer.running
        assert not running_orchestrator.recognizer_running
        turns = running_orchestrator.turns
        assert [(t.role, t.text) for t in turns] == [(Role.USER, "what is a gate?")]

        await wait_until(lambda: mock_dialogue.calls)
        assert mock_dialogue.calls[0] == ("what is a gate?", [])
        assert running_orchestrator.dialogue_in_flight
        mock_dialogue.release()

    @pytest.mark.asyncio
    async def test_reply_with_audio_plays(
        self, running_orchestrator, mock_recognizer, mock_dialogue, mock_output
    ):
        mock_dialogue.queue_reply("Gates mute quiet signals.", links=["https://open.spotify.com/t"])
        await listen(running_orchestrator)
        await say(running_orchestrator, mock_recognizer, "what is a gate?")

        await wait_until(lambda: running_orchestrator.phase is Phase.SPEAKING)
        assistant = running_orchestrator.turns[-1]
        assert assistant.role is Role.ASSISTANT
        assert assistant.has_audio
        assert assistant.links == ("https://open.spotify.com/t",)
        assert running_orchestrator.pending_playback is not None

        await wait_until(lambda: mock_output.playing)
        mock_output.finish()
        await wait_until(lambda: running_orchestrator.phase is Phase.IDLE)
        assert running_orchestrator.scheduler.pending

        await wait_until(lambda: running_orchestrator.phase is Phase.LISTENING)
        assert mock_recognizer.start_count == 2

    @pytest.mark.asyncio
    async def test_reply_without_audio_reschedules(
        self, running_orchestrator, mock_recognizer, mock_dialogue, mock_output
    ):
        mock_dialogue.queue_reply("Text only.", audio=None)
        await listen(running_orchestrator)
        await say(running_orchestrator, mock_recognizer, "hi")

        await wait_until(lambda: len(running_orchestrator.turns) == 2)
        assert running_orchestrator.phase is Phase.IDLE
        assert Phase.SPEAKING not in running_orchestrator.phase_history
        assert mock_output.played == []

        await wait_until(lambda: running_orchestrator.phase is Phase.LISTENING)

    @pytest.mark.asyncio
    async def test_dialogue_failure(self, running_orchestrator, mock_recognizer, mock_dialogue):
        mock_dialogue.queue_error(DialogueError("Backend exploded", status=500))
        await listen(running_orchestrator)
        await say(running_orchestrator, mock_recognizer, "hi")

        await wait_until(lambda: running_orchestrator.errors)
        assert running_orchestrator.last_error == "Failed to generate response: Backend exploded"
        assert [t.role for t in running_orchestrator.turns] == [Role.USER]

        await wait_until(lambda: running_orchestrator.phase is Phase.LISTENING)

    @pytest.mark.asyncio
    async def test_playback_error_treated_as_completion(
        self, running_orchestrator, mock_recognizer, mock_dialogue, mock_output
    ):
        mock_dialogue.queue_reply()
        await listen(running_orchestrator)
        await say(running_orchestrator, mock_recognizer, "hi")
        await wait_until(lambda: mock_output.playing)

        mock_output.fail_current()

        await wait_until(lambda: running_orchestrator.phase is Phase.LISTENING)
        assert running_orchestrator.errors == []
        assert running_orchestrator.get_metrics()["errors_by_kind"] == {"playback": 1}

    @pytest.mark.asyncio
    async def test_history_is_prior_turns(
        self, running_orchestrator, mock_recognizer, mock_dialogue
    ):
        mock_dialogue.queue_reply("first answer", audio=None)
        await listen(running_orchestrator)
        await say(running_orchestrator, mock_recognizer, "first question")
        await wait_until(lambda: running_orchestrator.phase is Phase.LISTENING)

        await say(running_orchestrator, mock_recognizer, "second question")
        await wait_until(lambda: len(mock_dialogue.calls) == 2)

        transcript, history = mock_dialogue.calls[1]
        assert transcript == "second question"
        assert [t.text for t in history] == ["first question", "first answer"]

    @pytest.mark.asyncio
    async def test_history_limit(
        self, running_orchestrator, fast_config, mock_recognizer, mock_dialogue
    ):
        fast_config.conversation.history_limit = 1
        mock_dialogue.queue_reply("first answer", audio=None)
        await listen(running_orchestrator)
        await say(running_orchestrator, mock_recognizer, "first question")
        await wait_until(lambda: running_orchestrator.phase is Phase.LISTENING)
        await say(running_orchestrator, mock_recognizer, "second question")
        await wait_until(lambda: len(mock_dialogue.calls) == 2)

        assert [t.text for t in mock_dialogue.calls[1][1]] == ["first answer"]

    @pytest.mark.asyncio
    async def test_final_outside_listening_ignored(
        self, running_orchestrator, mock_recognizer, mock_dialogue
    ):
        mock_recognizer.attach(running_orchestrator)
        mock_recognizer.emit_final("stray result")
        await running_orchestrator.drain()

        assert running_orchestrator.turns == []
        assert mock_dialogue.calls == []

    @pytest.mark.asyncio
    async def test_submit_text_from_idle(self, running_orchestrator, mock_dialogue):
        """Test typed prompts are handled like final transcripts."""
        mock_dialogue.queue_reply("typed answer", audio=None)
        running_orchestrator.submit_text("what is mid/side EQ?")
        await running_orchestrator.drain()

        assert running_orchestrator.phase is Phase.PROCESSING
        await wait_until(lambda: len(running_orchestrator.turns) == 2)
        assert running_orchestrator.turns[0].text == "what is mid/side EQ?"

    @pytest.mark.asyncio
    async def test_submit_text_while_listening_stops_recognizer(
        self, running_orchestrator, mock_recognizer, mock_dialogue
    ):
        mock_dialogue.hold()
        await listen(running_orchestrator)
        running_orchestrator.submit_text("typed instead")
        await running_orchestrator.drain()

        assert not mock_recognizer.running
        assert running_orchestrator.phase is Phase.PROCESSING
        mock_dialogue.release()

    @pytest.mark.asyncio
    async def test_blank_text_ignored(self, running_orchestrator, mock_dialogue):
        running_orchestrator.submit_text("   ")
        await running_orchestrator.drain()
        assert running_orchestrator.phase is Phase.IDLE
        assert mock_dialogue.calls == []


# =============================================================================
# Recognizer Errors
# =============================================================================


class TestRecognizerErrors:
    """Tests for recognizer error absorption."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [RecognitionErrorKind.NO_SPEECH, RecognitionErrorKind.ABORTED])
    async def test_silent_kinds_absorbed(self, running_orchestrator, mock_recognizer, kind):
        await listen(running_orchestrator)
        mock_recognizer.emit_error(kind)
        mock_recognizer.emit_end()
        await running_orchestrator.drain()

        assert running_orchestrator.errors == []
        assert running_orchestrator.phase is Phase.IDLE
        await wait_until(lambda: running_orchestrator.phase is Phase.LISTENING)

    @pytest.mark.asyncio
    async def test_network_error_surfaced(self, running_orchestrator, mock_recognizer):
        await listen(running_orchestrator)
        mock_recognizer.emit_error(RecognitionErrorKind.NETWORK)
        mock_recognizer.emit_end()
        await running_orchestrator.drain()

        assert running_orchestrator.errors == [
            "Network error occurred. Please check your internet connection."
        ]
        assert running_orchestrator.get_metrics()["errors_by_kind"] == {"network": 1}
        await wait_until(lambda: running_orchestrator.phase is Phase.LISTENING)

    @pytest.mark.asyncio
    async def test_string_kind_parsed(self, running_orchestrator, mock_recognizer):
        await listen(running_orchestrator)
        running_orchestrator.on_error("audio-capture")
        await running_orchestrator.drain()
        assert "Microphone not available" in running_orchestrator.last_error

    @pytest.mark.asyncio
    async def test_end_while_listening_reschedules(self, running_orchestrator, mock_recognizer):
        await listen(running_orchestrator)
        mock_recognizer.emit_end()
        await running_orchestrator.drain()

        assert running_orchestrator.phase is Phase.IDLE
        assert running_orchestrator.scheduler.pending
        await wait_until(lambda: running_orchestrator.phase is Phase.LISTENING)
        assert running_orchestrator.get_metrics()["restarts"] == 1


# =============================================================================
# Restart Races
# =============================================================================


class TestRestartGuards:
    """Tests for the restart token."""

    @pytest.mark.asyncio
    async def test_manual_tap_cancels_pending_restart(self, running_orchestrator, mock_recognizer):
        await listen(running_orchestrator)
        mock_recognizer.emit_end()
        await running_orchestrator.drain()
        assert running_orchestrator.scheduler.pending

        await listen(running_orchestrator)
        assert not running_orchestrator.scheduler.pending

        await asyncio.sleep(RESTART_DELAY * 3)
        assert mock_recognizer.start_count == 2
        assert mock_recognizer.double_starts == 0

    @pytest.mark.asyncio
    async def test_stale_restart_event_discarded(self, running_orchestrator, mock_recognizer):
        """Test a restart queued before a cancel is ignored."""
        from voicetutor.orchestrator import ListenRequested

        stale = running_orchestrator.scheduler.generation
        running_orchestrator.scheduler.cancel()
        running_orchestrator.post(ListenRequested(token=stale))
        await running_orchestrator.drain()

        assert running_orchestrator.phase is Phase.IDLE
        assert mock_recognizer.start_count == 0


# =============================================================================
# Audio Level
# =============================================================================


class TestAudioLevel:
    """Tests for level sampling and the silence hint."""

    @pytest.mark.asyncio
    async def test_levels_update_state(self, running_orchestrator, stream_factory):
        levels = []
        running_orchestrator.subscribe(EventType.AUDIO_LEVEL, levels.append)

        stream_factory.stream.push(noise_block(0.3))
        await running_orchestrator.drain()

        assert running_orchestrator.audio_level > 0.5
        assert len(levels) == 1
        assert levels[0].data["level"] == running_orchestrator.audio_level

    @pytest.mark.asyncio
    async def test_silence_hint_sent_once(
        self, running_orchestrator, fast_config, mock_recognizer, stream_factory
    ):
        """Test quiet after speech asks the recognizer to finalize."""
        running_orchestrator.silence.window = 0.02
        await listen(running_orchestrator)

        # smoothed level needs many quiet blocks to fall under the threshold
        stream_factory.stream.push(noise_block(0.3))
        for _ in range(80):
            stream_factory.stream.push(silent_block())
        await running_orchestrator.drain()
        assert running_orchestrator.audio_level < fast_config.audio.speech_threshold
        assert mock_recognizer.finalize_requests == 0

        await asyncio.sleep(0.03)
        for _ in range(3):
            stream_factory.stream.push(silent_block())
        await running_orchestrator.drain()

        assert mock_recognizer.finalize_requests == 1

    @pytest.mark.asyncio
    async def test_no_hint_outside_listening(
        self, running_orchestrator, mock_recognizer, stream_factory
    ):
        running_orchestrator.silence.window = 0.0
        stream_factory.stream.push(noise_block(0.3))
        stream_factory.stream.push(silent_block())
        await running_orchestrator.drain()
        assert mock_recognizer.finalize_requests == 0


# =============================================================================
# Events and Persistence
# =============================================================================


class TestEventsAndPersistence:
    """Tests for subscribers and the session sink."""

    @pytest.mark.asyncio
    async def test_phase_events(self, orchestrator, mock_recognizer):
        phases = []
        orchestrator.subscribe(EventType.PHASE_CHANGED, lambda e: phases.append(e.data["to"]))

        await orchestrator.start()
        await listen(orchestrator)
        await orchestrator.stop()

        assert phases == [Phase.IDLE, Phase.LISTENING, Phase.INACTIVE]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, orchestrator):
        listener = Mock()
        orchestrator.subscribe(EventType.SESSION_STARTED, listener)
        orchestrator.unsubscribe(EventType.SESSION_STARTED, listener)
        orchestrator.unsubscribe(EventType.SESSION_STARTED, listener)

        await orchestrator.start()
        await orchestrator.stop()
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_listener(self, orchestrator):
        listener = AsyncMock()
        orchestrator.subscribe(EventType.SESSION_STARTED, listener)

        await orchestrator.start()
        await asyncio.sleep(0)
        await orchestrator.stop()

        listener.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_listener_error_contained(self, running_orchestrator):
        def broken(event):
            raise RuntimeError("ui crashed")

        running_orchestrator.subscribe(EventType.PHASE_CHANGED, broken)
        await listen(running_orchestrator)

    @pytest.mark.asyncio
    async def test_summary_emitted_on_stop(
        self, orchestrator, mock_recognizer, mock_dialogue, saved_sessions
    ):
        mock_dialogue.queue_reply("answer", audio=None)
        await orchestrator.start()
        await listen(orchestrator)
        await say(orchestrator, mock_recognizer, "what is saturation?")
        await wait_until(lambda: len(orchestrator.turns) == 2)

        summary = await orchestrator.stop()

        assert saved_sessions == [summary]
        assert summary.title == "what is saturation?"
        assert [t.role for t in summary.turns] == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_no_summary_without_turns(self, running_orchestrator, saved_sessions):
        assert await running_orchestrator.stop() is None
        assert saved_sessions == []

    @pytest.mark.asyncio
    async def test_async_sink(self, fast_config, monitor, mock_recognizer, mock_dialogue, playback):
        sink = AsyncMock()
        orchestrator = ConversationOrchestrator(
            fast_config, monitor, mock_recognizer, mock_dialogue, playback,
            on_session_complete=sink,
        )
        await orchestrator.start()
        orchestrator.submit_text("hello")
        await orchestrator.drain()
        await orchestrator.stop()

        sink.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_sink_runs_off_event_loop(
        self, fast_config, monitor, mock_recognizer, mock_dialogue, playback
    ):
        sink_threads = []

        def sink(summary):
            sink_threads.append(threading.get_ident())

        orchestrator = ConversationOrchestrator(
            fast_config, monitor, mock_recognizer, mock_dialogue, playback,
            on_session_complete=sink,
        )
        await orchestrator.start()
        orchestrator.submit_text("hello")
        await orchestrator.drain()
        await orchestrator.stop()

        assert len(sink_threads) == 1
        assert sink_threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_raise(
        self, fast_config, monitor, mock_recognizer, mock_dialogue, playback
    ):
        def failing_sink(summary):
            raise OSError("disk full")

        orchestrator = ConversationOrchestrator(
            fast_config, monitor, mock_recognizer, mock_dialogue, playback,
            on_session_complete=failing_sink,
        )
        await orchestrator.start()
        orchestrator.submit_text("hello")
        await orchestrator.drain()

        summary = await orchestrator.stop()
        assert summary is not None
        assert not monitor.is_acquired

    @pytest.mark.asyncio
    async def test_export_transcript(self, running_orchestrator, mock_dialogue):
        mock_dialogue.queue_reply("A bus sums channels.", audio=None)
        running_orchestrator.submit_text("what is a bus?")
        await wait_until(lambda: len(running_orchestrator.turns) == 2)

        lines = running_orchestrator.export_transcript().splitlines()
        assert lines[0].endswith("USER: what is a bus?")
        assert lines[1].endswith("ASSISTANT: A bus sums channels.")


# =============================================================================
# Whisper Recognizer Sessions
# =============================================================================


class TestWhisperRecognizerSession:
    """Tests the orchestrator driving the faster-whisper adapter."""

    @pytest.mark.asyncio
    async def test_transcript_from_stopped_session_not_carried_over(
        self, fast_config, monitor, stream_factory, mock_dialogue, playback
    ):
        """Test a transcription finishing after stop() never reaches the next session."""
        fast_config.conversation.auto_listen = True
        gate = threading.Event()
        fake = blocking_whisper_module(gate, "stale question")
        recognizer = WhisperRecognizer(monitor, RecognizerConfig())
        orchestrator = ConversationOrchestrator(
            fast_config, monitor, recognizer, mock_dialogue, playback
        )

        with patch.dict(sys.modules, {"faster_whisper": fake}):
            await orchestrator.start()
            await orchestrator.drain()
            assert orchestrator.phase is Phase.LISTENING

            stream_factory.stream.push(noise_block(0.3))
            recognizer.request_finalize()
            worker = recognizer._worker
            assert worker is not None

            await orchestrator.stop()
            assert not recognizer.is_running

            await orchestrator.start()
            await orchestrator.drain()
            assert orchestrator.phase is Phase.LISTENING

            gate.set()
            worker.join(2.0)
            # let any callback the worker scheduled reach the queue
            await asyncio.sleep(0.05)
            await orchestrator.drain()

            assert orchestrator.turns == []
            assert orchestrator.phase is Phase.LISTENING
            assert mock_dialogue.calls == []
            assert recognizer.is_running

            await orchestrator.stop()

        assert not recognizer.is_running
        assert not monitor.is_acquired

    @pytest.mark.asyncio
    async def test_transcript_delivered_within_session(
        self, fast_config, monitor, stream_factory, mock_dialogue, playback
    ):
        gate = threading.Event()
        gate.set()
        fake = blocking_whisper_module(gate, "what is a compressor")
        recognizer = WhisperRecognizer(monitor, RecognizerConfig())
        orchestrator = ConversationOrchestrator(
            fast_config, monitor, recognizer, mock_dialogue, playback
        )
        mock_dialogue.queue_reply("It reduces dynamic range.", audio=None)

        with patch.dict(sys.modules, {"faster_whisper": fake}):
            await orchestrator.start()
            await listen(orchestrator)
            stream_factory.stream.push(noise_block(0.3))
            recognizer.request_finalize()
            recognizer._worker.join(2.0)
            await wait_until(lambda: len(orchestrator.turns) == 2)

            assert [t.text for t in orchestrator.turns] == [
                "what is a compressor",
                "It reduces dynamic range.",
            ]
            await orchestrator.stop()
