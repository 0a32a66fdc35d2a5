"""
VOICETUTOR Conversation Orchestrator

Central coordinator for a spoken, turn-based conversation with the remote
tutor. Drives one strictly sequential cycle:

    Idle -> Listening -> Processing -> Speaking -> Idle -> (restart) ...

All state lives in a single actor: collaborators deliver events through
post(), and one task drains the queue and runs each transition handler to
completion before the next. Handlers are synchronous and check ``active``
first, so nothing that arrives after stop() can mutate the session.

At any instant at most one of {recognizer running, dialogue request in
flight, playback active} holds. Re-entry to Listening after a turn always
goes through the RestartScheduler.

Usage:
    orchestrator = ConversationOrchestrator(
        config, monitor, recognizer, dialogue_client, playback,
        on_session_complete=store.save,
    )
    await orchestrator.start()          # raises ResourceError
    orchestrator.start_listening()
    ...
    summary = await orchestrator.stop()
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from voicetutor.config import VoiceTutorConfig
from voicetutor.exceptions import ResourceError
from voicetutor.level_monitor import AudioLevelMonitor, SilenceDetector
from voicetutor.playback import PlaybackController, PlaybackHandle, SoundDeviceOutput
from voicetutor.recognizer import SpeechRecognizer, WhisperRecognizer, error_message
from voicetutor.scheduler import RestartScheduler
from voicetutor.transcript import TranscriptRecorder
from voicetutor.types import (
    DialogueReply,
    Phase,
    PlaybackOutcome,
    RecognitionErrorKind,
    Role,
    SessionSummary,
    Turn,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ConversationMetrics",
    "ConversationOrchestrator",
    "EventType",
    "OrchestratorEvent",
    "create_orchestrator",
]

RECOGNIZER_START_FAILED = "Failed to start speech recognition. Please try again."
DIALOGUE_FAILED = "Failed to generate response"


# =============================================================================
# Event System
# =============================================================================


class EventType(Enum):
    """Types of orchestrator events."""
    PHASE_CHANGED = "phase_changed"
    TURN_APPENDED = "turn_appended"
    ERROR = "error"
    AUDIO_LEVEL = "audio_level"
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"


@dataclass
class OrchestratorEvent:
    """Event emitted by the orchestrator."""
    event_type: EventType
    timestamp: datetime = field(default_factory=datetime.now)
    data: Dict[str, Any] = field(default_factory=dict)
    message: str = ""


# =============================================================================
# Metrics
# =============================================================================


@dataclass
class ConversationMetrics:
    """
    Per-session conversation metrics.

    Tracks completed turns, dialogue latency, playbacks and errors.
    """
    turns_completed: int = 0

    dialogue_requests: int = 0
    total_dialogue_ms: float = 0.0
    min_dialogue_ms: float = float('inf')
    max_dialogue_ms: float = 0.0

    playbacks: int = 0
    restarts: int = 0

    error_count: int = 0
    errors_by_kind: Dict[str, int] = field(default_factory=dict)

    @property
    def avg_dialogue_ms(self) -> float:
        if self.dialogue_requests == 0:
            return 0.0
        return self.total_dialogue_ms / self.dialogue_requests

    def record_dialogue(self, latency_ms: float):
        self.dialogue_requests += 1
        self.total_dialogue_ms += latency_ms
        self.min_dialogue_ms = min(self.min_dialogue_ms, latency_ms)
        self.max_dialogue_ms = max(self.max_dialogue_ms, latency_ms)

    def record_error(self, kind: str):
        self.error_count += 1
        self.errors_by_kind[kind] = self.errors_by_kind.get(kind, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turns_completed": self.turns_completed,
            "dialogue_requests": self.dialogue_requests,
            "avg_dialogue_ms": self.avg_dialogue_ms,
            "min_dialogue_ms": self.min_dialogue_ms if self.min_dialogue_ms != float('inf') else 0,
            "max_dialogue_ms": self.max_dialogue_ms,
            "playbacks": self.playbacks,
            "restarts": self.restarts,
            "error_count": self.error_count,
            "errors_by_kind": self.errors_by_kind.copy(),
        }


# =============================================================================
# Actor Messages
# =============================================================================


@dataclass
class ListenRequested:
    """Enter Listening. ``token`` is set when the restart timer fired."""
    token: Optional[int] = None


@dataclass
class TranscriptFinal:
    text: str
    typed: bool = False


@dataclass
class TranscriptInterim:
    text: str


@dataclass
class RecognizerFailed:
    kind: RecognitionErrorKind


@dataclass
class RecognizerEnded:
    pass


@dataclass
class DialogueSucceeded:
    turn_token: int
    reply: DialogueReply
    latency_ms: float


@dataclass
class DialogueFailed:
    turn_token: int
    error: Exception


@dataclass
class PlaybackFinished:
    handle: PlaybackHandle
    outcome: PlaybackOutcome


@dataclass
class LevelSampled:
    level: float
    at: float


# =============================================================================
# Orchestrator
# =============================================================================


class ConversationOrchestrator:
    """Single owner of a voice conversation session."""

    def __init__(
        self,
        config: Optional[VoiceTutorConfig],
        monitor: AudioLevelMonitor,
        recognizer: SpeechRecognizer,
        dialogue_client,
        playback: PlaybackController,
        on_session_complete: Optional[Callable[[SessionSummary], Any]] = None,
    ):
        self.config = config or VoiceTutorConfig()
        self.monitor = monitor
        self.recognizer = recognizer
        self.dialogue_client = dialogue_client
        self.playback = playback
        self.on_session_complete = on_session_complete

        self.scheduler = RestartScheduler(self.config.conversation.restart_delay)
        self.silence = SilenceDetector(
            threshold=self.config.audio.speech_threshold,
            window=self.config.audio.silence_window,
        )
        self.metrics = ConversationMetrics()

        self._recorder = TranscriptRecorder()
        self._active = False
        self._phase = Phase.INACTIVE
        self._audio_level = 0.0
        self._interim_text = ""
        self._recognizer_running = False
        self._dialogue_task: Optional[asyncio.Task] = None
        self._turn_token = 0
        self._playback_handle: Optional[PlaybackHandle] = None
        self._response_started: Optional[float] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._queue: Optional[asyncio.Queue] = None
        self._actor: Optional[asyncio.Task] = None

        self._event_listeners: Dict[EventType, List[Callable]] = {}
        self.errors: List[str] = []
        self.phase_history: List[Phase] = []

        self._handlers = {
            ListenRequested: self._handle_listen_requested,
            TranscriptFinal: self._handle_final,
            TranscriptInterim: self._handle_interim,
            RecognizerFailed: self._handle_recognizer_error,
            RecognizerEnded: self._handle_recognizer_ended,
            DialogueSucceeded: self._handle_dialogue_success,
            DialogueFailed: self._handle_dialogue_failure,
            PlaybackFinished: self._handle_playback_finished,
            LevelSampled: self._handle_level,
        }

    # =========================================================================
    # State
    # =========================================================================

    @property
    def active(self) -> bool:
        return self._active

    @property
    def phase(self) -> Phase:
        return self._phase if self._active else Phase.INACTIVE

    @property
    def audio_level(self) -> float:
        return self._audio_level

    @property
    def interim_text(self) -> str:
        return self._interim_text

    @property
    def turns(self) -> List[Turn]:
        return self._recorder.turns

    @property
    def session_id(self) -> str:
        return self._recorder.session_id

    @property
    def recognizer_running(self) -> bool:
        return self._recognizer_running

    @property
    def dialogue_in_flight(self) -> bool:
        return self._dialogue_task is not None and not self._dialogue_task.done()

    @property
    def playback_active(self) -> bool:
        return self.playback.is_playing

    @property
    def pending_playback(self) -> Optional[PlaybackHandle]:
        return self._playback_handle

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1] if self.errors else None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Begin a session: Inactive -> Idle.

        Raises:
            ResourceError: Microphone could not be acquired; the session
                stays inactive
        """
        if self._active:
            logger.warning("Conversation already active")
            return

        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self.errors = []

        try:
            self.monitor.acquire()
        except ResourceError as e:
            logger.error(f"Conversation start failed: {e}")
            self._surface(e.message, "resource")
            raise

        self.recognizer.attach(self)
        self._recorder = TranscriptRecorder()
        self.metrics = ConversationMetrics()
        self.phase_history = []
        self._audio_level = 0.0
        self._interim_text = ""
        self._recognizer_running = False
        self._playback_handle = None
        self.silence.reset()

        self._queue = asyncio.Queue()
        self._active = True
        self._set_phase(Phase.IDLE)
        self._actor = self._loop.create_task(self._run_actor(), name="voicetutor-actor")
        self.monitor.start_sampling(self._on_level)

        logger.info(f"Voice conversation started (session {self.session_id})")
        self._emit(EventType.SESSION_STARTED, data={"session_id": self.session_id})

        if self.config.conversation.auto_listen:
            self.start_listening()

    async def stop(self) -> Optional[SessionSummary]:
        """
        End the session from any state: -> Inactive.

        Safe to call repeatedly. Releases every resource before returning
        and hands a SessionSummary to the persistence sink when the
        session recorded any turns.

        Returns:
            The summary, or None when nothing was recorded or the session
            was not active
        """
        if not self._active:
            return None

        self._active = False
        self._turn_token += 1
        previous = self._phase
        self._phase = Phase.INACTIVE

        self.scheduler.cancel()

        if self._recognizer_running:
            self._recognizer_running = False
            try:
                self.recognizer.stop()
            except Exception as e:
                logger.warning(f"Error stopping recognizer: {e}")

        self.playback.stop_all()
        self._playback_handle = None

        task = self._dialogue_task
        self._dialogue_task = None
        if task is not None and not task.done():
            task.cancel()
            logger.info("In-flight dialogue request cancelled")

        self.monitor.release()
        self._audio_level = 0.0

        actor = self._actor
        self._actor = None
        if actor is not None and actor is not asyncio.current_task():
            actor.cancel()
            try:
                await actor
            except asyncio.CancelledError:
                pass
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._queue = None

        logger.info(f"Voice conversation stopped (was {previous.value})")
        self._emit(EventType.PHASE_CHANGED, data={"from": previous, "to": Phase.INACTIVE})
        self._emit(EventType.SESSION_ENDED, data={"session_id": self.session_id})

        if not len(self._recorder):
            return None

        summary = self._recorder.to_session_summary()
        await self._flush(summary)
        return summary

    async def _flush(self, summary: SessionSummary) -> None:
        sink = self.on_session_complete
        if sink is None:
            return
        try:
            if asyncio.iscoroutinefunction(sink):
                await sink(summary)
            else:
                # file-writing sinks stay off the event loop
                await asyncio.get_running_loop().run_in_executor(None, sink, summary)
            logger.info(f"Session saved: {summary.title!r} ({len(summary.turns)} turns)")
        except Exception as e:
            logger.error(f"Failed to save session {summary.session_id}: {e}")

    # =========================================================================
    # Public Requests
    # =========================================================================

    def start_listening(self) -> None:
        """User-initiated microphone tap: Idle -> Listening."""
        self.post(ListenRequested())

    def submit_text(self, text: str) -> None:
        """Typed prompt, handled like a final transcript."""
        self.post(TranscriptFinal(text, typed=True))

    def export_transcript(self) -> str:
        return self._recorder.export()

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.to_dict()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        if self._queue is not None and self._active:
            await self._queue.join()

    # =========================================================================
    # Actor
    # =========================================================================

    def post(self, event: Any) -> None:
        """Queue an event for the actor. Safe to call from any thread."""
        queue = self._queue
        loop = self._loop
        if queue is None or loop is None or not self._active:
            return
        if threading.get_ident() == self._loop_thread:
            queue.put_nowait(event)
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, event)
        except RuntimeError:
            # loop already closed
            pass

    async def _run_actor(self) -> None:
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                if self._active:
                    self._handlers[type(event)](event)
            except Exception:
                logger.exception(f"Unhandled error processing {type(event).__name__}")
            finally:
                queue.task_done()

    # Recognizer listener interface; may be called from any thread.

    def on_interim(self, text: str) -> None:
        self.post(TranscriptInterim(text))

    def on_final(self, text: str) -> None:
        self.post(TranscriptFinal(text))

    def on_error(self, kind) -> None:
        self.post(RecognizerFailed(RecognitionErrorKind.parse(kind)))

    def on_end(self) -> None:
        self.post(RecognizerEnded())

    def _on_level(self, level: float) -> None:
        self.post(LevelSampled(level, time.monotonic()))

    def _on_playback_done(self, handle: PlaybackHandle, outcome: PlaybackOutcome) -> None:
        self.post(PlaybackFinished(handle, outcome))

    def _on_restart_timer(self, token: int) -> None:
        self.post(ListenRequested(token=token))

    # =========================================================================
    # Transition Handlers
    # =========================================================================

    def _handle_listen_requested(self, event: ListenRequested) -> None:
        if event.token is not None and event.token != self.scheduler.generation:
            logger.debug(f"Discarding stale restart (token {event.token})")
            return

        if (
            self._phase is not Phase.IDLE
            or self._recognizer_running
            or self.dialogue_in_flight
            or self.playback.is_playing
        ):
            logger.debug(f"Listen request ignored in phase {self._phase.value}")
            return

        if event.token is None:
            self.scheduler.cancel()
        else:
            self.metrics.restarts += 1

        self.silence.reset()
        self._interim_text = ""
        self._recognizer_running = True
        try:
            self.recognizer.start()
        except Exception as e:
            self._recognizer_running = False
            logger.error(f"Recognizer failed to start: {e}")
            self._surface(RECOGNIZER_START_FAILED, "recognizer_start")
            return

        self._set_phase(Phase.LISTENING)

    def _handle_interim(self, event: TranscriptInterim) -> None:
        if self._phase is Phase.LISTENING:
            self._interim_text = event.text

    def _handle_final(self, event: TranscriptFinal) -> None:
        text = event.text.strip()
        if not text:
            logger.debug("Ignoring empty final transcript")
            return

        accepted = (Phase.IDLE, Phase.LISTENING) if event.typed else (Phase.LISTENING,)
        if self._phase not in accepted or self.dialogue_in_flight:
            logger.debug(f"Final transcript ignored in phase {self._phase.value}")
            return

        logger.info(f"Final transcript: {text!r}")
        self.scheduler.cancel()
        if self._recognizer_running:
            self._recognizer_running = False
            try:
                self.recognizer.stop()
            except Exception as e:
                logger.warning(f"Error stopping recognizer: {e}")
        self._interim_text = ""

        history = self._recorder.history(self.config.conversation.history_limit)
        turn = self._recorder.append(Role.USER, text)
        self._emit(EventType.TURN_APPENDED, data={"turn": turn})
        self._set_phase(Phase.PROCESSING)

        self._turn_token += 1
        self._response_started = time.monotonic()
        self._dialogue_task = self._loop.create_task(
            self._request_reply(self._turn_token, text, history)
        )

    async def _request_reply(self, token: int, text: str, history: List[Turn]) -> None:
        started = time.monotonic()
        try:
            reply = await self.dialogue_client.send(text, history)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.post(DialogueFailed(token, e))
            return
        self.post(DialogueSucceeded(token, reply, (time.monotonic() - started) * 1000))

    def _handle_recognizer_error(self, event: RecognizerFailed) -> None:
        kind = event.kind
        if kind.is_silent:
            logger.debug(f"Recognizer reported {kind.value}")
        else:
            logger.error(f"Speech recognition error: {kind.value}")
            self._surface(error_message(kind), kind.value)

        if self._phase is not Phase.LISTENING:
            return
        self._recognizer_running = False
        self._set_phase(Phase.IDLE)
        self._schedule_restart()

    def _handle_recognizer_ended(self, event: RecognizerEnded) -> None:
        self._recognizer_running = False
        if self._phase not in (Phase.LISTENING, Phase.IDLE):
            return
        if self.dialogue_in_flight or self.playback.is_playing:
            return
        self._set_phase(Phase.IDLE)
        self._schedule_restart()

    def _handle_dialogue_success(self, event: DialogueSucceeded) -> None:
        if event.turn_token != self._turn_token or self._phase is not Phase.PROCESSING:
            logger.debug("Discarding late dialogue reply")
            return

        self._dialogue_task = None
        self.metrics.record_dialogue(event.latency_ms)
        reply = event.reply

        turn = self._recorder.append(
            Role.ASSISTANT,
            reply.reply_text,
            audio_ref=reply.audio_payload,
            links=reply.links,
        )
        self.metrics.turns_completed += 1
        self._emit(EventType.TURN_APPENDED, data={"turn": turn})

        if not reply.has_audio:
            logger.info("Reply has no audio, returning to listening")
            self._set_phase(Phase.IDLE)
            self._schedule_restart()
            return

        self._set_phase(Phase.SPEAKING)
        self.metrics.playbacks += 1
        self._playback_handle = self.playback.play(reply.audio_payload, self._on_playback_done)

    def _handle_dialogue_failure(self, event: DialogueFailed) -> None:
        if event.turn_token != self._turn_token or self._phase is not Phase.PROCESSING:
            logger.debug("Discarding late dialogue failure")
            return

        self._dialogue_task = None
        logger.error(f"Error generating response: {event.error}")
        detail = getattr(event.error, "message", None) or str(event.error)
        message = DIALOGUE_FAILED if not detail else f"{DIALOGUE_FAILED}: {detail}"
        self._surface(message, "dialogue")

        self._set_phase(Phase.IDLE)
        self._schedule_restart()

    def _handle_playback_finished(self, event: PlaybackFinished) -> None:
        if event.handle is not self._playback_handle:
            return
        self._playback_handle = None

        if event.outcome is PlaybackOutcome.ERROR:
            logger.error(f"Audio playback error (handle {event.handle.id})")
            self.metrics.record_error("playback")

        if self._response_started is not None:
            total_ms = (time.monotonic() - self._response_started) * 1000
            logger.info(f"Total response time: {total_ms:.0f} ms")
            self._response_started = None

        if self._phase is Phase.SPEAKING:
            self._set_phase(Phase.IDLE)
            self._schedule_restart()

    def _handle_level(self, event: LevelSampled) -> None:
        self._audio_level = event.level
        self._emit(EventType.AUDIO_LEVEL, data={"level": event.level})

        if self._phase is not Phase.LISTENING or not self._recognizer_running:
            return
        if self.silence.update(event.level, event.at):
            finalize = getattr(self.recognizer, "request_finalize", None)
            if callable(finalize):
                logger.debug("Silence window elapsed, asking recognizer to finalize")
                try:
                    finalize()
                except Exception as e:
                    logger.warning(f"Recognizer finalize hint failed: {e}")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _schedule_restart(self) -> None:
        if not self._active:
            return
        self.scheduler.schedule(self._on_restart_timer)

    def _set_phase(self, phase: Phase) -> None:
        previous = self._phase
        if previous is phase:
            return
        self._phase = phase
        self.phase_history.append(phase)
        logger.debug(f"Phase {previous.value} -> {phase.value}")
        self._emit(EventType.PHASE_CHANGED, data={"from": previous, "to": phase})

    def _surface(self, message: str, kind: str) -> None:
        self.errors.append(message)
        self.metrics.record_error(kind)
        self._emit(EventType.ERROR, data={"kind": kind}, message=message)

    # =========================================================================
    # Event System
    # =========================================================================

    def subscribe(self, event_type: EventType, listener: Callable[[OrchestratorEvent], None]):
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to listen for
            listener: Callback (plain or coroutine function) invoked per event
        """
        self._event_listeners.setdefault(event_type, []).append(listener)
        logger.debug(f"Subscribed listener to {event_type.value}")

    def unsubscribe(self, event_type: EventType, listener: Callable[[OrchestratorEvent], None]):
        if event_type in self._event_listeners:
            try:
                self._event_listeners[event_type].remove(listener)
            except ValueError:
                pass

    def _emit(self, event_type: EventType, data: Optional[Dict[str, Any]] = None, message: str = ""):
        listeners = self._event_listeners.get(event_type)
        if not listeners:
            return
        event = OrchestratorEvent(event_type=event_type, data=data or {}, message=message)
        for listener in list(listeners):
            try:
                if asyncio.iscoroutinefunction(listener):
                    asyncio.get_running_loop().create_task(listener(event))
                else:
                    listener(event)
            except Exception as e:
                logger.error(f"Event listener error for {event_type.value}: {e}")


# =============================================================================
# Factory
# =============================================================================


def create_orchestrator(
    config: Optional[VoiceTutorConfig] = None,
    dialogue_client=None,
    on_session_complete: Optional[Callable[[SessionSummary], Any]] = None,
) -> ConversationOrchestrator:
    """
    Build an orchestrator wired to the default collaborators: sounddevice
    capture, faster-whisper recognition, the HTTP dialogue client and
    sounddevice playback.
    """
    from voicetutor.dialogue_client import HttpDialogueClient

    config = config or VoiceTutorConfig()
    monitor = AudioLevelMonitor(config.audio)
    recognizer = WhisperRecognizer(monitor, config.recognizer, config.audio.sample_rate)
    playback = PlaybackController(SoundDeviceOutput(config.playback.output_device))
    return ConversationOrchestrator(
        config,
        monitor,
        recognizer,
        dialogue_client or HttpDialogueClient(config.dialogue),
        playback,
        on_session_complete=on_session_complete,
    )
