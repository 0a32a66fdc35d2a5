"""
VOICETUTOR Speech Recognizer Interface

The orchestrator consumes speech recognition as a capability:

    recognizer.attach(listener)
    recognizer.start()          # begin an utterance
    recognizer.stop()           # abandon it (idempotent)
    recognizer.request_finalize()   # optional advisory end-of-speech hint

and receives ``on_interim``, ``on_final``, ``on_error`` and ``on_end``
callbacks on the listener. Callbacks may arrive on any thread.

``WhisperRecognizer`` is the default adapter: it reads frames from the
AudioLevelMonitor (which owns the microphone), and transcribes each
utterance with faster-whisper on a worker thread.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, List, Optional, Protocol, runtime_checkable

import numpy as np

from voicetutor.config import RecognizerConfig
from voicetutor.exceptions import RecognitionError
from voicetutor.types import RecognitionErrorKind

logger = logging.getLogger(__name__)

__all__ = [
    "RecognizerListener",
    "SpeechRecognizer",
    "WhisperRecognizer",
    "error_message",
]


# =============================================================================
# Interfaces
# =============================================================================


class RecognizerListener(Protocol):
    """Receives recognizer events."""

    def on_interim(self, text: str) -> None: ...

    def on_final(self, text: str) -> None: ...

    def on_error(self, kind: RecognitionErrorKind) -> None: ...

    def on_end(self) -> None: ...


@runtime_checkable
class SpeechRecognizer(Protocol):
    """Speech-to-text capability driven by the orchestrator."""

    def attach(self, listener: RecognizerListener) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


_ERROR_MESSAGES = {
    RecognitionErrorKind.NOT_ALLOWED: (
        "Microphone access denied. Please allow microphone permissions and try again."
    ),
    RecognitionErrorKind.PERMISSION_DENIED: (
        "Microphone access denied. Please allow microphone permissions and try again."
    ),
    RecognitionErrorKind.NO_SPEECH: "No speech detected. Please try speaking again.",
    RecognitionErrorKind.AUDIO_CAPTURE: (
        "Microphone not available. Please check your microphone connection."
    ),
    RecognitionErrorKind.NETWORK: (
        "Network error occurred. Please check your internet connection."
    ),
    RecognitionErrorKind.NOT_SUPPORTED: "Speech recognition is not supported on this system.",
    RecognitionErrorKind.SERVICE_NOT_ALLOWED: (
        "Speech recognition service is not allowed. Please check your settings."
    ),
}


def error_message(kind: RecognitionErrorKind | str) -> str:
    """User-facing text for a recognizer error."""
    parsed = RecognitionErrorKind.parse(kind)
    if parsed in _ERROR_MESSAGES:
        return _ERROR_MESSAGES[parsed]
    raw = kind.value if isinstance(kind, RecognitionErrorKind) else kind
    return f"Speech recognition error: {raw}. Please try again."


# =============================================================================
# Whisper Adapter
# =============================================================================


class WhisperRecognizer:
    """
    faster-whisper adapter fulfilling the SpeechRecognizer contract.

    One utterance per start(): frames are buffered from the first block
    whose RMS crosses ``speech_rms``; the utterance is finalized on
    request_finalize(), or when ``max_utterance`` elapses. If no speech
    arrives within ``no_speech_timeout`` the recognizer reports
    ``no-speech`` and ends.
    """

    def __init__(
        self,
        monitor,
        config: Optional[RecognizerConfig] = None,
        sample_rate: int = 16000,
    ):
        self.monitor = monitor
        self.config = config or RecognizerConfig()
        self.sample_rate = sample_rate

        self._listener: Optional[RecognizerListener] = None
        self._model: Any = None
        self._model_lock = threading.Lock()
        self._lock = threading.Lock()

        # _running covers the whole utterance, transcription included;
        # _finalizing is set once capture has ended and the worker owns it.
        self._running = False
        self._finalizing = False
        self._token = 0
        self._frames: List[np.ndarray] = []
        self._speech_started = False
        self._started_at = 0.0
        self._worker: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def attach(self, listener: RecognizerListener) -> None:
        self._listener = listener

    def start(self) -> None:
        with self._lock:
            if self._running:
                raise RuntimeError("Recognizer already running")
            self._running = True
            self._finalizing = False
            self._token += 1
            self._frames = []
            self._speech_started = False
            self._started_at = time.monotonic()
        self.monitor.add_frame_listener(self.feed)
        logger.debug(f"Whisper recognizer listening (utterance {self._token})")

    def stop(self) -> None:
        """Abandon the current utterance without transcribing it.

        A transcription already in flight is abandoned too: its result is
        dropped when it completes, and on_end is reported here exactly once.
        """
        with self._lock:
            if not self._running:
                return
            transcribing = self._finalizing
            self._running = False
            self._finalizing = False
            self._token += 1
            self._frames = []
        self.monitor.remove_frame_listener(self.feed)
        if transcribing:
            logger.debug("Abandoning in-flight transcription")
        self._emit("on_end")

    def request_finalize(self) -> None:
        """Advisory end-of-speech hint from the silence detector."""
        self._finalize()

    def feed(self, frame: np.ndarray) -> None:
        """Frame listener registered with the AudioLevelMonitor."""
        with self._lock:
            if not self._running or self._finalizing:
                return
            elapsed = time.monotonic() - self._started_at
            rms = float(np.sqrt(np.mean(np.square(frame)))) if frame.size else 0.0

            if rms >= self.config.speech_rms:
                self._speech_started = True
            if self._speech_started:
                self._frames.append(frame)

            no_speech = not self._speech_started and elapsed > self.config.no_speech_timeout
            too_long = self._speech_started and elapsed > self.config.max_utterance

        if no_speech:
            self._abort_with(RecognitionErrorKind.NO_SPEECH)
        elif too_long:
            self._finalize()

    def _abort_with(self, kind: RecognitionErrorKind) -> None:
        with self._lock:
            if not self._running or self._finalizing:
                return
            self._running = False
            self._frames = []
        self.monitor.remove_frame_listener(self.feed)
        self._emit("on_error", kind)
        self._emit("on_end")

    def _finalize(self) -> None:
        with self._lock:
            if not self._running or self._finalizing:
                return
            frames = self._frames
            self._frames = []
            token = self._token
            if frames:
                self._finalizing = True
            else:
                self._running = False
        self.monitor.remove_frame_listener(self.feed)

        if not frames:
            self._emit("on_error", RecognitionErrorKind.NO_SPEECH)
            self._emit("on_end")
            return

        audio = np.concatenate(frames).astype(np.float32)
        self._worker = threading.Thread(
            target=self._transcribe_and_emit,
            args=(audio, token),
            name="whisper-transcribe",
            daemon=True,
        )
        self._worker.start()

    def _complete(self, token: int) -> bool:
        """Release the utterance if it is still current; False if stop() took it."""
        with self._lock:
            if token != self._token:
                return False
            self._running = False
            self._finalizing = False
            return True

    def _load_model(self):
        with self._model_lock:
            if self._model is None:
                from faster_whisper import WhisperModel

                logger.info(f"Loading whisper model: {self.config.model}")
                self._model = WhisperModel(
                    self.config.model,
                    device=self.config.device,
                    compute_type=self.config.compute_type,
                )
            return self._model

    def transcribe(self, audio: np.ndarray) -> str:
        """Run whisper over one utterance.

        Raises:
            RecognitionError: With kind ``not-supported`` when faster-whisper
                is missing, ``unknown`` for any other model failure
        """
        try:
            model = self._load_model()
        except ImportError as e:
            raise RecognitionError(
                f"faster-whisper is not installed: {e}",
                kind=RecognitionErrorKind.NOT_SUPPORTED,
            ) from e
        try:
            segments, _info = model.transcribe(
                audio,
                language=self.config.language,
                beam_size=5,
                vad_filter=True,
            )
            return " ".join(segment.text for segment in segments).strip()
        except Exception as e:
            raise RecognitionError(
                f"Transcription failed: {e}", kind=RecognitionErrorKind.UNKNOWN
            ) from e

    def _transcribe_and_emit(self, audio: np.ndarray, token: int) -> None:
        try:
            text = self.transcribe(audio)
        except RecognitionError as e:
            if not self._complete(token):
                logger.debug(f"Dropping error from abandoned utterance {token}: {e.message}")
                return
            logger.error(e.message)
            self._emit("on_error", e.kind)
            self._emit("on_end")
            return

        if not self._complete(token):
            logger.debug(f"Dropping transcript from abandoned utterance {token}")
            return
        logger.info(f"Transcribed: {text!r}")
        self._emit("on_final", text)
        self._emit("on_end")

    def _emit(self, name: str, *args) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            getattr(listener, name)(*args)
        except Exception as e:
            logger.error(f"Recognizer listener error in {name}: {e}")
