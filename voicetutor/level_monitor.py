"""
VOICETUTOR Audio Level Monitor

Owns the microphone stream for the lifetime of a session and turns each
captured block into a normalized voice-activity level in [0, 1].

The level follows the shape of a browser AnalyserNode: Blackman-windowed
FFT, exponential smoothing across blocks, magnitudes mapped from a dB
range onto 0..255, then the RMS of those bytes divided by a fixed divisor.

Captured frames are also fanned out to frame listeners so the recognizer
adapter can consume audio without opening the device itself.

Usage:
    monitor = AudioLevelMonitor(config.audio)
    monitor.acquire()                       # raises ResourceError
    monitor.start_sampling(on_level)
    ...
    monitor.release()
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional

import numpy as np

from voicetutor.config import AudioConfig
from voicetutor.exceptions import ResourceError

logger = logging.getLogger(__name__)

__all__ = [
    "AudioLevelMonitor",
    "LevelAnalyzer",
    "SilenceDetector",
    "StreamFactory",
]

# Callable that builds an input stream: factory(samplerate=..., channels=...,
# blocksize=..., dtype=..., device=..., callback=...) -> stream with
# start()/stop()/close().
StreamFactory = Callable[..., Any]


def _sounddevice_stream(**kwargs: Any) -> Any:
    """Open a sounddevice InputStream."""
    import sounddevice as sd

    return sd.InputStream(**kwargs)


# =============================================================================
# Level Analysis
# =============================================================================


class LevelAnalyzer:
    """Converts time-domain blocks into a normalized speech level."""

    def __init__(
        self,
        fft_size: int = 512,
        smoothing: float = 0.8,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
        divisor: float = 128.0,
    ):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self.divisor = divisor

        self._window = np.blackman(fft_size).astype(np.float32)
        self._previous = np.zeros(fft_size // 2, dtype=np.float64)

    @classmethod
    def from_config(cls, config: AudioConfig) -> "LevelAnalyzer":
        return cls(
            fft_size=config.fft_size,
            smoothing=config.smoothing,
            min_decibels=config.min_decibels,
            max_decibels=config.max_decibels,
            divisor=config.level_divisor,
        )

    def reset(self) -> None:
        self._previous[:] = 0.0

    def byte_spectrum(self, samples: np.ndarray) -> np.ndarray:
        """Smoothed magnitude spectrum scaled to 0..255."""
        block = np.asarray(samples, dtype=np.float32).reshape(-1)
        if block.size < self.fft_size:
            block = np.pad(block, (0, self.fft_size - block.size))
        else:
            block = block[-self.fft_size:]

        spectrum = np.fft.rfft(block * self._window)[: self.fft_size // 2]
        magnitude = np.abs(spectrum) / self.fft_size

        smoothed = self.smoothing * self._previous + (1.0 - self.smoothing) * magnitude
        self._previous = smoothed

        with np.errstate(divide="ignore"):
            decibels = 20.0 * np.log10(smoothed)
        scale = 255.0 / (self.max_decibels - self.min_decibels)
        scaled = np.floor(scale * (decibels - self.min_decibels))
        return np.clip(np.nan_to_num(scaled, nan=0.0, neginf=0.0), 0.0, 255.0)

    def process(self, samples: np.ndarray) -> float:
        """Level in [0, 1] for one captured block."""
        data = self.byte_spectrum(samples)
        rms = float(np.sqrt(np.mean(data * data)))
        return min(rms / self.divisor, 1.0)


class SilenceDetector:
    """
    Tracks when speech was last heard and signals once per utterance
    after the silence window has elapsed.
    """

    def __init__(self, threshold: float = 0.1, window: float = 1.5):
        self.threshold = threshold
        self.window = window
        self.reset()

    def reset(self) -> None:
        self.last_speech_at: Optional[float] = None
        self._hinted = False

    @property
    def speech_heard(self) -> bool:
        return self.last_speech_at is not None

    def update(self, level: float, now: float) -> bool:
        """Feed one level reading.

        Returns:
            True exactly once when speech was heard and has since been
            followed by more than ``window`` seconds of quiet
        """
        if level > self.threshold:
            self.last_speech_at = now
            self._hinted = False
            return False

        if self.last_speech_at is None or self._hinted:
            return False

        if now - self.last_speech_at > self.window:
            self._hinted = True
            return True
        return False


# =============================================================================
# Monitor
# =============================================================================


class AudioLevelMonitor:
    """
    Microphone owner and level sampler.

    Callbacks run on the audio driver's thread; consumers must hand the
    values to their own loop (the orchestrator does this with
    call_soon_threadsafe).
    """

    def __init__(
        self,
        config: Optional[AudioConfig] = None,
        stream_factory: Optional[StreamFactory] = None,
    ):
        self.config = config or AudioConfig()
        self._stream_factory = stream_factory or _sounddevice_stream
        self._stream: Optional[Any] = None
        self._analyzer: Optional[LevelAnalyzer] = None
        self._level_callback: Optional[Callable[[float], None]] = None
        self._frame_listeners: List[Callable[[np.ndarray], None]] = []
        self._lock = threading.Lock()
        self._last_level = 0.0
        self._blocks = 0

    @property
    def is_acquired(self) -> bool:
        return self._stream is not None

    @property
    def last_level(self) -> float:
        return self._last_level

    @property
    def blocks_processed(self) -> int:
        return self._blocks

    def acquire(self) -> None:
        """Open and start the capture stream.

        Raises:
            ResourceError: Device missing, busy, or permission denied
        """
        if self._stream is not None:
            logger.warning("Audio monitor already acquired")
            return

        device = self.config.input_device
        try:
            stream = self._stream_factory(
                samplerate=self.config.sample_rate,
                channels=self.config.channels,
                blocksize=self.config.fft_size,
                dtype="float32",
                device=device,
                callback=self._audio_callback,
            )
        except Exception as e:
            raise ResourceError(
                "Could not access microphone. Please check permissions.",
                device=device,
                reason=str(e),
            ) from e

        self._analyzer = LevelAnalyzer.from_config(self.config)
        try:
            stream.start()
        except Exception as e:
            self._close_stream(stream)
            self._analyzer = None
            raise ResourceError(
                "Could not start microphone stream.",
                device=device,
                reason=str(e),
            ) from e

        self._stream = stream
        logger.info(
            f"Microphone acquired ({self.config.sample_rate} Hz, "
            f"block {self.config.fft_size})"
        )

    def start_sampling(self, callback: Callable[[float], None]) -> None:
        """Deliver a level reading for every captured block."""
        with self._lock:
            self._level_callback = callback

    def add_frame_listener(self, listener: Callable[[np.ndarray], None]) -> None:
        with self._lock:
            if listener not in self._frame_listeners:
                self._frame_listeners.append(listener)

    def remove_frame_listener(self, listener: Callable[[np.ndarray], None]) -> None:
        with self._lock:
            if listener in self._frame_listeners:
                self._frame_listeners.remove(listener)

    def release(self) -> bool:
        """Stop capture and tear down analysis state.

        Returns:
            True if a stream was released, False if nothing was held
        """
        with self._lock:
            stream = self._stream
            self._stream = None
            self._level_callback = None
            self._analyzer = None
        self._last_level = 0.0

        if stream is None:
            return False

        self._close_stream(stream)
        logger.info("Microphone released")
        return True

    @staticmethod
    def _close_stream(stream: Any) -> None:
        try:
            stream.stop()
        except Exception as e:
            logger.warning(f"Error stopping capture stream: {e}")
        try:
            stream.close()
        except Exception as e:
            logger.warning(f"Error closing capture stream: {e}")

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug(f"Audio capture status: {status}")

        with self._lock:
            analyzer = self._analyzer
            callback = self._level_callback
            listeners = list(self._frame_listeners)

        if analyzer is None:
            return

        block = np.asarray(indata, dtype=np.float32)
        mono = block[:, 0] if block.ndim > 1 else block
        level = analyzer.process(mono)
        self._last_level = level
        self._blocks += 1

        if callback is not None:
            try:
                callback(level)
            except Exception as e:
                logger.error(f"Level callback error: {e}")

        for listener in listeners:
            try:
                listener(mono.copy())
            except Exception as e:
                logger.error(f"Frame listener error: {e}")
