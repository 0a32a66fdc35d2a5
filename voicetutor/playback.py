"""
VOICETUTOR Playback Controller

Plays synthesized speech for the assistant turn. At most one handle is
outstanding: play() stops the previous handle before starting a new one.
Each handle reports its completion exactly once with a PlaybackOutcome.

Usage:
    controller = PlaybackController(SoundDeviceOutput(config.playback.output_device))
    handle = controller.play(reply.audio_payload, on_done)
    ...
    controller.stop(handle)     # idempotent
"""

from __future__ import annotations

import asyncio
import io
import itertools
import logging
from typing import Any, Callable, Optional, Protocol

from voicetutor.exceptions import PlaybackError
from voicetutor.types import PlaybackOutcome

logger = logging.getLogger(__name__)

__all__ = [
    "AudioOutput",
    "PlaybackController",
    "PlaybackHandle",
    "SoundDeviceOutput",
]

_handle_ids = itertools.count(1)


class AudioOutput(Protocol):
    """Audio sink used by the controller."""

    async def play(self, payload: bytes) -> None: ...

    def stop(self) -> None: ...


class PlaybackHandle:
    """Opaque reference to one playback."""

    def __init__(self, on_done: Optional[Callable[["PlaybackHandle", PlaybackOutcome], None]]):
        self.id = next(_handle_ids)
        self.stopped = False
        self.outcome: Optional[PlaybackOutcome] = None
        self._on_done = on_done
        self._task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def __repr__(self) -> str:
        state = self.outcome.value if self.outcome else "playing"
        return f"PlaybackHandle(id={self.id}, {state})"


class PlaybackController:
    """Owns the single playback handle of a session."""

    def __init__(self, output: AudioOutput):
        self.output = output
        self._active: Optional[PlaybackHandle] = None
        self.plays_started = 0

    @property
    def active_handle(self) -> Optional[PlaybackHandle]:
        return self._active

    @property
    def is_playing(self) -> bool:
        return self._active is not None and not self._active.done

    def play(
        self,
        payload: bytes,
        on_done: Optional[Callable[[PlaybackHandle, PlaybackOutcome], None]] = None,
    ) -> PlaybackHandle:
        """Start playing ``payload``; must be called on the event loop."""
        if self._active is not None and not self._active.done:
            logger.warning(f"Replacing active playback {self._active.id}")
            self.stop(self._active)

        handle = PlaybackHandle(on_done)
        self._active = handle
        self.plays_started += 1
        handle._task = asyncio.get_running_loop().create_task(self._run(handle, payload))
        logger.debug(f"Playback {handle.id} started ({len(payload)} bytes)")
        return handle

    def stop(self, handle: Optional[PlaybackHandle]) -> bool:
        """Stop a playback. Safe on finished or already stopped handles.

        Returns:
            True if the handle was still playing
        """
        if handle is None or handle.done:
            return False

        handle.stopped = True
        try:
            self.output.stop()
        except Exception as e:
            logger.warning(f"Error stopping audio output: {e}")
        if handle._task is not None:
            handle._task.cancel()
        self._finish(handle, PlaybackOutcome.STOPPED)
        return True

    def stop_all(self) -> bool:
        return self.stop(self._active)

    async def _run(self, handle: PlaybackHandle, payload: bytes) -> None:
        try:
            await self.output.play(payload)
        except asyncio.CancelledError:
            self._finish(handle, PlaybackOutcome.STOPPED)
            raise
        except Exception as e:
            logger.error(f"Playback {handle.id} failed: {e}")
            self._finish(handle, PlaybackOutcome.ERROR)
        else:
            outcome = PlaybackOutcome.STOPPED if handle.stopped else PlaybackOutcome.ENDED
            self._finish(handle, outcome)

    def _finish(self, handle: PlaybackHandle, outcome: PlaybackOutcome) -> None:
        if handle.done:
            return
        handle.outcome = outcome
        if self._active is handle:
            self._active = None
        logger.debug(f"Playback {handle.id} finished: {outcome.value}")

        callback = handle._on_done
        handle._on_done = None
        if callback is not None:
            try:
                callback(handle, outcome)
            except Exception as e:
                logger.error(f"Playback completion callback error: {e}")


# =============================================================================
# Sound Device Output
# =============================================================================


class SoundDeviceOutput:
    """
    Decodes speech bytes with soundfile and plays them through sounddevice.

    Blocking playback runs on the default executor so the event loop keeps
    serving the orchestrator while audio is playing.
    """

    def __init__(self, device: Optional[Any] = None):
        self.device = device
        self._sd = None

    def _sounddevice(self):
        if self._sd is None:
            import sounddevice as sd

            self._sd = sd
        return self._sd

    @staticmethod
    def decode(payload: bytes):
        """Decode an encoded audio payload (MPEG, WAV, FLAC, OGG).

        Returns:
            Tuple of (float32 samples, sample rate)

        Raises:
            PlaybackError: Payload is empty or undecodable
        """
        if not payload:
            raise PlaybackError("Empty audio payload", payload_size=0)

        import soundfile as sf

        try:
            data, sample_rate = sf.read(io.BytesIO(payload), dtype="float32")
        except Exception as e:
            raise PlaybackError(
                f"Could not decode audio: {e}", payload_size=len(payload)
            ) from e
        return data, sample_rate

    async def play(self, payload: bytes) -> None:
        data, sample_rate = self.decode(payload)
        try:
            sd = self._sounddevice()
        except Exception as e:
            raise PlaybackError(
                f"Audio output unavailable: {e}", payload_size=len(payload)
            ) from e

        def _blocking_play() -> None:
            sd.play(data, sample_rate, device=self.device)
            sd.wait()

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _blocking_play)
        logger.debug(f"Played {len(data)} frames at {sample_rate} Hz")

    def stop(self) -> None:
        if self._sd is not None:
            self._sd.stop()
