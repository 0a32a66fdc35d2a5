"""
VOICETUTOR Restart Scheduler

Single authoritative debounce timer for re-entering the listening phase.
Each schedule() or cancel() bumps a generation token; a timer only fires
its callback while its token is still current, so a competing transition
that cancels the restart can never be overtaken by a stale timer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

__all__ = ["RestartScheduler"]


class RestartScheduler:
    """Cancellable, debounced one-shot timer on the running event loop."""

    def __init__(self, delay: float = 1.0):
        if delay < 0:
            raise ValueError("delay must be non-negative")
        self.delay = delay
        self._generation = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fired = 0

    @property
    def generation(self) -> int:
        """Current token; changes on every schedule() and cancel()."""
        return self._generation

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def fired_count(self) -> int:
        return self._fired

    def schedule(self, callback: Callable[[int], None]) -> int:
        """Arm the timer, replacing any pending restart.

        Args:
            callback: Called with the token once the delay elapses

        Returns:
            Token identifying this restart
        """
        self.cancel()
        loop = asyncio.get_running_loop()
        token = self._generation
        self._handle = loop.call_later(self.delay, self._fire, token, callback)
        logger.debug(f"Restart scheduled in {self.delay:.2f}s (token {token})")
        return token

    def cancel(self) -> bool:
        """Invalidate any pending restart.

        Returns:
            True if a timer was pending
        """
        self._generation += 1
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        logger.debug("Pending restart cancelled")
        return True

    def _fire(self, token: int, callback: Callable[[int], None]) -> None:
        if token != self._generation:
            return
        self._handle = None
        self._fired += 1
        callback(token)
