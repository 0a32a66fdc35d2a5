"""Async polling helpers shared by the test suites."""

import asyncio
from typing import Callable


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 1.0,
    interval: float = 0.005,
    message: str = "condition",
) -> None:
    """Poll ``predicate`` on the running loop until it holds.

    Raises:
        AssertionError: Timed out
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"{message} not met within {timeout}s")
        await asyncio.sleep(interval)
