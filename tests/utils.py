"""Helpers shared by async tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the event loop until ``predicate()`` holds.

    Raises:
        AssertionError: If the condition is not met within ``timeout`` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


async def settle(rounds: int = 20) -> None:
    """Let pending tasks run without waiting on the clock."""
    for _ in range(rounds):
        await asyncio.sleep(0)
