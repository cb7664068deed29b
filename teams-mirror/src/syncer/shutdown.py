"""Shutdown-aware waiting for rate-limit backoff and login polling."""

from __future__ import annotations

import asyncio
from typing import Callable

_TICK_SECONDS = 0.5


async def sleep_with_shutdown(seconds: float, should_stop: Callable[[], bool]) -> bool:
    """Sleep for up to ``seconds`` while remaining responsive to shutdown.

    Returns ``True`` if ``should_stop`` became true before or during the wait.
    """
    if should_stop():
        return True

    remaining = max(0.0, seconds)
    while remaining > 0:
        if should_stop():
            return True
        tick = min(_TICK_SECONDS, remaining)
        await asyncio.sleep(tick)
        remaining -= tick
    return should_stop()
