"""Injectable clock.

The engine never reads wall-clock time or sleeps directly; it goes through a
Clock so backoff delays, approval timeouts and escalation levels can be
driven deterministically in tests.
"""

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Protocol for time sources."""

    def now(self) -> datetime:
        """Return the current UTC time."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend for the given number of seconds."""
        ...

    async def wait_for_event(self, event: asyncio.Event, timeout: float) -> bool:
        """Wait until the event is set or the timeout elapses.

        Returns:
            True if the event was set, False on timeout
        """
        ...


class SystemClock:
    """Clock backed by the system time and the asyncio event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def wait_for_event(self, event: asyncio.Event, timeout: float) -> bool:
        if event.is_set():
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout=max(timeout, 0))
            return True
        except asyncio.TimeoutError:
            return event.is_set()
