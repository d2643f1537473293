"""Clock abstraction so polling and backoff can run without wall-clock delays."""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall-clock time in epoch seconds with asyncio sleeps."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0))


system_clock = SystemClock()
