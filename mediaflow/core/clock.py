import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Wall time, monotonic time and sleeping behind one seam so tests can drive time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


system_clock = Clock()
