"""
Test doubles for the engine's injectable seams.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from mediaflow.core.clock import Clock
from mediaflow.models.job import ResultStatus
from mediaflow.schemas.job import ClassificationResult, JobSnapshot
from mediaflow.services.classifier import Classifier


class FakeClock(Clock):
    """Manual clock: time only moves on advance(), sleeps return at once."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._monotonic = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)


class FakeClassifier(Classifier):
    """Deterministic classifier; can fail or block until a gate opens."""

    def __init__(
        self,
        status: ResultStatus = ResultStatus.ACCEPTED,
        metadata: dict[str, Any] | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.status = status
        self.metadata = metadata if metadata is not None else {
            "duration": 42,
            "width": 1280,
            "height": 720,
            "bitrate": 2500,
            "codec": "h264",
        }
        self.error = error
        self.gate = gate
        self.calls: list[str] = []

    async def classify(self, job: JobSnapshot) -> ClassificationResult:
        self.calls.append(job.id)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return ClassificationResult(result_status=self.status, metadata=self.metadata)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
