"""
Admission control for provider calls.

A call may start only while it holds one global permit and one permit for its
pipeline type. Waiters are granted in arrival order; a waiter whose own type is
saturated is passed over so it cannot block other types, but it keeps its place
ahead of later waiters of the same type.
"""

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from .errors import ConfigurationError
from .models import PipelineType

logger = get_logger(__name__)


@dataclass(eq=False)
class Permit:
    """Proof of admission; hand it back with ``ConcurrencyGate.release``."""

    pipeline_type: PipelineType
    granted_at: float = field(default_factory=time.monotonic)
    released: bool = False


@dataclass(eq=False)
class _Waiter:
    pipeline_type: PipelineType
    future: asyncio.Future


class ConcurrencyGate:
    """Global and per-pipeline-type concurrency limits with FIFO admission."""

    def __init__(self, concurrency_limit: int, pipeline_limits: Mapping[PipelineType | str, int]):
        if not isinstance(concurrency_limit, int) or concurrency_limit < 1:
            raise ConfigurationError(f"concurrency_limit must be >= 1, got {concurrency_limit!r}")

        self.concurrency_limit = concurrency_limit
        self.pipeline_limits: dict[PipelineType, int] = {}
        for key, limit in pipeline_limits.items():
            pipeline_type = self._pipeline_type(key)
            if not isinstance(limit, int) or limit < 1:
                raise ConfigurationError(
                    f"pipeline limit for {pipeline_type.value} must be >= 1, got {limit!r}"
                )
            self.pipeline_limits[pipeline_type] = limit

        self._waiters: deque[_Waiter] = deque()
        self._in_flight_total = 0
        self._in_flight: dict[PipelineType, int] = dict.fromkeys(PipelineType, 0)
        self._peak_total = 0
        self._peak: dict[PipelineType, int] = dict.fromkeys(PipelineType, 0)

    @classmethod
    def from_config(cls, concurrency) -> "ConcurrencyGate":
        """Build from a ``ConcurrencyConfig`` settings section."""
        return cls(concurrency.concurrency_limit, concurrency.pipeline_limits)

    @staticmethod
    def _pipeline_type(value: PipelineType | str) -> PipelineType:
        try:
            return PipelineType(value)
        except ValueError as e:
            raise ConfigurationError(f"Unknown pipeline type: {value!r}") from e

    def _limit(self, pipeline_type: PipelineType) -> int:
        return self.pipeline_limits.get(pipeline_type, self.concurrency_limit)

    def _admissible(self, pipeline_type: PipelineType) -> bool:
        return self._in_flight[pipeline_type] < self._limit(pipeline_type)

    def _grant(self, pipeline_type: PipelineType) -> None:
        self._in_flight_total += 1
        self._in_flight[pipeline_type] += 1
        self._peak_total = max(self._peak_total, self._in_flight_total)
        self._peak[pipeline_type] = max(self._peak[pipeline_type], self._in_flight[pipeline_type])

    def _return(self, pipeline_type: PipelineType) -> None:
        self._in_flight_total -= 1
        self._in_flight[pipeline_type] -= 1

    def _dispatch(self) -> None:
        """Grant permits to queued waiters in arrival order while capacity remains."""
        for waiter in list(self._waiters):
            if self._in_flight_total >= self.concurrency_limit:
                break
            if waiter.future.done():
                self._waiters.remove(waiter)
                continue
            if not self._admissible(waiter.pipeline_type):
                continue
            self._waiters.remove(waiter)
            self._grant(waiter.pipeline_type)
            waiter.future.set_result(None)

    async def acquire(self, pipeline_type: PipelineType | str) -> Permit:
        """Wait for one global and one per-type permit."""
        pipeline_type = self._pipeline_type(pipeline_type)
        waiter = _Waiter(pipeline_type, asyncio.get_running_loop().create_future())
        self._waiters.append(waiter)
        self._dispatch()

        started = time.perf_counter()
        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                # Granted, but the task was cancelled before it resumed
                self._return(pipeline_type)
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            self._dispatch()
            raise

        get_metrics_collector().observe(
            "gate_wait_seconds",
            time.perf_counter() - started,
            {"pipeline_type": pipeline_type.value},
        )
        return Permit(pipeline_type)

    def release(self, permit: Permit) -> None:
        """Return a permit. Releasing the same permit twice is a no-op."""
        if permit.released:
            logger.warning("Permit released twice", pipeline_type=permit.pipeline_type.value)
            return
        permit.released = True
        self._return(permit.pipeline_type)
        self._dispatch()

    @asynccontextmanager
    async def slot(self, pipeline_type: PipelineType | str) -> AsyncIterator[Permit]:
        """Hold a permit for the duration of the block, releasing it on every exit path."""
        permit = await self.acquire(pipeline_type)
        try:
            yield permit
        finally:
            self.release(permit)

    def in_flight(self, pipeline_type: PipelineType | None = None) -> int:
        if pipeline_type is None:
            return self._in_flight_total
        return self._in_flight[PipelineType(pipeline_type)]

    def peak(self, pipeline_type: PipelineType | None = None) -> int:
        """Highest concurrent in-flight count observed since construction."""
        if pipeline_type is None:
            return self._peak_total
        return self._peak[PipelineType(pipeline_type)]

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.future.done())
