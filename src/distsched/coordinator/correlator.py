"""
Pending-wait table for cross-instance requests.

Each outbound request registers a future under its correlation id. The future is
completed exactly once: by the first matching response, by the deadline sweeper
(CorrelationTimeout) or by `drain_all` (ServiceStopped). Anything arriving later
for the same id is dropped.

A single sweeper task serves every wait through a min-heap of deadlines.
"""

from __future__ import annotations

import asyncio
import heapq
from dataclasses import dataclass

from ..api.errors import CorrelationTimeout, SchedulerError, ServiceStopped, error_from_code
from ..core.log import get_logger
from ..core.time import Clock, SystemClock
from ..core.types import CorrelationId, Millis
from ..protocol.messages import ResponseMessage


@dataclass(frozen=True)
class Outcome:
    """How a pending wait ended."""

    success: bool
    error: SchedulerError | None = None
    response: ResponseMessage | None = None

    @classmethod
    def from_response(cls, msg: ResponseMessage) -> Outcome:
        if msg.success:
            return cls(success=True, response=msg)
        return cls(success=False, error=error_from_code(msg.error_code, msg.error_message), response=msg)

    @classmethod
    def failed(cls, error: SchedulerError) -> Outcome:
        return cls(success=False, error=error)


class Correlator:
    def __init__(self, *, clock: Clock | None = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self._pending: dict[CorrelationId, asyncio.Future[Outcome]] = {}
        self._deadlines: list[tuple[int, CorrelationId]] = []
        self._wake = asyncio.Event()
        self._sweeper: asyncio.Task | None = None
        self._closed = False
        self.log = get_logger("coordinator.correlator")

    def register(self, correlation_id: CorrelationId, timeout_ms: Millis) -> asyncio.Future[Outcome]:
        """Create the pending wait for `correlation_id`. Must run on the event loop."""
        if self._closed:
            raise ServiceStopped("scheduler is shutting down")
        if correlation_id in self._pending:
            raise ValueError(f"correlation id already pending: {correlation_id}")
        fut: asyncio.Future[Outcome] = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = fut
        heapq.heappush(self._deadlines, (self.clock.mono_ms() + int(timeout_ms), correlation_id))
        self._ensure_sweeper()
        self._wake.set()
        return fut

    def resolve(self, correlation_id: CorrelationId, outcome: Outcome) -> bool:
        """
        Complete the wait with `outcome`. Unknown or already finished ids are a
        silent no-op (returns False).
        """
        fut = self._pending.pop(correlation_id, None)
        if fut is None or fut.done():
            return False
        fut.set_result(outcome)
        return True

    def discard(self, correlation_id: CorrelationId) -> None:
        """Forget a wait whose caller gave up; its deadline entry expires harmlessly."""
        fut = self._pending.pop(correlation_id, None)
        if fut is not None and not fut.done():
            fut.cancel()

    def pending_count(self) -> int:
        return len(self._pending)

    def expire_due(self) -> int:
        """Time out every wait whose deadline has passed. Returns how many expired."""
        now = self.clock.mono_ms()
        n = 0
        while self._deadlines and self._deadlines[0][0] <= now:
            _, cid = heapq.heappop(self._deadlines)
            if self.resolve(cid, Outcome.failed(CorrelationTimeout(f"no response for request {cid}"))):
                n += 1
                self.log.info("correlation.timeout", event="correlation.timeout", correlation_id=cid)
        return n

    def drain_all(self, reason: str = "scheduler is shutting down") -> int:
        n = 0
        for cid in list(self._pending):
            if self.resolve(cid, Outcome.failed(ServiceStopped(reason))):
                n += 1
        self._deadlines.clear()
        return n

    async def close(self) -> None:
        """Refuse new waits and stop the sweeper. Pending waits stay until `drain_all`."""
        self._closed = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    @property
    def closed(self) -> bool:
        return self._closed

    # ---- sweeper

    def _ensure_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep(), name="correlator-sweeper")

    async def _sweep(self) -> None:
        while not self._closed:
            self._wake.clear()
            self.expire_due()
            timeout = None
            if self._deadlines:
                timeout = max(0.0, (self._deadlines[0][0] - self.clock.mono_ms()) / 1000.0)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except TimeoutError:
                pass
