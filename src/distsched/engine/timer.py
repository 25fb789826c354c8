from __future__ import annotations

"""
Trigger firing loop.

One background task per instance keeps a min-heap of armed `(fire_at, key)` entries.
Disarming is O(1): the armed map holds a generation number per key and stale heap
entries are skipped when popped. Heap keys are UTC instants so that wall times
repeated by a DST fold still order by when they actually happen.

Arming and disarming may come from any thread; firing happens on the loop that
started the engine.

Rearm policy for recurring triggers: the next occurrence is computed from the fire
instant; when that occurrence is already in the past (the loop was late or the
process was suspended) every missed occurrence collapses into one immediate firing.
"""

import asyncio
import heapq
import inspect
import itertools
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from typing import Any

from ..core.log import get_logger
from ..core.time import Clock, SystemClock
from ..core.types import JobKey
from .triggers import Cron, TriggerSpec, compute_next_fire_time

FireCallback = Callable[[JobKey, datetime], Awaitable[Any] | Any]

# upper bound on one idle wait; keeps the loop honest against wall-clock jumps
_MAX_IDLE_SEC = 30.0


@dataclass
class _Armed:
    generation: int
    spec: TriggerSpec
    fire_at: datetime


class TriggerEngine:
    def __init__(self, *, on_fire: FireCallback, clock: Clock | None = None, tz: tzinfo = UTC) -> None:
        self.clock: Clock = clock or SystemClock()
        self.tz = tz
        self._on_fire = on_fire
        self._armed: dict[JobKey, _Armed] = {}
        self._heap: list[tuple[datetime, int, JobKey, int]] = []
        self._seq = itertools.count()
        self._gen = itertools.count(1)
        self._lock = threading.RLock()
        self._wake = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_task: asyncio.Task | None = None
        self._firing: set[asyncio.Task] = set()
        self._running = False
        self.log = get_logger("engine.timer")

    # ---- arming

    def arm(self, key: JobKey, spec: TriggerSpec, *, fire_at: datetime | None = None) -> datetime:
        """
        Arm (or re-arm) `key`. Any previous arming of the same key is superseded.
        Returns the scheduled fire instant.
        """
        if fire_at is None:
            fire_at = compute_next_fire_time(spec, self.clock.now_dt(), self.tz)
        with self._lock:
            gen = next(self._gen)
            self._armed[key] = _Armed(gen, spec, fire_at)
            heapq.heappush(self._heap, (fire_at.astimezone(UTC), next(self._seq), key, gen))
        self._notify()
        self.log.debug("trigger.armed", event="trigger.armed", job_id=key[0], job_group=key[1], fire_at=fire_at)
        return fire_at

    def disarm(self, key: JobKey) -> bool:
        with self._lock:
            return self._armed.pop(key, None) is not None

    def disarm_all(self) -> int:
        with self._lock:
            n = len(self._armed)
            self._armed.clear()
            self._heap.clear()
            return n

    def next_fire_time(self, key: JobKey) -> datetime | None:
        with self._lock:
            armed = self._armed.get(key)
            return armed.fire_at if armed else None

    def armed_count(self) -> int:
        with self._lock:
            return len(self._armed)

    def _notify(self) -> None:
        # asyncio.Event is not thread-safe: wake the loop through its own queue
        loop = self._loop
        if loop is None or loop.is_closed():
            self._wake.set()
            return
        try:
            on_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            on_loop = False
        if on_loop:
            self._wake.set()
        else:
            loop.call_soon_threadsafe(self._wake.set)

    # ---- firing

    def _peek(self) -> tuple[datetime, int, JobKey, int] | None:
        with self._lock:
            while self._heap:
                entry = self._heap[0]
                armed = self._armed.get(entry[2])
                if armed is not None and armed.generation == entry[3]:
                    return entry
                heapq.heappop(self._heap)
            return None

    def fire_due(self, now: datetime | None = None) -> list[asyncio.Task]:
        """
        Fire every entry whose instant is <= `now`. Callbacks run as tasks;
        the tasks are returned so callers (tests) can await them.
        """
        now = (now or self.clock.now_dt()).astimezone(UTC)
        fired: list[asyncio.Task] = []
        with self._lock:
            while True:
                entry = self._peek()
                if entry is None or entry[0] > now:
                    break
                heapq.heappop(self._heap)
                key = entry[2]
                armed = self._armed.pop(key)
                if isinstance(armed.spec, Cron):
                    self._rearm_recurring(key, armed.spec, armed.fire_at, now)
                fired.append(self._spawn_fire(key, armed.fire_at))
        return fired

    def _rearm_recurring(self, key: JobKey, spec: Cron, fire_at: datetime, now: datetime) -> None:
        nxt = spec.expression.next_after(fire_at, self.tz)
        if nxt is None:
            self.log.info("trigger.exhausted", event="trigger.exhausted", job_id=key[0], job_group=key[1])
            return
        if nxt.astimezone(UTC) <= now:
            # this late firing stands in for every occurrence missed up to now
            self.log.debug(
                "trigger.misfire.coalesced",
                event="trigger.misfire",
                job_id=key[0],
                job_group=key[1],
                missed_from=nxt,
            )
            nxt = spec.expression.next_after(now, self.tz)
            if nxt is None:
                return
        self.arm(key, spec, fire_at=nxt)

    def _spawn_fire(self, key: JobKey, fire_at: datetime) -> asyncio.Task:
        t = asyncio.create_task(self._fire(key, fire_at), name=f"fire:{key[1]}.{key[0]}")
        self._firing.add(t)
        t.add_done_callback(self._firing.discard)
        return t

    async def _fire(self, key: JobKey, fire_at: datetime) -> None:
        try:
            res = self._on_fire(key, fire_at)
            if inspect.isawaitable(res):
                await res
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.error(
                "trigger.callback.failed",
                event="trigger.callback.failed",
                job_id=key[0],
                job_group=key[1],
                exc_info=True,
            )

    # ---- loop

    def _idle_timeout(self) -> float | None:
        entry = self._peek()
        if entry is None:
            return None
        delay = (entry[0] - self.clock.now_dt().astimezone(UTC)).total_seconds()
        return max(0.0, min(delay, _MAX_IDLE_SEC))

    async def _run(self) -> None:
        while self._running:
            self._wake.clear()
            timeout = self._idle_timeout()
            if timeout is None or timeout > 0:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=timeout)
                except TimeoutError:
                    pass
            if not self._running:
                break
            self.fire_due()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop = asyncio.get_running_loop()
        self._loop_task = asyncio.create_task(self._run(), name="trigger-loop")
        self.log.debug("trigger.loop.started", event="trigger.loop.started")

    async def stop(self, *, cancel_running: bool = True) -> None:
        self._running = False
        self._wake.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        self._loop = None
        if cancel_running:
            for t in list(self._firing):
                t.cancel()
            if self._firing:
                await asyncio.gather(*self._firing, return_exceptions=True)
        self.log.debug("trigger.loop.stopped", event="trigger.loop.stopped")
