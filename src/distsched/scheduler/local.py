from __future__ import annotations

"""
Local coordinator: the Trigger Engine and the Job Registry behind synchronous
operations. Nothing here touches the bus; every method either completes or raises
a `SchedulerError` subclass before returning.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, tzinfo
from typing import Any

from ..api.errors import InvalidScheduleSpec
from ..core.log import get_logger, log_context
from ..core.time import Clock, SystemClock
from ..core.types import JobGroup, JobId, JobKey
from ..engine.triggers import OneShot, TriggerSpec, build_trigger_spec, compute_next_fire_time
from ..engine.timer import TriggerEngine
from .models import JobRecord, JobStatus
from .registry import JobRegistry

JobAction = Callable[[JobRecord, datetime], Awaitable[Any] | Any]


def log_job_action(record: JobRecord, fire_at: datetime) -> None:
    """Default action: announce the firing and do nothing else."""
    get_logger("job").info(
        "job.executed",
        event="job.executed",
        job_id=record.job_id,
        job_group=record.job_group,
        fire_at=fire_at,
        payload=record.payload,
    )


def reschedule_spec(
    *,
    new_fire_time: datetime | None = None,
    new_cron: str | None = None,
    tz: tzinfo = UTC,
) -> TriggerSpec:
    """
    Build the replacement trigger for a reschedule. The cron expression wins when
    both are given; neither raises InvalidScheduleSpec.
    """
    if new_fire_time is None and not (new_cron and new_cron.strip()):
        raise InvalidScheduleSpec("Either newScheduleTime or newCronExpression must be provided")
    return build_trigger_spec(fire_at=new_fire_time, cron=new_cron, tz=tz)


class LocalCoordinator:
    def __init__(
        self,
        *,
        tz: tzinfo = UTC,
        clock: Clock | None = None,
        action: JobAction | None = None,
    ) -> None:
        self.tz = tz
        self.clock: Clock = clock or SystemClock()
        self.action: JobAction = action or log_job_action
        self.registry = JobRegistry()
        self.engine = TriggerEngine(on_fire=self._on_fire, clock=self.clock, tz=tz)
        self.log = get_logger("scheduler.local")

    # ---- lifecycle

    async def start(self) -> None:
        await self.engine.start()

    async def shutdown(self) -> None:
        with self.registry.lock:
            n = self.engine.disarm_all()
        await self.engine.stop()
        self.log.debug("local.shutdown", event="local.shutdown", disarmed=n)

    # ---- operations

    def schedule(self, record: JobRecord) -> datetime:
        """Register and arm `record`. Returns its first fire instant."""
        with self.registry.lock:
            fire_at = compute_next_fire_time(record.trigger, self.clock.now_dt(), self.tz)
            record.created_at = self.clock.now_dt()
            self.registry.insert(record)
            self.engine.arm(record.key, record.trigger, fire_at=fire_at)
        self.log.info(
            "job.scheduled",
            event="job.scheduled",
            job_id=record.job_id,
            job_group=record.job_group,
            trigger=record.trigger.describe(),
            fire_at=fire_at,
        )
        return fire_at

    def cancel(self, job_id: JobId, job_group: JobGroup) -> None:
        key = (job_id, job_group)
        with self.registry.lock:
            self.registry.remove(key)
            self.engine.disarm(key)
            self.registry.set_status(job_id, JobStatus.CANCELLED)
        self.log.info("job.cancelled", event="job.cancelled", job_id=job_id, job_group=job_group)

    def reschedule(
        self,
        job_id: JobId,
        job_group: JobGroup,
        *,
        new_fire_time: datetime | None = None,
        new_cron: str | None = None,
    ) -> datetime:
        """Replace the trigger of an existing job. Returns the new fire instant."""
        key = (job_id, job_group)
        with self.registry.lock:
            self.registry.require(key)
            spec = reschedule_spec(new_fire_time=new_fire_time, new_cron=new_cron, tz=self.tz)
            fire_at = compute_next_fire_time(spec, self.clock.now_dt(), self.tz)
            self.registry.replace_trigger(key, spec)
            self.engine.arm(key, spec, fire_at=fire_at)
            self.registry.set_status(job_id, JobStatus.RESCHEDULED)
        self.log.info(
            "job.rescheduled",
            event="job.rescheduled",
            job_id=job_id,
            job_group=job_group,
            trigger=spec.describe(),
            fire_at=fire_at,
        )
        return fire_at

    def exists(self, job_id: JobId, job_group: JobGroup) -> bool:
        return self.registry.exists((job_id, job_group))

    def status(self, job_id: JobId) -> JobStatus:
        return self.registry.status(job_id)

    def list_jobs(self) -> list[JobKey]:
        return self.registry.keys()

    def get(self, job_id: JobId, job_group: JobGroup) -> JobRecord | None:
        return self.registry.get((job_id, job_group))

    def next_fire_time(self, job_id: JobId, job_group: JobGroup) -> datetime | None:
        return self.engine.next_fire_time((job_id, job_group))

    # ---- firing

    async def _on_fire(self, key: JobKey, fire_at: datetime) -> None:
        job_id, job_group = key
        with self.registry.lock:
            rec = self.registry.get(key)
            if rec is None:
                return
            revision = rec.revision
            self.registry.set_status(job_id, JobStatus.RUNNING)

        outcome = JobStatus.SCHEDULED if rec.recurring else JobStatus.COMPLETED
        with log_context(job_id=job_id, job_group=job_group):
            try:
                res = self.action(rec, fire_at)
                if inspect.isawaitable(res):
                    await res
            except asyncio.CancelledError:
                raise
            except Exception:
                outcome = JobStatus.FAILED
                self.log.error("job.action.failed", event="job.action.failed", fire_at=fire_at, exc_info=True)

        with self.registry.lock:
            current = self.registry.get(key)
            if current is None or current.revision != revision:
                # cancelled or rescheduled while running; that status stands
                return
            if isinstance(current.trigger, OneShot):
                self.registry.remove(key)
                self.engine.disarm(key)
            self.registry.set_status(job_id, outcome)
        self.log.debug("job.fired", event="job.fired", job_id=job_id, job_group=job_group, status=outcome.value)
