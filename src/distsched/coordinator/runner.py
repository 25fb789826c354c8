from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any

from ..api.errors import CorrelationTimeout, SchedulerError, ServiceStopped, TransportUnavailable
from ..bus.kafka import KafkaBus
from ..core.config import SchedulerConfig
from ..core.log import bind_context, get_logger, log_context, swallow
from ..core.time import Clock, SystemClock
from ..core.types import DEFAULT_JOB_GROUP, JobGroup, JobId, JobKey
from ..core.utils import new_correlation_id
from ..protocol.messages import CancelRequest, RequestMessage, RescheduleRequest
from ..scheduler.local import JobAction, LocalCoordinator, reschedule_spec
from ..scheduler.models import JobDetails, JobStatus, OpResult
from .correlator import Correlator, Outcome
from .dispatcher import Dispatcher
from .listener import ResponseListener

# verb, past participle, confirmation noun
_WORDING = {
    "cancel": ("cancel", "cancelled", "cancellation"),
    "reschedule": ("reschedule", "rescheduled", "reschedule"),
}


class DistributedCoordinator:
    """
    Scheduler entry point for one instance.

    Operations on jobs owned by this instance run synchronously against the local
    coordinator. Cancel/reschedule of a job this instance does not hold is
    broadcast on the request topic and answered by whichever peer owns it; the
    caller gets a future that resolves when the first matching response arrives
    or the response timeout elapses.

    `bus` and `clock` are injectable for tests.
    """

    def __init__(
        self,
        *,
        cfg: SchedulerConfig | None = None,
        clock: Clock | None = None,
        bus: KafkaBus | None = None,
        action: JobAction | None = None,
    ) -> None:
        self.cfg = copy.deepcopy(cfg) if cfg is not None else SchedulerConfig.load()
        self.clock: Clock = clock or SystemClock()
        self.bus = bus or KafkaBus(self.cfg.kafka_bootstrap)
        self.local = LocalCoordinator(tz=self.cfg.tz, clock=self.clock, action=action)
        self.correlator = Correlator(clock=self.clock)

        loop_kw: dict[str, Any] = {
            "bus": self.bus,
            "instance_id": self.cfg.instance_id,
            "poll_timeout_ms": self.cfg.poll_timeout_ms,
            "backoff_min_ms": self.cfg.transport_backoff_min_ms,
            "backoff_max_ms": self.cfg.transport_backoff_max_ms,
        }
        self.dispatcher = Dispatcher(
            local=self.local,
            response_topic=self.cfg.topic_responses,
            topic=self.cfg.topic_requests,
            group_id=self.cfg.request_group,
            **loop_kw,
        )
        self.listener = ResponseListener(
            correlator=self.correlator,
            topic=self.cfg.topic_responses,
            group_id=self.cfg.response_group,
            **loop_kw,
        )

        self._tasks: set[asyncio.Task] = set()
        self._running = False

        self.log = get_logger("coordinator")
        bind_context(instance_id=self.cfg.instance_id)
        self.log.debug("coordinator.init", event="coord.init")

    @property
    def instance_id(self) -> str:
        return self.cfg.instance_id

    @property
    def running(self) -> bool:
        return self._running

    # ---- lifecycle
    async def start(self) -> None:
        if self._running:
            return
        self.log.debug("coordinator.start", event="coord.start", cfg=self.cfg.as_dict())
        try:
            try:
                await self.bus.start()
            except TransportUnavailable as e:
                # the producer reconnects on first send, the loops on their own
                self.log.warning("coordinator.bus.unavailable", event="coord.transport", error=str(e))
            # responses must be consumed before the first request can go out
            await self.listener.start()
            await self.dispatcher.start()
            await self.local.start()
        except BaseException:
            self.log.error("coordinator.start.failed", event="coord.start.failed", exc_info=True)
            await self.stop()
            raise
        self._running = True
        self.log.info("coordinator.started", event="coord.started", instance_id=self.instance_id)

    async def stop(self) -> None:
        """
        Shut down in order: refuse new remote waits, let both consumption loops
        finish their batch, fail whatever is still pending, disarm triggers, stop
        the bus. Each step runs even if an earlier one failed.
        """
        self._running = False
        grace = self.cfg.shutdown_grace_sec
        with swallow(logger=self.log, code="correlator.close", msg="correlator close failed", level=logging.ERROR):
            await self.correlator.close()
        self.dispatcher.signal_stop()
        self.listener.signal_stop()
        with swallow(logger=self.log, code="dispatcher.stop", msg="dispatcher stop failed", level=logging.ERROR):
            await self.dispatcher.wait_stopped(grace)
        with swallow(logger=self.log, code="listener.stop", msg="listener stop failed", level=logging.ERROR):
            await self.listener.wait_stopped(grace)
        with swallow(logger=self.log, code="correlator.drain", msg="correlator drain failed", level=logging.ERROR):
            drained = self.correlator.drain_all("scheduler is shutting down")
            if drained:
                self.log.info("coordinator.drained", event="coord.drained", pending=drained)
        with swallow(logger=self.log, code="local.shutdown", msg="local shutdown failed", level=logging.ERROR):
            await self.local.shutdown()
        with swallow(logger=self.log, code="remote.tasks", msg="remote tasks did not settle", level=logging.WARNING):
            await self._settle_tasks(grace)
        with swallow(logger=self.log, code="bus.stop", msg="bus stop failed", level=logging.ERROR, expected=False):
            await self.bus.stop()
        self.log.info("coordinator.stopped", event="coord.stopped")

    async def _settle_tasks(self, grace: float) -> None:
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=grace)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro, *, name: str | None = None) -> asyncio.Task:
        t = asyncio.create_task(coro, name=name or getattr(coro, "__name__", "task"))
        self._tasks.add(t)

        def _done(task: asyncio.Task) -> None:
            self._tasks.discard(task)
            if task.cancelled():
                return
            if task.exception() is not None:
                self.log.error(
                    "task.crashed", event="coord.task.crashed", task=task.get_name(), exc_info=task.exception()
                )

        t.add_done_callback(_done)
        return t

    # ---- operations
    def schedule_job(self, details: JobDetails) -> OpResult:
        """Schedule on this instance, which becomes the job's owner."""
        try:
            record = details.to_record(self.cfg.tz)
            fire_at = self.local.schedule(record)
        except SchedulerError as e:
            return OpResult.fail(f"Failed to schedule job: {e}", e, job_id=details.job_id)
        return OpResult.ok(
            "Job scheduled successfully",
            job_id=record.job_id,
            data={"jobGroup": record.job_group, "nextFireTime": fire_at.isoformat()},
        )

    def cancel_job(self, job_id: JobId, job_group: JobGroup = DEFAULT_JOB_GROUP) -> asyncio.Future[OpResult]:
        if self.local.exists(job_id, job_group):
            try:
                self.local.cancel(job_id, job_group)
            except SchedulerError as e:
                return _resolved(OpResult.fail(f"Failed to cancel job on local instance: {e}", e, job_id=job_id))
            return _resolved(OpResult.ok("Job cancelled successfully on local instance", job_id=job_id))

        self.log.info("job.cancel.broadcast", event="job.remote", job_id=job_id, job_group=job_group)
        request = CancelRequest(
            correlation_id=new_correlation_id(),
            job_id=job_id,
            job_group=job_group,
            origin_instance=self.instance_id,
        )
        return self._remote(request, "cancel")

    def reschedule_job(
        self,
        job_id: JobId,
        job_group: JobGroup = DEFAULT_JOB_GROUP,
        *,
        new_schedule_time: datetime | None = None,
        new_cron_expression: str | None = None,
    ) -> asyncio.Future[OpResult]:
        if self.local.exists(job_id, job_group):
            try:
                fire_at = self.local.reschedule(
                    job_id, job_group, new_fire_time=new_schedule_time, new_cron=new_cron_expression
                )
            except SchedulerError as e:
                return _resolved(OpResult.fail(f"Failed to reschedule job on local instance: {e}", e, job_id=job_id))
            return _resolved(
                OpResult.ok(
                    "Job rescheduled successfully on local instance",
                    job_id=job_id,
                    data={"jobGroup": job_group, "nextFireTime": fire_at.isoformat()},
                )
            )

        try:
            reschedule_spec(new_fire_time=new_schedule_time, new_cron=new_cron_expression, tz=self.cfg.tz)
        except SchedulerError as e:
            return _resolved(OpResult.fail(f"Failed to reschedule job: {e}", e, job_id=job_id))

        self.log.info("job.reschedule.broadcast", event="job.remote", job_id=job_id, job_group=job_group)
        request = RescheduleRequest(
            correlation_id=new_correlation_id(),
            job_id=job_id,
            job_group=job_group,
            origin_instance=self.instance_id,
            new_schedule_time=new_schedule_time,
            new_cron_expression=new_cron_expression,
        )
        return self._remote(request, "reschedule")

    def status(self, job_id: JobId) -> JobStatus:
        return self.local.status(job_id)

    def list_jobs(self) -> list[JobKey]:
        return self.local.list_jobs()

    def health(self) -> dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "running": self._running,
            "jobs": len(self.local.registry),
            "armedTriggers": self.local.engine.armed_count(),
            "pendingRequests": self.correlator.pending_count(),
            "transportConnected": self.bus.started and self.listener.connected and self.dispatcher.connected,
        }

    # ---- remote path
    def _remote(self, request: RequestMessage, op: str) -> asyncio.Future[OpResult]:
        verb = _WORDING[op][0]
        try:
            if not self._running:
                raise ServiceStopped("scheduler is not running")
            wait = self.correlator.register(request.correlation_id, self.cfg.response_timeout_ms)
        except ServiceStopped as e:
            return _resolved(OpResult.fail(f"Failed to {verb} job: {e}", e, job_id=request.job_id))
        return self._spawn(self._await_remote(request, wait, op), name=f"remote-{op}:{request.correlation_id}")

    async def _await_remote(self, request: RequestMessage, wait: asyncio.Future[Outcome], op: str) -> OpResult:
        verb, done, noun = _WORDING[op]
        cid = request.correlation_id
        job_id = request.job_id
        with log_context(correlation_id=cid, job_id=job_id, job_group=request.job_group):
            try:
                await self.bus.send(self.cfg.topic_requests, job_id, request)
            except TransportUnavailable as e:
                self.correlator.discard(cid)
                self.log.warning("job.remote.publish_failed", event="job.remote.publish_failed", error=str(e))
                return OpResult.fail(f"Failed to {verb} job: {e}", e, job_id=job_id)
            except asyncio.CancelledError:
                self.correlator.discard(cid)
                raise

            try:
                outcome = await wait
            except asyncio.CancelledError:
                self.correlator.discard(cid)
                raise

        if outcome.success:
            return OpResult.ok(f"Job {done} successfully on remote instance", job_id=job_id)
        err = outcome.error or SchedulerError("remote operation failed")
        if isinstance(err, CorrelationTimeout):
            return OpResult.fail(f"Timeout waiting for {noun} confirmation", err, job_id=job_id)
        return OpResult.fail(f"Failed to {verb} job: {err}", err, job_id=job_id)


def _resolved(result: OpResult) -> asyncio.Future[OpResult]:
    fut: asyncio.Future[OpResult] = asyncio.get_running_loop().create_future()
    fut.set_result(result)
    return fut
