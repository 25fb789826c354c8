from __future__ import annotations

import asyncio

from ..api.errors import SchedulerError, TransportUnavailable
from ..core.log import log_context
from ..core.utils import backoff_ms
from ..protocol.messages import CancelRequest, RequestMessage, RescheduleRequest, ResponseMessage, response_for
from ..scheduler.local import LocalCoordinator
from .consumer_loop import ConsumerLoop

_PUBLISH_ATTEMPTS = 3


class Dispatcher(ConsumerLoop):
    """
    Applies inbound cancel/reschedule requests to the local coordinator.

    Every consumed request from a peer gets exactly one response on the response
    topic: success when this instance owned and changed the job, a failure with
    the error text and code otherwise. Requests that this instance published
    itself are ignored.
    """

    name = "dispatcher"

    def __init__(self, *, local: LocalCoordinator, response_topic: str, **kw) -> None:
        super().__init__(**kw)
        self.local = local
        self.response_topic = response_topic

    async def handle(self, msg) -> None:
        if not isinstance(msg, (CancelRequest, RescheduleRequest)):
            # responses never travel on the request topic; ignore strays
            self.log.debug("dispatcher.skip.non_request", event="dispatcher.skip", type=msg.type)
            return
        if msg.origin_instance == self.instance_id:
            return
        with log_context(correlation_id=msg.correlation_id, job_id=msg.job_id, job_group=msg.job_group):
            response = self.apply(msg)
            await self._publish(response)

    def apply(self, msg: RequestMessage) -> ResponseMessage:
        """Run the request against the local coordinator and build its response."""
        try:
            if isinstance(msg, CancelRequest):
                self.local.cancel(msg.job_id, msg.job_group)
            else:
                self.local.reschedule(
                    msg.job_id,
                    msg.job_group,
                    new_fire_time=msg.new_schedule_time,
                    new_cron=msg.new_cron_expression,
                )
        except SchedulerError as e:
            self.log.debug("dispatcher.apply.failed", event="dispatcher.apply.failed", code=e.code, error=str(e))
            return response_for(
                msg,
                success=False,
                error_message=f"{e} (instance {self.instance_id})",
                error_code=e.code,
            )
        except Exception as e:
            self.log.error("dispatcher.apply.crashed", event="dispatcher.apply.crashed", exc_info=True)
            return response_for(
                msg,
                success=False,
                error_message=f"internal error on instance {self.instance_id}: {e}",
                error_code=SchedulerError.code,
            )
        self.log.info("dispatcher.applied", event="dispatcher.applied", type=msg.type)
        return response_for(msg, success=True)

    async def _publish(self, response: ResponseMessage) -> None:
        for attempt in range(1, _PUBLISH_ATTEMPTS + 1):
            try:
                await self.bus.send(self.response_topic, response.correlation_id, response)
                return
            except TransportUnavailable as e:
                if attempt == _PUBLISH_ATTEMPTS:
                    self.log.error(
                        "dispatcher.response.lost",
                        event="dispatcher.response.lost",
                        error=str(e),
                        attempts=attempt,
                    )
                    return
                await asyncio.sleep(backoff_ms(attempt, min_ms=self.backoff_min_ms, max_ms=self.backoff_max_ms) / 1000.0)
