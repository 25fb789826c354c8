from __future__ import annotations

from ..protocol.messages import CancelResponse, RescheduleResponse
from .consumer_loop import ConsumerLoop
from .correlator import Correlator, Outcome


class ResponseListener(ConsumerLoop):
    """Hands inbound responses to the correlator; unmatched ones are dropped."""

    name = "listener"

    def __init__(self, *, correlator: Correlator, **kw) -> None:
        super().__init__(**kw)
        self.correlator = correlator

    async def handle(self, msg) -> None:
        if not isinstance(msg, (CancelResponse, RescheduleResponse)):
            return
        if not self.correlator.resolve(msg.correlation_id, Outcome.from_response(msg)):
            self.log.debug(
                "listener.response.unmatched",
                event="listener.unmatched",
                correlation_id=msg.correlation_id,
                type=msg.type,
            )
