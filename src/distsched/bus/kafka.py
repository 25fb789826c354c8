from __future__ import annotations

"""
Kafka access for one scheduler instance.

One idempotent producer serves both topics: requests are keyed by job id and
responses by correlation id. Each consumption loop gets its own consumer in its
own group; consumers hand back raw bytes so a bad record fails only its own
decode in the loop that reads it.
"""

import asyncio
import logging

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError
from pydantic import BaseModel

from ..api.errors import TransportUnavailable
from ..core.log import get_logger, swallow
from ..core.utils import dumps, encode_key
from ..protocol.messages import encode_message


class KafkaBus:
    def __init__(self, bootstrap: str) -> None:
        self.bootstrap = bootstrap
        self._producer: AIOKafkaProducer | None = None
        self._consumers: list[AIOKafkaConsumer] = []
        self._start_lock = asyncio.Lock()
        self._closed = False
        self.log = get_logger("bus.kafka")

    @property
    def started(self) -> bool:
        return self._producer is not None

    async def start(self) -> None:
        """
        Connect the producer. Raises TransportUnavailable when the broker is
        unreachable; `send` calls this again, so a failed boot heals on first use.
        """
        self._closed = False
        async with self._start_lock:
            if self._producer is not None:
                return
            producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap,
                value_serializer=dumps,
                key_serializer=encode_key,
                enable_idempotence=True,
            )
            try:
                await producer.start()
            except KafkaError as e:
                with swallow(logger=self.log, code="bus.kafka.producer.abort", msg="producer cleanup failed"):
                    await producer.stop()
                raise TransportUnavailable(f"cannot connect producer to {self.bootstrap}: {e}") from e
            self._producer = producer
            self.log.debug("bus.started", event="bus.started", bootstrap=self.bootstrap)

    async def stop(self) -> None:
        """Close every consumer still open, then the producer. Failures are logged."""
        self._closed = True
        while self._consumers:
            await self.close_consumer(self._consumers[-1])
        producer, self._producer = self._producer, None
        if producer is not None:
            with swallow(logger=self.log, code="bus.kafka.producer.stop", msg="producer stop failed", level=logging.WARNING):
                await producer.stop()

    async def new_consumer(self, topics: list[str], group_id: str, *, manual_commit: bool = True) -> AIOKafkaConsumer:
        # "latest": an instance only answers requests sent while it is up
        consumer = AIOKafkaConsumer(
            *topics,
            bootstrap_servers=self.bootstrap,
            group_id=group_id,
            enable_auto_commit=not manual_commit,
            auto_offset_reset="latest",
        )
        try:
            await consumer.start()
        except KafkaError as e:
            with swallow(logger=self.log, code="bus.kafka.consumer.abort", msg="consumer cleanup failed"):
                await consumer.stop()
            raise TransportUnavailable(f"cannot start consumer {group_id}: {e}") from e
        self._consumers.append(consumer)
        return consumer

    async def close_consumer(self, consumer: AIOKafkaConsumer) -> None:
        if consumer in self._consumers:
            self._consumers.remove(consumer)
        with swallow(logger=self.log, code="bus.kafka.consumer.stop", msg="consumer stop failed", level=logging.WARNING):
            await consumer.stop()

    async def send(self, topic: str, key: str | None, msg: BaseModel) -> None:
        """Publish one wire message and wait for the broker ack, connecting first if needed."""
        if self._closed:
            raise TransportUnavailable("bus is stopped")
        if self._producer is None:
            await self.start()
        try:
            await self._producer.send_and_wait(topic, encode_message(msg), key=key)
        except KafkaError as e:
            raise TransportUnavailable(f"publish to {topic} failed: {e}") from e
