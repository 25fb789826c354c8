from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError

from ..api.errors import MalformedMessage, TransportUnavailable
from ..bus.kafka import KafkaBus
from ..core.log import bind_context, get_logger, warn_once
from ..core.utils import backoff_ms
from ..protocol.messages import decode_message


class ConsumerLoop:
    """
    One long-running consumption loop over a single topic.

    Records are decoded and handled strictly one after another. A record that
    fails to decode is dropped (logged once per loop); a broker failure backs
    off and retries. Offsets are committed after every handled batch.
    Subclasses implement `handle(msg)`.
    """

    name = "consumer"

    def __init__(
        self,
        *,
        bus: KafkaBus,
        topic: str,
        group_id: str,
        instance_id: str,
        poll_timeout_ms: int = 1000,
        backoff_min_ms: int = 250,
        backoff_max_ms: int = 5000,
    ) -> None:
        self.bus = bus
        self.topic = topic
        self.group_id = group_id
        self.instance_id = instance_id
        self.poll_timeout_ms = poll_timeout_ms
        self.backoff_min_ms = backoff_min_ms
        self.backoff_max_ms = backoff_max_ms
        self._consumer: AIOKafkaConsumer | None = None
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self.log = get_logger(f"coordinator.{self.name}")

    async def handle(self, msg: Any) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    # ---- lifecycle

    async def start(self) -> None:
        """
        Subscribe and launch the loop. An unreachable broker does not fail the
        start: the loop keeps reconnecting with backoff until it subscribes.
        """
        self._stopping.clear()
        try:
            await self._connect()
        except TransportUnavailable as e:
            self.log.warning(f"{self.name}.connect.deferred", event=f"{self.name}.transport", error=str(e))
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-loop")
        self.log.debug(f"{self.name}.started", event=f"{self.name}.started", topic=self.topic, group_id=self.group_id)

    async def _connect(self) -> None:
        self._consumer = await self.bus.new_consumer([self.topic], group_id=self.group_id, manual_commit=True)

    @property
    def connected(self) -> bool:
        return self._consumer is not None

    def signal_stop(self) -> None:
        self._stopping.set()

    async def wait_stopped(self, grace_sec: float) -> None:
        """Let the in-flight batch finish; cancel the loop if it overruns `grace_sec`."""
        t = self._task
        if t is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(t), timeout=grace_sec)
        except TimeoutError:
            self.log.warning(f"{self.name}.stop.timeout", event=f"{self.name}.stop.timeout", grace_sec=grace_sec)
            t.cancel()
            try:
                await t
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
        if self._consumer is not None:
            await self.bus.close_consumer(self._consumer)
            self._consumer = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ---- loop

    async def _commit_with_warn(self, c: AIOKafkaConsumer) -> None:
        try:
            await c.commit()
        except Exception:
            warn_once(
                self.log,
                code=f"kafka.commit.{self.name}",
                msg=f"Kafka commit failed in {self.name} consumer (suppressed next occurrences)",
                level=logging.WARNING,
            )

    async def _backoff(self, attempt: int, stage: str, error: Exception) -> None:
        """Sleep before the next attempt; a stop signal cuts the wait short."""
        delay = backoff_ms(attempt, min_ms=self.backoff_min_ms, max_ms=self.backoff_max_ms)
        self.log.warning(
            f"{self.name}.{stage}.failed",
            event=f"{self.name}.transport",
            error=str(error),
            attempt=attempt,
            retry_in_ms=delay,
        )
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay / 1000.0)
        except TimeoutError:
            pass

    async def _run(self) -> None:
        bind_context(instance_id=self.instance_id)
        attempt = 0
        try:
            while not self._stopping.is_set():
                if self._consumer is None:
                    try:
                        await self._connect()
                    except TransportUnavailable as e:
                        attempt += 1
                        await self._backoff(attempt, "connect", e)
                        continue
                    attempt = 0
                    self.log.info(f"{self.name}.connected", event=f"{self.name}.connected", topic=self.topic)
                c = self._consumer
                try:
                    batches = await c.getmany(timeout_ms=self.poll_timeout_ms)
                except KafkaError as e:
                    attempt += 1
                    await self._backoff(attempt, "poll", e)
                    continue
                attempt = 0
                if not batches:
                    continue
                for records in batches.values():
                    for record in records:
                        await self._handle_record(record)
                await self._commit_with_warn(c)
        except asyncio.CancelledError:
            return
        except Exception:
            self.log.error(f"{self.name}.consumer.crashed", event=f"{self.name}.crash", exc_info=True)

    async def _handle_record(self, record: Any) -> None:
        try:
            msg = decode_message(record.value)
        except MalformedMessage as e:
            warn_once(
                self.log,
                code=f"{self.name}.message.malformed",
                msg="Malformed message; skipping (suppressed next occurrences)",
                level=logging.WARNING,
                topic=self.topic,
                error=str(e),
            )
            return
        try:
            await self.handle(msg)
        except Exception:
            self.log.error(
                f"{self.name}.handle.failed",
                event=f"{self.name}.handle.failed",
                correlation_id=getattr(msg, "correlation_id", None),
                exc_info=True,
            )
