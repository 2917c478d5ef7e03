from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError

from infra.kafka_topics import RAW_DATA_CHANGES_TOPIC, REGULARIZATION_EVENTS_TOPIC
from regservice.logging_config import operation_id

logger = logging.getLogger(__name__)

_BROKER_ERRORS = (KafkaError, OSError, asyncio.TimeoutError)


class KafkaBus:
    """Kafka producer/consumer pair with an in-process fallback.

    When the broker cannot be reached (or no bootstrap servers are configured)
    messages go to per-topic asyncio queues, so a single process still sees
    its own data-change notifications.
    """

    def __init__(self, bootstrap_servers: str, client_id: str, connect_timeout: float = 1.0) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.connect_timeout = connect_timeout
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(asyncio.Queue)

    @property
    def enabled(self) -> bool:
        return bool(self.bootstrap_servers)

    async def connect(self) -> None:
        if not self.enabled:
            logger.info("Kafka disabled; using in-process queues")
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=self.connect_timeout)
            self._producer = producer
        except _BROKER_ERRORS as exc:
            logger.warning("Kafka unreachable at %s (%s); using in-process queues", self.bootstrap_servers, exc)
            await producer.stop()
            self._producer = None

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(REGULARIZATION_EVENTS_TOPIC)
            return partitions is not None
        except _BROKER_ERRORS:
            return False

    def queue(self, topic: str) -> asyncio.Queue[dict[str, Any]]:
        return self._queues[topic]

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await self._producer.send_and_wait(topic, value=value, key=encoded_key)
                return
            except _BROKER_ERRORS as exc:
                logger.warning("Publishing to %s failed (%s); queued in process", topic, exc)
        await self._queues[topic].put(value)

    async def publish_event(self, event: str, payload: dict[str, Any], key: str | None = None) -> None:
        await self.publish(
            REGULARIZATION_EVENTS_TOPIC,
            {"event": event, "operation_id": operation_id.get(""), "payload": payload},
            key=key,
        )

    async def consume_data_changes_forever(
        self,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
        stop_event: asyncio.Event,
    ) -> None:
        if self._producer is not None:
            consumer = AIOKafkaConsumer(
                RAW_DATA_CHANGES_TOPIC,
                bootstrap_servers=self.bootstrap_servers,
                group_id=f"{self.client_id}-data-changes",
                value_deserializer=lambda v: json.loads(v.decode("utf-8")),
            )
            try:
                await asyncio.wait_for(consumer.start(), timeout=self.connect_timeout)
                while not stop_event.is_set():
                    msg = await consumer.getone()
                    await handler(msg.value)
            except _BROKER_ERRORS as exc:
                logger.warning("Data-change consumer stopped (%s); falling back to in-process queue", exc)
            finally:
                await consumer.stop()

        queue = self._queues[RAW_DATA_CHANGES_TOPIC]
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            await handler(event)
