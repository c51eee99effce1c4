# Copyright 2026 Firefly Software Solutions Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Kafka message broker adapter: wraps aiokafka."""

from __future__ import annotations

import asyncio
from typing import Any

from flybus.kernel.exceptions import TransportError
from flybus.logging import get_logger
from flybus.messaging.ports.outbound import FailureListener, MessageHandler
from flybus.messaging.types import Message

logger = get_logger(__name__)


class KafkaAdapter:
    """MessageBrokerPort implementation backed by Apache Kafka via aiokafka.

    Requires aiokafka to be installed (pip install flybus[kafka]).
    Subscriptions registered before :meth:`start` are grouped into one
    consumer per ``(topic, group)``; subscriptions made while running start
    their own consumer immediately and return once it has been assigned
    partitions. Consumers do not survive :meth:`stop`; subscribe again after
    restarting.
    """

    def __init__(
        self,
        bootstrap_servers: str = "localhost:9092",
        client_id: str = "flybus",
        assignment_timeout: float = 10.0,
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._client_id = client_id
        self._assignment_timeout = assignment_timeout
        self._producer: Any = None
        self._consumers: list[Any] = []
        self._handlers: list[tuple[str, MessageHandler, str | None]] = []
        self._consumer_tasks: list[asyncio.Task[None]] = []
        self._failure_listener: FailureListener | None = None
        self._running = False

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        if self._producer is None:
            raise TransportError("Kafka producer is not started", code="TRANSPORT_NOT_RUNNING", context={"topic": topic})
        from aiokafka.errors import KafkaError  # type: ignore[import-untyped]

        kafka_headers = [(k, v.encode()) for k, v in headers.items()] if headers else None
        try:
            await self._producer.send_and_wait(topic, value=value, key=key, headers=kafka_headers)
        except KafkaError as exc:
            raise TransportError(f"Kafka publish to '{topic}' failed: {exc}", code="TRANSPORT_PUBLISH") from exc

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        group: str | None = None,
    ) -> None:
        entry = (topic, handler, group)
        self._handlers.append(entry)
        if self._running:
            try:
                await self._start_consumer(topic, group, [handler])
            except TransportError:
                self._handlers.remove(entry)
                raise

    def set_failure_listener(self, listener: FailureListener | None) -> None:
        self._failure_listener = listener

    async def start(self) -> None:
        from aiokafka import AIOKafkaProducer  # type: ignore[import-untyped]
        from aiokafka.errors import KafkaError  # type: ignore[import-untyped]

        self._producer = AIOKafkaProducer(bootstrap_servers=self._bootstrap_servers, client_id=self._client_id)
        try:
            await self._producer.start()
        except KafkaError as exc:
            self._producer = None
            raise TransportError(f"Cannot connect to Kafka at {self._bootstrap_servers}: {exc}") from exc

        grouped: dict[tuple[str, str | None], list[MessageHandler]] = {}
        for topic, handler, group in self._handlers:
            grouped.setdefault((topic, group), []).append(handler)
        for (topic, group), handlers in grouped.items():
            await self._start_consumer(topic, group, handlers)
        self._running = True

    async def stop(self) -> None:
        self._running = False
        for task in self._consumer_tasks:
            task.cancel()
        if self._consumer_tasks:
            await asyncio.gather(*self._consumer_tasks, return_exceptions=True)
        self._consumer_tasks.clear()
        for consumer in self._consumers:
            await consumer.stop()
        self._consumers.clear()
        self._handlers.clear()
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def _start_consumer(self, topic: str, group: str | None, handlers: list[MessageHandler]) -> None:
        from aiokafka import AIOKafkaConsumer  # type: ignore[import-untyped]
        from aiokafka.errors import KafkaError  # type: ignore[import-untyped]

        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=self._bootstrap_servers,
            client_id=self._client_id,
            group_id=group,
        )
        try:
            await consumer.start()
            await self._await_assignment(consumer, topic)
        except (KafkaError, TransportError) as exc:
            await consumer.stop()
            if isinstance(exc, TransportError):
                raise
            raise TransportError(f"Cannot consume '{topic}': {exc}", code="TRANSPORT_SUBSCRIBE") from exc
        self._consumers.append(consumer)
        task = asyncio.create_task(self._consume_loop(consumer, handlers))
        self._consumer_tasks.append(task)

    async def _await_assignment(self, consumer: Any, topic: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._assignment_timeout
        while not consumer.assignment():
            if loop.time() >= deadline:
                raise TransportError(
                    f"No partitions assigned for '{topic}' within {self._assignment_timeout}s",
                    code="TRANSPORT_SUBSCRIBE",
                    context={"topic": topic},
                )
            await asyncio.sleep(0.05)

    async def _consume_loop(self, consumer: Any, handlers: list[MessageHandler]) -> None:
        from aiokafka.errors import KafkaError  # type: ignore[import-untyped]

        try:
            async for record in consumer:
                headers = {}
                if record.headers:
                    for k, v in record.headers:
                        try:
                            headers[k] = v.decode()
                        except (UnicodeDecodeError, AttributeError):
                            headers[k] = v.hex() if isinstance(v, bytes) else str(v)
                msg = Message(
                    topic=record.topic,
                    value=record.value,
                    key=record.key,
                    headers=headers,
                )
                for handler in handlers:
                    await handler(msg)
        except asyncio.CancelledError:
            pass
        except KafkaError as exc:
            logger.error("kafka_consumer_failed", error=str(exc))
            if self._failure_listener is not None:
                self._failure_listener(TransportError(f"Kafka consumer failed: {exc}", code="TRANSPORT_CONNECTION_LOST"))
