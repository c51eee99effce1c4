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
"""In-memory message broker for testing and single-process applications."""
from __future__ import annotations

import itertools

from flybus.kernel.exceptions import TransportError
from flybus.messaging.ports.outbound import FailureListener, MessageHandler
from flybus.messaging.types import Message


class InMemoryMessageBroker:
    """Delivers published messages to subscribers within the same process.

    Handlers without a group all receive every message; handlers sharing a
    group receive messages round-robin. Topics listed in ``unavailable_topics``
    refuse subscription, and :meth:`fail` simulates a lost connection.
    """

    def __init__(self, unavailable_topics: set[str] | None = None) -> None:
        self._subscriptions: dict[str, list[tuple[MessageHandler, str | None]]] = {}
        self._group_iterators: dict[tuple[str, str], itertools.cycle[MessageHandler]] = {}
        self._unavailable_topics = set(unavailable_topics or ())
        self._failure_listener: FailureListener | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def subscriptions(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        if not self._running:
            raise TransportError("Broker is not running", code="TRANSPORT_NOT_RUNNING", context={"topic": topic})
        msg = Message(topic=topic, value=value, key=key, headers=dict(headers or {}))
        subs = list(self._subscriptions.get(topic, []))
        delivered_groups: set[str] = set()
        for handler, group in subs:
            if group is None:
                await handler(msg)
            elif group not in delivered_groups:
                delivered_groups.add(group)
                rr_key = (topic, group)
                if rr_key not in self._group_iterators:
                    group_handlers = [h for h, g in subs if g == group]
                    self._group_iterators[rr_key] = itertools.cycle(group_handlers)
                selected = next(self._group_iterators[rr_key])
                await selected(msg)

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        group: str | None = None,
    ) -> None:
        if topic in self._unavailable_topics:
            raise TransportError(
                f"Topic '{topic}' is not available", code="TRANSPORT_SUBSCRIBE", context={"topic": topic}
            )
        self._subscriptions.setdefault(topic, []).append((handler, group))
        if group is not None:
            self._group_iterators.pop((topic, group), None)

    def set_failure_listener(self, listener: FailureListener | None) -> None:
        self._failure_listener = listener

    def fail(self, error: BaseException | None = None) -> None:
        """Drop the simulated connection and notify the failure listener.

        Like a real broker, consumers do not survive the lost connection:
        subscriptions must be re-established after :meth:`start`.
        """
        self._running = False
        self._subscriptions.clear()
        self._group_iterators.clear()
        if self._failure_listener is not None:
            self._failure_listener(error or TransportError("Connection lost", code="TRANSPORT_CONNECTION_LOST"))

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False
