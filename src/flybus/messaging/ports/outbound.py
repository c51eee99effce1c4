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
"""Outbound port for message broker operations."""
from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any, Protocol, runtime_checkable

from flybus.messaging.types import Message

MessageHandler = Callable[[Message], Coroutine[Any, Any, None]]
FailureListener = Callable[[BaseException], None]


@runtime_checkable
class MessageBrokerPort(Protocol):
    """Narrow client interface to a publish/subscribe broker.

    ``subscribe`` returns only once the broker consumes ``topic`` (or raises);
    subscribing before ``start`` defers consumption until ``start``.
    """

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> None: ...

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        group: str | None = None,
    ) -> None: ...

    def set_failure_listener(self, listener: FailureListener | None) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...
