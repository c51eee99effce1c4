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
"""Messaging data types."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

CORRELATION_ID_HEADER = "correlation-id"
REPLY_TO_HEADER = "reply-to"
ERROR_HEADER = "error"
CONTENT_TYPE_HEADER = "content-type"

JSON_CONTENT_TYPE = "application/json"
BYTES_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class Message:
    """Raw transport record exchanged with the broker."""

    topic: str
    value: bytes
    key: bytes | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Envelope:
    """Logical message shape routed by flybus.

    ``correlation_id`` and ``reply_to`` are set on requests; replies carry
    the request's ``correlation_id`` and, when the responder failed, an
    ``error`` description instead of a payload.
    """

    pattern: str
    payload: Any = None
    correlation_id: str | None = None
    reply_to: str | None = None
    error: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def is_request(self) -> bool:
        return self.correlation_id is not None and self.reply_to is not None


class RouteKind(Enum):
    EVENT = "EVENT"
    REQUEST = "REQUEST"
    REPLY = "REPLY"


class CallState(Enum):
    """Resolution state of a pending request/reply call."""

    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    FAILED = "FAILED"


@dataclass(eq=False)
class PendingCall:
    """An outgoing request awaiting its reply.

    The future is the resolution slot: it is completed exactly once, by
    whichever of reply, timeout, cancellation or transport failure wins.
    """

    correlation_id: str
    pattern: str
    reply_pattern: str
    future: asyncio.Future[Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def state(self) -> CallState:
        if not self.future.done():
            return CallState.PENDING
        if self.future.cancelled() or self.future.exception() is not None:
            return CallState.FAILED
        return CallState.FULFILLED


class SubscriptionState(Enum):
    """Lifecycle of a pattern subscription.

    ``UNSUBSCRIBED -> SUBSCRIBING -> {ACTIVE | FAILED}``; a resubscription
    after reconnect goes back through ``SUBSCRIBING``, never to
    ``UNSUBSCRIBED``.
    """

    UNSUBSCRIBED = "UNSUBSCRIBED"
    SUBSCRIBING = "SUBSCRIBING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"


@dataclass
class SubscriptionRecord:
    pattern: str
    group: str | None = None
    state: SubscriptionState = SubscriptionState.UNSUBSCRIBED
    error: BaseException | None = None
    attempts: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
