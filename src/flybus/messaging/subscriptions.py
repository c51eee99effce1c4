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
"""Subscription manager: tracks which patterns the broker actively consumes.

Per pattern: ``UNSUBSCRIBED -> SUBSCRIBING -> {ACTIVE | FAILED}``. A
resubscription after reconnect re-enters ``SUBSCRIBING``; records are never
removed while the process runs.
"""

from __future__ import annotations

import asyncio
import functools
from datetime import UTC, datetime

from flybus.kernel.exceptions import SubscriptionError, SubscriptionPendingError
from flybus.logging import get_logger
from flybus.messaging.ports.outbound import MessageBrokerPort, MessageHandler
from flybus.messaging.types import SubscriptionRecord, SubscriptionState

logger = get_logger(__name__)


class SubscriptionManager:
    """Establishes broker subscriptions with bounded retries.

    Args:
        broker: Broker the subscriptions are made on.
        handler: Push callback receiving every consumed message. The
            :class:`~flybus.messaging.bus.MessageBus` binds its own inbound
            callback when none is given here.
        attempts: Subscribe attempts before a pattern is marked ``FAILED``.
        backoff: Seconds to wait after the n-th failed attempt, times n.
    """

    def __init__(
        self,
        broker: MessageBrokerPort,
        handler: MessageHandler | None = None,
        *,
        attempts: int = 3,
        backoff: float = 0.5,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self._broker = broker
        self._handler = handler
        self._attempts = attempts
        self._backoff = backoff
        self._records: dict[str, SubscriptionRecord] = {}
        self._inflight: dict[str, asyncio.Task[None]] = {}

    def bind_handler(self, handler: MessageHandler) -> None:
        self._handler = handler

    def state(self, pattern: str) -> SubscriptionState:
        record = self._records.get(pattern)
        return record.state if record is not None else SubscriptionState.UNSUBSCRIBED

    def record(self, pattern: str) -> SubscriptionRecord | None:
        return self._records.get(pattern)

    def records(self) -> dict[str, SubscriptionRecord]:
        return dict(self._records)

    async def ensure_subscribed(self, pattern: str, *, group: str | None = None) -> SubscriptionRecord:
        """Subscribe to *pattern* once; later calls return the same outcome.

        Returns the ``ACTIVE`` record, or raises the recorded
        :class:`SubscriptionError` when the pattern ended ``FAILED``.
        Concurrent callers share the in-flight attempt.
        """
        record = self._records.get(pattern)
        if record is None:
            record = SubscriptionRecord(pattern=pattern, group=group)
            self._records[pattern] = record
            self._begin(record)
        return await self._outcome(record)

    async def resubscribe(self, pattern: str) -> SubscriptionRecord:
        """Re-establish consumption of *pattern*, e.g. after a broker reconnect."""
        record = self._records.get(pattern)
        if record is None:
            return await self.ensure_subscribed(pattern)
        if record.state is not SubscriptionState.SUBSCRIBING:
            self._begin(record)
        return await self._outcome(record)

    async def resubscribe_all(self) -> dict[str, SubscriptionState]:
        """Resubscribe every known pattern; returns the resulting state per pattern."""
        patterns = list(self._records)
        await asyncio.gather(*(self.resubscribe(p) for p in patterns), return_exceptions=True)
        return {p: self.state(p) for p in patterns}

    async def require_active(self, pattern: str, *, wait: bool = True, timeout: float | None = None) -> None:
        """Gate used before sending a request whose reply arrives on *pattern*.

        Raises:
            SubscriptionError: the pattern was never subscribed, or failed.
            SubscriptionPendingError: still ``SUBSCRIBING`` and *wait* is off,
                or it did not settle within *timeout*.
        """
        record = self._records.get(pattern)
        if record is None:
            raise SubscriptionError(
                f"Reply pattern '{pattern}' is not subscribed; subscribe to it during startup",
                code="SUBSCRIPTION_MISSING",
                context={"pattern": pattern},
            )
        if record.state is SubscriptionState.SUBSCRIBING:
            if not wait:
                raise SubscriptionPendingError(
                    f"Subscription to '{pattern}' is still being established",
                    code="SUBSCRIPTION_PENDING",
                    context={"pattern": pattern},
                )
            try:
                await asyncio.wait_for(asyncio.shield(self._inflight[pattern]), timeout)
            except TimeoutError:
                raise SubscriptionPendingError(
                    f"Subscription to '{pattern}' not established within {timeout}s",
                    code="SUBSCRIPTION_PENDING",
                    context={"pattern": pattern},
                ) from None
        await self._outcome(record)

    def _begin(self, record: SubscriptionRecord) -> None:
        if self._handler is None:
            raise RuntimeError("SubscriptionManager has no message handler bound")
        self._transition(record, SubscriptionState.SUBSCRIBING)
        task = asyncio.create_task(self._subscribe(record), name=f"flybus-subscribe:{record.pattern}")
        self._inflight[record.pattern] = task
        task.add_done_callback(functools.partial(self._forget, record.pattern))

    def _forget(self, pattern: str, task: asyncio.Task[None]) -> None:
        # A resubscribe may already have stored a newer task for this pattern.
        if self._inflight.get(pattern) is task:
            del self._inflight[pattern]

    async def _outcome(self, record: SubscriptionRecord) -> SubscriptionRecord:
        # A resubscribe may start a newer attempt while an earlier one settles.
        while record.state is SubscriptionState.SUBSCRIBING:
            await asyncio.shield(self._inflight[record.pattern])
        if record.state is SubscriptionState.ACTIVE:
            return record
        assert isinstance(record.error, SubscriptionError)
        raise record.error

    async def _subscribe(self, record: SubscriptionRecord) -> None:
        assert self._handler is not None
        last_error: BaseException | None = None
        for attempt in range(1, self._attempts + 1):
            record.attempts += 1
            try:
                await self._broker.subscribe(record.pattern, self._handler, record.group)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "subscribe_attempt_failed",
                    pattern=record.pattern,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt < self._attempts:
                    await asyncio.sleep(self._backoff * attempt)
                continue
            record.error = None
            self._transition(record, SubscriptionState.ACTIVE)
            logger.info("subscribed", pattern=record.pattern, group=record.group)
            return

        error = SubscriptionError(
            f"Subscription to '{record.pattern}' failed after {self._attempts} attempt(s): {last_error}",
            code="SUBSCRIPTION_FAILED",
            context={"pattern": record.pattern, "attempts": record.attempts},
        )
        error.__cause__ = last_error
        record.error = error
        self._transition(record, SubscriptionState.FAILED)
        logger.error("subscription_failed", pattern=record.pattern, error=str(last_error))

    @staticmethod
    def _transition(record: SubscriptionRecord, state: SubscriptionState) -> None:
        record.state = state
        record.updated_at = datetime.now(UTC)
