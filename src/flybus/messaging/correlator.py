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
"""Reply correlator: request/reply calls on top of one-way publish.

A call publishes its request with a fresh correlation id and a reply-to
pattern, then suspends on a future. The consumption loop resolves that
future when the router hands it a reply carrying the same id. The pending
table is owned by the event loop; every resolution goes through
:meth:`ReplyCorrelator._settle`, which completes a future only if it is
still pending, so a late reply and a firing timeout can never both win.
"""

from __future__ import annotations

import asyncio
import uuid
import warnings
from collections.abc import Callable
from typing import Any

from flybus.kernel.exceptions import (
    CallCancelledError,
    CallTimeoutError,
    CorrelationIdCollisionError,
    RemoteCallError,
    StaleReplyWarning,
    TransportError,
)
from flybus.logging import get_logger
from flybus.messaging.codec import EnvelopeCodec, JsonEnvelopeCodec
from flybus.messaging.ports.outbound import MessageBrokerPort
from flybus.messaging.subscriptions import SubscriptionManager
from flybus.messaging.types import Envelope, PendingCall

logger = get_logger(__name__)


def _uuid_correlation_id() -> str:
    return uuid.uuid4().hex


class ReplyCorrelator:
    """Issues request/reply calls and matches replies to pending callers.

    Args:
        broker: Broker requests are published on.
        subscriptions: Gate checked before sending: the reply pattern must be
            actively consumed.
        codec: Envelope codec (JSON by default).
        default_timeout: Seconds to wait for a reply when a call passes none.
        reply_suffix: Reply pattern is ``pattern + reply_suffix``.
        await_subscription: Whether a call made while its reply subscription
            is still ``SUBSCRIBING`` waits for it (``True``) or fails fast.
        id_factory: Correlation id generator.
    """

    def __init__(
        self,
        broker: MessageBrokerPort,
        subscriptions: SubscriptionManager,
        *,
        codec: EnvelopeCodec | None = None,
        default_timeout: float = 5.0,
        reply_suffix: str = ".reply",
        await_subscription: bool = True,
        id_factory: Callable[[], str] = _uuid_correlation_id,
    ) -> None:
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self._broker = broker
        self._subscriptions = subscriptions
        self._codec = codec or JsonEnvelopeCodec()
        self._default_timeout = default_timeout
        self._reply_suffix = reply_suffix
        self._await_subscription = await_subscription
        self._id_factory = id_factory
        self._pending: dict[str, PendingCall] = {}

    def reply_pattern_for(self, pattern: str) -> str:
        return f"{pattern}{self._reply_suffix}"

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending(self) -> list[PendingCall]:
        return list(self._pending.values())

    async def call(self, pattern: str, payload: Any, timeout: float | None = None) -> Any:
        """Send a request on *pattern* and return the reply payload.

        Raises:
            SubscriptionError: the reply pattern is not actively consumed.
            TransportError: publishing failed or the connection was lost.
            CallTimeoutError: no reply within *timeout* seconds.
            RemoteCallError: the responder replied with an error.
            CallCancelledError: the call was cancelled via :meth:`cancel`.
        """
        timeout = self._default_timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        reply_pattern = self.reply_pattern_for(pattern)
        await self._subscriptions.require_active(reply_pattern, wait=self._await_subscription, timeout=timeout)

        pending = self._register(pattern, reply_pattern)
        try:
            message = self._codec.encode(
                Envelope(
                    pattern=pattern,
                    payload=payload,
                    correlation_id=pending.correlation_id,
                    reply_to=reply_pattern,
                )
            )
            try:
                await self._broker.publish(message.topic, message.value, key=message.key, headers=message.headers)
            except TransportError:
                raise
            except Exception as exc:
                raise TransportError(
                    f"Publishing request on '{pattern}' failed: {exc}",
                    code="TRANSPORT_PUBLISH",
                    context={"pattern": pattern, "correlation_id": pending.correlation_id},
                ) from exc
            logger.debug("request_sent", pattern=pattern, correlation_id=pending.correlation_id)

            done, _ = await asyncio.wait({pending.future}, timeout=max(deadline - loop.time(), 0))
            if not done:
                timed_out = self._settle(
                    pending,
                    error=CallTimeoutError(
                        f"No reply on '{reply_pattern}' within {timeout}s",
                        code="CALL_TIMEOUT",
                        context={"pattern": pattern, "correlation_id": pending.correlation_id},
                    ),
                )
                if timed_out:
                    logger.warning("call_timed_out", pattern=pattern, correlation_id=pending.correlation_id)
            return pending.future.result()
        finally:
            self._discard(pending)

    def on_reply(
        self,
        correlation_id: str,
        payload: Any,
        error: str | None = None,
        reply_pattern: str | None = None,
    ) -> bool:
        """Resolve the pending call for *correlation_id*.

        Replies with no matching pending call (late, duplicate, or unknown)
        are discarded with a :class:`StaleReplyWarning`; returns ``False``.
        """
        pending = self._pending.get(correlation_id)
        if pending is None or (reply_pattern is not None and reply_pattern != pending.reply_pattern):
            logger.warning("stale_reply", correlation_id=correlation_id, pattern=reply_pattern)
            warnings.warn(
                StaleReplyWarning(f"Discarding reply for unknown correlation id '{correlation_id}'"),
                stacklevel=2,
            )
            return False

        if error is not None:
            return self._settle(
                pending,
                error=RemoteCallError(
                    f"Remote handler for '{pending.pattern}' failed: {error}",
                    code="CALL_REMOTE_ERROR",
                    context={"pattern": pending.pattern, "correlation_id": correlation_id, "remote_error": error},
                ),
            )
        return self._settle(pending, result=payload)

    def cancel(self, correlation_id: str) -> bool:
        """Fail the pending call with :class:`CallCancelledError`."""
        pending = self._pending.get(correlation_id)
        if pending is None:
            return False
        return self._settle(
            pending,
            error=CallCancelledError(
                f"Call on '{pending.pattern}' was cancelled",
                code="CALL_CANCELLED",
                context={"pattern": pending.pattern, "correlation_id": correlation_id},
            ),
        )

    def fail_all(self, error: BaseException) -> int:
        """Fail every pending call with a :class:`TransportError`; returns how many were failed."""
        failed = 0
        for pending in list(self._pending.values()):
            transport_error = TransportError(
                f"Transport failed while awaiting reply on '{pending.reply_pattern}': {error}",
                code="TRANSPORT_CONNECTION_LOST",
                context={"pattern": pending.pattern, "correlation_id": pending.correlation_id},
            )
            transport_error.__cause__ = error
            if self._settle(pending, error=transport_error):
                failed += 1
        if failed:
            logger.error("pending_calls_failed", count=failed, error=str(error))
        return failed

    def _register(self, pattern: str, reply_pattern: str) -> PendingCall:
        correlation_id = self._id_factory()
        if correlation_id in self._pending:
            raise CorrelationIdCollisionError(
                f"Correlation id '{correlation_id}' is already pending",
                code="CALL_CORRELATION_COLLISION",
                context={"pattern": pattern, "correlation_id": correlation_id},
            )
        pending = PendingCall(
            correlation_id=correlation_id,
            pattern=pattern,
            reply_pattern=reply_pattern,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[correlation_id] = pending
        return pending

    def _settle(self, pending: PendingCall, *, result: Any = None, error: BaseException | None = None) -> bool:
        if pending.future.done():
            return False
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        self._discard(pending)
        return True

    def _discard(self, pending: PendingCall) -> None:
        if self._pending.get(pending.correlation_id) is pending:
            del self._pending[pending.correlation_id]
        if not pending.future.done():
            pending.future.cancel()
