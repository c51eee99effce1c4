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
"""Pattern router: maps inbound patterns to handlers, responders and the reply correlator.

Each registered event or request pattern gets a *lane*: an
:class:`asyncio.Queue` drained by a single worker task. Messages for one
pattern are therefore handled in arrival order while different patterns
proceed concurrently. Reply patterns bypass the lanes and resolve the
pending call directly on the consumption loop.
When lanes are bounded, routing into a full lane waits for room.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from flybus.kernel.exceptions import (
    DuplicatePatternError,
    HandlerError,
    MessagingException,
    RegistrationClosedError,
    UnroutableMessageError,
)
from flybus.logging import get_logger
from flybus.messaging.types import Envelope, RouteKind

if TYPE_CHECKING:
    from flybus.messaging.correlator import ReplyCorrelator

logger = get_logger(__name__)

Handler = Callable[[Any], Any]
ReplySender = Callable[[Envelope], Awaitable[None]]


@dataclass(frozen=True)
class Route:
    pattern: str
    kind: RouteKind
    handler: Handler | None = None
    correlator: ReplyCorrelator | None = None


@dataclass
class _Lane:
    queue: asyncio.Queue[Envelope]
    task: asyncio.Task[None] | None = None


class PatternRouter:
    """Exact-match router from pattern to zero-or-one route.

    Routes are registered during startup. :meth:`start` closes registration;
    the route table is immutable afterwards. *queue_size* caps each lane
    (``0`` for unbounded).
    """

    def __init__(self, queue_size: int = 0) -> None:
        self._queue_size = queue_size
        self._routes: dict[str, Route] = {}
        self._lanes: dict[str, _Lane] = {}
        self._reply_sender: ReplySender | None = None
        self._closed = False
        self._started = False

    @classmethod
    def from_mapping(
        cls,
        events: Mapping[str, Handler],
        responders: Mapping[str, Handler] | None = None,
        *,
        queue_size: int = 0,
    ) -> PatternRouter:
        """Build a router from declarative ``pattern -> callable`` tables."""
        router = cls(queue_size=queue_size)
        for pattern, handler in events.items():
            router.register(pattern, handler)
        for pattern, responder in (responders or {}).items():
            router.register_responder(pattern, responder)
        return router

    # -- registration -------------------------------------------------------

    def register(self, pattern: str, handler: Handler) -> None:
        """Register a one-way event handler ``(payload) -> None``."""
        self._add(Route(pattern=pattern, kind=RouteKind.EVENT, handler=handler))

    def register_responder(self, pattern: str, responder: Handler) -> None:
        """Register a request responder ``(payload) -> reply payload``."""
        self._add(Route(pattern=pattern, kind=RouteKind.REQUEST, handler=responder))

    def register_reply(self, pattern: str, correlator: ReplyCorrelator) -> None:
        """Route messages on *pattern* to ``correlator.on_reply``."""
        self._add(Route(pattern=pattern, kind=RouteKind.REPLY, correlator=correlator))

    def _add(self, route: Route) -> None:
        if self._closed:
            raise RegistrationClosedError(
                f"Cannot register '{route.pattern}': router already started",
                code="ROUTING_REGISTRATION_CLOSED",
                context={"pattern": route.pattern},
            )
        if not route.pattern:
            raise ValueError("pattern must be a non-empty string")
        if route.pattern in self._routes:
            raise DuplicatePatternError(
                f"Pattern '{route.pattern}' is already registered",
                code="ROUTING_DUPLICATE_PATTERN",
                context={"pattern": route.pattern, "kind": self._routes[route.pattern].kind.value},
            )
        self._routes[route.pattern] = route

    # -- inspection ---------------------------------------------------------

    def route_for(self, pattern: str) -> Route | None:
        return self._routes.get(pattern)

    @property
    def inbound_patterns(self) -> list[str]:
        """Event and request patterns the service must consume."""
        return [p for p, r in self._routes.items() if r.kind is not RouteKind.REPLY]

    @property
    def reply_patterns(self) -> list[str]:
        return [p for p, r in self._routes.items() if r.kind is RouteKind.REPLY]

    @property
    def started(self) -> bool:
        return self._started

    # -- lifecycle ----------------------------------------------------------

    async def start(self, reply_sender: ReplySender | None = None) -> None:
        """Close registration and start one lane worker per inbound pattern."""
        self._closed = True
        self._reply_sender = reply_sender
        self._started = True
        for pattern in self.inbound_patterns:
            if pattern in self._lanes:
                continue
            lane = _Lane(queue=asyncio.Queue(maxsize=self._queue_size))
            lane.task = asyncio.create_task(self._drain(self._routes[pattern], lane), name=f"flybus-lane:{pattern}")
            self._lanes[pattern] = lane

    async def stop(self, drain: bool = True) -> None:
        """Stop lane workers, letting queued messages finish first when *drain* is set."""
        self._started = False
        lanes = list(self._lanes.values())
        self._lanes.clear()
        if drain:
            await asyncio.gather(*(lane.queue.join() for lane in lanes))
        for lane in lanes:
            if lane.task is not None:
                lane.task.cancel()
        await asyncio.gather(*(lane.task for lane in lanes if lane.task is not None), return_exceptions=True)

    # -- dispatch -----------------------------------------------------------

    async def dispatch(self, pattern: str, payload: Any) -> Any:
        """Invoke the handler registered for *pattern* and return its result.

        Raises:
            UnroutableMessageError: no handler is registered for *pattern*.
            HandlerError: the handler raised; the original exception is chained.
        """
        route = self._routes.get(pattern)
        if route is None or route.handler is None:
            raise UnroutableMessageError(
                f"No handler registered for pattern '{pattern}'",
                code="ROUTING_UNROUTABLE",
                context={"pattern": pattern},
            )
        try:
            result = route.handler(payload)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            raise HandlerError(
                f"Handler for '{pattern}' raised {type(exc).__name__}: {exc}",
                code="ROUTING_HANDLER_FAILED",
                context={"pattern": pattern},
            ) from exc
        return result

    async def route(self, envelope: Envelope) -> bool:
        """Route an inbound envelope; returns ``False`` when it was dropped.

        Never raises for per-message failures: unroutable messages and
        handler errors are logged and the message is dropped.
        """
        route = self._routes.get(envelope.pattern)
        if route is None:
            logger.warning("unroutable_message", pattern=envelope.pattern)
            return False

        if route.kind is RouteKind.REPLY:
            if envelope.correlation_id is None:
                logger.warning("reply_without_correlation_id", pattern=envelope.pattern)
                return False
            assert route.correlator is not None
            return route.correlator.on_reply(
                envelope.correlation_id,
                envelope.payload,
                error=envelope.error,
                reply_pattern=envelope.pattern,
            )

        lane = self._lanes.get(envelope.pattern)
        if lane is not None:
            await lane.queue.put(envelope)
            return True
        return await self._process(route, envelope)

    async def _drain(self, route: Route, lane: _Lane) -> None:
        while True:
            envelope = await lane.queue.get()
            try:
                await self._process(route, envelope)
            except Exception:  # noqa: BLE001
                logger.exception("lane_processing_failed", pattern=route.pattern)
            finally:
                lane.queue.task_done()

    async def _process(self, route: Route, envelope: Envelope) -> bool:
        try:
            result = await self.dispatch(route.pattern, envelope.payload)
        except HandlerError as exc:
            logger.error(
                "handler_failed",
                pattern=route.pattern,
                correlation_id=envelope.correlation_id,
                error=str(exc.__cause__ or exc),
                exc_info=exc.__cause__,
            )
            if route.kind is RouteKind.REQUEST and envelope.is_request:
                cause = exc.__cause__ or exc
                await self._send_reply(envelope, error=f"{type(cause).__name__}: {cause}")
            return False

        if route.kind is RouteKind.REQUEST:
            if envelope.is_request:
                await self._send_reply(envelope, payload=result)
            else:
                logger.warning("request_without_reply_to", pattern=route.pattern)
        return True

    async def _send_reply(self, request: Envelope, payload: Any = None, error: str | None = None) -> None:
        assert request.reply_to is not None
        if self._reply_sender is None:
            logger.warning("reply_dropped_no_sender", pattern=request.pattern, correlation_id=request.correlation_id)
            return
        reply = Envelope(
            pattern=request.reply_to,
            payload=payload,
            correlation_id=request.correlation_id,
            error=error,
        )
        try:
            await self._reply_sender(reply)
        except (MessagingException, ValueError) as exc:
            logger.error(
                "reply_publish_failed",
                pattern=request.pattern,
                reply_to=request.reply_to,
                correlation_id=request.correlation_id,
                error=str(exc),
            )
