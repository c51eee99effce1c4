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
"""Message bus: the owning composition of broker, router, correlator and subscriptions.

Startup is an explicit phase::

    broker started -> router closed, lanes running -> inbound patterns
    subscribed -> reply dependencies subscribed -> READY (calls accepted)

A single consumption loop per bus decodes inbound messages and hands them to
the router. Broker callbacks only enqueue; with a bounded ``queue_size`` they
wait for room, which pushes back on the transport consumer.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any

from flybus.config.properties.messaging import MessagingProperties
from flybus.core.config import Config
from flybus.kernel.exceptions import (
    BusNotReadyError,
    MessageDecodeError,
    RegistrationClosedError,
    SubscriptionError,
    TransportError,
)
from flybus.logging import StructlogAdapter, get_logger
from flybus.messaging.auto_configuration import create_broker
from flybus.messaging.codec import EnvelopeCodec, JsonEnvelopeCodec
from flybus.messaging.correlator import ReplyCorrelator
from flybus.messaging.ports.outbound import MessageBrokerPort
from flybus.messaging.router import PatternRouter
from flybus.messaging.subscriptions import SubscriptionManager
from flybus.messaging.types import Envelope, Message, SubscriptionState

logger = get_logger(__name__)


class BusState(Enum):
    CREATED = "CREATED"
    STARTING = "STARTING"
    READY = "READY"
    RECOVERING = "RECOVERING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class MessageBus:
    """Routes inbound events to handlers and issues request/reply calls.

    Every collaborator is passed in explicitly; :meth:`from_config` is the
    convenience that builds them from configuration.

    Args:
        broker: Transport client.
        router: Router holding event handlers and responders.
        correlator: Request/reply correlator.
        subscriptions: Subscription manager shared with *correlator*.
        codec: Envelope codec (JSON by default).
        group: Consumer group used for event and request patterns.
        reconnect_attempts: Reconnects tried after a transport failure
            before the bus gives up and moves to ``FAILED``.
        reconnect_backoff: Seconds before the n-th reconnect, times n.
        queue_size: Capacity of the inbound queue; ``0`` leaves it unbounded.
    """

    def __init__(
        self,
        broker: MessageBrokerPort,
        router: PatternRouter,
        correlator: ReplyCorrelator,
        subscriptions: SubscriptionManager,
        *,
        codec: EnvelopeCodec | None = None,
        group: str | None = None,
        reconnect_attempts: int = 3,
        reconnect_backoff: float = 1.0,
        queue_size: int = 0,
    ) -> None:
        self._broker = broker
        self._router = router
        self._correlator = correlator
        self._subscriptions = subscriptions
        self._codec = codec or JsonEnvelopeCodec()
        self._group = group
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_backoff = reconnect_backoff
        self._queue_size = queue_size

        self._state = BusState.CREATED
        self._failure: BaseException | None = None
        self._inbound: asyncio.Queue[Message] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._recovery_task: asyncio.Task[None] | None = None
        self._closed: asyncio.Event | None = None
        self._startup_failure: BaseException | None = None

        subscriptions.bind_handler(self._on_message)
        broker.set_failure_listener(self._on_transport_failure)

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        events: Mapping[str, Callable[..., Any]] | None = None,
        responders: Mapping[str, Callable[..., Any]] | None = None,
        replies: Iterable[str] = (),
        broker: MessageBrokerPort | None = None,
        configure_logging: bool = True,
    ) -> MessageBus:
        """Build the full stack from ``flybus.messaging.*`` configuration.

        *replies* lists the request patterns this service calls; their reply
        patterns are subscribed during :meth:`start`. Unless *configure_logging*
        is off, ``flybus.logging.*`` is applied to the process first.
        """
        if configure_logging:
            StructlogAdapter().configure(config)
        props = config.bind(MessagingProperties)
        broker = broker or create_broker(props)
        subscriptions = SubscriptionManager(
            broker,
            attempts=props.subscribe_attempts,
            backoff=props.subscribe_backoff,
        )
        correlator = ReplyCorrelator(
            broker,
            subscriptions,
            default_timeout=props.request_timeout,
            reply_suffix=props.reply_suffix,
            await_subscription=props.await_subscription,
        )
        router = PatternRouter.from_mapping(events or {}, responders, queue_size=props.queue_size)
        bus = cls(
            broker,
            router,
            correlator,
            subscriptions,
            group=props.group,
            reconnect_attempts=props.reconnect_attempts,
            reconnect_backoff=props.reconnect_backoff,
            queue_size=props.queue_size,
        )
        for pattern in replies:
            bus.require_reply(pattern)
        return bus

    # -- inspection ---------------------------------------------------------

    @property
    def state(self) -> BusState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is BusState.READY

    @property
    def is_alive(self) -> bool:
        """Liveness: false once the transport failed beyond recovery."""
        return self._state is not BusState.FAILED

    @property
    def failure(self) -> BaseException | None:
        return self._failure

    @property
    def router(self) -> PatternRouter:
        return self._router

    @property
    def correlator(self) -> ReplyCorrelator:
        return self._correlator

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    # -- registration -------------------------------------------------------

    def register(self, pattern: str, handler: Callable[..., Any]) -> None:
        self._router.register(pattern, handler)

    def register_responder(self, pattern: str, responder: Callable[..., Any]) -> None:
        self._router.register_responder(pattern, responder)

    def require_reply(self, pattern: str) -> str:
        """Declare that this service calls *pattern*; returns its reply pattern.

        The reply pattern is routed to the correlator and subscribed during
        :meth:`start`, before any call is accepted.
        """
        if self._state is not BusState.CREATED:
            raise RegistrationClosedError(
                f"Cannot declare reply dependency '{pattern}' after startup",
                code="ROUTING_REGISTRATION_CLOSED",
                context={"pattern": pattern},
            )
        reply_pattern = self._correlator.reply_pattern_for(pattern)
        if self._router.route_for(reply_pattern) is None:
            self._router.register_reply(reply_pattern, self._correlator)
        return reply_pattern

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Run the initialization phase; calls are accepted once this returns.

        Raises:
            SubscriptionError: an event or request pattern could not be
                subscribed. Reply subscription failures do not abort startup;
                calls depending on them fail fast instead.
        """
        if self._state is not BusState.CREATED:
            raise RuntimeError(f"MessageBus cannot start from state {self._state.value}")
        self._state = BusState.STARTING
        self._startup_failure = None
        self._inbound = asyncio.Queue(maxsize=self._queue_size)
        self._closed = asyncio.Event()
        self._loop_task = asyncio.create_task(self._consume(), name="flybus-consume")

        try:
            await self._broker.start()
            await self._router.start(reply_sender=self._publish)
            for pattern in self._router.inbound_patterns:
                await self._subscriptions.ensure_subscribed(pattern, group=self._group)
        except (TransportError, SubscriptionError) as exc:
            logger.error("bus_start_failed", error=str(exc))
            self._failure = exc
            await self._shutdown(BusState.FAILED)
            raise

        for pattern in self._router.reply_patterns:
            try:
                await self._subscriptions.ensure_subscribed(pattern)
            except SubscriptionError as exc:
                logger.error("reply_subscription_unavailable", pattern=pattern, error=str(exc))

        self._state = BusState.READY
        logger.info(
            "bus_ready",
            inbound=self._router.inbound_patterns,
            replies=self._router.reply_patterns,
        )
        if self._startup_failure is not None:
            # Transport dropped while starting.
            error, self._startup_failure = self._startup_failure, None
            self._on_transport_failure(error)

    async def stop(self) -> None:
        if self._state in (BusState.CREATED, BusState.STOPPED, BusState.FAILED):
            return
        self._state = BusState.STOPPING
        await self._shutdown(BusState.STOPPED)
        logger.info("bus_stopped")

    async def wait_closed(self) -> BaseException | None:
        """Wait until the bus stops or fails; returns the failure, if any."""
        if self._closed is not None:
            await self._closed.wait()
        return self._failure

    async def __aenter__(self) -> MessageBus:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # -- outbound -----------------------------------------------------------

    async def call(self, pattern: str, payload: Any, timeout: float | None = None) -> Any:
        """Send a request and return the reply payload (see :meth:`ReplyCorrelator.call`)."""
        self._ensure_accepting(pattern)
        return await self._correlator.call(pattern, payload, timeout)

    async def emit(self, pattern: str, payload: Any, headers: dict[str, str] | None = None) -> None:
        """Publish a one-way event."""
        self._ensure_accepting(pattern)
        await self._publish(Envelope(pattern=pattern, payload=payload, headers=dict(headers or {})))

    def _ensure_accepting(self, pattern: str) -> None:
        if self._state is BusState.READY:
            return
        if self._state is BusState.RECOVERING:
            raise TransportError(
                "Broker connection is being re-established",
                code="TRANSPORT_RECOVERING",
                context={"pattern": pattern},
            )
        raise BusNotReadyError(
            f"MessageBus is {self._state.value}; calls are accepted once it is READY",
            code="BUS_NOT_READY",
            context={"pattern": pattern},
        )

    async def _publish(self, envelope: Envelope) -> None:
        message = self._codec.encode(envelope)
        try:
            await self._broker.publish(message.topic, message.value, key=message.key, headers=message.headers)
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(
                f"Publishing on '{envelope.pattern}' failed: {exc}",
                code="TRANSPORT_PUBLISH",
                context={"pattern": envelope.pattern},
            ) from exc

    # -- inbound ------------------------------------------------------------

    async def _on_message(self, message: Message) -> None:
        if self._inbound is None:
            logger.warning("message_before_start", topic=message.topic)
            return
        await self._inbound.put(message)

    async def _consume(self) -> None:
        assert self._inbound is not None
        while True:
            message = await self._inbound.get()
            try:
                envelope = self._codec.decode(message)
            except MessageDecodeError as exc:
                logger.warning("undecodable_message", topic=message.topic, error=str(exc))
                continue
            try:
                await self._router.route(envelope)
            except Exception:  # noqa: BLE001
                logger.exception("routing_failed", pattern=envelope.pattern)

    # -- transport failure --------------------------------------------------

    def _on_transport_failure(self, error: BaseException) -> None:
        if self._state is BusState.STARTING:
            logger.warning("transport_failure_during_start", error=str(error))
            self._startup_failure = error
            return
        if self._state is not BusState.READY:
            logger.warning("transport_failure_ignored", state=self._state.value, error=str(error))
            return
        logger.error("transport_failed", error=str(error))
        self._state = BusState.RECOVERING
        self._correlator.fail_all(error)
        self._recovery_task = asyncio.get_running_loop().create_task(self._recover(error), name="flybus-recover")

    async def _recover(self, error: BaseException) -> None:
        for attempt in range(1, self._reconnect_attempts + 1):
            await asyncio.sleep(self._reconnect_backoff * attempt)
            if self._state is not BusState.RECOVERING:
                return
            try:
                await self._broker.stop()
                await self._broker.start()
                states = await self._subscriptions.resubscribe_all()
            except Exception as exc:  # noqa: BLE001
                logger.warning("reconnect_attempt_failed", attempt=attempt, error=str(exc))
                continue
            lost = [p for p in self._router.inbound_patterns if states.get(p) is not SubscriptionState.ACTIVE]
            if lost:
                logger.warning("reconnect_attempt_failed", attempt=attempt, unsubscribed=lost)
                continue
            self._state = BusState.READY
            logger.info("transport_recovered", attempt=attempt)
            return

        self._failure = TransportError(
            f"Broker connection lost and not re-established after {self._reconnect_attempts} attempt(s)",
            code="TRANSPORT_UNRECOVERABLE",
        )
        self._failure.__cause__ = error
        logger.critical("transport_unrecoverable", error=str(error))
        await self._shutdown(BusState.FAILED)

    async def _shutdown(self, final_state: BusState) -> None:
        await self._router.stop(drain=final_state is BusState.STOPPED)
        tasks = [t for t in (self._loop_task, self._recovery_task) if t is not None and t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._recovery_task = None
        self._correlator.fail_all(TransportError("Message bus is shutting down", code="TRANSPORT_SHUTDOWN"))
        try:
            await self._broker.stop()
        except Exception as exc:  # noqa: BLE001
            logger.warning("broker_stop_failed", error=str(exc))
        self._state = final_state
        if self._closed is not None:
            self._closed.set()
