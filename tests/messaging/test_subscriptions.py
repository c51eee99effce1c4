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
"""Tests for SubscriptionManager."""
from __future__ import annotations

import asyncio

import pytest

from flybus.kernel.exceptions import SubscriptionError, SubscriptionPendingError, TransportError
from flybus.messaging.adapters.memory import InMemoryMessageBroker
from flybus.messaging.subscriptions import SubscriptionManager
from flybus.messaging.types import Message, SubscriptionState


async def _noop(msg: Message) -> None:
    pass


class _FlakyBroker(InMemoryMessageBroker):
    """Refuses the first ``failures`` subscribe calls."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def subscribe(self, topic, handler, group=None) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransportError("coordinator not available")
        await super().subscribe(topic, handler, group)


class _GatedBroker(InMemoryMessageBroker):
    """Holds every subscribe call until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def subscribe(self, topic, handler, group=None) -> None:
        await self.gate.wait()
        await super().subscribe(topic, handler, group)


class _SignallingBroker(InMemoryMessageBroker):
    """Signals the first subscribe; holds later ones until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0
        self.subscribed = asyncio.Event()
        self.gate = asyncio.Event()

    async def subscribe(self, topic, handler, group=None) -> None:
        self.calls += 1
        if self.calls > 1:
            await self.gate.wait()
        await super().subscribe(topic, handler, group)
        self.subscribed.set()


class TestEnsureSubscribed:
    async def test_unknown_pattern_is_unsubscribed(self) -> None:
        manager = SubscriptionManager(InMemoryMessageBroker(), _noop)
        assert manager.state("get_user.reply") is SubscriptionState.UNSUBSCRIBED
        assert manager.record("get_user.reply") is None

    async def test_successful_subscription_is_active(self) -> None:
        broker = InMemoryMessageBroker()
        manager = SubscriptionManager(broker, _noop)

        record = await manager.ensure_subscribed("get_user.reply")

        assert record.state is SubscriptionState.ACTIVE
        assert record.attempts == 1
        assert broker.subscriptions("get_user.reply") == 1

    async def test_second_call_does_not_resubscribe(self) -> None:
        broker = InMemoryMessageBroker()
        manager = SubscriptionManager(broker, _noop)

        await manager.ensure_subscribed("order_created", group="orders")
        await manager.ensure_subscribed("order_created", group="orders")

        assert broker.subscriptions("order_created") == 1
        assert manager.record("order_created").group == "orders"

    async def test_retries_then_succeeds(self) -> None:
        broker = _FlakyBroker(failures=2)
        manager = SubscriptionManager(broker, _noop, attempts=3, backoff=0.001)

        record = await manager.ensure_subscribed("get_user.reply")

        assert record.state is SubscriptionState.ACTIVE
        assert record.attempts == 3

    async def test_exhausted_attempts_mark_failed(self) -> None:
        broker = InMemoryMessageBroker(unavailable_topics={"get_user.reply"})
        manager = SubscriptionManager(broker, _noop, attempts=2, backoff=0.001)

        with pytest.raises(SubscriptionError) as exc_info:
            await manager.ensure_subscribed("get_user.reply")

        assert exc_info.value.code == "SUBSCRIPTION_FAILED"
        assert isinstance(exc_info.value.__cause__, TransportError)
        assert manager.state("get_user.reply") is SubscriptionState.FAILED
        assert manager.record("get_user.reply").attempts == 2

    async def test_failed_pattern_raises_same_error_again(self) -> None:
        broker = InMemoryMessageBroker(unavailable_topics={"get_user.reply"})
        manager = SubscriptionManager(broker, _noop, attempts=1)

        with pytest.raises(SubscriptionError) as first:
            await manager.ensure_subscribed("get_user.reply")
        with pytest.raises(SubscriptionError) as second:
            await manager.ensure_subscribed("get_user.reply")

        assert first.value is second.value

    async def test_concurrent_callers_share_attempt(self) -> None:
        broker = _GatedBroker()
        manager = SubscriptionManager(broker, _noop)

        first = asyncio.create_task(manager.ensure_subscribed("get_user.reply"))
        second = asyncio.create_task(manager.ensure_subscribed("get_user.reply"))
        await asyncio.sleep(0)
        assert manager.state("get_user.reply") is SubscriptionState.SUBSCRIBING

        broker.gate.set()
        await asyncio.gather(first, second)

        assert broker.subscriptions("get_user.reply") == 1

    async def test_no_handler_bound(self) -> None:
        manager = SubscriptionManager(InMemoryMessageBroker())
        with pytest.raises(RuntimeError):
            await manager.ensure_subscribed("orders")

    def test_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            SubscriptionManager(InMemoryMessageBroker(), _noop, attempts=0)


class TestRequireActive:
    async def test_missing_pattern(self) -> None:
        manager = SubscriptionManager(InMemoryMessageBroker(), _noop)

        with pytest.raises(SubscriptionError) as exc_info:
            await manager.require_active("get_user.reply")
        assert exc_info.value.code == "SUBSCRIPTION_MISSING"

    async def test_active_pattern_passes(self) -> None:
        manager = SubscriptionManager(InMemoryMessageBroker(), _noop)
        await manager.ensure_subscribed("get_user.reply")

        await manager.require_active("get_user.reply")

    async def test_failed_pattern_raises(self) -> None:
        broker = InMemoryMessageBroker(unavailable_topics={"get_user.reply"})
        manager = SubscriptionManager(broker, _noop, attempts=1)
        with pytest.raises(SubscriptionError):
            await manager.ensure_subscribed("get_user.reply")

        with pytest.raises(SubscriptionError):
            await manager.require_active("get_user.reply")

    async def test_pending_without_wait_fails_fast(self) -> None:
        broker = _GatedBroker()
        manager = SubscriptionManager(broker, _noop)
        task = asyncio.create_task(manager.ensure_subscribed("get_user.reply"))
        await asyncio.sleep(0)

        with pytest.raises(SubscriptionPendingError):
            await manager.require_active("get_user.reply", wait=False)

        broker.gate.set()
        await task

    async def test_pending_with_wait_blocks_until_active(self) -> None:
        broker = _GatedBroker()
        manager = SubscriptionManager(broker, _noop)
        task = asyncio.create_task(manager.ensure_subscribed("get_user.reply"))
        await asyncio.sleep(0)

        waiter = asyncio.create_task(manager.require_active("get_user.reply"))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        broker.gate.set()
        await asyncio.wait_for(waiter, timeout=1)
        await task

    async def test_pending_wait_times_out(self) -> None:
        broker = _GatedBroker()
        manager = SubscriptionManager(broker, _noop)
        task = asyncio.create_task(manager.ensure_subscribed("get_user.reply"))
        await asyncio.sleep(0)

        with pytest.raises(SubscriptionPendingError):
            await manager.require_active("get_user.reply", timeout=0.01)

        broker.gate.set()
        await task
        assert manager.state("get_user.reply") is SubscriptionState.ACTIVE


class TestResubscribe:
    async def test_resubscribe_all_after_connection_loss(self) -> None:
        broker = InMemoryMessageBroker()
        await broker.start()
        manager = SubscriptionManager(broker, _noop)
        await manager.ensure_subscribed("order_created")
        await manager.ensure_subscribed("get_user.reply")

        broker.fail()
        await broker.start()
        states = await manager.resubscribe_all()

        assert states == {
            "order_created": SubscriptionState.ACTIVE,
            "get_user.reply": SubscriptionState.ACTIVE,
        }
        assert broker.subscriptions("order_created") == 1
        assert manager.record("order_created").attempts == 2

    async def test_resubscribe_reports_failures(self) -> None:
        broker = _FlakyBroker(failures=0)
        manager = SubscriptionManager(broker, _noop, attempts=1)
        await manager.ensure_subscribed("order_created")

        broker.failures = 10
        states = await manager.resubscribe_all()

        assert states == {"order_created": SubscriptionState.FAILED}

    async def test_resubscribe_right_after_success_keeps_new_attempt(self) -> None:
        broker = _SignallingBroker()
        manager = SubscriptionManager(broker, _noop)

        async def resubscribe_once_subscribed() -> None:
            await broker.subscribed.wait()
            await manager.resubscribe("order_created")

        first = asyncio.create_task(manager.ensure_subscribed("order_created"))
        racer = asyncio.create_task(resubscribe_once_subscribed())
        await asyncio.sleep(0.01)

        assert broker.calls == 2
        assert manager.state("order_created") is SubscriptionState.SUBSCRIBING
        assert not first.done()
        waiter = asyncio.create_task(manager.require_active("order_created"))
        await asyncio.sleep(0)

        broker.gate.set()
        await asyncio.wait_for(asyncio.gather(first, racer, waiter), timeout=1)

        assert manager.state("order_created") is SubscriptionState.ACTIVE
        assert manager.record("order_created").attempts == 2

    async def test_resubscribe_unknown_pattern_subscribes(self) -> None:
        manager = SubscriptionManager(InMemoryMessageBroker(), _noop)
        record = await manager.resubscribe("order_created")
        assert record.state is SubscriptionState.ACTIVE
