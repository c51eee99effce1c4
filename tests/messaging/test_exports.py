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
"""Tests for messaging module public exports."""
from __future__ import annotations

import flybus.messaging


class TestMessagingExports:
    def test_can_import_port(self) -> None:
        from flybus.messaging import MessageBrokerPort

        assert MessageBrokerPort is not None

    def test_can_import_bus(self) -> None:
        from flybus.messaging import MessageBus, PatternRouter, ReplyCorrelator, SubscriptionManager

        assert MessageBus is not None
        assert PatternRouter is not None
        assert ReplyCorrelator is not None
        assert SubscriptionManager is not None

    def test_can_import_decorators(self) -> None:
        from flybus.messaging import collect_routes, event_pattern, message_pattern

        assert callable(event_pattern)
        assert callable(message_pattern)
        assert callable(collect_routes)

    def test_all_names_resolve(self) -> None:
        for name in flybus.messaging.__all__:
            assert hasattr(flybus.messaging, name), name
