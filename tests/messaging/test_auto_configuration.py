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
"""Tests for broker selection."""

from __future__ import annotations

import pytest

from flybus.config.properties.messaging import MessagingProperties
from flybus.messaging.adapters.kafka import KafkaAdapter
from flybus.messaging.adapters.memory import InMemoryMessageBroker
from flybus.messaging.adapters.rabbitmq import RabbitMQAdapter
from flybus.messaging.auto_configuration import create_broker, detect_provider, is_available


class TestDetection:
    def test_detects_available_module(self):
        assert is_available("json") is True

    def test_detects_unavailable_module(self):
        assert is_available("nonexistent_xyz_module") is False

    def test_detect_provider(self):
        assert detect_provider() in ("kafka", "rabbitmq", "memory")

    def test_detect_prefers_kafka(self, monkeypatch):
        import flybus.messaging.auto_configuration as auto

        monkeypatch.setattr(auto, "is_available", lambda name: True)
        assert detect_provider() == "kafka"

    def test_detect_falls_back_to_memory(self, monkeypatch):
        import flybus.messaging.auto_configuration as auto

        monkeypatch.setattr(auto, "is_available", lambda name: False)
        assert detect_provider() == "memory"


class TestCreateBroker:
    def test_memory(self):
        assert isinstance(create_broker(MessagingProperties(provider="memory")), InMemoryMessageBroker)

    def test_kafka_uses_bootstrap_servers(self):
        props = MessagingProperties(provider="kafka", client_id="billing", kafka={"bootstrap-servers": "k1:9092"})
        broker = create_broker(props)
        assert isinstance(broker, KafkaAdapter)
        assert broker._bootstrap_servers == "k1:9092"
        assert broker._client_id == "billing"

    def test_rabbitmq_uses_url_and_exchange(self):
        props = MessagingProperties(provider="RabbitMQ", rabbitmq={"url": "amqp://mq/", "exchange": "events"})
        broker = create_broker(props)
        assert isinstance(broker, RabbitMQAdapter)
        assert broker._url == "amqp://mq/"
        assert broker._exchange_name == "events"

    def test_auto_resolves_detected_provider(self, monkeypatch):
        import flybus.messaging.auto_configuration as auto

        monkeypatch.setattr(auto, "detect_provider", lambda: "memory")
        assert isinstance(create_broker(MessagingProperties()), InMemoryMessageBroker)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_broker(MessagingProperties(provider="carrier-pigeon"))
