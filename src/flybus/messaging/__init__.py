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
"""flybus messaging: pattern routing and request/reply over publish/subscribe brokers."""

from flybus.messaging.adapters.memory import InMemoryMessageBroker
from flybus.messaging.bus import BusState, MessageBus
from flybus.messaging.codec import EnvelopeCodec, JsonEnvelopeCodec
from flybus.messaging.correlator import ReplyCorrelator
from flybus.messaging.decorators import collect_routes, event_pattern, message_pattern
from flybus.messaging.ports.outbound import MessageBrokerPort, MessageHandler
from flybus.messaging.router import PatternRouter
from flybus.messaging.subscriptions import SubscriptionManager
from flybus.messaging.types import (
    CallState,
    Envelope,
    Message,
    PendingCall,
    SubscriptionRecord,
    SubscriptionState,
)

__all__ = [
    "BusState",
    "CallState",
    "Envelope",
    "EnvelopeCodec",
    "InMemoryMessageBroker",
    "JsonEnvelopeCodec",
    "Message",
    "MessageBrokerPort",
    "MessageBus",
    "MessageHandler",
    "PatternRouter",
    "PendingCall",
    "ReplyCorrelator",
    "SubscriptionManager",
    "SubscriptionRecord",
    "SubscriptionState",
    "collect_routes",
    "event_pattern",
    "message_pattern",
]
