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
"""Unified exception hierarchy for flybus.

All flybus exceptions inherit from FlyBusException, enabling unified
error handling across modules.

Categories:
- Registration errors: raised while wiring patterns at startup
- Per-message errors: raised at the dispatch boundary, logged and dropped
- Call errors: surfaced to the caller of a request/reply call
"""

from __future__ import annotations


# =============================================================================
# Base Exception
# =============================================================================


class FlyBusException(Exception):
    """Base exception for all flybus errors.

    Carries an optional error code and context dict for structured error data.
    Catch FlyBusException to handle every messaging failure, or catch specific
    subclasses for targeted handling.

    Args:
        message: Human-readable error description.
        code: Machine-readable error code (e.g. "ROUTING_UNROUTABLE").
        context: Arbitrary key-value pairs for error context and debugging.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.context: dict = context if context is not None else {}


class MessagingException(FlyBusException):
    """Failures in routing, correlating or transporting messages."""


# =============================================================================
# Registration Exceptions
# =============================================================================


class DuplicatePatternError(MessagingException):
    """A handler is already registered for the pattern."""


class RegistrationClosedError(MessagingException):
    """Routes cannot be added once the router has started."""


# =============================================================================
# Per-message Exceptions
# =============================================================================


class UnroutableMessageError(MessagingException):
    """No handler is registered for the message's pattern."""


class HandlerError(MessagingException):
    """An exception escaped a registered handler."""


class MessageDecodeError(MessagingException):
    """An inbound message could not be decoded into an envelope."""


class CorrelationIdCollisionError(MessagingException):
    """A new call reused the correlation id of a still-pending call."""


# =============================================================================
# Call Exceptions
# =============================================================================


class CallError(MessagingException):
    """A request/reply call did not produce a reply payload."""


class TransportError(CallError):
    """Broker connection or IO failure."""


class CallTimeoutError(CallError, TimeoutError):
    """No reply arrived within the caller-specified window."""


class SubscriptionError(CallError):
    """Consumption of a pattern could not be established."""


class SubscriptionPendingError(SubscriptionError):
    """The reply subscription is still being established."""


class RemoteCallError(CallError):
    """The remote responder replied with an error."""


class CallCancelledError(CallError):
    """The pending call was cancelled before a reply arrived."""


class BusNotReadyError(CallError):
    """The message bus has not finished its startup sequence."""


# =============================================================================
# Warnings
# =============================================================================


class StaleReplyWarning(RuntimeWarning):
    """A reply arrived for a correlation id with no pending call."""
