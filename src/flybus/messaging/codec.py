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
"""Envelope codec: maps logical envelopes to raw broker messages and back."""

from __future__ import annotations

import json
from typing import Protocol, runtime_checkable

from flybus.kernel.exceptions import MessageDecodeError
from flybus.messaging.types import (
    BYTES_CONTENT_TYPE,
    CONTENT_TYPE_HEADER,
    CORRELATION_ID_HEADER,
    ERROR_HEADER,
    JSON_CONTENT_TYPE,
    REPLY_TO_HEADER,
    Envelope,
    Message,
)

_RESERVED_HEADERS = frozenset({CORRELATION_ID_HEADER, REPLY_TO_HEADER, ERROR_HEADER, CONTENT_TYPE_HEADER})


@runtime_checkable
class EnvelopeCodec(Protocol):
    def encode(self, envelope: Envelope) -> Message: ...
    def decode(self, message: Message) -> Envelope: ...


class JsonEnvelopeCodec:
    """Encodes payloads as UTF-8 JSON; ``bytes`` payloads pass through untouched.

    The envelope's routing fields travel as message headers so that the
    broker-level value holds only the business payload.
    """

    def encode(self, envelope: Envelope) -> Message:
        headers = dict(envelope.headers)
        if isinstance(envelope.payload, bytes | bytearray):
            value = bytes(envelope.payload)
            headers[CONTENT_TYPE_HEADER] = BYTES_CONTENT_TYPE
        else:
            try:
                value = json.dumps(envelope.payload, separators=(",", ":")).encode()
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Payload for '{envelope.pattern}' is not JSON serializable: {exc}") from exc
            headers[CONTENT_TYPE_HEADER] = JSON_CONTENT_TYPE

        if envelope.correlation_id is not None:
            headers[CORRELATION_ID_HEADER] = envelope.correlation_id
        if envelope.reply_to is not None:
            headers[REPLY_TO_HEADER] = envelope.reply_to
        if envelope.error is not None:
            headers[ERROR_HEADER] = envelope.error

        return Message(topic=envelope.pattern, value=value, headers=headers)

    def decode(self, message: Message) -> Envelope:
        headers = message.headers
        content_type = headers.get(CONTENT_TYPE_HEADER, JSON_CONTENT_TYPE)

        if content_type == BYTES_CONTENT_TYPE:
            payload: object = message.value
        elif not message.value:
            payload = None
        else:
            try:
                payload = json.loads(message.value)
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise MessageDecodeError(
                    f"Message on '{message.topic}' is not valid JSON",
                    code="CODEC_INVALID_JSON",
                    context={"topic": message.topic},
                ) from exc

        return Envelope(
            pattern=message.topic,
            payload=payload,
            correlation_id=headers.get(CORRELATION_ID_HEADER),
            reply_to=headers.get(REPLY_TO_HEADER),
            error=headers.get(ERROR_HEADER),
            headers={k: v for k, v in headers.items() if k not in _RESERVED_HEADERS},
        )
