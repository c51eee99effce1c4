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
"""Decorators marking methods as pattern handlers.

The decorators only attach metadata. Nothing is registered as a side effect:
:func:`collect_routes` inspects an object once at startup and returns the
mapping tables passed to :meth:`PatternRouter.from_mapping`.
"""
from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any, TypeVar

from flybus.kernel.exceptions import DuplicatePatternError
from flybus.messaging.types import RouteKind

F = TypeVar("F", bound=Callable[..., Any])

_PATTERN_ATTR = "__flybus_pattern__"
_KIND_ATTR = "__flybus_route_kind__"


def _mark(pattern: str, kind: RouteKind) -> Callable[[F], F]:
    if not pattern:
        raise ValueError("pattern must be a non-empty string")

    def decorator(func: F) -> F:
        setattr(func, _PATTERN_ATTR, pattern)
        setattr(func, _KIND_ATTR, kind)
        return func

    return decorator


def event_pattern(pattern: str) -> Callable[[F], F]:
    """Mark a one-way event handler: ``(payload) -> None``."""
    return _mark(pattern, RouteKind.EVENT)


def message_pattern(pattern: str) -> Callable[[F], F]:
    """Mark a request responder: ``(payload) -> reply payload``."""
    return _mark(pattern, RouteKind.REQUEST)


def collect_routes(target: object) -> tuple[dict[str, Callable[..., Any]], dict[str, Callable[..., Any]]]:
    """Return ``(events, responders)`` mapping tables for the marked members of *target*."""
    events: dict[str, Callable[..., Any]] = {}
    responders: dict[str, Callable[..., Any]] = {}
    for _name, member in inspect.getmembers(target, callable):
        pattern = getattr(member, _PATTERN_ATTR, None)
        if pattern is None:
            continue
        if pattern in events or pattern in responders:
            raise DuplicatePatternError(
                f"Pattern '{pattern}' is declared twice on {type(target).__name__}",
                code="ROUTING_DUPLICATE_PATTERN",
                context={"pattern": pattern},
            )
        if getattr(member, _KIND_ATTR) is RouteKind.REQUEST:
            responders[pattern] = member
        else:
            events[pattern] = member
    return events, responders
