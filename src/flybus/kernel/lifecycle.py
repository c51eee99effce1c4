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
"""Unified lifecycle protocol for messaging components.

Broker adapters and the message bus own connections and background tasks.
The owning service calls start() during its initialization phase and stop()
during shutdown, in reverse order of startup.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Lifecycle(Protocol):
    """Standard lifecycle for components owning external resources."""

    async def start(self) -> None:
        """Open connections and start background tasks.

        If the connection fails, raise -- callers treat a failed start()
        as a startup failure of the owning service.
        """
        ...

    async def stop(self) -> None:
        """Release connections and cancel background tasks.

        Best-effort cleanup -- must be safe to call on a component that
        never started.
        """
        ...
