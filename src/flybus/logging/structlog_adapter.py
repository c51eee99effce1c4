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
"""Process-wide structlog setup driven by ``flybus.logging.*``."""

from __future__ import annotations

import logging
import sys
from typing import IO, Any

import structlog

from flybus.config.properties.logging import LoggingProperties
from flybus.core.config import Config

FORMATS = ("console", "json")


class StructlogAdapter:
    """Configures structlog and stdlib logging for a flybus process.

    Every event carries the ``client_id`` of the bus that configured logging,
    so output from several services sharing a collector can be told apart.
    ``flybus.logging.level`` holds ``root`` plus per-logger overrides such as
    ``flybus.messaging.router: DEBUG``; ``flybus.logging.format`` selects the
    ``console`` or ``json`` renderer.
    """

    def __init__(self, stream: IO[str] | None = None) -> None:
        self._stream = stream
        self._client_id: str | None = None
        self.root_level = "INFO"
        self.format = "console"
        self.logger_levels: dict[str, str] = {}

    def configure(self, config: Config) -> None:
        props = config.bind(LoggingProperties)
        fmt = str(props.format).lower()
        if fmt not in FORMATS:
            raise ValueError(f"flybus.logging.format must be one of {', '.join(FORMATS)}, got '{props.format}'")
        levels = {str(k): str(v).upper() for k, v in props.level.items()}

        self.format = fmt
        self.root_level = levels.pop("root", "INFO")
        self.logger_levels = levels
        self._client_id = config.get("flybus.messaging.client-id")

        self._install()
        for name, level in self.logger_levels.items():
            self.set_level(name, level)

    def set_level(self, name: str, level: str) -> None:
        logging.getLogger(name).setLevel(getattr(logging, level.upper(), logging.INFO))

    def _add_client_id(self, _logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        if self._client_id is not None:
            event_dict.setdefault("client_id", self._client_id)
        return event_dict

    def _install(self) -> None:
        processors: list[structlog.types.Processor] = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            self._add_client_id,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
        ]
        if self.format == "json":
            processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        else:
            processors.append(structlog.dev.ConsoleRenderer())

        structlog.configure(
            processors=processors,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        logging.basicConfig(
            format="%(message)s",
            stream=self._stream or sys.stdout,
            level=getattr(logging, self.root_level, logging.INFO),
            force=True,
        )
