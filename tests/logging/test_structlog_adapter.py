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
"""Tests for the structlog setup driven by flybus.logging.*."""

import io
import json
import logging

import pytest

from flybus.config.properties.logging import LoggingProperties
from flybus.core.config import Config
from flybus.logging import StructlogAdapter, get_logger


def _logging_config(**logging_section) -> Config:
    return Config({"flybus": {"logging": logging_section, "messaging": {"client-id": "billing"}}})


class TestLoggingProperties:
    def test_framework_defaults(self):
        props = Config.defaults().bind(LoggingProperties)
        assert props.format == "console"
        assert props.level == {"root": "INFO"}

    def test_env_override_of_format(self, monkeypatch):
        monkeypatch.setenv("FLYBUS_LOGGING_FORMAT", "json")
        assert Config.defaults().bind(LoggingProperties).format == "json"


class TestConfigure:
    def test_empty_config_uses_defaults(self):
        adapter = StructlogAdapter()
        adapter.configure(Config({}))
        assert adapter.root_level == "INFO"
        assert adapter.format == "console"
        assert adapter.logger_levels == {}

    def test_root_level_and_format_normalised(self):
        adapter = StructlogAdapter()
        adapter.configure(_logging_config(format="JSON", level={"root": "debug"}))
        assert adapter.root_level == "DEBUG"
        assert adapter.format == "json"
        assert logging.getLogger().level == logging.DEBUG

    def test_per_logger_levels_applied(self):
        adapter = StructlogAdapter()
        adapter.configure(_logging_config(level={"root": "INFO", "flybus.messaging.router": "WARNING"}))
        assert adapter.logger_levels == {"flybus.messaging.router": "WARNING"}
        assert logging.getLogger("flybus.messaging.router").level == logging.WARNING

    def test_unknown_format_rejected(self):
        with pytest.raises(ValueError, match="flybus.logging.format"):
            StructlogAdapter().configure(_logging_config(format="xml"))


class TestOutput:
    def test_json_events_carry_client_id(self):
        stream = io.StringIO()
        StructlogAdapter(stream=stream).configure(_logging_config(format="json"))

        get_logger("flybus.tests.output").info("subscribed", pattern="get_user.reply")

        event = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert event["event"] == "subscribed"
        assert event["pattern"] == "get_user.reply"
        assert event["client_id"] == "billing"
        assert event["level"] == "info"


class TestSetLevel:
    def test_set_level_updates_stdlib_logger(self):
        StructlogAdapter().set_level("flybus.messaging.bus", "DEBUG")
        assert logging.getLogger("flybus.messaging.bus").level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        StructlogAdapter().set_level("flybus.messaging.codec", "CHATTY")
        assert logging.getLogger("flybus.messaging.codec").level == logging.INFO
