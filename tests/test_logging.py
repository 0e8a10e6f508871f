"""Tests for console helpers and structlog file configuration."""

import io
import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest
import structlog
from rich.console import Console

from battery_warden import logging as console
from battery_warden.config import Config


@pytest.fixture
def captured_console():
    """Route console helpers into a buffer."""
    out = io.StringIO()
    with patch.object(console, "_console", Console(file=out, width=120, color_system=None)):
        yield out


class TestConsoleHelpers:
    def test_log_includes_level_and_icon(self, captured_console):
        console.info("hello", console.Icon.OK)
        text = captured_console.getvalue()
        assert "[info]" in text
        assert "✓" in text
        assert "hello" in text

    def test_warn_and_error_levels(self, captured_console):
        console.warn("careful")
        console.error("broken")
        text = captured_console.getvalue()
        assert "[warn] careful" in text
        assert "[err]" in text

    def test_strategy_result(self, captured_console):
        console.strategy_result("privileged", "not_applicable")
        assert "privileged → not_applicable" in captured_console.getvalue()

    def test_verified(self, captured_console):
        console.verified(True)
        console.verified(False)
        text = captured_console.getvalue()
        assert "Exemption confirmed" in text
        assert "still absent" in text

    def test_prompt_suppressed(self, captured_console):
        console.prompt_suppressed("critical_warning", 1, 1)
        assert "critical_warning prompt budget spent (1/1)" in captured_console.getvalue()

    def test_already_exempt(self, captured_console):
        console.already_exempt("info.nightscout.androidaps")
        assert "info.nightscout.androidaps already exempt" in captured_console.getvalue()


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_configure_writes_json_lines(tmp_path: Path, restore_logging):
    config = Config()
    with (
        patch.object(Config, "state_dir", new=tmp_path),
        patch.object(Config, "log_path", new=tmp_path / "enforcer.log"),
    ):
        console.configure(config)
        structlog.get_logger().info("cascade_done", mode="full")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "enforcer.log").read_text().splitlines()

    event = json.loads(lines[-1])
    assert event["event"] == "cascade_done"
    assert event["mode"] == "full"
    assert event["level"] == "info"
    assert event["source"] == "enforcer"
    assert "ts" in event
