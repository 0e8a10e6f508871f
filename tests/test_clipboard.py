"""Tests for clipboard access."""

from unittest.mock import patch

import pyperclip

from battery_warden.clipboard import copy_text


def test_copy_text_success():
    with patch("battery_warden.clipboard.pyperclip.copy") as mock_copy:
        assert copy_text("debug info") is True
    mock_copy.assert_called_once_with("debug info")


def test_copy_text_without_clipboard_mechanism():
    with patch(
        "battery_warden.clipboard.pyperclip.copy",
        side_effect=pyperclip.PyperclipException("no copy/paste mechanism"),
    ):
        assert copy_text("debug info") is False
