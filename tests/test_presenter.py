"""Tests for the console presenter."""

import asyncio
import io
import threading
import time
from unittest.mock import patch

import click
import pytest
from rich.console import Console

from battery_warden.presenter import TOAST_DEBOUNCE_SECONDS, ConsolePresenter, Prompt


def _presenter(attached: bool = True) -> tuple[ConsolePresenter, io.StringIO]:
    out = io.StringIO()
    console = Console(file=out, width=80, color_system=None)
    return ConsolePresenter(console=console, attached=attached), out


def _prompt(calls: list[str], cancelable: bool = False) -> Prompt:
    return Prompt(
        title="Battery optimization",
        message="Allow it",
        positive_label="Open settings",
        negative_label="Later",
        on_positive=lambda: calls.append("positive"),
        on_negative=lambda: calls.append("negative"),
        cancelable=cancelable,
    )


class TestPresentChoice:
    @pytest.mark.asyncio
    async def test_draws_panel_and_runs_positive(self):
        presenter, out = _presenter()
        calls: list[str] = []

        with patch("battery_warden.presenter.click.prompt", return_value="1"):
            assert presenter.present_choice(_prompt(calls)) is True
            await presenter.drain()

        text = out.getvalue()
        assert "Battery optimization" in text
        assert "Open settings" in text
        assert "Later" in text
        assert calls == ["positive"]

    @pytest.mark.asyncio
    async def test_negative_choice(self):
        presenter, _ = _presenter()
        calls: list[str] = []

        with patch("battery_warden.presenter.click.prompt", return_value="2"):
            presenter.present_choice(_prompt(calls))
            await presenter.drain()

        assert calls == ["negative"]

    @pytest.mark.asyncio
    async def test_abort_counts_as_negative(self):
        presenter, _ = _presenter()
        calls: list[str] = []

        with patch("battery_warden.presenter.click.prompt", side_effect=click.exceptions.Abort()):
            presenter.present_choice(_prompt(calls))
            await presenter.drain()

        assert calls == ["negative"]

    @pytest.mark.asyncio
    async def test_abort_on_cancelable_runs_nothing(self):
        presenter, _ = _presenter()
        calls: list[str] = []

        with patch("battery_warden.presenter.click.prompt", side_effect=click.exceptions.Abort()):
            presenter.present_choice(_prompt(calls, cancelable=True))
            await presenter.drain()

        assert calls == []

    @pytest.mark.asyncio
    async def test_failing_callback_is_logged_not_raised(self):
        presenter, _ = _presenter()

        def boom():
            raise RuntimeError("am start failed")

        prompt = Prompt("t", "m", "yes", "no", on_positive=boom)
        with patch("battery_warden.presenter.click.prompt", return_value="1"):
            presenter.present_choice(prompt)
            await presenter.drain()

    @pytest.mark.asyncio
    async def test_answers_read_one_prompt_at_a_time(self):
        presenter, _ = _presenter()
        calls: list[str] = []
        guard = threading.Lock()
        active = 0
        peak = 0
        asked: list[str] = []

        def fake_prompt(text, **kwargs):
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
                asked.append(text)
            time.sleep(0.05)
            with guard:
                active -= 1
            return "1"

        warning = Prompt(
            title="Important",
            message="Still not exempt",
            positive_label="Set now",
            negative_label="I understand the risk",
            on_positive=lambda: calls.append("warning"),
        )
        with patch("battery_warden.presenter.click.prompt", side_effect=fake_prompt):
            presenter.present_choice(_prompt(calls))
            await asyncio.sleep(0.01)
            presenter.present_choice(warning)
            await presenter.drain()

        assert peak == 1
        assert asked == ["Battery optimization", "Important"]
        assert calls == ["positive", "warning"]

    @pytest.mark.asyncio
    async def test_detached_shows_nothing(self):
        presenter, out = _presenter(attached=False)
        assert presenter.available is False
        assert presenter.present_choice(_prompt([])) is False
        assert out.getvalue() == ""

    @pytest.mark.asyncio
    async def test_detach(self):
        presenter, _ = _presenter()
        presenter.detach()
        assert not presenter.available
        assert presenter.present_choice(_prompt([])) is False

    def test_needs_running_loop(self):
        presenter, out = _presenter()
        assert presenter.present_choice(_prompt([])) is False
        assert out.getvalue() == ""


class TestToast:
    def test_toast_printed(self):
        presenter, out = _presenter()
        presenter.toast("Debug info copied to clipboard")
        assert "Debug info copied to clipboard" in out.getvalue()

    def test_same_toast_debounced(self):
        presenter, out = _presenter()
        presenter.toast("hello")
        presenter.toast("hello")
        assert out.getvalue().count("hello") == 1

    def test_toast_repeats_after_window(self):
        presenter, out = _presenter()
        presenter.toast("hello")
        presenter._last_toast["hello"] -= TOAST_DEBOUNCE_SECONDS + 1
        presenter.toast("hello")
        assert out.getvalue().count("hello") == 2

    def test_detached_toast_is_silent(self):
        presenter, out = _presenter(attached=False)
        presenter.toast("hello")
        assert out.getvalue() == ""


@pytest.mark.asyncio
async def test_drain_with_nothing_pending():
    presenter, _ = _presenter()
    await asyncio.wait_for(presenter.drain(), timeout=1.0)
