"""User-facing prompts and toasts.

The engine only ever talks to the Presenter protocol. ConsolePresenter is
the terminal implementation used by the CLI: it draws the prompt at once and
collects the answer in the background, so the cascade never waits on the
user. Answers are read one prompt at a time, each labeled with its title.
"""

import asyncio
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import click
import structlog
from rich.console import Console
from rich.panel import Panel

log = structlog.get_logger()

# Same toast text is not repeated within this window
TOAST_DEBOUNCE_SECONDS = 30.0


@dataclass(frozen=True)
class Prompt:
    """A titled message with two labeled actions. Not dismissible without a choice."""

    title: str
    message: str
    positive_label: str
    negative_label: str
    on_positive: Callable[[], object] | None = None
    on_negative: Callable[[], object] | None = None
    cancelable: bool = False  # Dismissing without a choice runs neither callback


class Presenter(Protocol):
    """Interactive context able to show UI to the user right now."""

    @property
    def available(self) -> bool: ...

    def present_choice(self, prompt: Prompt) -> bool:
        """Display the prompt. Returns True only if it was actually shown."""
        ...

    def toast(self, message: str) -> None: ...


class ConsolePresenter:
    """Presenter that draws Rich panels and reads choices from the terminal."""

    def __init__(self, console: Console | None = None, attached: bool | None = None):
        self.console = console or Console(highlight=False)
        self._attached = sys.stdin.isatty() if attached is None else attached
        self._pending: set[asyncio.Task] = set()
        self._answer_lock = asyncio.Lock()
        self._last_toast: dict[str, float] = {}

    @property
    def available(self) -> bool:
        return self._attached

    def detach(self) -> None:
        """Stop presenting; later UI steps are skipped."""
        self._attached = False

    def present_choice(self, prompt: Prompt) -> bool:
        if not self._attached:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("prompt_without_loop", title=prompt.title)
            return False

        self.console.print(
            Panel(
                f"{prompt.message}\n\n"
                f"[bold]1[/] {prompt.positive_label}    [bold]2[/] {prompt.negative_label}",
                title=prompt.title,
                border_style="yellow",
            )
        )
        task = loop.create_task(self._collect_choice(prompt))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _collect_choice(self, prompt: Prompt) -> None:
        try:
            async with self._answer_lock:
                choice = await asyncio.to_thread(
                    click.prompt,
                    prompt.title,
                    type=click.Choice(["1", "2"]),
                    show_choices=False,
                )
        except click.exceptions.Abort:
            if prompt.cancelable:
                log.info("prompt_dismissed", title=prompt.title)
                return
            choice = "2"

        callback = prompt.on_positive if choice == "1" else prompt.on_negative
        log.info("prompt_answered", title=prompt.title, positive=choice == "1")
        if callback is None:
            return
        try:
            await asyncio.to_thread(callback)
        except Exception:
            log.exception("prompt_action_failed", title=prompt.title)

    async def drain(self) -> None:
        """Wait for every prompt still waiting on an answer."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def toast(self, message: str) -> None:
        if not self._attached:
            return
        now = time.monotonic()
        last = self._last_toast.get(message)
        if last is not None and now - last < TOAST_DEBOUNCE_SECONDS:
            return
        self._last_toast[message] = now
        self.console.print(f"[reverse] {message} [/]")
