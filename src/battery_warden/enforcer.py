"""Battery optimization enforcement engine.

One cascade run walks IDLE → CHECKING → CASCADING → VERIFYING → DONE:

- CHECKING: already exempt means nothing else happens (no strategy, no
  ledger write, no UI).
- CASCADING: privileged silent request, then the standard interactive
  request (SDK permitting), then vendor workarounds (HarmonyOS only),
  stopping at the first SUCCEEDED.
- One ledger record per run, then a delayed re-check that may surface a
  single critical warning within its budget.

Entry points schedule the run as a task on the running event loop and
return it immediately. Device and ledger I/O happen in worker threads; the
loop thread is the interactive thread, and prompts are shown from it.
"""

import asyncio
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from battery_warden import logging as console
from battery_warden.adb import AdbShell
from battery_warden.clipboard import copy_text
from battery_warden.device import DeviceInfo, read_device_info
from battery_warden.ledger import AttemptLedger, InterruptionKind
from battery_warden.outcomes import ExemptionState, StrategyOutcome
from battery_warden.platform_bridge import PlatformServiceBridge
from battery_warden.presenter import Presenter, Prompt
from battery_warden.privileged import PrivilegedServiceBridge
from battery_warden.vendor import VariantId, VendorVariantBridge

if TYPE_CHECKING:
    from battery_warden.config import Config

log = structlog.get_logger()


class EngineState(Enum):
    IDLE = "idle"
    CHECKING = "checking"
    CASCADING = "cascading"
    VERIFYING = "verifying"
    DONE = "done"


class CascadeMode(Enum):
    FULL = "full"  # force_whitelisting: every strategy, prompts within budget
    SIMPLE = "simple"  # simple_force: silent request, one low-friction prompt
    CHECK = "check"  # check_and_update_whitelist: full cascade, never interactive


@dataclass
class CascadeReport:
    """What one run did. Diagnostic only; callers need not await it."""

    mode: CascadeMode
    state: EngineState = EngineState.IDLE
    already_exempt: bool = False
    strategies: list[tuple[str, StrategyOutcome]] = field(default_factory=list)
    recorded: bool | None = None  # Outcome written to the ledger, None if no write
    verified: bool | None = None  # is_exempt() after the delay
    warning_shown: bool = False

    @property
    def succeeded(self) -> bool:
        return any(outcome is StrategyOutcome.SUCCEEDED for _, outcome in self.strategies)

    @property
    def strategy_used(self) -> str:
        for name, outcome in self.strategies:
            if outcome is StrategyOutcome.SUCCEEDED:
                return name
        return "none"


def _interactive(presenter: Presenter | None) -> bool:
    return presenter is not None and presenter.available


class EnforcementEngine:
    """Runs the exemption cascade against injected bridges.

    Holds no state between runs beyond the tasks it has in flight; all
    durable state belongs to the ledger.
    """

    def __init__(
        self,
        platform: PlatformServiceBridge,
        privileged: PrivilegedServiceBridge,
        vendor: VendorVariantBridge,
        ledger: AttemptLedger,
        device_info: Callable[[], DeviceInfo] = DeviceInfo,
        package: str = "",
        verify_delay: float = 2.0,
        copy: Callable[[str], bool] = copy_text,
    ):
        self.platform = platform
        self.privileged = privileged
        self.vendor = vendor
        self.ledger = ledger
        self.device_info = device_info
        self.package = package
        self.verify_delay = verify_delay
        self._copy = copy
        self._tasks: set[asyncio.Task] = set()

    # ── Entry points ────────────────────────────────────────────────────────

    def force_whitelisting(self, presenter: Presenter | None = None) -> "asyncio.Task[CascadeReport]":
        """Full cascade. May interrupt the user up to each prompt's budget."""
        return self._spawn(self._run(CascadeMode.FULL, presenter))

    def simple_force(self, presenter: Presenter | None = None) -> "asyncio.Task[CascadeReport]":
        """Silent request only, plus one low-friction prompt if it fails."""
        return self._spawn(self._run(CascadeMode.SIMPLE, presenter))

    def check_and_update_whitelist(self) -> "asyncio.Task[CascadeReport]":
        """Check, then force without any UI. For background callers."""
        return self._spawn(self._run(CascadeMode.CHECK, None))

    def is_in_battery_whitelist(self) -> bool:
        """Synchronous state query with no side effects."""
        return self.platform.is_exempt()

    async def wait_idle(self) -> None:
        """Wait for every cascade this engine has spawned."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Cascade ─────────────────────────────────────────────────────────────

    async def _run(self, mode: CascadeMode, presenter: Presenter | None) -> CascadeReport:
        report = CascadeReport(mode)
        try:
            await self._cascade(report, presenter)
        except Exception:
            log.exception("cascade_failed", mode=mode.value, state=report.state.value)
        report.state = EngineState.DONE
        log.info(
            "cascade_done",
            mode=mode.value,
            already_exempt=report.already_exempt,
            strategies=[(name, outcome.value) for name, outcome in report.strategies],
            recorded=report.recorded,
            verified=report.verified,
            warning_shown=report.warning_shown,
        )
        return report

    async def _cascade(self, report: CascadeReport, presenter: Presenter | None) -> None:
        report.state = EngineState.CHECKING
        if await asyncio.to_thread(self.platform.is_exempt):
            report.already_exempt = True
            log.info("already_exempt", package=self.package, mode=report.mode.value)
            console.already_exempt(self.package)
            return

        report.state = EngineState.CASCADING
        console.cascade_started(self.package, report.mode.value)
        await self._log_initial_status()

        if report.mode is CascadeMode.SIMPLE:
            await self._simple_cascade(report, presenter)
        else:
            await self._full_cascade(report, presenter)

        await self._record(report)
        if report.mode is not CascadeMode.SIMPLE and _interactive(presenter):
            presenter.toast(
                "Battery optimization exemption requested"
                if report.succeeded
                else "Automatic exemption failed, please set it manually"
            )

        report.state = EngineState.VERIFYING
        await self._verify(report, presenter, allow_warning=report.mode is not CascadeMode.SIMPLE)

    async def _log_initial_status(self) -> None:
        info = await asyncio.to_thread(self.device_info)
        log.info(
            "cascade_started",
            package=self.package,
            device=info.label,
            android=info.android,
            harmony=bool(info.harmony_version),
        )

    def _note(self, report: CascadeReport, name: str, outcome: StrategyOutcome) -> StrategyOutcome:
        report.strategies.append((name, outcome))
        log.info("strategy_result", strategy=name, outcome=outcome.value)
        console.strategy_result(name, outcome.value)
        return outcome

    async def _full_cascade(self, report: CascadeReport, presenter: Presenter | None) -> None:
        outcome = await asyncio.to_thread(self.privileged.request_exemption_silently)
        if self._note(report, "privileged", outcome) is StrategyOutcome.SUCCEEDED:
            return

        if await asyncio.to_thread(self.platform.supports_interactive_request):
            outcome = await self._standard_strategy(presenter)
        else:
            outcome = StrategyOutcome.NOT_APPLICABLE
        if self._note(report, "standard", outcome) is StrategyOutcome.SUCCEEDED:
            return

        self._note(report, "vendor", await self._vendor_strategy(presenter))

    async def _simple_cascade(self, report: CascadeReport, presenter: Presenter | None) -> None:
        outcome = await asyncio.to_thread(self.privileged.request_exemption_silently)
        if self._note(report, "privileged", outcome) is StrategyOutcome.SUCCEEDED:
            return
        if not _interactive(presenter):
            return

        prompt = Prompt(
            title="Battery optimization",
            message=(
                f"{self.package} needs to run in the background to keep receiving data. "
                "Please allow it to ignore battery optimization."
            ),
            positive_label="Open settings",
            negative_label="Cancel",
            on_positive=self._open_exemption_request,
        )
        if self._present_gated(InterruptionKind.STANDARD_DIALOG, presenter, prompt):
            self._note(report, "simple_prompt", StrategyOutcome.SUCCEEDED)

    async def _standard_strategy(self, presenter: Presenter | None) -> StrategyOutcome:
        """Interactive request; triggering the flow counts as success."""
        if not _interactive(presenter):
            opened = await asyncio.to_thread(self.platform.open_exemption_settings_screen)
            return StrategyOutcome.SUCCEEDED if opened else StrategyOutcome.FAILED

        prompt = Prompt(
            title="Battery optimization",
            message=(
                f"To keep {self.package} monitoring reliably, allow it to ignore "
                "battery optimization.\n\nThe device will open its settings; choose "
                "\"Don't optimize\" or \"Allow background activity\"."
            ),
            positive_label="Open settings",
            negative_label="Later",
            on_positive=self._open_exemption_request,
        )
        if self._present_gated(InterruptionKind.STANDARD_DIALOG, presenter, prompt):
            return StrategyOutcome.SUCCEEDED

        opened = await asyncio.to_thread(self._open_exemption_request)
        return StrategyOutcome.SUCCEEDED if opened else StrategyOutcome.FAILED

    async def _vendor_strategy(self, presenter: Presenter | None) -> StrategyOutcome:
        if await asyncio.to_thread(self.vendor.detect_variant) is VariantId.NONE:
            return StrategyOutcome.NOT_APPLICABLE

        interactive = _interactive(presenter)
        outcome = await asyncio.to_thread(self.vendor.apply_vendor_workarounds, interactive)
        if outcome is not StrategyOutcome.FAILED or not interactive:
            return outcome

        prompt = Prompt(
            title="HarmonyOS settings",
            message=(
                "HarmonyOS needs extra settings to keep the app running:\n\n"
                "1. Settings > Apps > App launch\n"
                f"2. Find {self.package} and turn off \"Manage automatically\"\n"
                "3. Enable \"Auto-launch\" and \"Run in background\""
            ),
            positive_label="OK",
            negative_label="Cancel",
            on_positive=self.vendor.open_vendor_settings_screen,
        )
        if self._present_gated(InterruptionKind.VENDOR_GUIDE, presenter, prompt):
            return StrategyOutcome.SUCCEEDED

        opened = await asyncio.to_thread(self.vendor.open_vendor_settings_screen)
        return StrategyOutcome.SUCCEEDED if opened else StrategyOutcome.FAILED

    def _open_exemption_request(self) -> bool:
        """Blocking: request dialog on the device, or the settings list."""
        if self.platform.request_exemption_interactive():
            return True
        return self.platform.open_exemption_settings_screen()

    def _present_gated(
        self, kind: InterruptionKind, presenter: Presenter | None, prompt: Prompt
    ) -> bool:
        """Show a prompt if its budget allows, counting it once displayed.

        Runs on the loop thread with no await between the budget check and
        the count, so overlapping cascades cannot both spend the last unit.
        The counter calls give up on a busy database after a quarter second,
        but mark_shown may first wait for a ledger write already running in
        a worker thread.
        """
        if not _interactive(presenter):
            return False
        try:
            if not self.ledger.should_show(kind):
                console.prompt_suppressed(
                    kind.name.lower(), self.ledger.shown_count(kind), self.ledger.limit(kind)
                )
                return False
        except sqlite3.Error:
            log.exception("prompt_budget_unreadable", kind=kind.name.lower())
            return False

        if not presenter.present_choice(prompt):
            return False
        try:
            self.ledger.mark_shown(kind)
        except sqlite3.Error:
            log.exception("prompt_count_failed", kind=kind.name.lower())
        return True

    async def _record(self, report: CascadeReport) -> None:
        try:
            await asyncio.to_thread(
                self.ledger.record_attempt, report.succeeded, report.strategy_used
            )
            report.recorded = report.succeeded
        except sqlite3.Error:
            log.exception("ledger_write_failed", outcome=report.succeeded)

    async def _verify(
        self, report: CascadeReport, presenter: Presenter | None, allow_warning: bool
    ) -> None:
        # Give the platform time to propagate the change before re-reading it
        await asyncio.sleep(self.verify_delay)
        exempt = await asyncio.to_thread(self.platform.is_exempt)
        report.verified = exempt
        console.verified(exempt)

        info = await asyncio.to_thread(self.device_info)
        try:
            await asyncio.to_thread(
                self.ledger.record_status_snapshot, ExemptionState.from_bool(exempt), info
            )
        except sqlite3.Error:
            log.exception("status_snapshot_failed")

        if exempt or not allow_warning:
            return

        prompt = Prompt(
            title="⚠️ Important",
            message=(
                f"{self.package} is NOT exempt from battery optimization!\n\n"
                "This may cause:\n"
                "• delayed data\n"
                "• background work being stopped\n"
                "• missed alerts\n\n"
                "Setting it now is strongly recommended."
            ),
            positive_label="Set now",
            negative_label="I understand the risk",
            on_positive=self._open_exemption_request,
        )
        report.warning_shown = self._present_gated(
            InterruptionKind.CRITICAL_WARNING, presenter, prompt
        )

    # ── Diagnostics ─────────────────────────────────────────────────────────

    def get_debug_info(self) -> str:
        """Render ledger state plus device signals as plain text."""
        info = self.device_info()
        exempt = self.platform.is_exempt()
        lines = [
            "=== Battery whitelist debug info ===",
            "",
            f"Package: {self.package}",
            f"Device: {info.label}",
            f"OS: {info.android}",
            f"HarmonyOS: {'yes' if info.harmony_version else 'no'}",
            "",
            f"Current status: {'✅ exempt' if exempt else '❌ not exempt'}",
            "",
            "=== Statistics ===",
        ]
        try:
            snap = self.ledger.snapshot()
        except sqlite3.Error as e:
            lines.append(f"Ledger unavailable: {e}")
            return "\n".join(lines)

        lines += [
            f"Total attempts: {snap.total_attempts}",
            f"Successful attempts: {snap.successful_attempts}",
        ]
        if snap.last_attempt_time is not None:
            lines += [
                f"Last attempt: {snap.last_attempt_time:%Y-%m-%d %H:%M:%S}",
                f"Last result: {'success' if snap.last_success else 'failed'}",
                f"Last strategy: {snap.last_strategy or 'none'}",
            ]
        shown = ", ".join(
            f"{kind.name.lower()} {count}/{self.ledger.limit(kind)}"
            for kind, count in snap.shown.items()
        )
        lines.append(f"Prompts shown: {shown}")

        if snap.last_status_log:
            lines += ["", snap.last_status_log]

        lines += ["", "=== Recent attempts ==="]
        lines += list(snap.history) or ["No records"]
        return "\n".join(lines)

    def copy_debug_info_to_clipboard(self, presenter: Presenter | None = None) -> bool:
        copied = self._copy(self.get_debug_info())
        if copied:
            console.debug_copied()
            if _interactive(presenter):
                presenter.toast("Debug info copied to clipboard")
        return copied


def build_engine(config: "Config") -> EnforcementEngine:
    """Wire the bridges, ledger and engine for one process."""
    shell = AdbShell.from_config(config.device)
    package = config.device.package
    return EnforcementEngine(
        platform=PlatformServiceBridge(shell, package, config.enforcer.min_interactive_sdk),
        privileged=PrivilegedServiceBridge(shell, package),
        vendor=VendorVariantBridge(shell, package),
        ledger=AttemptLedger.from_config(config),
        device_info=lambda: read_device_info(shell),
        package=package,
        verify_delay=config.enforcer.verify_delay,
    )
