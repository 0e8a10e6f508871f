"""Shared test fixtures for battery-warden."""

from pathlib import Path

import pytest

from battery_warden.adb import AdbResult
from battery_warden.device import DeviceInfo
from battery_warden.enforcer import EnforcementEngine
from battery_warden.ledger import AttemptLedger
from battery_warden.outcomes import StrategyOutcome
from battery_warden.presenter import Prompt
from battery_warden.vendor import VariantId

PACKAGE = "info.nightscout.androidaps"


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "ledger.db"


@pytest.fixture
def ledger(tmp_db: Path) -> AttemptLedger:
    return AttemptLedger(tmp_db, package=PACKAGE)


@pytest.fixture
def calls() -> list[str]:
    """Call log shared by every fake bridge, in invocation order."""
    return []


def adb_result(stdout: str = "", returncode: int = 0, stderr: str = "") -> AdbResult:
    """Create an AdbResult for testing."""
    return AdbResult(args=["adb", "shell"], returncode=returncode, stdout=stdout, stderr=stderr)


class FakeShell:
    """AdbShell stand-in answering from a command → reply table."""

    def __init__(
        self,
        replies: dict[str, str | Exception] | None = None,
        props: dict[str, str | Exception] | None = None,
    ):
        self.replies = replies or {}
        self.props = props or {}
        self.commands: list[tuple[str, ...]] = []

    def run(self, *command: str) -> AdbResult:
        self.commands.append(command)
        for prefix, reply in self.replies.items():
            if " ".join(command).startswith(prefix):
                if isinstance(reply, Exception):
                    raise reply
                return adb_result(reply)
        return adb_result()

    def getprop(self, name: str) -> str:
        self.commands.append(("getprop", name))
        value = self.props.get(name, "")
        if isinstance(value, Exception):
            raise value
        return value


class FakePlatform:
    """Scripted PlatformServiceBridge.

    exempt is a sequence consumed one value per is_exempt() call; the last
    value repeats.
    """

    def __init__(
        self,
        calls: list[str],
        exempt: list[bool] | None = None,
        supports_interactive: bool = True,
        request_starts: bool = True,
        settings_opens: bool = True,
    ):
        self.calls = calls
        self.exempt = list(exempt or [False])
        self.supports_interactive = supports_interactive
        self.request_starts = request_starts
        self.settings_opens = settings_opens

    def is_exempt(self) -> bool:
        self.calls.append("is_exempt")
        if len(self.exempt) > 1:
            return self.exempt.pop(0)
        return self.exempt[0]

    def supports_interactive_request(self) -> bool:
        self.calls.append("supports_interactive")
        return self.supports_interactive

    def request_exemption_interactive(self) -> bool:
        self.calls.append("request_interactive")
        return self.request_starts

    def open_exemption_settings_screen(self) -> bool:
        self.calls.append("open_settings")
        return self.settings_opens


class FakePrivileged:
    def __init__(self, calls: list[str], outcome: StrategyOutcome = StrategyOutcome.FAILED):
        self.calls = calls
        self.outcome = outcome

    def request_exemption_silently(self) -> StrategyOutcome:
        self.calls.append("privileged")
        return self.outcome


class FakeVendor:
    def __init__(
        self,
        calls: list[str],
        variant: VariantId = VariantId.NONE,
        outcome: StrategyOutcome = StrategyOutcome.FAILED,
        settings_opens: bool = True,
    ):
        self.calls = calls
        self.variant = variant
        self.outcome = outcome
        self.settings_opens = settings_opens

    def detect_variant(self) -> VariantId:
        self.calls.append("detect_variant")
        return self.variant

    def apply_vendor_workarounds(self, interactive: bool = False) -> StrategyOutcome:
        self.calls.append("apply_vendor")
        return self.outcome

    def open_vendor_settings_screen(self) -> bool:
        self.calls.append("open_vendor_settings")
        return self.settings_opens


class FakePresenter:
    """Presenter that records prompts and toasts instead of drawing them."""

    def __init__(self, available: bool = True, shows: bool = True):
        self.available = available
        self.shows = shows
        self.prompts: list[Prompt] = []
        self.toasts: list[str] = []

    def present_choice(self, prompt: Prompt) -> bool:
        if not self.available or not self.shows:
            return False
        self.prompts.append(prompt)
        return True

    def toast(self, message: str) -> None:
        self.toasts.append(message)


def make_engine(
    platform: FakePlatform,
    privileged: FakePrivileged,
    vendor: FakeVendor,
    ledger: AttemptLedger,
    **kwargs,
) -> EnforcementEngine:
    """Create an engine over fakes with no verification delay."""
    return EnforcementEngine(
        platform=platform,
        privileged=privileged,
        vendor=vendor,
        ledger=ledger,
        device_info=lambda: DeviceInfo(manufacturer="Google", model="Pixel 7", sdk=34),
        package=PACKAGE,
        verify_delay=0,
        **kwargs,
    )
