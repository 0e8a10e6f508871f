"""Standard Android exemption query and request calls.

These are the only supported platform paths: the deviceidle whitelist dump
and the battery optimization intents. Neither blocks on the user.
"""

import structlog

from battery_warden.adb import AdbError, AdbShell
from battery_warden.outcomes import ExemptionState

log = structlog.get_logger()

ACTION_REQUEST_IGNORE = "android.settings.REQUEST_IGNORE_BATTERY_OPTIMIZATIONS"
ACTION_IGNORE_SETTINGS = "android.settings.IGNORE_BATTERY_OPTIMIZATION_SETTINGS"
ACTION_APP_DETAILS = "android.settings.APPLICATION_DETAILS_SETTINGS"

# Doze and the deviceidle service arrived in Android 6.0
DOZE_MIN_SDK = 23

EXEMPT_LIST_KINDS = ("system", "user")


def parse_whitelist(text: str) -> set[str]:
    """Parse `dumpsys deviceidle whitelist` output into exempt package names.

    Lines look like `user,info.nightscout.androidaps,10245`. Older builds
    print bare package names. `system-excidle` entries only skip idle mode
    and do not count as a battery optimization exemption.
    """
    packages = set()
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(",")
        if len(parts) == 1:
            packages.add(parts[0])
        elif parts[0] in EXEMPT_LIST_KINDS:
            packages.add(parts[1])
    return packages


def start_activity(shell: AdbShell, *am_args: str) -> bool:
    """Fire `am start` and report whether the activity manager accepted it.

    `am` exits 0 even when it cannot resolve the intent, so the output is
    checked for its error banner too.
    """
    try:
        result = shell.run("am", "start", *am_args)
    except AdbError as e:
        log.warning("activity_start_failed", args=list(am_args), error=str(e))
        return False

    output = result.stdout + result.stderr
    if not result.ok or "Error:" in output or "Exception" in output:
        log.info("activity_not_started", args=list(am_args), output=output.strip()[:200])
        return False
    return True


class PlatformServiceBridge:
    """Exemption state and standard request intents for one package."""

    def __init__(self, shell: AdbShell, package: str, min_interactive_sdk: int = 23):
        self.shell = shell
        self.package = package
        self.min_interactive_sdk = min_interactive_sdk

    def sdk_int(self) -> int:
        """Device API level, 0 when unknown."""
        try:
            return int(self.shell.getprop("ro.build.version.sdk"))
        except (AdbError, ValueError):
            return 0

    def is_exempt(self) -> bool:
        """Whether the package is on the deviceidle whitelist.

        Never raises: any failure reads as "not exempt", so the caller
        re-attempts rather than trusting a stale positive.
        """
        try:
            sdk = int(self.shell.getprop("ro.build.version.sdk"))
            if sdk < DOZE_MIN_SDK:
                return True
            result = self.shell.run("dumpsys", "deviceidle", "whitelist")
        except (AdbError, ValueError) as e:
            log.warning("exemption_check_failed", package=self.package, error=str(e))
            return False

        if not result.ok:
            log.warning("exemption_check_failed", package=self.package, stderr=result.stderr)
            return False
        return self.package in parse_whitelist(result.stdout)

    def exemption_state(self) -> ExemptionState:
        return ExemptionState.from_bool(self.is_exempt())

    def supports_interactive_request(self) -> bool:
        """Whether the device offers the per-app request dialog."""
        return self.sdk_int() >= self.min_interactive_sdk

    def request_exemption_interactive(self) -> bool:
        """Show the system "Ignore battery optimization?" dialog on the device.

        Returns once the intent is dispatched; the grant must be confirmed
        later with is_exempt().
        """
        started = start_activity(
            self.shell, "-a", ACTION_REQUEST_IGNORE, "-d", f"package:{self.package}"
        )
        log.info("interactive_request_sent", package=self.package, started=started)
        return started

    def open_exemption_settings_screen(self) -> bool:
        """Navigate to the battery optimization list, or the app details page."""
        if start_activity(self.shell, "-a", ACTION_IGNORE_SETTINGS):
            log.info("settings_opened", screen="battery_optimization")
            return True
        return self.open_app_details()

    def open_app_details(self) -> bool:
        started = start_activity(
            self.shell, "-a", ACTION_APP_DETAILS, "-d", f"package:{self.package}"
        )
        log.info("settings_opened", screen="app_details", started=started)
        return started
