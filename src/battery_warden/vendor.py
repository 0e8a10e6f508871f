"""Vendor-specific workarounds for HarmonyOS devices.

Huawei/Honor builds running HarmonyOS keep their own background-activity
list on top of Doze. The flags and services below are best-effort hints;
none of them is documented and any of them may be ignored.
"""

from enum import Enum

import structlog

from battery_warden.adb import AdbError, AdbShell
from battery_warden.binder import Available, call_service, list_services
from battery_warden.device import HARMONY_MARKER_PROP
from battery_warden.outcomes import StrategyOutcome
from battery_warden.platform_bridge import ACTION_APP_DETAILS, start_activity

log = structlog.get_logger()

VENDOR_FLAGS = (
    "sys.power.whitelist_app",
    "persist.sys.power.whitelist_app",
    "hw_power.whitelist",
    "deviceidle.whitelist",
)

VENDOR_SERVICES = (
    "deviceidle_harmony",
    "ohos.powermanager",
    "power_harmony",
)

VENDOR_DESCRIPTORS = (
    "ohos.powermanager.IDeviceIdleManager",
    "android.os.IDeviceIdleController",
    "huawei.power.IDeviceIdleController",
)

PROTECT_ACTIVITY = "com.huawei.systemmanager/.optimize.process.ProtectActivity"

_HARMONY_MAKERS = ("huawei", "honor")


class VariantId(Enum):
    """Detected vendor platform variant."""

    NONE = "none"
    HARMONY = "harmony"


class VendorVariantBridge:
    """Detection and workarounds for vendor platform variants."""

    def __init__(self, shell: AdbShell, package: str):
        self.shell = shell
        self.package = package

    def detect_variant(self) -> VariantId:
        """Detect HarmonyOS from manufacturer signals plus the HarmonyOS marker.

        A Huawei/Honor device without the marker is plain EMUI, so it
        resolves to NONE. Never raises.
        """
        try:
            manufacturer = self.shell.getprop("ro.product.manufacturer").lower()
            brand = self.shell.getprop("ro.product.brand").lower()
            if not any(m in manufacturer or m in brand for m in _HARMONY_MAKERS):
                return VariantId.NONE
            marker = self.shell.getprop(HARMONY_MARKER_PROP)
        except AdbError as e:
            log.warning("variant_detection_failed", error=str(e))
            return VariantId.NONE

        return VariantId.HARMONY if marker else VariantId.NONE

    def apply_vendor_workarounds(self, interactive: bool = False) -> StrategyOutcome:
        """Try vendor flags, then vendor services.

        Returns NOT_APPLICABLE when no variant is detected and there is no
        interactive caller to fall back to a guided prompt.
        """
        if self.detect_variant() is VariantId.NONE and not interactive:
            return StrategyOutcome.NOT_APPLICABLE

        if self._set_vendor_flags():
            return StrategyOutcome.SUCCEEDED
        if self._call_vendor_services():
            return StrategyOutcome.SUCCEEDED
        return StrategyOutcome.FAILED

    def _set_vendor_flags(self) -> bool:
        """Write every flag independently.

        True when the shell answered at all, whatever each write returned.
        """
        reachable = False
        for prop in VENDOR_FLAGS:
            try:
                result = self.shell.run("setprop", prop, self.package)
            except AdbError as e:
                log.debug("vendor_flag_unreachable", prop=prop, error=str(e))
                continue
            reachable = True
            log.debug("vendor_flag_set", prop=prop, ok=result.ok)
        log.info("vendor_flags_applied", reachable=reachable)
        return reachable

    def _call_vendor_services(self) -> bool:
        try:
            services = list_services(self.shell)
        except AdbError as e:
            log.warning("vendor_service_list_failed", error=str(e))
            return False

        for name in VENDOR_SERVICES:
            if name not in services:
                continue
            advertised = services[name]
            if advertised and advertised not in VENDOR_DESCRIPTORS:
                log.debug("vendor_descriptor_mismatch", service=name, descriptor=advertised)
                continue
            call = call_service(self.shell, name, self.package)
            if isinstance(call, Available) and call.outcome is StrategyOutcome.SUCCEEDED:
                log.info("vendor_service_accepted", service=name, descriptor=advertised)
                return True
        return False

    def open_vendor_settings_screen(self) -> bool:
        """Open the app launch manager, or the app details page."""
        if start_activity(self.shell, "-n", PROTECT_ACTIVITY):
            log.info("settings_opened", screen="vendor_launch_manager")
            return True
        return start_activity(
            self.shell,
            "-a",
            ACTION_APP_DETAILS,
            "-d",
            f"package:{self.package}",
        )
