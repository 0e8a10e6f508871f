"""Device identity signals read via getprop."""

from dataclasses import dataclass

import structlog

from battery_warden.adb import AdbError, AdbShell

log = structlog.get_logger()

# Set on HarmonyOS builds only; Android-based EMUI leaves it empty
HARMONY_MARKER_PROP = "hw_sc.build.platform.version"


@dataclass(frozen=True)
class DeviceInfo:
    """Manufacturer/model/OS signals for one device."""

    manufacturer: str = "unknown"
    brand: str = "unknown"
    model: str = "unknown"
    release: str = "unknown"
    sdk: int = 0
    harmony_version: str = ""

    @property
    def label(self) -> str:
        return f"{self.manufacturer} {self.model}"

    @property
    def android(self) -> str:
        return f"Android {self.release} (SDK {self.sdk})"


def _parse_sdk(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def read_device_info(shell: AdbShell) -> DeviceInfo:
    """Read DeviceInfo from the attached device.

    Returns a DeviceInfo of "unknown" fields if the device cannot be reached.
    """
    try:
        return DeviceInfo(
            manufacturer=shell.getprop("ro.product.manufacturer") or "unknown",
            brand=shell.getprop("ro.product.brand") or "unknown",
            model=shell.getprop("ro.product.model") or "unknown",
            release=shell.getprop("ro.build.version.release") or "unknown",
            sdk=_parse_sdk(shell.getprop("ro.build.version.sdk")),
            harmony_version=shell.getprop(HARMONY_MARKER_PROP),
        )
    except AdbError as e:
        log.warning("device_info_unavailable", error=str(e))
        return DeviceInfo()
