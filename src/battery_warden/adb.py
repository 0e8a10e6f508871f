"""Thin adb shell runner shared by the device bridges.

Every call that has to reach the phone goes through AdbShell.run(). Nothing
here interprets output; the bridges decide what a reply means.
"""

import shlex
import subprocess
from dataclasses import dataclass

import structlog

from battery_warden.config import DeviceConfig

log = structlog.get_logger()


class AdbError(Exception):
    """Raised when adb itself cannot deliver a command to the device."""


@dataclass(frozen=True)
class AdbResult:
    """Completed `adb shell` invocation."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


# adb prints these on stderr when no device answered the command
_DEVICE_ERRORS = (
    "no devices/emulators found",
    "device offline",
    "device unauthorized",
    "more than one device/emulator",
)


class AdbShell:
    """Runs `adb [-s serial] shell ...` with a timeout."""

    def __init__(self, adb_path: str = "adb", serial: str = "", timeout: float = 10.0):
        self.adb_path = adb_path
        self.serial = serial
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: DeviceConfig) -> "AdbShell":
        return cls(adb_path=config.adb_path, serial=config.serial, timeout=config.adb_timeout)

    def _base_args(self) -> list[str]:
        args = [self.adb_path]
        if self.serial:
            args += ["-s", self.serial]
        return args

    def run(self, *command: str) -> AdbResult:
        """Run a shell command on the device.

        A non-zero exit status from the device command is returned, not
        raised: `service check` and `am start` report refusals that way.

        Raises:
            AdbError: adb is missing, timed out, or no device answered.
        """
        args = self._base_args() + ["shell", shlex.join(command)]
        try:
            completed = subprocess.run(
                args,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise AdbError(f"adb not found at {self.adb_path!r}") from e
        except subprocess.TimeoutExpired as e:
            raise AdbError(f"adb timed out after {self.timeout}s: {command[0]}") from e

        stderr = completed.stderr or ""
        lowered = stderr.lower()
        if any(marker in lowered for marker in _DEVICE_ERRORS):
            raise AdbError(stderr.strip())

        log.debug("adb_shell", cmd=command[0], returncode=completed.returncode)
        return AdbResult(
            args=args,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=stderr,
        )

    def getprop(self, name: str) -> str:
        """Read one system property. Empty string when unset."""
        return self.run("getprop", name).stdout.strip()
