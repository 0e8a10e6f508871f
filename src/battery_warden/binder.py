"""Raw binder transactions through the `service` shell tool.

`service call <name> <code> s16 <arg>` writes the service's own interface
token followed by the UTF-16 argument, and prints the reply parcel. A reply
whose first word is zero carried no exception.
"""

import re
from dataclasses import dataclass

import structlog

from battery_warden.adb import AdbError, AdbShell
from battery_warden.outcomes import StrategyOutcome

log = structlog.get_logger()

# IBinder.FIRST_CALL_TRANSACTION; addPowerSaveWhitelistApp on IDeviceIdleController
FIRST_CALL_TRANSACTION = 1

# Short replies print the status word inline; longer ones as a hex dump
# starting "0x00000000: <status> ..."
_REPLY_RE = re.compile(r"Result:\s*Parcel\(\s*(?:0x[0-9a-fA-F]+:\s*)?([0-9a-fA-F]{8})")
# `service list` line: "12\tdeviceidle: [android.os.IDeviceIdleController]"
_LIST_RE = re.compile(r"^\s*\d+\s+([^:\s]+):\s*\[(.*)\]\s*$")


@dataclass(frozen=True)
class Available:
    """The service answered; outcome says whether it accepted the call."""

    outcome: StrategyOutcome
    reply: str = ""


@dataclass(frozen=True)
class Unavailable:
    """The service could not be reached at all."""

    reason: str


ServiceCall = Available | Unavailable


def parse_reply_status(text: str) -> int | None:
    """Return the reply parcel's status word, or None if there is no reply."""
    match = _REPLY_RE.search(text)
    if match is None:
        return None
    return int(match.group(1), 16)


def parse_service_list(text: str) -> dict[str, str]:
    """Map service name to its advertised interface descriptor."""
    services = {}
    for line in text.splitlines():
        match = _LIST_RE.match(line)
        if match:
            services[match.group(1)] = match.group(2).strip()
    return services


def service_exists(shell: AdbShell, name: str) -> bool:
    """Look up a service with `service check`."""
    result = shell.run("service", "check", name)
    return result.ok and "not found" not in result.stdout and ": found" in result.stdout


def list_services(shell: AdbShell) -> dict[str, str]:
    return parse_service_list(shell.run("service", "list").stdout)


def call_service(
    shell: AdbShell, name: str, package: str, code: int = FIRST_CALL_TRANSACTION
) -> ServiceCall:
    """Send one transaction carrying the package name.

    Never raises: an unreachable shell or missing service is Unavailable, a
    rejected transaction is Available(FAILED).
    """
    try:
        result = shell.run("service", "call", name, str(code), "s16", package)
    except AdbError as e:
        return Unavailable(str(e))

    reply = result.stdout.strip()
    status = parse_reply_status(reply)
    if status is None:
        return Unavailable(reply or result.stderr.strip() or "no reply")
    if status != 0:
        log.info("transaction_rejected", service=name, status=f"{status:08x}")
        return Available(StrategyOutcome.FAILED, reply)
    return Available(StrategyOutcome.SUCCEEDED, reply)
