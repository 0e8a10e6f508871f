"""Silent, unsupported whitelist request against the deviceidle service."""

import structlog

from battery_warden.adb import AdbError, AdbShell
from battery_warden.binder import Available, call_service, service_exists
from battery_warden.outcomes import StrategyOutcome

log = structlog.get_logger()

DEVICEIDLE_SERVICE = "deviceidle"


class PrivilegedServiceBridge:
    """Calls addPowerSaveWhitelistApp directly, with no UI.

    Works only where the shell user may talk to deviceidle; locked-down
    vendor builds reject the transaction. SUCCEEDED means the request was
    accepted, not that the exemption is in place.
    """

    def __init__(self, shell: AdbShell, package: str):
        self.shell = shell
        self.package = package

    def request_exemption_silently(self) -> StrategyOutcome:
        try:
            if not service_exists(self.shell, DEVICEIDLE_SERVICE):
                log.info("privileged_service_missing", service=DEVICEIDLE_SERVICE)
                return StrategyOutcome.FAILED
        except AdbError as e:
            log.warning("privileged_lookup_failed", error=str(e))
            return StrategyOutcome.FAILED

        call = call_service(self.shell, DEVICEIDLE_SERVICE, self.package)
        if isinstance(call, Available):
            log.info("privileged_request", package=self.package, outcome=call.outcome.value)
            return call.outcome

        log.info("privileged_service_unavailable", reason=call.reason)
        return StrategyOutcome.FAILED
