"""Periodic background enforcement for `battery-warden watch`.

Runs check_and_update_whitelist() every interval until SIGTERM/SIGINT.
Never shows UI. One watcher per host, guarded by a PID file.
"""

import asyncio
import os
import signal

import psutil
import structlog

from battery_warden import logging as console
from battery_warden.config import Config
from battery_warden.enforcer import EnforcementEngine, build_engine

log = structlog.get_logger()


class Watcher:
    """Drives the engine on a fixed period."""

    def __init__(
        self,
        config: Config,
        engine: EnforcementEngine,
        interval_minutes: float | None = None,
    ):
        self.config = config
        self.engine = engine
        self.interval = (interval_minutes or config.enforcer.watch_interval_minutes) * 60
        self.cycles = 0
        self._shutdown_event = asyncio.Event()
        self._signals_installed = False
        self._owns_pid_file = False

    async def start(self) -> None:
        """Install signal handlers, claim the PID file and loop."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
        self._signals_installed = True

        if self._check_already_running():
            log.error("watch_already_running")
            raise RuntimeError("battery-warden watch is already running")

        self._write_pid_file()
        log.info("watch_started", interval=self.interval, package=self.engine.package)
        console.watch_started(self.interval / 60)
        await self._main_loop()

    async def stop(self) -> None:
        await self.engine.wait_idle()
        if self._signals_installed:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            self._signals_installed = False
        if self._owns_pid_file:
            self._remove_pid_file()
        log.info("watch_stopped", cycles=self.cycles)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    async def _main_loop(self) -> None:
        while not self._shutdown_event.is_set():
            report = await self.engine.check_and_update_whitelist()
            self.cycles += 1
            log.info(
                "watch_cycle",
                cycle=self.cycles,
                already_exempt=report.already_exempt,
                verified=report.verified,
            )
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    def _write_pid_file(self) -> None:
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check whether the PID file names a live battery-warden process.

        A PID reused by an unrelated process after a reboot is treated as
        stale, as is a PID file that does not hold a number.
        """
        if not self.config.pid_path.exists():
            return False

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return False

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "battery-warden" in cmdline_str or "battery_warden" in cmdline_str:
                log.info("watch_already_running_verified", pid=pid)
                return True
            log.warning(
                "pid_file_stale", reason="different process", pid=pid, actual_process=proc.name()
            )
            self._remove_pid_file()
            return False
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self._remove_pid_file()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return True


async def run_watch(config: Config, interval_minutes: float | None = None) -> None:
    """Run the watcher until a shutdown signal."""
    watcher = Watcher(config, build_engine(config), interval_minutes)
    try:
        await watcher.start()
    except Exception as e:
        log.exception("watch_crashed", error=str(e))
        raise
    finally:
        await watcher.stop()
