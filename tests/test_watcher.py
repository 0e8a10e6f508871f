"""Tests for the periodic watch loop."""

import asyncio
import os
import signal
from unittest.mock import MagicMock, patch

import psutil
import pytest

from battery_warden.config import Config, EnforcerConfig
from battery_warden.watcher import Watcher
from tests.conftest import FakePlatform, FakePrivileged, FakeVendor, make_engine


@pytest.fixture
def watch_config(tmp_path):
    config = MagicMock(spec=Config)
    config.pid_path = tmp_path / "run" / "watch.pid"
    config.enforcer = EnforcerConfig()
    return config


@pytest.fixture
def engine(calls, ledger):
    return make_engine(
        FakePlatform(calls, exempt=[True]), FakePrivileged(calls), FakeVendor(calls), ledger
    )


def test_interval_defaults_to_config(watch_config, engine):
    assert Watcher(watch_config, engine).interval == 15 * 60
    assert Watcher(watch_config, engine, interval_minutes=2).interval == 120


@pytest.mark.asyncio
async def test_runs_cycles_until_shutdown(watch_config, engine, calls):
    watcher = Watcher(watch_config, engine, interval_minutes=0.0005)
    seen_pid: list[str] = []

    async def stop_later():
        while watcher.cycles < 3:
            await asyncio.sleep(0.005)
        seen_pid.append(watch_config.pid_path.read_text())
        watcher.request_shutdown()

    stopper = asyncio.create_task(stop_later())
    try:
        await asyncio.wait_for(watcher.start(), timeout=5)
    finally:
        await watcher.stop()
    await stopper

    assert watcher.cycles >= 3
    assert calls.count("is_exempt") == watcher.cycles
    assert seen_pid == [str(os.getpid())]
    assert not watch_config.pid_path.exists()


@pytest.mark.asyncio
async def test_signal_stops_loop(watch_config, engine):
    watcher = Watcher(watch_config, engine, interval_minutes=10)

    async def signal_later():
        while watcher.cycles < 1:
            await asyncio.sleep(0.005)
        watcher._handle_signal(signal.SIGTERM)

    signaller = asyncio.create_task(signal_later())
    try:
        await asyncio.wait_for(watcher.start(), timeout=5)
    finally:
        await watcher.stop()
    await signaller

    assert watcher.cycles == 1


@pytest.mark.asyncio
async def test_refuses_second_instance(watch_config, engine):
    watch_config.pid_path.parent.mkdir(parents=True)
    watch_config.pid_path.write_text("4242")
    proc = MagicMock()
    proc.cmdline.return_value = ["/usr/bin/python3", "-m", "battery_warden.cli", "watch"]
    watcher = Watcher(watch_config, engine)

    with patch("battery_warden.watcher.psutil.Process", return_value=proc):
        with pytest.raises(RuntimeError, match="already running"):
            await watcher.start()
        await watcher.stop()

    assert watch_config.pid_path.read_text() == "4242"
    assert watcher.cycles == 0


class TestStalePidFile:
    def test_no_pid_file(self, watch_config, engine):
        assert Watcher(watch_config, engine)._check_already_running() is False

    def test_not_a_number(self, watch_config, engine):
        watch_config.pid_path.parent.mkdir(parents=True)
        watch_config.pid_path.write_text("garbage")
        assert Watcher(watch_config, engine)._check_already_running() is False
        assert not watch_config.pid_path.exists()

    def test_process_gone(self, watch_config, engine):
        watch_config.pid_path.parent.mkdir(parents=True)
        watch_config.pid_path.write_text("4242")
        with patch(
            "battery_warden.watcher.psutil.Process", side_effect=psutil.NoSuchProcess(4242)
        ):
            assert Watcher(watch_config, engine)._check_already_running() is False
        assert not watch_config.pid_path.exists()

    def test_pid_reused_by_other_process(self, watch_config, engine):
        watch_config.pid_path.parent.mkdir(parents=True)
        watch_config.pid_path.write_text("4242")
        proc = MagicMock()
        proc.cmdline.return_value = ["/usr/bin/vim"]
        proc.name.return_value = "vim"
        with patch("battery_warden.watcher.psutil.Process", return_value=proc):
            assert Watcher(watch_config, engine)._check_already_running() is False
        assert not watch_config.pid_path.exists()

    def test_access_denied_assumes_running(self, watch_config, engine):
        watch_config.pid_path.parent.mkdir(parents=True)
        watch_config.pid_path.write_text("1")
        with patch("battery_warden.watcher.psutil.Process", side_effect=psutil.AccessDenied(1)):
            assert Watcher(watch_config, engine)._check_already_running() is True
        assert watch_config.pid_path.exists()
