"""Configuration system for battery-warden."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class DeviceConfig:
    """Target device and adb configuration."""

    package: str = "info.nightscout.androidaps"  # Package kept out of Doze
    serial: str = ""  # adb -s serial; empty means the only attached device
    adb_path: str = "adb"
    adb_timeout: float = 10.0  # Seconds before an adb call is abandoned


@dataclass
class EnforcerConfig:
    """Cascade, verification and interruption budget configuration.

    Budgets cap how many times each prompt is shown over the lifetime of
    the ledger. Once spent, the engine acts silently (opens settings
    directly, or skips the warning).
    """

    verify_delay: float = 2.0  # Seconds before re-checking the exemption
    history_limit: int = 10  # Attempt lines kept in attempt_history
    min_interactive_sdk: int = 23  # REQUEST_IGNORE_BATTERY_OPTIMIZATIONS needs M+
    standard_dialog_max: int = 2
    vendor_guide_max: int = 2
    critical_warning_max: int = 1
    watch_interval_minutes: float = 15.0  # Period for `battery-warden watch`


@dataclass
class SystemConfig:
    """Logging configuration."""

    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    device: DeviceConfig = field(default_factory=DeviceConfig)
    enforcer: EnforcerConfig = field(default_factory=EnforcerConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "battery-warden"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "battery-warden"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "battery-warden"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the watch PID file, cleared on reboot."""
        return Path("/tmp/battery-warden")

    @property
    def db_path(self) -> Path:
        """Ledger database path."""
        return self.data_dir / "ledger.db"

    @property
    def log_path(self) -> Path:
        """JSON log path.

        Logs are expendable persistent state, so they go in XDG_STATE_HOME.
        """
        return self.state_dir / "enforcer.log"

    @property
    def pid_path(self) -> Path:
        """PID file for `battery-warden watch`."""
        return self.runtime_dir / "watch.pid"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("device", "enforcer", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions so that Config()
        and Config.load() agree.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        system_data = data.get("system", {})
        sys_defaults = defaults.system

        return cls(
            device=_load_device_config(data.get("device", {})),
            enforcer=_load_enforcer_config(data.get("enforcer", {})),
            system=SystemConfig(
                log_max_bytes=system_data.get("log_max_bytes", sys_defaults.log_max_bytes),
                log_backup_count=system_data.get("log_backup_count", sys_defaults.log_backup_count),
            ),
        )


def _load_device_config(data: dict) -> DeviceConfig:
    """Load device config from TOML data."""
    d = DeviceConfig()
    package = data.get("package", d.package)
    if not package or " " in package:
        raise ValueError(f"Invalid package name: {package!r}")

    adb_timeout = data.get("adb_timeout", d.adb_timeout)
    if adb_timeout <= 0:
        raise ValueError(f"adb_timeout must be > 0, got {adb_timeout}")

    return DeviceConfig(
        package=str(package),
        serial=str(data.get("serial", d.serial)),
        adb_path=str(data.get("adb_path", d.adb_path)),
        adb_timeout=adb_timeout,
    )


def _load_enforcer_config(data: dict) -> EnforcerConfig:
    """Load enforcer config from TOML data, using dataclass defaults for missing fields."""
    d = EnforcerConfig()

    verify_delay = data.get("verify_delay", d.verify_delay)
    history_limit = data.get("history_limit", d.history_limit)
    watch_interval = data.get("watch_interval_minutes", d.watch_interval_minutes)

    if verify_delay < 0:
        raise ValueError(f"verify_delay must be >= 0, got {verify_delay}")
    if history_limit < 1:
        raise ValueError(f"history_limit must be >= 1, got {history_limit}")
    if watch_interval <= 0:
        raise ValueError(f"watch_interval_minutes must be > 0, got {watch_interval}")

    budgets = {
        name: data.get(name, getattr(d, name))
        for name in ("standard_dialog_max", "vendor_guide_max", "critical_warning_max")
    }
    for name, value in budgets.items():
        if value < 0:
            raise ValueError(f"{name} must be >= 0, got {value}")

    return EnforcerConfig(
        verify_delay=verify_delay,
        history_limit=history_limit,
        min_interactive_sdk=data.get("min_interactive_sdk", d.min_interactive_sdk),
        watch_interval_minutes=watch_interval,
        **budgets,
    )
