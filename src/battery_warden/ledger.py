"""SQLite-backed attempt ledger for battery-warden.

The ledger is a small key/value store. Each public write is one
`BEGIN IMMEDIATE` transaction, so a concurrent reader never sees half of a
cascade's bookkeeping, and two cascades finishing together cannot lose an
update.
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Generator

import structlog

from battery_warden.outcomes import ExemptionState

if TYPE_CHECKING:
    from battery_warden.config import Config
    from battery_warden.device import DeviceInfo

log = structlog.get_logger()

SCHEMA_VERSION = 2  # ledger_state key/value table

# Seconds to wait on a locked database
BUSY_TIMEOUT = 5.0
# Prompt counters are read and written on the event loop thread
COUNTER_BUSY_TIMEOUT = 0.25

SCHEMA = """
CREATE TABLE IF NOT EXISTS ledger_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);
"""


class InterruptionKind(Enum):
    """User interruptions with a lifetime budget. Values are the ledger keys."""

    STANDARD_DIALOG = "standard_dialog_shown"
    VENDOR_GUIDE = "vendor_guide_shown"
    CRITICAL_WARNING = "critical_warning_shown"


DEFAULT_BUDGETS = {
    InterruptionKind.STANDARD_DIALOG: 2,
    InterruptionKind.VENDOR_GUIDE: 2,
    InterruptionKind.CRITICAL_WARNING: 1,
}


@dataclass(frozen=True)
class AttemptRecord:
    """Outcome of one full cascade run."""

    timestamp: datetime
    outcome: bool
    strategy_used: str

    def format(self) -> str:
        """Render as an attempt_history line, e.g. `[10-19 14:03] SUCCESS`."""
        status = "SUCCESS" if self.outcome else "FAILED"
        return f"[{self.timestamp:%m-%d %H:%M}] {status}"


@dataclass(frozen=True)
class LedgerSnapshot:
    """Everything the ledger holds, read in one transaction."""

    total_attempts: int = 0
    successful_attempts: int = 0
    last_attempt_time: datetime | None = None
    last_success: bool = False
    last_strategy: str = ""
    last_status_log: str = ""
    last_status_check: datetime | None = None
    last_known_state: ExemptionState | None = None
    history: tuple[str, ...] = ()
    shown: dict[InterruptionKind, int] = field(default_factory=dict)


def init_database(db_path: Path) -> None:
    """Initialize database with WAL mode and schema.

    A database with a different schema version, or one that is not an
    SQLite file, is deleted and recreated. A database that is only busy is
    left alone and the error propagates.
    No migrations: the ledger is diagnostics plus prompt counters.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists():
        conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT)
        try:
            existing_version = get_schema_version(conn)
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                log.warning("ledger_busy", path=str(db_path), error=str(e))
                raise
            existing_version = 0
        except sqlite3.DatabaseError as e:
            log.warning("ledger_unreadable", path=str(db_path), error=str(e))
            existing_version = 0
        finally:
            conn.close()
        if existing_version == SCHEMA_VERSION:
            return
        log.info(
            "schema_mismatch",
            existing=existing_version,
            expected=SCHEMA_VERSION,
            action="recreate",
        )
        _remove_database(db_path)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.executescript(SCHEMA)
        conn.execute(
            "INSERT OR REPLACE INTO ledger_state (key, value, updated_at) VALUES (?, ?, ?)",
            ("schema_version", str(SCHEMA_VERSION), time.time()),
        )
        conn.commit()
        log.info("database_initialized", path=str(db_path), version=SCHEMA_VERSION)
    finally:
        conn.close()


def _remove_database(db_path: Path) -> None:
    db_path.unlink()
    for suffix in (".db-wal", ".db-shm"):
        sidecar = db_path.with_suffix(suffix)
        if sidecar.exists():
            sidecar.unlink()


def _is_busy(error: sqlite3.OperationalError) -> bool:
    code = getattr(error, "sqlite_errorcode", None)
    if code is None:
        return "locked" in str(error) or "busy" in str(error)
    return (code & 0xFF) in (sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED)


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version, 0 when the ledger table is missing."""
    try:
        row = conn.execute(
            "SELECT value FROM ledger_state WHERE key = 'schema_version'"
        ).fetchone()
    except sqlite3.OperationalError as e:
        if "no such table" in str(e):
            return 0
        raise
    return int(row[0]) if row else 0


def _to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_millis(value: str | None) -> datetime | None:
    if not value or value == "0":
        return None
    return datetime.fromtimestamp(int(value) / 1000)


def format_status_log(
    state: ExemptionState, device_info: "DeviceInfo", package: str, now: datetime
) -> str:
    """Multi-line status text stored as last_status_log."""
    lines = [
        "=== Battery whitelist status ===",
        f"Time: {now:%Y-%m-%d %H:%M:%S}",
        f"Package: {package}",
        f"Manufacturer: {device_info.manufacturer}",
        f"Model: {device_info.model}",
        f"Android: {device_info.release} (SDK {device_info.sdk})",
        f"HarmonyOS: {'yes' if device_info.harmony_version else 'no'}",
        f"Exempt: {'yes' if state is ExemptionState.GRANTED else 'no'}",
    ]
    return "\n".join(lines)


class AttemptLedger:
    """Persisted attempt counters, rolling history and prompt budgets."""

    def __init__(
        self,
        db_path: Path,
        history_limit: int = 10,
        budgets: dict[InterruptionKind, int] | None = None,
        package: str = "",
    ):
        self.db_path = db_path
        self.history_limit = history_limit
        self.budgets = {**DEFAULT_BUDGETS, **(budgets or {})}
        self.package = package
        self._lock = threading.Lock()
        init_database(db_path)

    @classmethod
    def from_config(cls, config: "Config") -> "AttemptLedger":
        enforcer = config.enforcer
        return cls(
            config.db_path,
            history_limit=enforcer.history_limit,
            budgets={
                InterruptionKind.STANDARD_DIALOG: enforcer.standard_dialog_max,
                InterruptionKind.VENDOR_GUIDE: enforcer.vendor_guide_max,
                InterruptionKind.CRITICAL_WARNING: enforcer.critical_warning_max,
            },
            package=config.device.package,
        )

    @contextmanager
    def _transaction(
        self, timeout: float = BUSY_TIMEOUT
    ) -> Generator[sqlite3.Connection, None, None]:
        """Read-modify-write under the process lock and a write-locked transaction."""
        with self._lock:
            conn = sqlite3.connect(self.db_path, timeout=timeout, isolation_level=None)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    @contextmanager
    def _reader(self, timeout: float = BUSY_TIMEOUT) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self.db_path, timeout=timeout)
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _get(conn: sqlite3.Connection, key: str) -> str | None:
        row = conn.execute("SELECT value FROM ledger_state WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    @staticmethod
    def _get_int(conn: sqlite3.Connection, key: str) -> int:
        value = AttemptLedger._get(conn, key)
        return int(value) if value else 0

    @staticmethod
    def _put(conn: sqlite3.Connection, values: dict[str, object]) -> None:
        now = time.time()
        conn.executemany(
            "INSERT OR REPLACE INTO ledger_state (key, value, updated_at) VALUES (?, ?, ?)",
            [(key, str(value), now) for key, value in values.items()],
        )

    def record_attempt(
        self, outcome: bool, strategy_used: str = "none", now: datetime | None = None
    ) -> AttemptRecord:
        """Count one cascade run and prepend it to the bounded history."""
        record = AttemptRecord(now or datetime.now(), outcome, strategy_used)
        with self._transaction() as conn:
            total = self._get_int(conn, "total_attempts") + 1
            successful = self._get_int(conn, "successful_attempts") + (1 if outcome else 0)
            history = (self._get(conn, "attempt_history") or "").split("\n")
            lines = [record.format()] + [line for line in history if line.strip()]
            self._put(
                conn,
                {
                    "total_attempts": total,
                    "successful_attempts": successful,
                    "attempt_history": "\n".join(lines[: self.history_limit]),
                    "last_attempt": _to_millis(record.timestamp),
                    "last_success": int(outcome),
                    "last_strategy": strategy_used,
                },
            )
        log.info(
            "attempt_recorded",
            outcome=outcome,
            strategy=strategy_used,
            total=total,
            successful=successful,
        )
        return record

    def record_status_snapshot(
        self, state: ExemptionState, device_info: "DeviceInfo", now: datetime | None = None
    ) -> None:
        """Persist the post-verification status. Diagnostics only."""
        moment = now or datetime.now()
        with self._transaction() as conn:
            self._put(
                conn,
                {
                    "last_status_log": format_status_log(
                        state, device_info, self.package, moment
                    ),
                    "last_status_check": _to_millis(moment),
                    "last_in_whitelist": int(state is ExemptionState.GRANTED),
                },
            )

    def shown_count(self, kind: InterruptionKind) -> int:
        with self._reader(COUNTER_BUSY_TIMEOUT) as conn:
            return self._get_int(conn, kind.value)

    def limit(self, kind: InterruptionKind) -> int:
        return self.budgets[kind]

    def should_show(self, kind: InterruptionKind) -> bool:
        """Whether the prompt of this kind still has budget. No side effects."""
        return self.shown_count(kind) < self.budgets[kind]

    def mark_shown(self, kind: InterruptionKind) -> int:
        """Count one displayed prompt. Returns the new count."""
        with self._transaction(COUNTER_BUSY_TIMEOUT) as conn:
            count = self._get_int(conn, kind.value) + 1
            self._put(conn, {kind.value: count})
        log.info("prompt_shown", kind=kind.name.lower(), count=count, limit=self.budgets[kind])
        return count

    def reset_prompts(self) -> None:
        """Zero every shown-counter, restoring the full prompt budget."""
        with self._transaction() as conn:
            self._put(conn, {kind.value: 0 for kind in InterruptionKind})
        log.info("prompts_reset")

    def history(self) -> list[str]:
        """Attempt history lines, most recent first."""
        with self._reader() as conn:
            text = self._get(conn, "attempt_history") or ""
        return [line for line in text.split("\n") if line]

    def snapshot(self) -> LedgerSnapshot:
        with self._reader() as conn:
            rows = dict(conn.execute("SELECT key, value FROM ledger_state").fetchall())

        in_whitelist = rows.get("last_in_whitelist")
        history = rows.get("attempt_history") or ""
        return LedgerSnapshot(
            total_attempts=int(rows.get("total_attempts") or 0),
            successful_attempts=int(rows.get("successful_attempts") or 0),
            last_attempt_time=_from_millis(rows.get("last_attempt")),
            last_success=rows.get("last_success") == "1",
            last_strategy=rows.get("last_strategy") or "",
            last_status_log=rows.get("last_status_log") or "",
            last_status_check=_from_millis(rows.get("last_status_check")),
            last_known_state=(
                None if in_whitelist is None else ExemptionState.from_bool(in_whitelist == "1")
            ),
            history=tuple(line for line in history.split("\n") if line),
            shown={kind: int(rows.get(kind.value) or 0) for kind in InterruptionKind},
        )
