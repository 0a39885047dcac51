"""Monitor store — SQLite tables for accounts, monitors and check results.

Owns the schema and the CRUD surface used by the request/response layer.
The two privileged mutations (claim and reconcile) live in
``pulsecheck.scheduling`` and run through :meth:`MonitorStore.transaction`.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from pulsecheck.config import settings
from pulsecheck.errors import ConflictError, NotFoundError, UnexpectedError, ValidationError

logger = logging.getLogger(__name__)

MIN_FREQUENCY = 1
MAX_FREQUENCY = 1440  # one day
MAX_URL_LENGTH = 255
MAX_LABEL_LENGTH = 190

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC ISO string, so lexical order == chronological order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


# ── Input normalisation ──────────────────────────────────────────────────────


def validate_url(url: str | None) -> str:
    """Trim and validate a monitor URL. Returns the trimmed URL."""
    url = (url or "").strip()
    if not url:
        raise ValidationError("URL is required.")
    try:
        _URL_ADAPTER.validate_python(url)
    except PydanticValidationError:
        raise ValidationError("Please provide a valid URL (including https://).")
    if len(url) > MAX_URL_LENGTH:
        raise ValidationError(f"URL is too long (max {MAX_URL_LENGTH} characters).")
    return url


def normalize_label(label: str | None) -> str | None:
    label = (label or "").strip()
    if not label:
        return None
    if len(label) > MAX_LABEL_LENGTH:
        raise ValidationError(f"Label is too long (max {MAX_LABEL_LENGTH} characters).")
    return label


def clamp_frequency(frequency_minutes: Any) -> int:
    """Clamp to [1, 1440]. None falls back to the configured default."""
    if frequency_minutes is None:
        frequency_minutes = settings.default_frequency_minutes
    if isinstance(frequency_minutes, bool):
        raise ValidationError("Frequency must be a whole number of minutes.")
    try:
        value = int(frequency_minutes)
    except (TypeError, ValueError):
        raise ValidationError("Frequency must be a whole number of minutes.")
    return max(MIN_FREQUENCY, min(MAX_FREQUENCY, value))


# ── Rows ─────────────────────────────────────────────────────────────────────


@dataclass
class Monitor:
    """A user-owned URL under periodic health observation."""

    id: int
    owner_id: int
    url: str
    frequency_minutes: int
    label: str | None = None
    next_check_at: datetime | None = None
    in_progress: bool = False
    claimed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    owner_email: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Monitor":
        keys = row.keys()
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            url=row["url"],
            frequency_minutes=row["frequency_minutes"],
            label=row["label"],
            next_check_at=from_db_time(row["next_check_at"]),
            in_progress=bool(row["in_progress"]),
            claimed_at=from_db_time(row["claimed_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            owner_email=row["owner_email"] if "owner_email" in keys else None,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        for key in ("next_check_at", "claimed_at", "created_at", "updated_at"):
            if d[key] is not None:
                d[key] = d[key].isoformat()
        return d


@dataclass
class CheckResultRecord:
    """One stored probe outcome."""

    id: int
    monitor_id: int
    checked_at: datetime
    http_code: int | None = None
    error_message: str | None = None
    response_time_ms: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CheckResultRecord":
        return cls(
            id=row["id"],
            monitor_id=row["monitor_id"],
            checked_at=from_db_time(row["checked_at"]),
            http_code=row["http_code"],
            error_message=row["error_message"],
            response_time_ms=row["response_time_ms"],
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["checked_at"] = self.checked_at.isoformat()
        return d


@dataclass
class Account:
    id: int
    email: str
    created_at: datetime | None = None


# ── Store ────────────────────────────────────────────────────────────────────


class MonitorStore:
    """SQLite-backed monitor storage.

    Every call opens its own connection, so one store can be shared by the
    API workers and any number of in-process pollers.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        clock: Clock | None = None,
        busy_timeout: float | None = None,
    ) -> None:
        self._db_path = Path(db_path or settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or utcnow
        self._busy_timeout = busy_timeout if busy_timeout is not None else settings.busy_timeout
        self._init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def now(self) -> datetime:
        return self._clock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    email       TEXT NOT NULL UNIQUE,
                    created_at  TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS monitors (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id           INTEGER NOT NULL
                                       REFERENCES accounts (id) ON DELETE CASCADE,
                    label              TEXT,
                    url                TEXT NOT NULL,
                    frequency_minutes  INTEGER NOT NULL,
                    next_check_at      TEXT,
                    in_progress        INTEGER NOT NULL DEFAULT 0,
                    claimed_at         TEXT,
                    created_at         TEXT NOT NULL,
                    updated_at         TEXT NOT NULL,
                    UNIQUE (owner_id, url)
                );

                CREATE INDEX IF NOT EXISTS idx_monitors_due
                    ON monitors (in_progress, next_check_at);

                CREATE INDEX IF NOT EXISTS idx_monitors_owner
                    ON monitors (owner_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS check_results (
                    id                INTEGER PRIMARY KEY AUTOINCREMENT,
                    monitor_id        INTEGER NOT NULL
                                      REFERENCES monitors (id) ON DELETE CASCADE,
                    http_code         INTEGER,
                    error_message     TEXT,
                    response_time_ms  REAL,
                    checked_at        TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_results_monitor
                    ON check_results (monitor_id, checked_at DESC);
            """)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction: BEGIN IMMEDIATE, commit on success, rollback on error.

        Integrity violations propagate unchanged so callers can map them;
        any other sqlite3 failure is logged and surfaced as UnexpectedError.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.exception("Storage failure on %s", self._db_path)
            raise UnexpectedError(f"Storage failure: {e}") from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as e:
            logger.exception("Storage read failure on %s", self._db_path)
            raise UnexpectedError(f"Storage failure: {e}") from e
        finally:
            conn.close()

    # ── Accounts ──────────────────────────────────────────────────────────

    def create_account(self, email: str) -> Account:
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise ValidationError("A valid email is required.")
        now = self.now()
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO accounts (email, created_at) VALUES (?, ?)",
                    (email, to_db_time(now)),
                )
        except sqlite3.IntegrityError:
            raise ConflictError(f"An account for {email} already exists.")
        return Account(id=cursor.lastrowid, email=email, created_at=now)

    def get_account(self, account_id: int) -> Account | None:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        if not row:
            return None
        return Account(id=row["id"], email=row["email"], created_at=from_db_time(row["created_at"]))

    def find_account(self, email: str) -> Account | None:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE email = ?", ((email or "").strip().lower(),)
            ).fetchone()
        if not row:
            return None
        return Account(id=row["id"], email=row["email"], created_at=from_db_time(row["created_at"]))

    # ── Monitor CRUD ──────────────────────────────────────────────────────

    def create_monitor(
        self,
        owner_id: int,
        url: str,
        label: str | None = None,
        frequency_minutes: int | None = None,
    ) -> Monitor:
        """Validate and insert a monitor, first due one period from now."""
        url = validate_url(url)
        label = normalize_label(label)
        frequency = clamp_frequency(frequency_minutes)

        now = self.now()
        stamp = to_db_time(now)
        next_check = to_db_time(now + timedelta(minutes=frequency))
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO monitors (owner_id, label, url, frequency_minutes, "
                    "next_check_at, in_progress, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, 0, ?, ?)",
                    (owner_id, label, url, frequency, next_check, stamp, stamp),
                )
        except sqlite3.IntegrityError as e:
            raise self._map_integrity(e, owner_id, url)

        monitor_id = cursor.lastrowid
        logger.info("Monitor created: %s (id=%d, owner=%d, every %dm)", url, monitor_id, owner_id, frequency)
        return self._require(monitor_id)

    def update_monitor(
        self,
        monitor_id: int,
        owner_id: int,
        url: str,
        label: str | None = None,
        frequency_minutes: int | None = None,
    ) -> Monitor:
        """Overwrite monitor fields. An already-scheduled due time is kept."""
        url = validate_url(url)
        label = normalize_label(label)
        frequency = clamp_frequency(frequency_minutes)

        now = self.now()
        next_check = to_db_time(now + timedelta(minutes=frequency))
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    "UPDATE monitors SET owner_id = ?, label = ?, url = ?, "
                    "frequency_minutes = ?, "
                    "next_check_at = COALESCE(next_check_at, ?), "
                    "updated_at = ? "
                    "WHERE id = ?",
                    (owner_id, label, url, frequency, next_check, to_db_time(now), monitor_id),
                )
        except sqlite3.IntegrityError as e:
            raise self._map_integrity(e, owner_id, url)

        if cursor.rowcount == 0:
            raise NotFoundError("Monitor not found.")
        logger.info("Monitor updated: %s (id=%d)", url, monitor_id)
        return self._require(monitor_id)

    def delete_monitor(self, monitor_id: int) -> None:
        """Delete a monitor; its check results go with it."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM monitors WHERE id = ?", (monitor_id,))
        if cursor.rowcount == 0:
            raise NotFoundError("Monitor not found.")
        logger.info("Monitor deleted: id=%d", monitor_id)

    def get_monitor(self, monitor_id: int) -> Monitor | None:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT m.*, a.email AS owner_email FROM monitors m "
                "JOIN accounts a ON a.id = m.owner_id "
                "WHERE m.id = ?",
                (monitor_id,),
            ).fetchone()
        return Monitor.from_row(row) if row else None

    def list_monitors(self, owner_id: int, is_admin: bool = False) -> list[Monitor]:
        """Admins see every monitor grouped by owner; others see their own."""
        with self._reader() as conn:
            if is_admin:
                rows = conn.execute(
                    "SELECT m.*, a.email AS owner_email FROM monitors m "
                    "JOIN accounts a ON a.id = m.owner_id "
                    "ORDER BY a.email ASC, m.created_at DESC, m.id DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT m.*, NULL AS owner_email FROM monitors m "
                    "WHERE m.owner_id = ? "
                    "ORDER BY m.created_at DESC, m.id DESC",
                    (owner_id,),
                ).fetchall()
        return [Monitor.from_row(r) for r in rows]

    def list_in_progress(self, limit: int | None = None) -> list[Monitor]:
        """Monitors with an outstanding claim, oldest claim first."""
        sql = (
            "SELECT m.*, NULL AS owner_email FROM monitors m "
            "WHERE m.in_progress = 1 "
            "ORDER BY m.claimed_at ASC, m.id ASC"
        )
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._reader() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Monitor.from_row(r) for r in rows]

    # ── Results ───────────────────────────────────────────────────────────

    def recent_results(self, monitor_id: int, limit: int | None = None) -> list[CheckResultRecord]:
        """Newest first."""
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM check_results WHERE monitor_id = ? "
                "ORDER BY checked_at DESC, id DESC LIMIT ?",
                (monitor_id, settings.recent_results_limit if limit is None else limit),
            ).fetchall()
        return [CheckResultRecord.from_row(r) for r in rows]

    def latest_result(self, monitor_id: int) -> CheckResultRecord | None:
        results = self.recent_results(monitor_id, limit=1)
        return results[0] if results else None

    def count_results(self, monitor_id: int) -> int:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM check_results WHERE monitor_id = ?",
                (monitor_id,),
            ).fetchone()
        return row["n"]

    # ── Helpers ───────────────────────────────────────────────────────────

    def _require(self, monitor_id: int) -> Monitor:
        monitor = self.get_monitor(monitor_id)
        if monitor is None:
            raise NotFoundError("Monitor not found.")
        return monitor

    def _map_integrity(self, exc: sqlite3.IntegrityError, owner_id: int, url: str) -> Exception:
        msg = str(exc)
        if "FOREIGN KEY" in msg:
            return NotFoundError(f"Owner not found: {owner_id}")
        if "UNIQUE" in msg:
            return ConflictError("A monitor for that URL already exists for the selected user.")
        logger.error("Integrity failure for %s (owner=%d): %s", url, owner_id, msg)
        return UnexpectedError("Unable to save monitor. Please try again.")
