"""Claim engine — hands due monitors to pollers, at most one claim per monitor.

The claim is a single ``UPDATE ... RETURNING`` whose ``in_progress = 0``
guard acts as a compare-and-swap: SQLite serializes writers, so two
concurrent callers can never flip (and receive) the same row.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pulsecheck.config import settings
from pulsecheck.errors import NotFoundError
from pulsecheck.monitors.store import MonitorStore, from_db_time, to_db_time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimedJob:
    """A monitor handed to a poller."""

    id: int
    url: str
    label: str | None = None
    claimed_at: datetime | None = None  # identifies this claim when reporting back

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ClaimedJob":
        return cls(
            id=row["id"],
            url=row["url"],
            label=row["label"],
            claimed_at=from_db_time(row["claimed_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "label": self.label,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
        }


_CLAIM_DUE_SQL = """
    UPDATE monitors
    SET in_progress = 1, claimed_at = :now, updated_at = :now
    WHERE in_progress = 0
      AND id IN (
        SELECT id FROM monitors
        WHERE in_progress = 0
          AND (next_check_at IS NULL OR next_check_at <= :now)
        ORDER BY next_check_at IS NOT NULL, next_check_at, id
        LIMIT :limit
      )
    RETURNING id, url, label, next_check_at, claimed_at
"""


def _due_order(row: sqlite3.Row) -> tuple[bool, str, int]:
    # Nulls ("check immediately") first, then oldest due time, then id.
    return (row["next_check_at"] is not None, row["next_check_at"] or "", row["id"])


class ClaimEngine:
    """Selects due, idle monitors and marks them in-progress atomically."""

    def __init__(
        self,
        store: MonitorStore,
        claim_timeout: timedelta | None = None,
        reclaim_on_claim: bool | None = None,
    ) -> None:
        self.store = store
        self.claim_timeout = claim_timeout or timedelta(seconds=settings.claim_timeout_seconds)
        self.reclaim_on_claim = (
            settings.reclaim_on_claim if reclaim_on_claim is None else reclaim_on_claim
        )

    def claim_due_monitors(self, max_count: int) -> list[ClaimedJob]:
        """Claim up to ``max_count`` due monitors. Empty list means nothing is due."""
        if max_count < 1:
            return []

        if self.reclaim_on_claim:
            self.reclaim_stale()

        now = to_db_time(self.store.now())
        with self.store.transaction() as conn:
            rows = conn.execute(_CLAIM_DUE_SQL, {"now": now, "limit": max_count}).fetchall()

        jobs = [ClaimedJob.from_row(r) for r in sorted(rows, key=_due_order)]
        if jobs:
            logger.info("Claimed %d monitor(s): %s", len(jobs), [j.id for j in jobs])
        else:
            logger.debug("No monitors due (requested %d)", max_count)
        return jobs

    def claim_monitor(self, monitor_id: int) -> ClaimedJob | None:
        """Claim one specific idle monitor, due or not. None if already claimed."""
        now = to_db_time(self.store.now())
        with self.store.transaction() as conn:
            rows = conn.execute(
                "UPDATE monitors SET in_progress = 1, claimed_at = ?, updated_at = ? "
                "WHERE id = ? AND in_progress = 0 "
                "RETURNING id, url, label, claimed_at",
                (now, now, monitor_id),
            ).fetchall()
            row = rows[0] if rows else None
            if row is None:
                self._require_exists(conn, monitor_id)
                return None
        logger.info("Claimed monitor %d on demand", monitor_id)
        return ClaimedJob.from_row(row)

    def schedule_monitor_now(self, monitor_id: int) -> bool:
        """Make an idle monitor due now.

        Returns False when the monitor is in progress (left untouched),
        True when it was rescheduled.
        """
        now = to_db_time(self.store.now())
        with self.store.transaction() as conn:
            cursor = conn.execute(
                "UPDATE monitors SET next_check_at = ?, updated_at = ? "
                "WHERE id = ? AND in_progress = 0",
                (now, now, monitor_id),
            )
            if cursor.rowcount == 0:
                self._require_exists(conn, monitor_id)
                logger.info("Monitor %d is in progress; not rescheduled", monitor_id)
                return False
        logger.info("Monitor %d scheduled for immediate check", monitor_id)
        return True

    def schedule_all_for_owner(self, owner_id: int) -> int:
        """Make every idle monitor of an owner due now. Returns how many moved."""
        now = to_db_time(self.store.now())
        with self.store.transaction() as conn:
            cursor = conn.execute(
                "UPDATE monitors SET next_check_at = ?, updated_at = ? "
                "WHERE owner_id = ? AND in_progress = 0",
                (now, now, owner_id),
            )
        logger.info("Scheduled %d monitor(s) for owner %d", cursor.rowcount, owner_id)
        return cursor.rowcount

    def reclaim_stale(self, older_than: timedelta | None = None) -> int:
        """Release claims older than the claim timeout (crashed pollers).

        ``next_check_at`` is left alone, so a released monitor is due again.
        """
        cutoff = to_db_time(self.store.now() - (older_than or self.claim_timeout))
        now = to_db_time(self.store.now())
        with self.store.transaction() as conn:
            rows = conn.execute(
                "UPDATE monitors SET in_progress = 0, claimed_at = NULL, updated_at = ? "
                "WHERE in_progress = 1 AND (claimed_at IS NULL OR claimed_at <= ?) "
                "RETURNING id",
                (now, cutoff),
            ).fetchall()
        if rows:
            logger.warning("Reclaimed %d stale claim(s): %s", len(rows), [r["id"] for r in rows])
        return len(rows)

    @staticmethod
    def _require_exists(conn: sqlite3.Connection, monitor_id: int) -> None:
        row = conn.execute("SELECT 1 FROM monitors WHERE id = ?", (monitor_id,)).fetchone()
        if row is None:
            raise NotFoundError("Monitor not found.")
