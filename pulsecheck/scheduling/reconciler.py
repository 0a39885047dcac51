"""Result reconciler — stores a probe outcome and makes the monitor schedulable again.

Insert, reschedule and release happen in one transaction: either all of
them land or none do, in which case the claim stays outstanding until
the stale-claim sweep in :class:`~pulsecheck.scheduling.claims.ClaimEngine`
releases it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pulsecheck.errors import NotFoundError
from pulsecheck.health.probe import ProbeOutcome, Status, classify_status
from pulsecheck.monitors.store import MonitorStore, from_db_time, to_db_time

logger = logging.getLogger(__name__)


@dataclass
class MonitorView:
    """Public view of a monitor right after reconciliation."""

    id: int
    url: str
    status: Status
    http_code: int | None
    response_time_ms: float | None
    checked_at: datetime
    error: str | None
    next_check_at: datetime | None = None
    released: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "status": self.status.value,
            "http_code": self.http_code,
            "response_time_ms": self.response_time_ms,
            "checked_at": self.checked_at.isoformat(),
            "error": self.error,
            "next_check_at": self.next_check_at.isoformat() if self.next_check_at else None,
            "released": self.released,
        }


def _clean_error(error: str | None) -> str | None:
    if error is None:
        return None
    error = error.strip()
    return error or None


class ResultReconciler:
    """Records outcomes; the only writer that clears ``in_progress``."""

    def __init__(self, store: MonitorStore) -> None:
        self.store = store

    def record_result(
        self,
        monitor_id: int,
        outcome: ProbeOutcome,
        claimed_at: datetime | None = None,
    ) -> MonitorView:
        """Store ``outcome`` and release the monitor.

        With ``claimed_at`` the reschedule and release only apply while that
        claim is still the current one (or the monitor is idle). A report
        for a claim that was reclaimed and handed to another poller keeps
        its result row but leaves the newer claim alone.
        """
        now = self.store.now()
        error = _clean_error(outcome.error)
        checked_at = outcome.checked_at or now

        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT id, url, frequency_minutes, next_check_at FROM monitors WHERE id = ?",
                (monitor_id,),
            ).fetchone()
            if row is None:
                logger.warning("Result for unknown monitor %s", monitor_id)
                raise NotFoundError("Monitor not found.")

            next_check = now + timedelta(minutes=row["frequency_minutes"])
            conn.execute(
                "INSERT INTO check_results "
                "(monitor_id, http_code, error_message, response_time_ms, checked_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (monitor_id, outcome.http_code, error, outcome.response_time_ms, to_db_time(checked_at)),
            )
            sql = (
                "UPDATE monitors SET next_check_at = ?, in_progress = 0, "
                "claimed_at = NULL, updated_at = ? WHERE id = ?"
            )
            params: tuple[Any, ...] = (to_db_time(next_check), to_db_time(now), monitor_id)
            if claimed_at is not None:
                sql += " AND (in_progress = 0 OR claimed_at = ?)"
                params += (to_db_time(claimed_at),)
            released = conn.execute(sql, params).rowcount == 1

        status = classify_status(outcome.http_code, error)
        if released:
            logger.info(
                "Result recorded: monitor %d %s (http=%s, %sms)",
                monitor_id, status.value, outcome.http_code, outcome.response_time_ms,
            )
        else:
            next_check = from_db_time(row["next_check_at"])
            logger.warning(
                "Late result for monitor %d: claim of %s was superseded, newer claim kept",
                monitor_id, claimed_at.isoformat(),
            )
        return MonitorView(
            id=row["id"],
            url=row["url"],
            status=status,
            http_code=outcome.http_code,
            response_time_ms=outcome.response_time_ms,
            checked_at=checked_at,
            error=error,
            next_check_at=next_check,
            released=released,
        )
