"""Check poller — claims due monitors, probes them and reports outcomes.

Features:
- Works against the HTTP API (:class:`CheckApiClient`) or in-process
  (:class:`LocalJobSource`) through the same ``JobSource`` interface
- Exponential backoff while the job source is unreachable (60s → 120s … 600s)
- Probes a batch concurrently so a cycle fits inside the claim timeout
- Drains a backlog without sleeping when a full batch was claimed
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from pulsecheck.health.probe import ProbeExecutor, ProbeOutcome
from pulsecheck.scheduling.claims import ClaimedJob, ClaimEngine
from pulsecheck.scheduling.reconciler import ResultReconciler

logger = logging.getLogger(__name__)

# Backoff constants
_BASE_INTERVAL = 60.0    # seconds
_MAX_INTERVAL = 600.0    # 10 minutes cap
_BACKOFF_FACTOR = 2.0


class JobSource(Protocol):
    def claim(self, count: int) -> list[ClaimedJob]: ...

    def report(self, job: ClaimedJob, outcome: ProbeOutcome) -> Any: ...


class LocalJobSource:
    """Job source backed directly by the claim engine and reconciler."""

    def __init__(self, engine: ClaimEngine, reconciler: ResultReconciler) -> None:
        self.engine = engine
        self.reconciler = reconciler

    def claim(self, count: int) -> list[ClaimedJob]:
        return self.engine.claim_due_monitors(count)

    def report(self, job: ClaimedJob, outcome: ProbeOutcome) -> dict[str, Any]:
        return self.reconciler.record_result(job.id, outcome, claimed_at=job.claimed_at).to_dict()


@dataclass
class PollSummary:
    claimed: int = 0
    reported: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class PollerState:
    """Counters and connectivity status for the running poller."""

    def __init__(self) -> None:
        self.online: bool = False
        self.last_poll: str | None = None
        self.last_success: str | None = None
        self.error: str | None = None
        self.total_claimed: int = 0
        self.total_reported: int = 0
        self.total_failed: int = 0
        self.consecutive_failures: int = 0
        self.current_interval: float = _BASE_INTERVAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "online": self.online,
            "last_poll": self.last_poll,
            "last_success": self.last_success,
            "error": self.error,
            "total_claimed": self.total_claimed,
            "total_reported": self.total_reported,
            "total_failed": self.total_failed,
            "consecutive_failures": self.consecutive_failures,
            "current_interval": round(self.current_interval, 1),
        }


class CheckPoller:
    """Runs claim → probe → report cycles, with backoff when the source fails."""

    def __init__(
        self,
        source: JobSource,
        executor: ProbeExecutor,
        batch_size: int = 10,
        interval: float = _BASE_INTERVAL,
        max_interval: float = _MAX_INTERVAL,
        concurrency: int = 10,
    ) -> None:
        self.source = source
        self.executor = executor
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.base_interval = interval
        self.max_interval = max_interval
        self.state = PollerState()
        self.state.current_interval = interval
        self._task: asyncio.Task[None] | None = None
        self._running = False

    def run_once(self) -> PollSummary:
        """One cycle. Claim errors propagate; per-job report errors are counted.

        The batch is probed concurrently (up to ``concurrency`` at a time) so
        a cycle takes roughly one probe timeout, well inside the claim timeout.
        """
        summary = PollSummary()
        jobs = self.source.claim(self.batch_size)
        summary.claimed = len(jobs)
        if not jobs:
            return summary

        with ThreadPoolExecutor(max_workers=min(len(jobs), self.concurrency)) as pool:
            futures = {pool.submit(self.executor.probe, job.url): job for job in jobs}
            for future in as_completed(futures):
                job = futures[future]
                try:
                    self.source.report(job, future.result())
                    summary.reported += 1
                except Exception as e:
                    # The claim stays outstanding until the stale-claim sweep.
                    summary.failed += 1
                    logger.warning("Reporting monitor %d failed: %s", job.id, e)

        logger.info(
            "Poll cycle: %d claimed, %d reported, %d failed",
            summary.claimed, summary.reported, summary.failed,
        )
        return summary

    async def start(self) -> None:
        """Start the background polling loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "Check poller started (batch=%d, interval=%ss, max=%ss)",
            self.batch_size, self.base_interval, self.max_interval,
        )

    async def stop(self) -> None:
        """Stop the background poller."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Check poller stopped")

    async def run_forever(self) -> None:
        """Poll until cancelled."""
        self._running = True
        await self._poll_loop()

    async def _poll_loop(self) -> None:
        while self._running:
            await self._cycle()
            await asyncio.sleep(self.state.current_interval)

    async def _cycle(self) -> None:
        """One cycle in a worker thread, updating state and backoff."""
        now = datetime.now(timezone.utc).isoformat()
        self.state.last_poll = now
        try:
            loop = asyncio.get_running_loop()
            summary = await loop.run_in_executor(None, self.run_once)
        except Exception as e:
            self.state.consecutive_failures += 1
            self.state.error = str(e)
            if self.state.online:
                logger.warning("Job source went offline: %s", e)
            self.state.online = False
            self.state.current_interval = min(
                self.base_interval * (_BACKOFF_FACTOR ** (self.state.consecutive_failures - 1)),
                self.max_interval,
            )
            logger.debug(
                "Poll failed (%d consecutive), next attempt in %.0fs",
                self.state.consecutive_failures, self.state.current_interval,
            )
            return

        if not self.state.online and self.state.consecutive_failures:
            logger.info("Job source reachable again after %d failure(s)", self.state.consecutive_failures)
        self.state.online = True
        self.state.last_success = now
        self.state.error = None
        self.state.consecutive_failures = 0
        self.state.total_claimed += summary.claimed
        self.state.total_reported += summary.reported
        self.state.total_failed += summary.failed
        # A full batch suggests more work is due right now.
        self.state.current_interval = 0.0 if summary.claimed >= self.batch_size else self.base_interval
