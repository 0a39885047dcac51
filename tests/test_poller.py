"""Tests for the check poller, its HTTP client and the local job source."""

from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from pulsecheck.health.probe import ProbeExecutor, ProbeOutcome
from pulsecheck.poller.client import CheckApiClient, CheckApiError, CheckApiOfflineError
from pulsecheck.poller.worker import CheckPoller, LocalJobSource, PollerState
from pulsecheck.scheduling.claims import ClaimedJob, ClaimEngine

CLAIMED = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _ok_executor(code: int = 200) -> ProbeExecutor:
    return ProbeExecutor(transport=httpx.MockTransport(lambda request: httpx.Response(code)))


# ── CheckApiClient ───────────────────────────────────────────────────────────


class TestCheckApiClient:
    def test_claim_parses_jobs_and_skips_malformed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/api/checks/next"
            assert request.url.params["count"] == "3"
            return httpx.Response(200, json=[
                {"id": 1, "url": "https://a.example.com", "label": "A"},
                {"url": "https://missing-id.example.com"},
                {"id": 2, "url": "https://b.example.com", "claimed_at": "2025-01-01T12:00:00.000001+00:00"},
            ])

        client = CheckApiClient("http://api.local/", transport=httpx.MockTransport(handler))
        jobs = client.claim(3)
        assert jobs == [
            ClaimedJob(id=1, url="https://a.example.com", label="A"),
            ClaimedJob(
                id=2,
                url="https://b.example.com",
                label=None,
                claimed_at=datetime(2025, 1, 1, 12, 0, 0, 1, tzinfo=timezone.utc),
            ),
        ]

    def test_report_sends_payload(self) -> None:
        sent: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={"id": 7, "status": "DOWN"})

        client = CheckApiClient("http://api.local", transport=httpx.MockTransport(handler))
        job = ClaimedJob(id=7, url="https://example.com", claimed_at=CLAIMED)
        result = client.report(job, ProbeOutcome(http_code=None, response_time_ms=9.0, error="Timed out: read"))
        assert result["status"] == "DOWN"
        assert sent["id"] == 7
        assert sent["http_code"] is None
        assert sent["error"] == "Timed out: read"
        assert "checked_at" in sent
        assert sent["claimed_at"] == CLAIMED.isoformat()

    def test_error_status_raises(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(404, json={"error": "Monitor not found."})
        )
        client = CheckApiClient("http://api.local", transport=transport)
        with pytest.raises(CheckApiError) as exc:
            client.report(ClaimedJob(id=99, url="https://example.com"), ProbeOutcome(http_code=200))
        assert exc.value.status_code == 404
        assert exc.value.detail == "Monitor not found."

    def test_offline(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = CheckApiClient("http://api.local", transport=httpx.MockTransport(handler))
        with pytest.raises(CheckApiOfflineError):
            client.claim(1)


# ── CheckPoller.run_once ─────────────────────────────────────────────────────


class TestRunOnce:
    def test_local_cycle(self, store, account, engine, reconciler, clock) -> None:
        for i in range(3):
            store.create_monitor(account.id, f"https://s{i}.example.com", frequency_minutes=1)
        clock.advance(minutes=2)

        poller = CheckPoller(LocalJobSource(engine, reconciler), _ok_executor(), batch_size=2)
        summary = poller.run_once()
        assert summary.to_dict() == {"claimed": 2, "reported": 2, "failed": 0}

        summary = poller.run_once()
        assert (summary.claimed, summary.reported) == (1, 1)
        assert poller.run_once().claimed == 0
        assert not any(m.in_progress for m in store.list_monitors(account.id))

    def test_report_failure_is_counted_and_loop_continues(self) -> None:
        source = MagicMock()
        source.claim.return_value = [
            ClaimedJob(id=1, url="https://a.example.com"),
            ClaimedJob(id=2, url="https://b.example.com"),
        ]
        source.report.side_effect = [CheckApiError(404, "Monitor not found."), {"id": 2}]

        summary = CheckPoller(source, _ok_executor(), batch_size=5).run_once()
        assert (summary.claimed, summary.reported, summary.failed) == (2, 1, 1)
        assert source.report.call_count == 2
        source.claim.assert_called_once_with(5)

    def test_claim_failure_propagates(self) -> None:
        source = MagicMock()
        source.claim.side_effect = CheckApiOfflineError("Check API is offline or unreachable")
        with pytest.raises(CheckApiOfflineError):
            CheckPoller(source, _ok_executor()).run_once()


# ── Backoff ──────────────────────────────────────────────────────────────────


class TestBackoff:
    def test_state_defaults(self) -> None:
        state = PollerState()
        assert state.online is False
        assert state.to_dict()["consecutive_failures"] == 0

    def test_backs_off_and_resets(self) -> None:
        source = MagicMock()
        source.claim.side_effect = CheckApiOfflineError("offline")
        poller = CheckPoller(source, _ok_executor(), batch_size=2, interval=10.0, max_interval=35.0)

        asyncio.run(poller._cycle())
        assert poller.state.current_interval == 10.0
        asyncio.run(poller._cycle())
        assert poller.state.current_interval == 20.0
        asyncio.run(poller._cycle())
        assert poller.state.current_interval == 35.0
        assert poller.state.consecutive_failures == 3
        assert poller.state.online is False

        source.claim.side_effect = None
        source.claim.return_value = []
        asyncio.run(poller._cycle())
        assert poller.state.online is True
        assert poller.state.consecutive_failures == 0
        assert poller.state.current_interval == 10.0
        assert poller.state.error is None

    def test_full_batch_polls_again_immediately(self) -> None:
        source = MagicMock()
        source.claim.return_value = [
            ClaimedJob(id=1, url="https://a.example.com"),
            ClaimedJob(id=2, url="https://b.example.com"),
        ]
        source.report.return_value = {}
        poller = CheckPoller(source, _ok_executor(), batch_size=2, interval=10.0)

        asyncio.run(poller._cycle())
        assert poller.state.current_interval == 0.0
        assert poller.state.total_claimed == 2
        assert poller.state.total_reported == 2

    def test_start_stop(self) -> None:
        source = MagicMock()
        source.claim.return_value = []

        async def run() -> None:
            poller = CheckPoller(source, _ok_executor(), interval=0.01)
            await poller.start()
            await asyncio.sleep(0.05)
            await poller.stop()
            assert poller.state.last_poll is not None

        asyncio.run(run())
        assert source.claim.called


# ── Concurrency and stale claims ─────────────────────────────────────────────


class _BarrierExecutor:
    """Only completes when ``parties`` probes are in flight at once."""

    def __init__(self, parties: int) -> None:
        self.barrier = threading.Barrier(parties, timeout=5)

    def probe(self, url: str) -> ProbeOutcome:
        self.barrier.wait()
        return ProbeOutcome(http_code=200, response_time_ms=1.0)


class _OvertakingExecutor:
    """Slow probe during which the claim goes stale and another poller takes it."""

    def __init__(self, clock, rival: ClaimEngine) -> None:
        self.clock = clock
        self.rival = rival
        self.rival_jobs: list[ClaimedJob] = []

    def probe(self, url: str) -> ProbeOutcome:
        self.clock.advance(seconds=121)
        self.rival_jobs.extend(self.rival.claim_due_monitors(10))
        return ProbeOutcome(http_code=200, response_time_ms=30000.0)


class TestClaimSafety:
    def test_batch_probed_concurrently(self) -> None:
        source = MagicMock()
        source.claim.return_value = [
            ClaimedJob(id=i, url=f"https://s{i}.example.com") for i in range(3)
        ]
        poller = CheckPoller(source, _BarrierExecutor(3), batch_size=3, concurrency=3)
        summary = poller.run_once()
        assert (summary.claimed, summary.reported, summary.failed) == (3, 3, 0)

    def test_late_report_keeps_rival_claim(self, store, account, engine, reconciler, clock) -> None:
        m = store.create_monitor(account.id, "https://example.com", frequency_minutes=1)
        clock.advance(minutes=2)
        executor = _OvertakingExecutor(clock, ClaimEngine(store))

        summary = CheckPoller(LocalJobSource(engine, reconciler), executor, batch_size=1).run_once()
        assert summary.reported == 1

        (rival_job,) = executor.rival_jobs
        assert rival_job.id == m.id
        held = store.get_monitor(m.id)
        assert held.in_progress is True
        assert held.claimed_at == rival_job.claimed_at
        assert store.count_results(m.id) == 1

        # Nobody else may take it while the rival still holds it.
        assert engine.claim_due_monitors(10) == []

        reconciler.record_result(m.id, ProbeOutcome(http_code=200), claimed_at=rival_job.claimed_at)
        after = store.get_monitor(m.id)
        assert after.in_progress is False
        assert after.next_check_at == clock() + timedelta(minutes=1)
