"""Poller-facing API routes — claim jobs, report results, inspect claims.

Endpoints:
  POST /api/checks/next?count=N        — claim up to N due monitors
  GET  /api/checks/pending?count=N     — monitors currently claimed
  POST /api/checks/result              — reconcile one probe outcome
  POST /api/checks/execute/{id}        — claim + probe + reconcile server-side
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from pulsecheck.config import settings
from pulsecheck.health.probe import ProbeExecutor, ProbeOutcome
from pulsecheck.monitors.store import MonitorStore
from pulsecheck.scheduling.claims import ClaimEngine
from pulsecheck.scheduling.reconciler import ResultReconciler

logger = logging.getLogger(__name__)

check_router = APIRouter(prefix="/checks", tags=["checks"])


# ── Request models ───────────────────────────────────────────────────────

class ResultBody(BaseModel):
    id: int
    http_code: int | None = None
    error: str | None = None
    response_time_ms: float | None = None
    checked_at: datetime | None = None
    claimed_at: datetime | None = None


# ── Helpers ──────────────────────────────────────────────────────────────

def _engine(request: Request) -> ClaimEngine:
    return request.app.state.claim_engine  # type: ignore[no-any-return]


def _reconciler(request: Request) -> ResultReconciler:
    return request.app.state.reconciler  # type: ignore[no-any-return]


def _safe_count(count: int | None, default: int = 1) -> int:
    if count is None:
        count = default
    return max(1, min(count, settings.max_claim_batch))


# ── Endpoints ────────────────────────────────────────────────────────────

@check_router.post("/next")
def claim_next(request: Request, count: int = 1) -> list[dict[str, Any]]:
    """Claim up to ``count`` due monitors. An empty list means nothing is due."""
    jobs = _engine(request).claim_due_monitors(_safe_count(count))
    logger.info("POST /checks/next — handed out %d job(s)", len(jobs))
    return [j.to_dict() for j in jobs]


@check_router.get("/pending")
def list_pending(request: Request, count: int | None = None) -> list[dict[str, Any]]:
    """Monitors with an outstanding claim, oldest claim first."""
    store: MonitorStore = request.app.state.store
    limit = _safe_count(count) if count is not None else None
    return [
        {
            "id": m.id,
            "url": m.url,
            "label": m.label,
            "claimed_at": m.claimed_at.isoformat() if m.claimed_at else None,
        }
        for m in store.list_in_progress(limit)
    ]


@check_router.post("/result")
def record_result(body: ResultBody, request: Request) -> dict[str, Any]:
    """Store an outcome, reschedule the monitor and release its claim."""
    outcome = ProbeOutcome(
        http_code=body.http_code,
        response_time_ms=body.response_time_ms,
        error=body.error,
    )
    if body.checked_at is not None:
        outcome.checked_at = body.checked_at
    view = _reconciler(request).record_result(body.id, outcome, claimed_at=body.claimed_at)
    return view.to_dict()


@check_router.post("/execute/{monitor_id}")
async def execute_now(monitor_id: int, request: Request) -> dict[str, Any]:
    """Run a check immediately from the API process.

    Claim, probe and reconcile all block, so each runs in the thread pool.
    """
    loop = asyncio.get_running_loop()
    job = await loop.run_in_executor(None, _engine(request).claim_monitor, monitor_id)
    if job is None:
        raise HTTPException(status_code=409, detail="Monitor check already in progress.")

    executor: ProbeExecutor = request.app.state.probe_executor
    outcome = await loop.run_in_executor(None, executor.probe, job.url)
    view = await loop.run_in_executor(
        None, partial(_reconciler(request).record_result, job.id, outcome, job.claimed_at),
    )
    return view.to_dict()
