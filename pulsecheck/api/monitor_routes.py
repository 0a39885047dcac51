"""Monitor CRUD routes used by the request/response layer.

Ownership is passed explicitly (``owner_id`` / ``is_admin``); session
handling belongs to whatever fronts this API.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from pulsecheck.health.probe import classify_status
from pulsecheck.monitors.store import Monitor, MonitorStore
from pulsecheck.scheduling.claims import ClaimEngine

logger = logging.getLogger(__name__)

monitor_router = APIRouter(tags=["monitors"])


# ── Request models ───────────────────────────────────────────────────────

class AccountBody(BaseModel):
    email: str


class MonitorBody(BaseModel):
    owner_id: int
    url: str
    label: str | None = None
    frequency_minutes: int | None = None


# ── Helpers ──────────────────────────────────────────────────────────────

def _store(request: Request) -> MonitorStore:
    return request.app.state.store  # type: ignore[no-any-return]


def _monitor_detail(store: MonitorStore, monitor: Monitor) -> dict[str, Any]:
    d = monitor.to_dict()
    results = store.recent_results(monitor.id)
    d["recent_results"] = [
        {**r.to_dict(), "status": classify_status(r.http_code, r.error_message).value}
        for r in results
    ]
    d["status"] = d["recent_results"][0]["status"] if results else "PENDING"
    return d


# ── Accounts ─────────────────────────────────────────────────────────────

@monitor_router.post("/accounts", status_code=201)
def create_account(body: AccountBody, request: Request) -> dict[str, Any]:
    account = _store(request).create_account(body.email)
    return {"id": account.id, "email": account.email}


@monitor_router.post("/accounts/{owner_id}/schedule")
def schedule_owner(owner_id: int, request: Request) -> dict[str, Any]:
    """Queue every idle monitor of an owner for an immediate check."""
    engine: ClaimEngine = request.app.state.claim_engine
    return {"owner_id": owner_id, "scheduled": engine.schedule_all_for_owner(owner_id)}


# ── Monitors ─────────────────────────────────────────────────────────────

@monitor_router.get("/monitors")
def list_monitors(request: Request, owner_id: int, is_admin: bool = False) -> dict[str, Any]:
    monitors = _store(request).list_monitors(owner_id, is_admin)
    return {"monitors": [m.to_dict() for m in monitors], "count": len(monitors)}


@monitor_router.post("/monitors", status_code=201)
def create_monitor(body: MonitorBody, request: Request) -> dict[str, Any]:
    monitor = _store(request).create_monitor(
        body.owner_id, body.url, body.label, body.frequency_minutes,
    )
    return {"monitor": monitor.to_dict(), "status": "created"}


@monitor_router.get("/monitors/{monitor_id}")
def get_monitor(monitor_id: int, request: Request) -> dict[str, Any]:
    store = _store(request)
    monitor = store.get_monitor(monitor_id)
    if not monitor:
        raise HTTPException(status_code=404, detail="Monitor not found.")
    return {"monitor": _monitor_detail(store, monitor)}


@monitor_router.put("/monitors/{monitor_id}")
def update_monitor(monitor_id: int, body: MonitorBody, request: Request) -> dict[str, Any]:
    monitor = _store(request).update_monitor(
        monitor_id, body.owner_id, body.url, body.label, body.frequency_minutes,
    )
    return {"monitor": monitor.to_dict(), "status": "updated"}


@monitor_router.delete("/monitors/{monitor_id}")
def delete_monitor(monitor_id: int, request: Request) -> dict[str, Any]:
    _store(request).delete_monitor(monitor_id)
    return {"id": monitor_id, "status": "deleted"}


@monitor_router.post("/monitors/{monitor_id}/schedule")
def schedule_monitor(monitor_id: int, request: Request) -> dict[str, Any]:
    """Queue one monitor for an immediate check."""
    engine: ClaimEngine = request.app.state.claim_engine
    if not engine.schedule_monitor_now(monitor_id):
        raise HTTPException(status_code=409, detail="Monitor check already in progress.")
    return {"id": monitor_id, "status": "scheduled"}
