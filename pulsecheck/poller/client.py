"""httpx-based client for the check API, used by remote pollers.

All methods return typed values or raise CheckApiOfflineError / CheckApiError.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from pulsecheck.health.probe import ProbeOutcome
from pulsecheck.scheduling.claims import ClaimedJob

logger = logging.getLogger(__name__)


class CheckApiOfflineError(Exception):
    """Raised when the check API is unreachable."""


class CheckApiError(Exception):
    """Raised when the check API returns an error."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Check API error {status_code}: {detail}")


class CheckApiClient:
    """Synchronous httpx client for the ``/api/checks`` endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.request(
                    method,
                    f"{self._base_url}{path}",
                    params=params,
                    json=json_data,
                )
        except httpx.ConnectError:
            raise CheckApiOfflineError("Check API is offline or unreachable")
        except httpx.TimeoutException:
            raise CheckApiOfflineError("Check API request timed out")

        if resp.status_code >= 400:
            detail = resp.text
            try:
                body = resp.json()
                detail = body.get("error") or body.get("detail") or resp.text
            except (ValueError, AttributeError):
                pass
            raise CheckApiError(resp.status_code, str(detail))
        return resp

    # ── High-level methods ───────────────────────────────────────────────

    def claim(self, count: int) -> list[ClaimedJob]:
        """POST /api/checks/next?count=N"""
        resp = self._request("POST", "/api/checks/next", params={"count": count})
        jobs: list[ClaimedJob] = []
        for item in resp.json():
            try:
                claimed_at = item.get("claimed_at")
                jobs.append(
                    ClaimedJob(
                        id=int(item["id"]),
                        url=str(item["url"]),
                        label=item.get("label"),
                        claimed_at=datetime.fromisoformat(claimed_at) if claimed_at else None,
                    )
                )
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("Skipping malformed job: %r", item)
        return jobs

    def report(self, job: ClaimedJob, outcome: ProbeOutcome) -> dict[str, Any]:
        """POST /api/checks/result"""
        payload = {"id": job.id, **outcome.to_payload()}
        if job.claimed_at is not None:
            payload["claimed_at"] = job.claimed_at.isoformat()
        resp = self._request("POST", "/api/checks/result", json_data=payload)
        return resp.json()

    def pending(self) -> list[dict[str, Any]]:
        """GET /api/checks/pending"""
        return self._request("GET", "/api/checks/pending").json()
