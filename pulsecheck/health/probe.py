"""Probe executor — a single HTTP reachability check against one URL.

The probe never raises: DNS, TLS, timeout and connection failures are
folded into :class:`ProbeOutcome.error` so the reconciler always has a
well-formed result to store.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from pulsecheck.config import settings

logger = logging.getLogger(__name__)


# ── Models ───────────────────────────────────────────────────────────────────


class Status(str, Enum):
    UP = "UP"
    DOWN = "DOWN"


def classify_status(http_code: int | None, error: str | None) -> Status:
    """DOWN on any error or missing code, else UP iff 200 <= code < 400."""
    if (error and error.strip()) or http_code is None:
        return Status.DOWN
    return Status.UP if 200 <= http_code < 400 else Status.DOWN


@dataclass
class ProbeOutcome:
    """Result of one probe."""

    http_code: int | None = None
    response_time_ms: float | None = None
    error: str | None = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> Status:
        return classify_status(self.http_code, self.error)

    def to_payload(self) -> dict[str, Any]:
        """Body for the result endpoint (without the monitor id)."""
        payload: dict[str, Any] = {
            "http_code": self.http_code,
            "response_time_ms": self.response_time_ms,
            "checked_at": self.checked_at.isoformat(),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


# ── Executor ─────────────────────────────────────────────────────────────────


class ProbeExecutor:
    """Issues GET or HEAD with redirect following and bounded timeouts."""

    def __init__(
        self,
        method: str = "GET",
        connect_timeout: float = 10.0,
        total_timeout: float = 30.0,
        user_agent: str = "PulseCheckAgent/1.0",
        time_failures: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        method = method.upper()
        if method not in ("GET", "HEAD"):
            raise ValueError(f"Unsupported probe method: {method}")
        self.method = method
        self.connect_timeout = connect_timeout
        self.total_timeout = total_timeout
        self.user_agent = user_agent
        self.time_failures = time_failures
        self._transport = transport  # injected in tests

    @classmethod
    def agent(cls, **kwargs: Any) -> "ProbeExecutor":
        """Poller variant: GET, 10s connect / 30s total, failures are timed."""
        return cls(method="GET", connect_timeout=10.0, total_timeout=30.0, time_failures=True, **kwargs)

    @classmethod
    def quick(cls, **kwargs: Any) -> "ProbeExecutor":
        """Interactive variant: HEAD, 5s connect / 10s total, no failure timing."""
        return cls(method="HEAD", connect_timeout=5.0, total_timeout=10.0, time_failures=False, **kwargs)

    @classmethod
    def from_settings(cls, **kwargs: Any) -> "ProbeExecutor":
        return cls(
            method=settings.probe_method,
            connect_timeout=settings.probe_connect_timeout,
            total_timeout=settings.probe_total_timeout,
            user_agent=settings.probe_user_agent,
            **kwargs,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.total_timeout, connect=self.connect_timeout),
            follow_redirects=True,
            verify=True,
            headers={"User-Agent": self.user_agent},
            transport=self._transport,
        )

    def probe(self, url: str) -> ProbeOutcome:
        """Probe ``url``. All failure modes are returned, never raised."""
        url = (url or "").strip()
        t0 = time.perf_counter()
        deadline = t0 + self.total_timeout
        try:
            with self._client() as client:
                with client.stream(self.method, url) as resp:
                    self._check_deadline(deadline, resp)
                    for _ in resp.iter_raw():
                        self._check_deadline(deadline, resp)
            latency = (time.perf_counter() - t0) * 1000
            logger.debug("Probe %s %s -> %d (%.1fms)", self.method, url, resp.status_code, latency)
            return ProbeOutcome(
                http_code=resp.status_code,
                response_time_ms=round(latency, 2),
            )
        except httpx.TimeoutException as e:
            return self._failure(t0, f"Timed out: {_reason(e)}")
        except httpx.ConnectError as e:
            return self._failure(t0, f"Connection error: {_reason(e)}")
        except Exception as e:
            return self._failure(t0, f"{type(e).__name__}: {_reason(e)}")

    def _check_deadline(self, deadline: float, resp: httpx.Response) -> None:
        # httpx timeouts bound each read, not the whole exchange.
        if time.perf_counter() > deadline:
            raise httpx.ReadTimeout(
                f"no complete response within {self.total_timeout:g}s", request=resp.request,
            )

    def _failure(self, t0: float, reason: str) -> ProbeOutcome:
        latency = (time.perf_counter() - t0) * 1000
        logger.debug("Probe failed after %.1fms: %s", latency, reason)
        return ProbeOutcome(
            http_code=None,
            response_time_ms=round(latency, 2) if self.time_failures else None,
            error=reason,
        )


def _reason(exc: Exception) -> str:
    return str(exc) or type(exc).__name__
