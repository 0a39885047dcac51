from __future__ import annotations

import math

from pydantic import model_validator
from pydantic_settings import BaseSettings

# Headroom for reporting results after the slowest probe of a batch.
CLAIM_REPORT_MARGIN_SECONDS = 30.0


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "PULSECHECK_",
        "extra": "ignore",
    }

    # Storage
    database_path: str = "data/pulsecheck.db"
    busy_timeout: float = 5.0  # seconds to wait on a locked SQLite database

    # Monitors
    default_frequency_minutes: int = 5
    recent_results_limit: int = 10

    # Claims
    max_claim_batch: int = 50  # hard cap on jobs handed out per claim call
    claim_timeout_seconds: int = 120  # claims older than this are reclaimable
    reclaim_on_claim: bool = True

    # Probe
    probe_method: str = "GET"  # GET | HEAD
    probe_connect_timeout: float = 10.0
    probe_total_timeout: float = 30.0
    probe_user_agent: str = "PulseCheckAgent/1.0"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Poller (talks to the API over HTTP)
    poller_base_url: str = "http://127.0.0.1:8000"
    poller_batch_size: int = 10
    poller_interval: float = 60.0  # seconds between claim rounds
    poller_max_interval: float = 600.0  # backoff cap when the API is unreachable
    poller_concurrency: int = 10  # probes in flight per cycle

    # Logging
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _claims_outlive_a_batch(self) -> "Settings":
        """A claim must not go stale while its poller is still working the batch."""
        rounds = math.ceil(max(1, self.poller_batch_size) / max(1, self.poller_concurrency))
        needed = rounds * self.probe_total_timeout + CLAIM_REPORT_MARGIN_SECONDS
        if self.claim_timeout_seconds < needed:
            raise ValueError(
                f"claim_timeout_seconds={self.claim_timeout_seconds} is shorter than one poll "
                f"cycle ({rounds} probe round(s) x {self.probe_total_timeout:g}s + "
                f"{CLAIM_REPORT_MARGIN_SECONDS:g}s); raise it or poller_concurrency"
            )
        return self


settings = Settings()
