"""Tests for settings validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from pulsecheck.config import Settings


class TestClaimTimeout:
    def test_defaults_are_consistent(self) -> None:
        s = Settings(_env_file=None)
        assert s.claim_timeout_seconds == 120
        assert s.poller_concurrency == 10

    def test_sequential_batch_longer_than_claim_rejected(self) -> None:
        with pytest.raises(ValidationError, match="claim_timeout_seconds"):
            Settings(
                _env_file=None,
                claim_timeout_seconds=120,
                poller_batch_size=10,
                poller_concurrency=1,
                probe_total_timeout=30.0,
            )

    def test_long_claim_timeout_allows_sequential_batch(self) -> None:
        s = Settings(
            _env_file=None,
            claim_timeout_seconds=400,
            poller_batch_size=10,
            poller_concurrency=1,
            probe_total_timeout=30.0,
        )
        assert s.poller_concurrency == 1
