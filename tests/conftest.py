"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from pulsecheck.monitors.store import Account, MonitorStore
from pulsecheck.scheduling.claims import ClaimEngine
from pulsecheck.scheduling.reconciler import ResultReconciler

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for deterministic scheduling tests."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock) -> MonitorStore:
    """MonitorStore backed by a temp SQLite file."""
    return MonitorStore(db_path=tmp_path / "test_monitors.db", clock=clock)


@pytest.fixture
def account(store) -> Account:
    return store.create_account("owner@example.com")


@pytest.fixture
def engine(store) -> ClaimEngine:
    return ClaimEngine(store)


@pytest.fixture
def reconciler(store) -> ResultReconciler:
    return ResultReconciler(store)
