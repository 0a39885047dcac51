"""Tests for the monitor store — validation, CRUD and listings."""

from __future__ import annotations

from datetime import timedelta

import pytest

from pulsecheck.errors import ConflictError, NotFoundError, ValidationError
from pulsecheck.health.probe import ProbeOutcome
from pulsecheck.monitors.store import (
    MAX_FREQUENCY,
    clamp_frequency,
    from_db_time,
    normalize_label,
    to_db_time,
    validate_url,
)
from pulsecheck.scheduling.reconciler import ResultReconciler


# ── Input normalisation ──────────────────────────────────────────────────────


class TestValidateUrl:
    def test_trims(self) -> None:
        assert validate_url("  https://example.com/health  ") == "https://example.com/health"

    @pytest.mark.parametrize("url", ["not-a-url", "ftp://example.com", "example.com"])
    def test_rejects_invalid(self, url: str) -> None:
        with pytest.raises(ValidationError, match="valid URL"):
            validate_url(url)

    @pytest.mark.parametrize("url", ["", "   ", None])
    def test_rejects_blank(self, url) -> None:
        with pytest.raises(ValidationError, match="required"):
            validate_url(url)

    def test_rejects_too_long(self) -> None:
        url = "https://example.com/" + "a" * 240
        with pytest.raises(ValidationError, match="too long"):
            validate_url(url)

    def test_accepts_max_length(self) -> None:
        url = "https://example.com/" + "a" * (255 - len("https://example.com/"))
        assert len(url) == 255
        assert validate_url(url) == url


class TestFrequencyAndLabel:
    def test_clamps_high(self) -> None:
        assert clamp_frequency(5000) == MAX_FREQUENCY

    def test_clamps_low(self) -> None:
        assert clamp_frequency(0) == 1
        assert clamp_frequency(-30) == 1

    def test_default(self) -> None:
        assert clamp_frequency(None) == 5

    def test_rejects_non_integer(self) -> None:
        with pytest.raises(ValidationError):
            clamp_frequency("often")
        with pytest.raises(ValidationError):
            clamp_frequency(True)

    def test_blank_label_is_none(self) -> None:
        assert normalize_label("   ") is None
        assert normalize_label(" Homepage ") == "Homepage"

    def test_label_too_long(self) -> None:
        with pytest.raises(ValidationError):
            normalize_label("x" * 191)


class TestDbTime:
    def test_fixed_width_sorts_chronologically(self, clock) -> None:
        a = to_db_time(clock())
        b = to_db_time(clock() + timedelta(microseconds=1))
        c = to_db_time(clock() + timedelta(days=400))
        assert a < b < c
        assert len(a) == len(b) == len(c)

    def test_round_trip_is_utc(self, clock) -> None:
        assert from_db_time(to_db_time(clock())) == clock()
        assert from_db_time(None) is None


# ── Accounts ─────────────────────────────────────────────────────────────────


class TestAccounts:
    def test_create_and_find(self, store) -> None:
        acct = store.create_account("  Alice@Example.com ")
        assert acct.email == "alice@example.com"
        assert store.find_account("ALICE@example.com").id == acct.id
        assert store.get_account(acct.id).email == "alice@example.com"

    def test_duplicate_email(self, store) -> None:
        store.create_account("a@example.com")
        with pytest.raises(ConflictError):
            store.create_account("A@example.com")

    def test_invalid_email(self, store) -> None:
        with pytest.raises(ValidationError):
            store.create_account("nope")

    def test_missing(self, store) -> None:
        assert store.get_account(999) is None
        assert store.find_account("ghost@example.com") is None


# ── Monitor CRUD ─────────────────────────────────────────────────────────────


class TestMonitorCrud:
    def test_create_schedules_one_period_ahead(self, store, account, clock) -> None:
        m = store.create_monitor(account.id, "https://example.com", "Home", 5)
        assert m.id
        assert m.in_progress is False
        assert m.claimed_at is None
        assert m.label == "Home"
        assert m.next_check_at == clock() + timedelta(minutes=5)
        assert m.owner_email == "owner@example.com"

    def test_create_clamps_frequency(self, store, account) -> None:
        m = store.create_monitor(account.id, "https://example.com", frequency_minutes=5000)
        assert m.frequency_minutes == 1440

    def test_invalid_url_persists_nothing(self, store, account) -> None:
        with pytest.raises(ValidationError):
            store.create_monitor(account.id, "not-a-url")
        assert store.list_monitors(account.id) == []

    def test_duplicate_url_per_owner(self, store, account) -> None:
        store.create_monitor(account.id, "https://example.com")
        with pytest.raises(ConflictError):
            store.create_monitor(account.id, "https://example.com")

    def test_same_url_different_owner(self, store, account) -> None:
        other = store.create_account("other@example.com")
        store.create_monitor(account.id, "https://example.com")
        m = store.create_monitor(other.id, "https://example.com")
        assert m.owner_id == other.id

    def test_unknown_owner(self, store) -> None:
        with pytest.raises(NotFoundError):
            store.create_monitor(404, "https://example.com")

    def test_update_keeps_existing_due_time(self, store, account, clock) -> None:
        m = store.create_monitor(account.id, "https://example.com", frequency_minutes=5)
        clock.advance(minutes=1)
        updated = store.update_monitor(m.id, account.id, "https://example.org", "New", 60)
        assert updated.url == "https://example.org"
        assert updated.label == "New"
        assert updated.frequency_minutes == 60
        assert updated.next_check_at == m.next_check_at

    def test_update_fills_missing_due_time(self, store, account, clock) -> None:
        m = store.create_monitor(account.id, "https://example.com")
        with store.transaction() as conn:
            conn.execute("UPDATE monitors SET next_check_at = NULL WHERE id = ?", (m.id,))
        updated = store.update_monitor(m.id, account.id, "https://example.com", None, 10)
        assert updated.next_check_at == clock() + timedelta(minutes=10)

    def test_update_missing(self, store, account) -> None:
        with pytest.raises(NotFoundError):
            store.update_monitor(999, account.id, "https://example.com")

    def test_update_into_duplicate(self, store, account) -> None:
        store.create_monitor(account.id, "https://a.example.com")
        b = store.create_monitor(account.id, "https://b.example.com")
        with pytest.raises(ConflictError):
            store.update_monitor(b.id, account.id, "https://a.example.com")

    def test_delete_cascades_results(self, store, account) -> None:
        m = store.create_monitor(account.id, "https://example.com")
        ResultReconciler(store).record_result(m.id, ProbeOutcome(http_code=200, response_time_ms=12.0))
        assert store.count_results(m.id) == 1

        store.delete_monitor(m.id)
        assert store.get_monitor(m.id) is None
        assert store.count_results(m.id) == 0

    def test_delete_missing(self, store) -> None:
        with pytest.raises(NotFoundError):
            store.delete_monitor(999)


class TestListings:
    def test_owner_sees_own_newest_first(self, store, account, clock) -> None:
        other = store.create_account("other@example.com")
        first = store.create_monitor(account.id, "https://one.example.com")
        clock.advance(seconds=1)
        second = store.create_monitor(account.id, "https://two.example.com")
        store.create_monitor(other.id, "https://three.example.com")

        ids = [m.id for m in store.list_monitors(account.id)]
        assert ids == [second.id, first.id]

    def test_admin_sees_all_grouped_by_email(self, store, clock) -> None:
        zed = store.create_account("zed@example.com")
        amy = store.create_account("amy@example.com")
        store.create_monitor(zed.id, "https://z.example.com")
        a1 = store.create_monitor(amy.id, "https://a1.example.com")
        clock.advance(seconds=1)
        a2 = store.create_monitor(amy.id, "https://a2.example.com")

        monitors = store.list_monitors(zed.id, is_admin=True)
        assert [m.owner_email for m in monitors] == ["amy@example.com", "amy@example.com", "zed@example.com"]
        assert [m.id for m in monitors[:2]] == [a2.id, a1.id]

    def test_recent_results_newest_first_and_limited(self, store, account, clock) -> None:
        m = store.create_monitor(account.id, "https://example.com")
        reconciler = ResultReconciler(store)
        for code in range(200, 212):
            clock.advance(minutes=1)
            reconciler.record_result(m.id, ProbeOutcome(http_code=code, checked_at=clock()))

        results = store.recent_results(m.id)
        assert len(results) == 10
        assert results[0].http_code == 211
        assert store.latest_result(m.id).http_code == 211
        assert len(store.recent_results(m.id, limit=3)) == 3
        assert store.recent_results(m.id, limit=0) == []
        assert store.count_results(m.id) == 12
