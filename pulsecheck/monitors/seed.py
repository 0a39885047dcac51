"""Seed loader — reads a monitors.yaml of accounts and their monitors.

Example::

    accounts:
      - email: ops@example.com
        monitors:
          - url: https://example.com
            label: Homepage
            frequency_minutes: 5

Existing accounts are reused and duplicate monitors are skipped, so the
same file can be applied repeatedly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from pulsecheck.errors import ConflictError, ValidationError
from pulsecheck.monitors.store import MonitorStore

logger = logging.getLogger(__name__)


@dataclass
class SeedReport:
    accounts_created: int = 0
    monitors_created: int = 0
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accounts_created": self.accounts_created,
            "monitors_created": self.monitors_created,
            "skipped": list(self.skipped),
        }


def load_seed_file(path: Path) -> list[dict[str, Any]]:
    """Parse a seed file into its list of account entries."""
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValidationError(f"{path}: top level must be a mapping with an 'accounts' list")
    accounts = raw.get("accounts") or []
    if not isinstance(accounts, list):
        raise ValidationError(f"{path}: 'accounts' must be a list")
    return accounts


def apply_seed(store: MonitorStore, entries: list[dict[str, Any]]) -> SeedReport:
    """Create the accounts and monitors described by ``entries``."""
    report = SeedReport()

    for entry in entries:
        entry = entry or {}
        email = entry.get("email", "")
        account = store.find_account(email)
        if account is None:
            try:
                account = store.create_account(email)
            except ValidationError as e:
                report.skipped.append(f"account {email!r}: {e}")
                continue
            report.accounts_created += 1

        for m in entry.get("monitors") or []:
            m = m or {}
            url = m.get("url", "")
            try:
                store.create_monitor(
                    account.id,
                    url,
                    label=m.get("label"),
                    frequency_minutes=m.get("frequency_minutes"),
                )
            except (ValidationError, ConflictError) as e:
                report.skipped.append(f"{account.email} {url}: {e}")
                continue
            report.monitors_created += 1

    logger.info(
        "Seed applied: %d account(s), %d monitor(s), %d skipped",
        report.accounts_created, report.monitors_created, len(report.skipped),
    )
    return report


def seed_from_file(store: MonitorStore, path: Path) -> SeedReport:
    return apply_seed(store, load_seed_file(path))
