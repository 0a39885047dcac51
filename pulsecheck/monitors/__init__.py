"""Monitor subsystem — SQLite store, row types and YAML seeding."""

from .seed import SeedReport, apply_seed, seed_from_file
from .store import Account, CheckResultRecord, Monitor, MonitorStore
