"""pulsecheck — scheduled URL uptime checks with claim/probe/reconcile pipeline."""

__version__ = "0.1.0"
