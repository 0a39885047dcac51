"""Health subsystem — HTTP probe executor and status classification."""

from .probe import ProbeExecutor, ProbeOutcome, Status, classify_status
