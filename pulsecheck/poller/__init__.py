"""Pollers that drive the claim → probe → report cycle."""

from .client import CheckApiClient, CheckApiError, CheckApiOfflineError
from .worker import CheckPoller, JobSource, LocalJobSource, PollerState, PollSummary

__all__ = [
    "CheckApiClient",
    "CheckApiError",
    "CheckApiOfflineError",
    "CheckPoller",
    "JobSource",
    "LocalJobSource",
    "PollerState",
    "PollSummary",
]
