"""Scheduling subsystem — claim engine and result reconciler."""

from .claims import ClaimedJob, ClaimEngine
from .reconciler import MonitorView, ResultReconciler
