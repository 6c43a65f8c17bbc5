"""Maintenance sweeps: match expiry, confirmation timeout, request cleanup, reminders."""

from .jobs import ScheduledMaintenanceJobs
from .models import MaintenanceRunResult, SweepResult

__all__ = [
    "ScheduledMaintenanceJobs",
    "SweepResult",
    "MaintenanceRunResult",
]
