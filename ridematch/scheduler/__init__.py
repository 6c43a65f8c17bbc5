"""Scheduling module for periodic execution of the maintenance sweeps."""

from .service import SchedulerService

__all__ = [
    "SchedulerService",
]
