"""
Backup scheduling and the per-session orchestrator.
"""

from .backup import (
    BackupOrchestrator,
    BackupState,
    BackupStatus,
    StartupOutcome,
    StartupResult,
)
from .scheduler import AsyncioClock, Clock, CoalescingScheduler, ManualClock, PeriodicTimer

__all__ = [
    "AsyncioClock",
    "BackupOrchestrator",
    "BackupState",
    "BackupStatus",
    "Clock",
    "CoalescingScheduler",
    "ManualClock",
    "PeriodicTimer",
    "StartupOutcome",
    "StartupResult",
]
