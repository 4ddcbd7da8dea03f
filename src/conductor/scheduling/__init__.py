"""Cron scheduling: evaluation helpers, timing backend and scheduler service."""

from conductor.scheduling.cron import latest_fire_time, next_fire_time, validate_cron
from conductor.scheduling.service import SchedulerHealth, SchedulerStats, TaskScheduler, TickResult
from conductor.scheduling.thread_backend import ThreadSchedulerBackend

__all__ = [
    "TaskScheduler",
    "TickResult",
    "SchedulerStats",
    "SchedulerHealth",
    "ThreadSchedulerBackend",
    "validate_cron",
    "next_fire_time",
    "latest_fire_time",
]
