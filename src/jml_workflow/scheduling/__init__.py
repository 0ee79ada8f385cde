"""Periodic scheduler tick."""

from .scheduler import Scheduler, SchedulerResult, TickResult

__all__ = ["Scheduler", "SchedulerResult", "TickResult"]
