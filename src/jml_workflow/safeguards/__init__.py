"""Retry, backoff and dead-letter reliability layer."""

from .dead_letter import DeadLetterQueue, DeadLetterSweeper, ReplayOutcome, SweepResult
from .resume_retry import ResumeRetryService
from .retry_handler import RetryHandler, RetryOptions, RetryResult, retry_with_dlq

__all__ = [
    "DeadLetterQueue",
    "DeadLetterSweeper",
    "ReplayOutcome",
    "ResumeRetryService",
    "RetryHandler",
    "RetryOptions",
    "RetryResult",
    "SweepResult",
    "retry_with_dlq",
]
