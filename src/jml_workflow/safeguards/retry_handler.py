"""Exponential backoff and the in-call retry wrapper that feeds the dead-letter queue."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from ..core.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryHandler:
    """
    Backoff calculator shared by step error policies, in-call retries and
    the dead-letter sweep. Units are whatever the caller passes in.

    Logic:
    - Backoff: initial * multiplier^(attempt-1), capped at max_backoff
    - After max_retries the caller gives up
    """

    def __init__(
        self,
        initial_backoff: float = 30,
        max_backoff: float = 240,
        multiplier: float = 2,
        max_retries: int = 5,
        jitter: bool = False,
    ):
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier
        self.max_retries = max_retries
        self.jitter = jitter

    def calculate_backoff(self, attempt: int) -> float:
        """
        Delay before retry number `attempt` (1-based).

        Formula: initial * multiplier^(attempt-1), capped at max_backoff.
        Jitter adds up to 10% and still respects the cap.
        """
        backoff = self.initial_backoff * (self.multiplier ** (max(attempt, 1) - 1))
        if self.jitter:
            backoff += backoff * random.uniform(0, 0.1)
        return min(backoff, self.max_backoff)

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries


@dataclass
class RetryOptions:
    max_retries: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 10000
    backoff_multiplier: float = 2
    jitter: bool = False

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryOptions":
        return cls(
            max_retries=config.max_retries,
            initial_delay_ms=config.initial_delay_ms,
            max_delay_ms=config.max_delay_ms,
            backoff_multiplier=config.backoff_multiplier,
            jitter=config.jitter,
        )

    def handler(self) -> RetryHandler:
        return RetryHandler(
            initial_backoff=self.initial_delay_ms,
            max_backoff=self.max_delay_ms,
            multiplier=self.backoff_multiplier,
            max_retries=self.max_retries,
            jitter=self.jitter,
        )


@dataclass
class RetryResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    attempts: int = 0
    total_duration_ms: float = 0
    dead_letter_item_id: Optional[str] = None


def retry_with_dlq(
    operation: Callable[[], T],
    operation_type: str,
    payload: Dict[str, Any],
    options: RetryOptions,
    queue,
    sleep: Callable[[float], None] = time.sleep,
    context: Optional[Dict[str, Any]] = None,
) -> RetryResult[T]:
    """
    Run `operation`, retrying with backoff; dead-letter it once exhausted.

    Makes up to max_retries + 1 attempts. Never raises on operation failure:
    the exhausted case persists exactly one DeadLetterItem and returns a
    failed RetryResult carrying its id.
    """
    handler = options.handler()
    total_attempts = options.max_retries + 1
    started = time.monotonic()
    last_error: Optional[Exception] = None

    for attempt in range(1, total_attempts + 1):
        try:
            data = operation()
            return RetryResult(
                success=True,
                data=data,
                attempts=attempt,
                total_duration_ms=(time.monotonic() - started) * 1000,
            )
        except Exception as e:
            last_error = e
            if attempt < total_attempts:
                delay_ms = handler.calculate_backoff(attempt)
                logger.warning(
                    f"{operation_type} failed (attempt {attempt}/{total_attempts}), "
                    f"retrying in {delay_ms:.0f}ms: {e}"
                )
                sleep(delay_ms / 1000)

    error_message = str(last_error)
    item = queue.add(
        operation_type=operation_type,
        payload=payload,
        error=error_message,
        attempts=total_attempts,
        context=context,
    )
    logger.error(
        f"{operation_type} failed after {total_attempts} attempts; dead-lettered as {item.id}: {error_message}"
    )
    return RetryResult(
        success=False,
        error=error_message,
        attempts=total_attempts,
        total_duration_ms=(time.monotonic() - started) * 1000,
        dead_letter_item_id=item.id,
    )
