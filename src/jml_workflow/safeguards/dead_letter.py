"""Persistent dead-letter queue and the periodic sweep that re-attempts its items."""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from ..core.clock import Clock
from ..core.models import DeadLetterItem, DeadLetterStatus
from ..errors.exceptions import InvalidStateError, NotFoundError
from ..storage.base import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass
class DeadLetterStats:
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    by_operation_type: Dict[str, int] = field(default_factory=dict)


class DeadLetterQueue:
    """Store-backed queue of operations that exhausted their retry budget."""

    def __init__(self, store: WorkflowStore, clock: Clock):
        self.store = store
        self.clock = clock

    def add(
        self,
        operation_type: str,
        payload: Dict[str, Any],
        error: str,
        attempts: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> DeadLetterItem:
        now = self.clock.now()
        item = DeadLetterItem(
            operation_type=operation_type,
            payload=payload,
            error=error,
            attempts=attempts,
            created_at=now,
            last_attempt_at=now,
            context=context or {},
        )
        self.store.save_dead_letter(item)
        logger.info(f"Dead-lettered {operation_type} operation {item.id} after {attempts} attempt(s)")
        return item

    def get(self, item_id: str) -> DeadLetterItem:
        item = self.store.get_dead_letter(item_id)
        if item is None:
            raise NotFoundError(f"Dead-letter item not found: {item_id}")
        return item

    def list(
        self,
        status: Optional[DeadLetterStatus] = None,
        operation_type: Optional[str] = None,
    ) -> List[DeadLetterItem]:
        return self.store.list_dead_letters(status=status, operation_type=operation_type)

    def get_pending(self, operation_type: Optional[str] = None) -> List[DeadLetterItem]:
        return self.list(status=DeadLetterStatus.PENDING, operation_type=operation_type)

    def mark_processing(self, item_id: str) -> DeadLetterItem:
        item = self.get(item_id)
        if item.status in (DeadLetterStatus.RESOLVED, DeadLetterStatus.ABANDONED):
            raise InvalidStateError(f"Dead-letter item {item_id} is already {item.status.value}")
        item.status = DeadLetterStatus.PROCESSING
        item.last_attempt_at = self.clock.now()
        self.store.save_dead_letter(item)
        return item

    def mark_resolved(self, item_id: str, notes: Optional[str] = None) -> DeadLetterItem:
        item = self.get(item_id)
        item.status = DeadLetterStatus.RESOLVED
        item.resolved_at = self.clock.now()
        item.resolution_notes = notes
        self.store.save_dead_letter(item)
        return item

    def mark_abandoned(self, item_id: str, reason: str) -> DeadLetterItem:
        item = self.get(item_id)
        item.status = DeadLetterStatus.ABANDONED
        item.resolved_at = self.clock.now()
        item.resolution_notes = reason
        self.store.save_dead_letter(item)
        logger.warning(f"Abandoned dead-letter item {item_id} ({item.operation_type}): {reason}")
        return item

    def update_attempt(self, item_id: str, error: Optional[str] = None) -> DeadLetterItem:
        """Record a failed re-attempt and put the item back in the pending set."""
        item = self.get(item_id)
        item.attempts += 1
        item.status = DeadLetterStatus.PENDING
        item.last_attempt_at = self.clock.now()
        if error:
            item.error = error
        self.store.save_dead_letter(item)
        return item

    def reopen(self, item_id: str) -> DeadLetterItem:
        """Return an abandoned item to the pending set for a manual retry."""
        item = self.get(item_id)
        item.status = DeadLetterStatus.PENDING
        item.resolved_at = None
        item.resolution_notes = None
        self.store.save_dead_letter(item)
        return item

    def get_stats(self) -> DeadLetterStats:
        stats = DeadLetterStats()
        for status in DeadLetterStatus:
            stats.by_status[status.value] = 0
        for item in self.list():
            stats.total += 1
            stats.by_status[item.status.value] += 1
            stats.by_operation_type[item.operation_type] = stats.by_operation_type.get(item.operation_type, 0) + 1
        return stats

    def purge_resolved(self, older_than: timedelta) -> int:
        cutoff = self.clock.now() - older_than
        purged = 0
        for item in self.list(status=DeadLetterStatus.RESOLVED):
            if item.resolved_at and item.resolved_at < cutoff:
                if self.store.delete_dead_letter(item.id):
                    purged += 1
        return purged


@dataclass
class ReplayOutcome:
    """What a replayer reports for one dead-letter item."""
    success: bool
    note: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SweepItemResult:
    item_id: str
    operation_type: str
    success: bool
    abandoned: bool = False
    note: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SweepResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0
    results: List[SweepItemResult] = field(default_factory=list)


Replayer = Callable[[DeadLetterItem], ReplayOutcome]


class DeadLetterSweeper:
    """
    Periodic re-attempt loop over pending dead-letter items.

    Replayers are registered per operation type. A replayer decides whether
    the item is still relevant (returning success without re-executing when
    it is not) and otherwise re-runs the operation. Items past the age or
    attempt ceiling are abandoned for manual handling.
    """

    def __init__(
        self,
        queue: DeadLetterQueue,
        clock: Clock,
        max_attempts: int = 5,
        abandon_after: timedelta = timedelta(hours=24),
        batch_size: int = 3,
    ):
        self.queue = queue
        self.clock = clock
        self.max_attempts = max_attempts
        self.abandon_after = abandon_after
        self.batch_size = batch_size
        self._replayers: Dict[str, Replayer] = {}
        self._is_processing = False

    def register(self, operation_type: str, replayer: Replayer) -> None:
        self._replayers[operation_type] = replayer

    @property
    def operation_types(self) -> List[str]:
        return list(self._replayers)

    def process(
        self,
        operation_types: Optional[List[str]] = None,
        is_ready: Optional[Callable[[DeadLetterItem], bool]] = None,
    ) -> SweepResult:
        """
        Run one sweep. A call while another sweep is running is a no-op.

        Args:
            operation_types: Restrict the sweep to these types (default: all registered)
            is_ready: Items for which this returns False are left for a later sweep
        """
        if self._is_processing:
            logger.debug("Dead-letter sweep already running, skipping")
            return SweepResult()

        self._is_processing = True
        try:
            wanted = set(operation_types or self._replayers)
            pending = [
                item for item in self.queue.get_pending()
                if item.operation_type in wanted and (is_ready is None or is_ready(item))
            ]
            result = SweepResult()
            for item in pending[:self.batch_size]:
                item_result = self._process_item(item)
                result.results.append(item_result)
                result.processed += 1
                if item_result.abandoned:
                    result.abandoned += 1
                elif item_result.success:
                    result.succeeded += 1
                else:
                    result.failed += 1

            if result.processed:
                logger.info(
                    f"Dead-letter sweep: {result.succeeded} succeeded, "
                    f"{result.failed} failed, {result.abandoned} abandoned"
                )
            return result
        finally:
            self._is_processing = False

    def _process_item(self, item: DeadLetterItem) -> SweepItemResult:
        age = self.clock.now() - item.created_at
        if age > self.abandon_after:
            hours = int(self.abandon_after.total_seconds() // 3600)
            reason = f"Auto-abandoned after {hours} hours"
            self.queue.mark_abandoned(item.id, reason)
            return SweepItemResult(item.id, item.operation_type, False, abandoned=True, error=reason)

        if item.attempts >= self.max_attempts:
            reason = "Max retries exceeded"
            self.queue.mark_abandoned(item.id, reason)
            return SweepItemResult(item.id, item.operation_type, False, abandoned=True, error=reason)

        return self._replay(item)

    def _replay(self, item: DeadLetterItem) -> SweepItemResult:
        replayer = self._replayers.get(item.operation_type)
        if replayer is None:
            return SweepItemResult(
                item.id, item.operation_type, False,
                error=f"No replayer registered for {item.operation_type}",
            )

        self.queue.mark_processing(item.id)
        try:
            outcome = replayer(item)
        except Exception as e:
            logger.error(f"Replay of dead-letter item {item.id} raised: {e}")
            outcome = ReplayOutcome(success=False, error=str(e))

        if outcome.success:
            self.queue.mark_resolved(item.id, outcome.note)
        else:
            self.queue.update_attempt(item.id, outcome.error)
        return SweepItemResult(
            item.id, item.operation_type, outcome.success,
            note=outcome.note, error=outcome.error,
        )

    def force_retry(self, item_id: str) -> SweepItemResult:
        """Replay one item now, ignoring the age and attempt ceilings."""
        item = self.queue.get(item_id)
        if item.status == DeadLetterStatus.RESOLVED:
            raise InvalidStateError(f"Dead-letter item {item_id} is already resolved")
        if item.status == DeadLetterStatus.ABANDONED:
            item = self.queue.reopen(item_id)
        return self._replay(item)
