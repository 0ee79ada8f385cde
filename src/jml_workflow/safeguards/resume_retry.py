"""Dead-letter replay of failed workflow resume operations."""

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Callable, Dict, Optional

from ..core.clock import Clock
from ..core.config import ResumeRetryConfig
from ..core.models import DeadLetterItem, WorkflowStatus
from ..storage.base import WorkflowStore
from .dead_letter import DeadLetterQueue, DeadLetterSweeper, ReplayOutcome, SweepItemResult
from .retry_handler import RetryHandler

if TYPE_CHECKING:
    from ..workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)

RESUME_WORKFLOW = "resume_workflow"
COMPLETE_STEP = "complete_step"
EXECUTE_STEP = "execute_step"

RESUME_OPERATIONS = (RESUME_WORKFLOW, COMPLETE_STEP, EXECUTE_STEP)


@dataclass
class RetryQueueResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class ResumeRetryService:
    """
    Queues resume operations that failed inside a scheduler tick and replays
    them with backoff on later ticks.

    An instance that is already terminal or Running when its item comes up
    is resolved without re-executing anything; someone else moved it on.
    """

    def __init__(
        self,
        engine: "WorkflowEngine",
        queue: Optional[DeadLetterQueue] = None,
        store: Optional[WorkflowStore] = None,
        clock: Optional[Clock] = None,
        config: Optional[ResumeRetryConfig] = None,
    ):
        self.engine = engine
        self.queue = queue or engine.dead_letters
        self.store = store or engine.store
        self.clock = clock or engine.clock
        self.config = config or engine.config.resume_retry

        self.backoff = RetryHandler(
            initial_backoff=self.config.initial_delay_seconds,
            max_backoff=self.config.max_delay_seconds,
            max_retries=self.config.max_retries,
        )
        self.sweeper = DeadLetterSweeper(
            self.queue,
            self.clock,
            max_attempts=self.config.max_retries,
            abandon_after=timedelta(hours=self.config.abandon_after_hours),
            batch_size=self.config.max_concurrent_retries,
        )
        replayers: Dict[str, Callable[[str, Optional[str], dict], None]] = {
            RESUME_WORKFLOW: lambda i, s, p: self.engine.resume_workflow(i, p.get("trigger_data")),
            COMPLETE_STEP: lambda i, s, p: self.engine.complete_waiting_step(i, s, p.get("output")),
            EXECUTE_STEP: lambda i, s, p: self.engine.execute_step(i, s),
        }
        for operation, run in replayers.items():
            self.sweeper.register(operation, self._replayer(run))

    def queue_for_retry(
        self,
        instance_id: str,
        step_id: Optional[str],
        error: str,
        operation: str = RESUME_WORKFLOW,
        **payload,
    ) -> DeadLetterItem:
        if operation not in RESUME_OPERATIONS:
            raise ValueError(f"Unknown resume operation: {operation}")
        item = self.queue.add(
            operation_type=operation,
            payload={"instance_id": instance_id, "step_id": step_id, **payload},
            error=error,
            attempts=1,
            context={"instance_id": instance_id},
        )
        logger.warning(f"Queued {operation} for {instance_id} for retry: {error}")
        return item

    def _is_due(self, item: DeadLetterItem) -> bool:
        if item.last_attempt_at is None:
            return True
        delay = self.backoff.calculate_backoff(item.attempts)
        return self.clock.now() >= item.last_attempt_at + timedelta(seconds=delay)

    def process_retry_queue(self) -> Dict[str, int]:
        """Replay due items. Returns {processed, succeeded, failed, abandoned}."""
        sweep = self.sweeper.process(list(RESUME_OPERATIONS), is_ready=self._is_due)
        return RetryQueueResult(
            processed=sweep.processed,
            succeeded=sweep.succeeded,
            failed=sweep.failed,
            abandoned=sweep.abandoned,
        ).to_dict()

    def force_retry(self, item_id: str) -> SweepItemResult:
        return self.sweeper.force_retry(item_id)

    def _replayer(self, run: Callable[[str, Optional[str], dict], None]):
        def replay(item: DeadLetterItem) -> ReplayOutcome:
            payload = item.payload
            instance_id = payload.get("instance_id")
            instance = self.store.get_instance(instance_id) if instance_id else None
            if instance is None:
                return ReplayOutcome(success=True, note="Instance no longer exists")
            if instance.is_terminal:
                return ReplayOutcome(success=True, note=f"Instance already {instance.status.value}")
            if instance.status == WorkflowStatus.RUNNING:
                return ReplayOutcome(success=True, note="Instance already running")

            try:
                run(instance_id, payload.get("step_id"), payload)
            except Exception as e:
                logger.error(f"Retry of {item.operation_type} for {instance_id} failed: {e}")
                return ReplayOutcome(success=False, error=str(e))
            return ReplayOutcome(success=True, note=f"Replayed {item.operation_type}")

        return replay
