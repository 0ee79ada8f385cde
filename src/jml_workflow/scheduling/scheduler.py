"""Periodic scheduler: timers, waiting instances, timeouts, SLAs and sweeps."""

import logging
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from ..core.config import SchedulerConfig, SLAConfig
from ..core.models import (
    WAITING_STATUSES,
    ApprovalStatus,
    LogLevel,
    ScheduledActionType,
    ScheduledItem,
    ScheduledItemStatus,
    StepState,
    StepStatus,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
)
from ..notifications.channel import NOTIFICATION_OPERATION, NotificationPriority
from ..safeguards.dead_letter import DeadLetterSweeper, SweepResult
from ..safeguards.resume_retry import COMPLETE_STEP, RESUME_WORKFLOW
from ..workflow.definition import DependencyType, Step, StepType
from .timers import DEFAULT_REMINDER_MESSAGE

if TYPE_CHECKING:
    from ..safeguards.resume_retry import ResumeRetryService
    from ..workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)

SLA_WARNING_ACTION = "SLA Warning"
SLA_BREACH_ACTION = "SLA Breach"


@dataclass
class SchedulerResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def record(self, ok: bool, error: Optional[str] = None) -> None:
        self.processed += 1
        if ok:
            self.succeeded += 1
        else:
            self.failed += 1
            if error:
                self.errors.append(error)


@dataclass
class TickResult:
    due_items: SchedulerResult = field(default_factory=SchedulerResult)
    timeouts: SchedulerResult = field(default_factory=SchedulerResult)
    waiting: SchedulerResult = field(default_factory=SchedulerResult)
    sla_warnings: int = 0
    sla_breaches: int = 0
    escalations: int = 0
    dead_letters: SweepResult = field(default_factory=SweepResult)
    skipped: bool = False
    started_at: Optional[datetime] = None
    duration_seconds: float = 0.0


class Scheduler:
    """
    One tick runs, in order: due scheduled items, step timeouts, waiting
    instances, the SLA sweep, overdue approvals and the dead-letter sweep.

    Every item and instance is processed in its own failure scope; an error
    is counted and logged, never raised out of the tick.
    """

    def __init__(
        self,
        engine: "WorkflowEngine",
        config: Optional[SchedulerConfig] = None,
        sla: Optional[SLAConfig] = None,
        sweeper: Optional[DeadLetterSweeper] = None,
        resume_retry: Optional["ResumeRetryService"] = None,
    ):
        self.engine = engine
        self.store = engine.store
        self.clock = engine.clock
        self.timers = engine.timers
        self.config = config or engine.config.scheduler
        self.sla = sla or engine.config.sla
        self.resume_retry = resume_retry

        if sweeper is None:
            retry_config = engine.config.resume_retry
            sweeper = DeadLetterSweeper(
                engine.dead_letters,
                self.clock,
                max_attempts=retry_config.max_retries,
                abandon_after=timedelta(hours=retry_config.abandon_after_hours),
                batch_size=retry_config.max_concurrent_retries,
            )
        if NOTIFICATION_OPERATION not in sweeper.operation_types:
            sweeper.register(NOTIFICATION_OPERATION, engine.notifications.replay)
        self.sweeper = sweeper

        self._is_processing = False
        self._running = False

    # --- Scheduling helpers ---

    def schedule_item(self, instance_id, step_id, action_type, scheduled_at, config=None) -> ScheduledItem:
        return self.timers.schedule_item(instance_id, step_id, action_type, scheduled_at, config)

    def schedule_step_execution(self, instance_id, step_id, at, config=None) -> ScheduledItem:
        return self.timers.schedule_step_execution(instance_id, step_id, at, config)

    def schedule_reminder(self, instance_id, step_id, at, recipient, message=None) -> ScheduledItem:
        return self.timers.schedule_reminder(instance_id, step_id, at, recipient, message)

    def schedule_sla_warning(self, instance_id, step_id, at, escalate_to=None) -> ScheduledItem:
        return self.timers.schedule_sla_warning(instance_id, step_id, at, escalate_to)

    def schedule_sla_breach(self, instance_id, step_id, at, escalate_to=None) -> ScheduledItem:
        return self.timers.schedule_sla_breach(instance_id, step_id, at, escalate_to)

    def schedule_escalation(self, instance_id, step_id, at, recipients, message) -> ScheduledItem:
        return self.timers.schedule_escalation(instance_id, step_id, at, recipients, message)


    def cancel_scheduled_items(self, instance_id: str, step_id: Optional[str] = None) -> int:
        return self.timers.cancel_scheduled_items(instance_id, step_id)

    # --- Counters ---

    def get_pending_count(self) -> int:
        return len(self.store.list_scheduled_items(status=ScheduledItemStatus.PENDING))

    def get_overdue_count(self) -> int:
        now = self.clock.now()
        return sum(
            1 for item in self.store.list_scheduled_items(status=ScheduledItemStatus.PENDING)
            if item.scheduled_at <= now
        )

    # --- Tick ---

    def tick(self) -> TickResult:
        """Run one full pass. Overlapping calls return a skipped result."""
        if self._is_processing:
            logger.debug("Scheduler tick already running, skipping")
            return TickResult(skipped=True)

        self._is_processing = True
        started = time.monotonic()
        result = TickResult(started_at=self.clock.now())
        try:
            result.due_items = self.process_due_items()
            result.timeouts = self.process_timeouts()
            result.waiting = self.process_waiting_workflows()

            violations = self.check_sla_violations()
            result.sla_warnings = violations["warnings"]
            result.sla_breaches = violations["breaches"]

            try:
                result.escalations = len(self.engine.approvals.process_overdue_approvals(self.clock.now()))
            except Exception as e:
                logger.error(f"Overdue approval processing failed: {e}")

            result.dead_letters = self.sweeper.process()
            if self.resume_retry is not None:
                self.resume_retry.process_retry_queue()
        finally:
            self._is_processing = False
            result.duration_seconds = time.monotonic() - started

        if result.due_items.processed or result.waiting.processed or result.timeouts.processed:
            logger.info(
                f"Tick: {result.due_items.processed} item(s), {result.timeouts.processed} timeout(s), "
                f"{result.waiting.succeeded} resumed, {result.sla_warnings} SLA warning(s), "
                f"{result.sla_breaches} breach(es)"
            )
        return result

    def run(self, max_ticks: Optional[int] = None, sleep: Callable[[float], None] = time.sleep) -> int:
        """Tick every tick_interval_seconds until stop() or max_ticks. Returns ticks run."""
        logger.info(f"Scheduler starting (interval {self.config.tick_interval_seconds}s)")
        self._running = True
        ticks = 0
        while self._running:
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            sleep(self.config.tick_interval_seconds)
        self._running = False
        return ticks

    def stop(self) -> None:
        logger.info("Scheduler stopping")
        self._running = False

    # --- Due items ---

    def process_due_items(self) -> SchedulerResult:
        result = SchedulerResult()
        items = self.store.get_due_items(self.clock.now(), self.config.batch_size)
        if not items:
            return result

        # Items of one instance stay together and in order
        groups: "OrderedDict[str, List[ScheduledItem]]" = OrderedDict()
        for item in items:
            groups.setdefault(item.instance_id, []).append(item)

        if self.config.concurrency > 1 and len(groups) > 1:
            workers = min(self.config.concurrency, len(groups))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outcomes = [o for group in pool.map(self._process_group, groups.values()) for o in group]
        else:
            outcomes = [o for group in groups.values() for o in self._process_group(group)]

        for ok, error in outcomes:
            if ok is not None:
                result.record(ok, error)
        return result

    def _process_group(self, items: List[ScheduledItem]) -> List[Tuple[Optional[bool], Optional[str]]]:
        return [self._process_item(item) for item in items]

    def _process_item(self, item: ScheduledItem) -> Tuple[Optional[bool], Optional[str]]:
        """(ok, error); ok is None when the item was left for a later tick."""
        instance = self.store.get_instance(item.instance_id)
        now = self.clock.now()

        if instance is None or instance.is_terminal:
            item.status = ScheduledItemStatus.CANCELLED
            item.processed_at = now
            self.store.save_scheduled_item(item)
            return True, None

        if instance.status == WorkflowStatus.PAUSED and item.action_type == ScheduledActionType.EXECUTE_STEP:
            return None, None

        item.status = ScheduledItemStatus.PROCESSING
        self.store.save_scheduled_item(item)
        try:
            self._dispatch(item, instance)
        except Exception as e:
            item.retry_count += 1
            item.error_message = str(e)
            exhausted = item.retry_count >= self.config.max_item_retries
            item.status = ScheduledItemStatus.FAILED if exhausted else ScheduledItemStatus.PENDING
            item.processed_at = now
            self.store.save_scheduled_item(item)
            logger.error(
                f"Scheduled {item.action_type.value} {item.id} failed "
                f"(attempt {item.retry_count}/{self.config.max_item_retries}): {e}"
            )
            return False, f"{item.id}: {e}"

        item.status = ScheduledItemStatus.COMPLETED
        item.processed_at = now
        self.store.save_scheduled_item(item)
        return True, None

    def _dispatch(self, item: ScheduledItem, instance: WorkflowInstance) -> None:
        action = item.action_type
        if action == ScheduledActionType.EXECUTE_STEP:
            self._execute_step_item(item, instance)
        elif action == ScheduledActionType.REMINDER:
            self._send_reminder(item, instance)
        elif action == ScheduledActionType.SLA_WARNING:
            step, step_status = self._active_step(instance, item.step_id)
            if step is not None:
                self._emit_sla(instance, step, step_status, breach=False, escalate_to=item.config.get("escalate_to"))
        elif action == ScheduledActionType.SLA_BREACH:
            step, step_status = self._active_step(instance, item.step_id)
            if step is not None:
                self._emit_sla(instance, step, step_status, breach=True, escalate_to=item.config.get("escalate_to"))
        elif action == ScheduledActionType.ESCALATION:
            recipients = list(item.config.get("recipients") or [])
            self.engine.notifications.notify(
                recipients,
                f"Escalation: workflow {instance.id}",
                item.config.get("message") or "A workflow step needs your attention.",
                NotificationPriority.HIGH,
                instance_id=instance.id,
            )

    def _execute_step_item(self, item: ScheduledItem, instance: WorkflowInstance) -> None:
        if item.step_id and instance.current_step_id != item.step_id:
            step_status = self.store.get_step_status(instance.id, item.step_id)
            if step_status is None or step_status.status != StepState.IN_PROGRESS:
                logger.debug(f"Timer {item.id} for {instance.id}/{item.step_id} is stale, ignoring")
                return
            instance.current_step_id = item.step_id

        instance.status = WorkflowStatus.RUNNING
        instance.wait_for_item_ids = []
        instance.wait_for_item_type = None
        instance.updated_at = self.clock.now()
        self.store.save_instance(instance)
        self.engine.audit(instance.id, item.step_id, "Step Resumed", "Resumed by scheduled timer")
        self.engine.advance(instance.id)

    def _send_reminder(self, item: ScheduledItem, instance: WorkflowInstance) -> None:
        step, _ = self._active_step(instance, item.step_id)
        if item.step_id and step is None:
            return
        recipient = item.config.get("recipient")
        if not recipient:
            return
        label = (step.name or step.id) if step is not None else instance.definition_code
        self.engine.notifications.notify(
            [recipient],
            f"Reminder: {label}",
            item.config.get("message") or DEFAULT_REMINDER_MESSAGE,
            NotificationPriority.NORMAL,
            instance_id=instance.id,
        )

    def _active_step(
        self, instance: WorkflowInstance, step_id: Optional[str],
    ) -> Tuple[Optional[Step], Optional[StepStatus]]:
        """The step and its status, or (None, None) when it is already done."""
        if not step_id:
            return None, None
        step_status = self.store.get_step_status(instance.id, step_id)
        if step_status is None or step_status.status != StepState.IN_PROGRESS:
            return None, None
        definition = self.engine.definitions.get(instance.definition_code, instance.definition_version)
        return definition.get_step(step_id), step_status

    # --- SLA ---

    def _already_emitted(self, instance_id: str, step_status: StepStatus, action: str) -> bool:
        since = step_status.started_at
        return any(
            since is None or entry.timestamp >= since
            for entry in self.store.list_audit_entries(instance_id, step_status.step_id, action)
        )

    def _emit_sla(
        self,
        instance: WorkflowInstance,
        step: Step,
        step_status: StepStatus,
        breach: bool,
        escalate_to: Optional[str] = None,
    ) -> bool:
        """Audit and notify once per step entry. Returns False if already emitted."""
        action = SLA_BREACH_ACTION if breach else SLA_WARNING_ACTION
        if self._already_emitted(instance.id, step_status, action):
            return False

        label = step.name or step.id
        if breach:
            self.engine.audit(instance.id, step.id, action, f"SLA breached on '{label}'", LogLevel.ERROR)
            recipients = [escalate_to or instance.started_by]
            self.engine.notifications.notify(
                [r for r in recipients if r],
                f"Escalation: SLA breached on {label}",
                f"Workflow {instance.id} has exceeded the SLA for '{label}'.",
                NotificationPriority.HIGH,
                instance_id=instance.id,
            )
        else:
            self.engine.audit(instance.id, step.id, action, f"SLA warning on '{label}'", LogLevel.WARNING)
            if escalate_to:
                self.engine.notifications.notify(
                    [escalate_to],
                    f"SLA warning: {label}",
                    f"Workflow {instance.id} is approaching the SLA for '{label}'.",
                    NotificationPriority.NORMAL,
                    instance_id=instance.id,
                )
        return True

    def check_sla_violations(self) -> Dict[str, int]:
        """Sweep in-progress steps against their SLA, or the configured defaults."""
        now = self.clock.now()
        counts = {"warnings": 0, "breaches": 0}
        for step_status in self.store.list_step_statuses(status=StepState.IN_PROGRESS):
            try:
                instance = self.store.get_instance(step_status.instance_id)
                if instance is None or instance.is_terminal or step_status.started_at is None:
                    continue
                definition = self.engine.definitions.get(instance.definition_code, instance.definition_version)
                step = definition.get_step(step_status.step_id)
                if step is None:
                    continue

                warning_hours = self.sla.default_warning_hours
                breach_hours = self.sla.default_breach_hours
                escalate_to = None
                if step.sla is not None:
                    warning_hours = step.sla.warning_hours or warning_hours
                    breach_hours = step.sla.breach_hours or breach_hours
                    escalate_to = step.sla.escalate_to

                elapsed = now - step_status.started_at
                if elapsed >= timedelta(hours=warning_hours):
                    if self._emit_sla(instance, step, step_status, breach=False, escalate_to=escalate_to):
                        counts["warnings"] += 1
                if elapsed >= timedelta(hours=breach_hours):
                    if self._emit_sla(instance, step, step_status, breach=True, escalate_to=escalate_to):
                        counts["breaches"] += 1
            except Exception as e:
                logger.error(f"SLA check failed for {step_status.instance_id}/{step_status.step_id}: {e}")
        return counts

    # --- Timeouts ---

    def process_timeouts(self) -> SchedulerResult:
        result = SchedulerResult()
        now = self.clock.now()
        for instance in self.store.list_instances(statuses=WAITING_STATUSES):
            if instance.timeout_at is None or instance.timeout_at > now:
                continue
            try:
                self.engine.handle_timeout(instance.id, now)
                result.record(True)
            except Exception as e:
                logger.error(f"Timeout handling failed for {instance.id}: {e}")
                result.record(False, f"{instance.id}: {e}")
        return result

    # --- Waiting instances ---

    def process_waiting_workflows(self) -> SchedulerResult:
        """Resume waiting instances whose tasks or approvals are settled."""
        result = SchedulerResult()
        instances = self.store.list_instances(
            statuses=[WorkflowStatus.WAITING_FOR_TASK, WorkflowStatus.WAITING_FOR_APPROVAL],
            limit=self.config.batch_size,
        )
        for instance in instances:
            try:
                if instance.status == WorkflowStatus.WAITING_FOR_TASK:
                    resumed = self._check_tasks(instance)
                else:
                    resumed = self._check_approvals(instance)
            except Exception as e:
                logger.error(f"Failed to resume waiting instance {instance.id}: {e}")
                result.record(False, f"{instance.id}: {e}")
                if self.resume_retry is not None:
                    operation = COMPLETE_STEP if instance.status == WorkflowStatus.WAITING_FOR_TASK else RESUME_WORKFLOW
                    self.resume_retry.queue_for_retry(instance.id, instance.current_step_id, str(e), operation)
                continue
            if resumed:
                result.record(True)
        return result

    def _wait_type(self, instance: WorkflowInstance) -> DependencyType:
        definition = self.engine.definitions.get(instance.definition_code, instance.definition_version)
        step = definition.get_step(instance.current_step_id) if instance.current_step_id else None
        if step is not None and step.type == StepType.WAIT_FOR_TASKS:
            return step.config.wait_type
        return DependencyType.ALL

    def _check_tasks(self, instance: WorkflowInstance) -> bool:
        if instance.wait_for_item_ids:
            tasks = [t for t in (self.store.get_task(i) for i in instance.wait_for_item_ids) if t is not None]
        else:
            tasks = self.store.list_tasks(instance_id=instance.id)
        tasks = [t for t in tasks if t.status != TaskStatus.CANCELLED]

        done = [t.id for t in tasks if t.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)]
        if self._wait_type(instance) == DependencyType.ANY:
            satisfied = not tasks or bool(done)
        else:
            satisfied = len(done) == len(tasks)
        if not satisfied:
            return False

        self.engine.complete_waiting_step(
            instance.id, instance.current_step_id, output={"completed_task_ids": done},
        )
        return True

    def _check_approvals(self, instance: WorkflowInstance) -> bool:
        chains = [
            c for c in self.store.list_approval_chains(instance_id=instance.id)
            if c.step_id is None or c.step_id == instance.current_step_id
        ]
        if any(c.status == ApprovalStatus.PENDING for c in chains):
            return False

        if not chains:
            # Approval gathered outside any chain: nothing pending, so the step is done
            self.engine.complete_waiting_step(instance.id, instance.current_step_id)
            return True

        # Re-entering the approval step records the outcome, or fails it on rejection
        self.engine.resume_workflow(instance.id)
        return True
