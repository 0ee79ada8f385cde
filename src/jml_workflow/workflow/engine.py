"""Workflow engine: drives instances through their definition's step graph."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..approvals.chain import ApprovalChainService
from ..core.clock import Clock, SystemClock
from ..core.config import EngineConfig
from ..core.models import (
    AuditLogEntry,
    LogLevel,
    ParallelExecutionContext,
    StepState,
    StepStatus,
    WaitItemType,
    WorkflowInstance,
    WorkflowStatus,
)
from ..errors.exceptions import (
    HANDLER_ERROR,
    NO_HANDLER,
    PARALLEL_BRANCH_FAILED,
    STEP_NOT_FOUND,
    WAIT_TIMEOUT,
    ConfigurationError,
    ExecutionError,
    InvalidStateError,
    NotFoundError,
)
from ..notifications.channel import LoggingChannel, NotificationPriority, NotificationService
from ..safeguards.dead_letter import DeadLetterQueue
from ..safeguards.retry_handler import RetryHandler, RetryOptions
from ..scheduling.timers import TimerService
from ..storage.base import WorkflowStore
from ..tasks.dependencies import TaskDependencyService
from ..utils.rich_logging import InstanceLogger
from .conditions import ConditionContext, evaluate_condition_groups, replace_tokens
from .definition import (
    DefinitionStatus,
    ErrorAction,
    ErrorPolicy,
    Step,
    StepType,
    TimeoutAction,
    WorkflowDefinition,
)
from .handlers import (
    ActionCallable,
    ExecutionContext,
    HandlerRegistry,
    LoggingWebhookSender,
    NextAction,
    StepResult,
    WebhookSender,
)
from .parallel import ParallelSynchronizer, get_branch_by_step
from .repository import DefinitionRepository
from .transitions import OutcomeKind, TransitionOutcome, TransitionResolver

logger = logging.getLogger(__name__)

STEP_LIMIT_EXCEEDED = "STEP_LIMIT_EXCEEDED"

_WAIT_STATUS = {
    WaitItemType.TASK: WorkflowStatus.WAITING_FOR_TASK,
    WaitItemType.APPROVAL: WorkflowStatus.WAITING_FOR_APPROVAL,
    WaitItemType.INPUT: WorkflowStatus.WAITING_FOR_INPUT,
}

_BRANCH_FINISHED = (StepState.COMPLETED, StepState.SKIPPED, StepState.FAILED, StepState.CANCELLED)


class _RunKind(str, Enum):
    NEXT = "next"
    PARALLEL = "parallel"
    COMPLETE = "complete"
    BRANCH_FAILED = "branch_failed"
    STOP = "stop"


@dataclass
class _StepRun:
    """Where execution goes after one step."""
    kind: _RunKind
    target: Optional[str] = None
    source_step_id: Optional[str] = None
    outcome: Optional[TransitionOutcome] = None

    @classmethod
    def next(cls, target: str) -> "_StepRun":
        return cls(_RunKind.NEXT, target=target)

    @classmethod
    def stop(cls) -> "_StepRun":
        return cls(_RunKind.STOP)


@dataclass
class _BranchRef:
    context_id: str
    branch_id: str
    join_step: Optional[str] = None


@dataclass
class _JoinReady:
    context: ParallelExecutionContext
    merged_output: Dict[str, Any] = field(default_factory=dict)


class WorkflowEngine:
    """
    Executes workflow instances.

    Execution is iterative: each step yields a _StepRun and the driver loop
    follows it until the instance waits, completes, fails, or the per-call
    step guard trips. Parallel branches run in sequence on the calling
    thread, each until it reaches the join step or ends.
    """

    def __init__(
        self,
        store: WorkflowStore,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
        notifications: Optional[NotificationService] = None,
        handlers: Optional[HandlerRegistry] = None,
        actions: Optional[Dict[str, ActionCallable]] = None,
        webhook_sender: Optional[WebhookSender] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
        max_steps_per_advance: int = 500,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.config = config or EngineConfig()
        self.dead_letters = dead_letters or DeadLetterQueue(store, self.clock)
        self.notifications = notifications or NotificationService(
            LoggingChannel(), self.dead_letters, RetryOptions.from_config(self.config.retry),
        )
        self.definitions = DefinitionRepository(store, self.clock, self.config.definition_cache)
        self.timers = TimerService(store, self.clock)
        self.parallel = ParallelSynchronizer(store, self.clock)
        self.tasks = TaskDependencyService(store, self.clock, self.notifications)
        self.approvals = ApprovalChainService(store, self.clock, self.notifications)
        self.handlers = handlers or HandlerRegistry()
        self.actions: Dict[str, ActionCallable] = dict(actions or {})
        self.webhook_sender = webhook_sender or LoggingWebhookSender()
        self.resolver = TransitionResolver()
        self.max_steps_per_advance = max_steps_per_advance

    # --- Lookups ---

    def register_action(self, name: str, action: ActionCallable) -> None:
        self.actions[name] = action

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = self.store.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance not found: {instance_id}")
        return instance

    def get_step_statuses(self, instance_id: str) -> List[StepStatus]:
        return self.store.list_step_statuses(instance_id=instance_id)

    def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        return self.definitions.get(instance.definition_code, instance.definition_version)

    # --- Public operations ---

    def start_workflow(
        self,
        definition: Union[str, WorkflowDefinition],
        process: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        started_by: Optional[str] = None,
        process_id: Optional[str] = None,
        version: Optional[str] = None,
        parent_instance_id: Optional[str] = None,
        parent_step_id: Optional[str] = None,
    ) -> WorkflowInstance:
        if isinstance(definition, str):
            definition = self.definitions.get(definition, version)
        elif self.store.get_definition(definition.code, definition.version) is None:
            self.definitions.save(definition)

        if definition.status == DefinitionStatus.RETIRED:
            raise InvalidStateError(f"Definition {definition.id} is retired")
        start = definition.start_step()
        if start is None:
            raise ConfigurationError(f"Definition {definition.id} has no Start step")

        provided = dict(variables or {})
        missing = [
            v.name for v in definition.variables
            if v.required and v.default is None and v.name not in provided
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required variable(s) for {definition.id}: {', '.join(missing)}", missing,
            )

        now = self.clock.now()
        instance = WorkflowInstance(
            definition_code=definition.code,
            definition_version=definition.version,
            process_id=process_id,
            process=dict(process or {}),
            status=WorkflowStatus.RUNNING,
            current_step_id=start.id,
            variables={**definition.initial_variables(), **provided},
            total_steps=len(definition.steps),
            started_by=started_by,
            started_at=now,
            updated_at=now,
            parent_instance_id=parent_instance_id,
            parent_step_id=parent_step_id,
        )
        self.store.save_instance(instance)
        for step in definition.steps:
            self.store.save_step_status(StepStatus(
                instance_id=instance.id, step_id=step.id, step_name=step.name,
            ))
        self.audit(
            instance.id, None, "Workflow Started",
            f"Started {definition.id} for process {process_id or '-'}",
            started_by=started_by,
        )

        self._drive(instance, definition, _StepRun.next(start.id))
        return instance

    def execute_step(self, instance_id: str, step_id: Optional[str] = None) -> WorkflowInstance:
        """Run one step (default: the current one) and keep going from there."""
        instance = self.get_instance(instance_id)
        if instance.is_terminal:
            raise InvalidStateError(f"Instance {instance_id} is {instance.status.value}")
        definition = self._definition_for(instance)
        step_id = step_id or instance.current_step_id
        if not step_id:
            raise InvalidStateError(f"Instance {instance_id} has no current step")

        instance.status = WorkflowStatus.RUNNING
        self._drive(instance, definition, _StepRun.next(step_id), self._branch_of(instance.id, step_id))
        return instance

    def advance(self, instance_id: str) -> WorkflowInstance:
        """Re-execute the current step of a Running instance (timer re-entry)."""
        instance = self.get_instance(instance_id)
        if instance.status != WorkflowStatus.RUNNING or not instance.current_step_id:
            logger.debug(f"Instance {instance_id} is {instance.status.value}, nothing to advance")
            return instance
        definition = self._definition_for(instance)
        step_id = instance.current_step_id
        self._drive(instance, definition, _StepRun.next(step_id), self._branch_of(instance.id, step_id))
        return instance

    def resume_workflow(
        self, instance_id: str, trigger_data: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        if instance.status != WorkflowStatus.PAUSED and not instance.status.is_waiting:
            raise InvalidStateError(
                f"Cannot resume instance {instance_id} from {instance.status.value}"
            )
        definition = self._definition_for(instance)

        instance.status = WorkflowStatus.RUNNING
        instance.variables.update(trigger_data or {})
        self._clear_wait(instance, keep_timeout=True)
        self._save(instance)
        self.audit(instance.id, instance.current_step_id, "Workflow Resumed", "Instance resumed")

        step_id = instance.current_step_id
        self._drive(instance, definition, _StepRun.next(step_id), self._branch_of(instance.id, step_id))
        return instance

    def complete_waiting_step(
        self,
        instance_id: str,
        step_id: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        step_id = step_id or instance.current_step_id
        step_status = self.store.get_step_status(instance_id, step_id) if step_id else None
        if instance.is_terminal or step_status is None or step_status.is_done:
            logger.debug(f"Step {instance_id}/{step_id} already done, nothing to complete")
            return instance

        definition = self._definition_for(instance)
        step = definition.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found in {definition.id}")

        instance.status = WorkflowStatus.RUNNING
        self._clear_wait(instance)
        output = dict(output or {})
        instance.variables.update(output)
        step_status.output_variables.update(output)

        branch = self._branch_of(instance.id, step_id)
        run = self._finish_step(instance, definition, step, step_status, branch)
        self._drive(instance, definition, run, branch)
        return instance

    def handle_timeout(self, instance_id: str, now: Optional[datetime] = None) -> WorkflowInstance:
        now = now or self.clock.now()
        instance = self.get_instance(instance_id)
        if not instance.status.is_waiting or instance.timeout_at is None or instance.timeout_at > now:
            return instance

        definition = self._definition_for(instance)
        step = definition.get_step(instance.current_step_id)
        step_status = self._step_status(instance.id, step)
        self.audit(
            instance.id, step.id, "Step Timed Out",
            f"Step '{step.name or step.id}' timed out", LogLevel.WARNING,
            timeout_at=instance.timeout_at.isoformat(),
        )
        branch = self._branch_of(instance.id, step.id)

        if step.on_timeout is not None:
            instance.status = WorkflowStatus.RUNNING
            self._clear_wait(instance)
            ctx = self._condition_context(instance)
            outcome = self.resolver.resolve(definition, step, ctx, use_timeout=True)
            step_status.result["timed_out"] = True
            run = self._apply_outcome(instance, definition, step, step_status, outcome, branch)
            self._drive(instance, definition, run, branch)
            return instance

        action = TimeoutAction.FAIL
        escalate_to = None
        if step.type == StepType.WAIT_FOR_TASKS:
            action = step.config.on_timeout_action
            escalate_to = step.config.escalate_to

        if action == TimeoutAction.ESCALATE:
            if escalate_to:
                self.notifications.notify(
                    [escalate_to],
                    f"Escalation: {step.name or step.id} is overdue",
                    f"Workflow {instance.id} has been waiting on '{step.name or step.id}' past its deadline.",
                    NotificationPriority.HIGH,
                    instance_id=instance.id,
                )
            hours = step.timeout_hours or 0
            instance.timeout_at = now + timedelta(hours=hours) if hours else None
            self._save(instance)
            self.audit(instance.id, step.id, "Step Escalated", f"Escalated to {escalate_to or '-'}", LogLevel.WARNING)
            return instance

        instance.status = WorkflowStatus.RUNNING
        self._clear_wait(instance)
        if action == TimeoutAction.SKIP:
            run = self._skip_step(instance, definition, step, step_status, "Skipped after timeout", branch)
        else:
            run = self._fail_step(
                instance, step, step_status,
                f"Step '{step.name or step.id}' timed out", WAIT_TIMEOUT, branch,
            )
        self._drive(instance, definition, run, branch)
        return instance

    def cancel_workflow(
        self, instance_id: str, reason: Optional[str] = None, cancelled_by: Optional[str] = None,
    ) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        if instance.is_terminal:
            raise InvalidStateError(f"Instance {instance_id} is already {instance.status.value}")

        now = self.clock.now()
        instance.status = WorkflowStatus.CANCELLED
        instance.cancel_reason = reason
        instance.completed_at = now
        self._clear_wait(instance)
        self.timers.cancel_scheduled_items(instance.id)
        for step_status in self.store.list_step_statuses(instance_id=instance.id, status=StepState.IN_PROGRESS):
            step_status.status = StepState.CANCELLED
            step_status.completed_at = now
            self.store.save_step_status(step_status)
        self._save(instance)
        self.audit(
            instance.id, instance.current_step_id, "Workflow Cancelled",
            reason or "Cancelled", LogLevel.WARNING, cancelled_by=cancelled_by,
        )
        return instance

    def pause_workflow(self, instance_id: str) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        if instance.status != WorkflowStatus.RUNNING:
            raise InvalidStateError(f"Only Running instances can be paused, {instance_id} is {instance.status.value}")
        instance.status = WorkflowStatus.PAUSED
        self._save(instance)
        self.audit(instance.id, instance.current_step_id, "Workflow Paused", "Instance paused")
        return instance

    def complete_parallel_branch(
        self,
        instance_id: str,
        parallel_step_id: str,
        branch_step_id: str,
        status: StepState = StepState.COMPLETED,
        output: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Report a branch outcome from outside the engine's own branch driving."""
        instance = self.get_instance(instance_id)
        if instance.is_terminal:
            raise InvalidStateError(f"Instance {instance_id} is {instance.status.value}")
        context = next(
            (c for c in self.store.list_parallel_contexts(instance_id=instance_id)
             if c.parallel_step_id == parallel_step_id and not c.joined
             and get_branch_by_step(c, branch_step_id) is not None),
            None,
        )
        if context is None:
            raise NotFoundError(
                f"No open parallel region '{parallel_step_id}' with branch '{branch_step_id}' on {instance_id}"
            )
        definition = self._definition_for(instance)
        branch = get_branch_by_step(context, branch_step_id)
        ref = _BranchRef(context.id, branch.branch_id, context.join_step)

        join = self._finish_branch(instance, ref, StepState(status), output)
        while join is not None and not instance.is_terminal:
            join = self._continue_after_join(instance, definition, join)
        self._save(instance)
        return instance

    # --- Driver ---

    def _drive(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        run: _StepRun,
        branch: Optional[_BranchRef] = None,
    ) -> None:
        join = self._follow(instance, definition, run, branch)
        while join is not None and not instance.is_terminal:
            join = self._continue_after_join(instance, definition, join)
        self._restore_branch_wait(instance)
        self._save(instance)

    def _follow(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        run: _StepRun,
        branch: Optional[_BranchRef],
    ) -> Optional[_JoinReady]:
        for _ in range(self.max_steps_per_advance):
            if instance.is_terminal or run.kind == _RunKind.STOP:
                return None
            if run.kind == _RunKind.COMPLETE:
                if branch is not None:
                    return self._finish_branch(instance, branch, StepState.COMPLETED)
                self._complete_instance(instance)
                return None
            if run.kind == _RunKind.BRANCH_FAILED:
                return self._finish_branch(instance, branch, StepState.FAILED)
            if run.kind == _RunKind.PARALLEL:
                return self._fan_out(instance, definition, run)
            if branch is not None and (
                run.target == branch.join_step or self._is_sibling_head(branch, run.target)
            ):
                return self._finish_branch(instance, branch, StepState.COMPLETED)
            run =self._execute_one(instance, definition, run.target, branch)

        self._fail_instance(
            instance, instance.current_step_id,
            f"Exceeded {self.max_steps_per_advance} steps in one advance", STEP_LIMIT_EXCEEDED,
        )
        return None

    def _execute_one(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step_id: str,
        branch: Optional[_BranchRef],
    ) -> _StepRun:
        step = definition.get_step(step_id)
        if step is None:
            self._fail_instance(instance, step_id, f"Step '{step_id}' not found in {definition.id}", STEP_NOT_FOUND)
            return _StepRun.stop()

        now = self.clock.now()
        instance.current_step_id = step.id
        instance.status = WorkflowStatus.RUNNING
        step_status = self._step_status(instance.id, step)
        first_entry = step_status.status != StepState.IN_PROGRESS
        if first_entry:
            step_status.status = StepState.IN_PROGRESS
            step_status.started_at = now
            step_status.completed_at = None
            step_status.error_message = None
        if branch is not None:
            step_status.parallel_context_id = branch.context_id
            step_status.branch_id = branch.branch_id
        self.store.save_step_status(step_status)
        self._save(instance)
        if first_entry:
            self._schedule_step_timers(instance, step, now)

        ctx = self._condition_context(instance)
        if step.entry_conditions and not evaluate_condition_groups(step.entry_conditions, ctx):
            return self._skip_step(instance, definition, step, step_status, "Entry conditions not met", branch)

        result = self._dispatch(instance, definition, step, step_status, ctx)
        if result.state:
            step_status.result.update(result.state)

        if not result.success or result.next_action in (NextAction.FAIL, NextAction.RETRY):
            return self._apply_error_policy(
                instance, definition, step, step_status, result,
                force_retry=result.next_action == NextAction.RETRY, branch=branch,
            )

        instance.variables.update(result.output_variables)
        step_status.output_variables.update(result.output_variables)

        if result.next_action == NextAction.WAIT:
            self._enter_wait(instance, step, step_status, result, now)
            return _StepRun.stop()

        return self._finish_step(instance, definition, step, step_status, branch)

    def _dispatch(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        step_status: StepStatus,
        ctx: ConditionContext,
    ) -> StepResult:
        handler = self.handlers.get(step.type)
        if handler is None:
            return StepResult.fail(f"No handler registered for step type {step.type.value}", NO_HANDLER)

        log = InstanceLogger(logger, instance.id)
        log.set_step(step.id)
        execution = ExecutionContext(
            instance=instance,
            definition=definition,
            step_status=step_status,
            conditions=ctx,
            engine=self,
        )
        try:
            return handler.execute(step, execution)
        except ExecutionError as e:
            log.warning(f"Step handler failed: {e}")
            return StepResult.fail(str(e), e.code)
        except Exception as e:
            log.exception(f"Step handler raised: {e}")
            return StepResult.fail(str(e), HANDLER_ERROR)

    def _enter_wait(
        self,
        instance: WorkflowInstance,
        step: Step,
        step_status: StepStatus,
        result: StepResult,
        now: datetime,
    ) -> None:
        item_type = result.wait_for_item_type or WaitItemType.INPUT
        instance.status = _WAIT_STATUS[item_type]
        instance.wait_for_item_ids = list(result.wait_for_item_ids)
        instance.wait_for_item_type = item_type
        if step.timeout_hours and instance.timeout_at is None:
            instance.timeout_at = now + timedelta(hours=step.timeout_hours)
        step_status.wait_for_item_ids = list(result.wait_for_item_ids)
        step_status.wait_for_item_type = item_type
        self.store.save_step_status(step_status)
        self._save(instance)
        self.audit(
            instance.id, step.id, "Step Waiting",
            f"Waiting for {item_type.value}", item_ids=list(result.wait_for_item_ids),
        )

    def _finish_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        step_status: StepStatus,
        branch: Optional[_BranchRef] = None,
    ) -> _StepRun:
        ctx = self._condition_context(instance)
        outcome = self.resolver.resolve(definition, step, ctx)
        return self._apply_outcome(instance, definition, step, step_status, outcome, branch)

    def _apply_outcome(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        step_status: StepStatus,
        outcome: TransitionOutcome,
        branch: Optional[_BranchRef],
        final_state: StepState = StepState.COMPLETED,
    ) -> _StepRun:
        if outcome.kind == OutcomeKind.FAIL:
            return self._fail_step(
                instance, step, step_status, outcome.error_message or "Transition failed",
                outcome.error_code, branch,
            )

        self._mark_done(instance, step, step_status, final_state)
        if outcome.kind == OutcomeKind.COMPLETE:
            return _StepRun(_RunKind.COMPLETE)
        if outcome.kind == OutcomeKind.PARALLEL:
            return _StepRun(_RunKind.PARALLEL, source_step_id=step.id, outcome=outcome)
        return _StepRun.next(outcome.target)

    def _mark_done(
        self, instance: WorkflowInstance, step: Step, step_status: StepStatus, state: StepState,
    ) -> None:
        now = self.clock.now()
        step_status.status = state
        step_status.completed_at = now
        if step_status.started_at is not None:
            step_status.duration_seconds = (now - step_status.started_at).total_seconds()
        step_status.wait_for_item_ids = []
        step_status.wait_for_item_type = None
        self.store.save_step_status(step_status)
        self.timers.cancel_scheduled_items(instance.id, step.id)

        instance.timeout_at = None
        self._update_progress(instance)
        self._save(instance)
        action = "Step Completed" if state == StepState.COMPLETED else "Step Skipped"
        self.audit(instance.id, step.id, action, f"{step.name or step.id} {state.value.lower()}")

    def _skip_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        step_status: StepStatus,
        reason: str,
        branch: Optional[_BranchRef],
    ) -> _StepRun:
        step_status.result["skip_reason"] = reason
        ctx = self._condition_context(instance)
        outcome = self.resolver.resolve(definition, step, ctx)
        return self._apply_outcome(
            instance, definition, step, step_status, outcome, branch, final_state=StepState.SKIPPED,
        )

    # --- Failure handling ---

    def _apply_error_policy(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        step_status: StepStatus,
        result: StepResult,
        force_retry: bool = False,
        branch: Optional[_BranchRef] = None,
    ) -> _StepRun:
        policy = step.error_policy or ErrorPolicy()
        error = result.error or f"Step '{step.id}' failed"
        action = ErrorAction.RETRY if force_retry else policy.action

        if action == ErrorAction.RETRY:
            defaults = self.config.step_errors
            limit = policy.retry_count if policy.retry_count is not None else defaults.retry_count
            if step_status.retry_count < limit:
                return self._schedule_retry(instance, step, step_status, policy, error)
            error = f"{error} (gave up after {step_status.retry_count} retries)"
            action = ErrorAction.FAIL

        if action == ErrorAction.SKIP:
            self.audit(instance.id, step.id, "Step Error Skipped", error, LogLevel.WARNING)
            return self._skip_step(instance, definition, step, step_status, error, branch)

        if action == ErrorAction.GOTO and policy.goto_step_id:
            step_status.status = StepState.FAILED
            step_status.error_message = error
            step_status.completed_at = self.clock.now()
            self.store.save_step_status(step_status)
            self.timers.cancel_scheduled_items(instance.id, step.id)
            self.audit(
                instance.id, step.id, "Step Recovery",
                f"{error}; continuing at '{policy.goto_step_id}'", LogLevel.WARNING,
            )
            return _StepRun.next(policy.goto_step_id)

        if policy.notify:
            self.notifications.notify(
                [policy.notify],
                f"Workflow step failed: {step.name or step.id}",
                f"Workflow {instance.id} failed at '{step.name or step.id}': {error}",
                NotificationPriority.HIGH,
                instance_id=instance.id,
            )
        return self._fail_step(instance, step, step_status, error, result.error_code or HANDLER_ERROR, branch)

    def _schedule_retry(
        self,
        instance: WorkflowInstance,
        step: Step,
        step_status: StepStatus,
        policy: ErrorPolicy,
        error: str,
    ) -> _StepRun:
        defaults = self.config.step_errors
        handler = RetryHandler(
            initial_backoff=policy.retry_delay_minutes or defaults.retry_delay_minutes,
            max_backoff=policy.max_delay_minutes or defaults.max_delay_minutes,
            multiplier=policy.backoff_multiplier or defaults.backoff_multiplier,
        )
        step_status.retry_count += 1
        step_status.error_message = error
        self.store.save_step_status(step_status)
        instance.retry_count = step_status.retry_count
        instance.status = WorkflowStatus.RUNNING
        self._save(instance)

        delay = handler.calculate_backoff(step_status.retry_count)
        at = self.clock.now() + timedelta(minutes=delay)
        self.timers.schedule_step_execution(
            instance.id, step.id, at, {"retry_attempt": step_status.retry_count},
        )
        self.audit(
            instance.id, step.id, "Step Retry Scheduled",
            f"Retry {step_status.retry_count} in {delay:g} minute(s): {error}", LogLevel.WARNING,
        )
        return _StepRun.stop()

    def _fail_step(
        self,
        instance: WorkflowInstance,
        step: Step,
        step_status: StepStatus,
        error: str,
        code: Optional[str],
        branch: Optional[_BranchRef],
    ) -> _StepRun:
        step_status.status = StepState.FAILED
        step_status.error_message = error
        step_status.completed_at = self.clock.now()
        self.store.save_step_status(step_status)

        if branch is not None:
            self.timers.cancel_scheduled_items(instance.id, step.id)
            self.audit(instance.id, step.id, "Branch Step Failed", error, LogLevel.ERROR, error_code=code)
            return _StepRun(_RunKind.BRANCH_FAILED)

        self._fail_instance(instance, step.id, error, code)
        return _StepRun.stop()

    def _fail_instance(
        self, instance: WorkflowInstance, step_id: Optional[str], error: str, code: Optional[str],
    ) -> None:
        instance.status = WorkflowStatus.FAILED
        instance.error_step_id = step_id
        instance.error_message = error
        instance.error_code = code
        instance.completed_at = self.clock.now()
        self._clear_wait(instance)
        self.timers.cancel_scheduled_items(instance.id)
        self._save(instance)
        self.audit(instance.id, step_id, "Workflow Failed", error, LogLevel.ERROR, error_code=code)
        self._notify_parent(instance)

    def _complete_instance(self, instance: WorkflowInstance) -> None:
        instance.status = WorkflowStatus.COMPLETED
        instance.completed_at = self.clock.now()
        instance.progress_percent = 100
        self._clear_wait(instance)
        self.timers.cancel_scheduled_items(instance.id)
        self._save(instance)
        self.audit(instance.id, None, "Workflow Completed", "Workflow completed")
        self._notify_parent(instance)

    def _notify_parent(self, child: WorkflowInstance) -> None:
        """Re-enter a parent that is waiting on this child's CallWorkflow step."""
        if not child.parent_instance_id:
            return
        parent = self.store.get_instance(child.parent_instance_id)
        if parent is None or not parent.status.is_waiting or parent.current_step_id != child.parent_step_id:
            return
        self.resume_workflow(parent.id)

    # --- Parallel regions ---

    def _fan_out(
        self, instance: WorkflowInstance, definition: WorkflowDefinition, run: _StepRun,
    ) -> Optional[_JoinReady]:
        outcome = run.outcome
        context = self.parallel.initialize_parallel_execution(
            instance.id, run.source_step_id, outcome.target_step_ids, outcome.join_type, outcome.join_step,
        )
        self.audit(
            instance.id, run.source_step_id, "Parallel Started",
            f"Fan-out to {', '.join(outcome.target_step_ids)}", context_id=context.id,
        )
        ready = None
        for branch in context.branches:
            if instance.is_terminal:
                break
            ref = _BranchRef(context.id, branch.branch_id, context.join_step)
            join = self._follow(instance, definition, _StepRun.next(branch.step_id), ref)
            if join is not None:
                ready = join
        if not instance.is_terminal:
            instance.current_step_id = run.source_step_id
        return ready

    def _finish_branch(
        self,
        instance: WorkflowInstance,
        ref: _BranchRef,
        status: StepState,
        output: Optional[Dict[str, Any]] = None,
    ) -> Optional[_JoinReady]:
        if output is None:
            output = {}
            for step_status in self.store.list_step_statuses(instance_id=instance.id):
                if step_status.parallel_context_id == ref.context_id and step_status.branch_id == ref.branch_id:
                    output.update(step_status.output_variables)

        update = self.parallel.update_branch_status(ref.context_id, ref.branch_id, status, output)
        if update.can_proceed_to_join:
            return _JoinReady(update.context, update.merged_output)

        context = update.context
        if not context.joined and all(b.status in _BRANCH_FINISHED for b in context.branches):
            self._fail_instance(
                instance, context.parallel_step_id,
                f"Parallel region '{context.parallel_step_id}' cannot join: a branch failed",
                PARALLEL_BRANCH_FAILED,
            )
        return None

    def _continue_after_join(
        self, instance: WorkflowInstance, definition: WorkflowDefinition, join: _JoinReady,
    ) -> Optional[_JoinReady]:
        context = join.context
        instance.variables.update(join.merged_output)
        source = self.store.get_step_status(instance.id, context.parallel_step_id)
        if source is not None:
            source.output_variables.update(join.merged_output)
            self.store.save_step_status(source)
        self._save(instance)
        self.audit(
            instance.id, context.parallel_step_id, "Parallel Joined",
            f"Join '{context.join_type.value}' satisfied ({context.status.value})", context_id=context.id,
        )
        if context.join_step:
            return self._follow(instance, definition, _StepRun.next(context.join_step), None)
        self._complete_instance(instance)
        return None

    def _is_sibling_head(self, ref: _BranchRef, step_id: Optional[str]) -> bool:
        """True when step_id starts another branch of the same region; a branch ends there."""
        if not step_id:
            return False
        context = self.store.get_parallel_context(ref.context_id)
        if context is None:
            return False
        other = get_branch_by_step(context, step_id)
        return other is not None and other.branch_id != ref.branch_id

    def _branch_of(self, instance_id: str, step_id: Optional[str]) -> Optional[_BranchRef]:
        if not step_id:
            return None
        step_status = self.store.get_step_status(instance_id, step_id)
        if step_status is None or not step_status.parallel_context_id:
            return None
        context = self.store.get_parallel_context(step_status.parallel_context_id)
        if context is None or context.joined:
            return None
        return _BranchRef(context.id, step_status.branch_id, context.join_step)

    def _restore_branch_wait(self, instance: WorkflowInstance) -> None:
        """Point a Running instance at a branch step that is still waiting, if any."""
        if instance.status != WorkflowStatus.RUNNING:
            return
        for step_status in self.store.list_step_statuses(instance_id=instance.id, status=StepState.IN_PROGRESS):
            if not step_status.parallel_context_id or step_status.wait_for_item_type is None:
                continue
            context = self.store.get_parallel_context(step_status.parallel_context_id)
            if context is None or context.joined:
                continue
            instance.current_step_id = step_status.step_id
            instance.status = _WAIT_STATUS[step_status.wait_for_item_type]
            instance.wait_for_item_type = step_status.wait_for_item_type
            instance.wait_for_item_ids = list(step_status.wait_for_item_ids)
            return

    # --- Helpers ---

    def _step_status(self, instance_id: str, step: Step) -> StepStatus:
        step_status = self.store.get_step_status(instance_id, step.id)
        if step_status is None:
            step_status = StepStatus(instance_id=instance_id, step_id=step.id, step_name=step.name)
        return step_status

    def _schedule_step_timers(self, instance: WorkflowInstance, step: Step, now: datetime) -> None:
        if step.sla is not None:
            if step.sla.warning_hours:
                self.timers.schedule_sla_warning(
                    instance.id, step.id, now + timedelta(hours=step.sla.warning_hours), step.sla.escalate_to,
                )
            if step.sla.breach_hours:
                self.timers.schedule_sla_breach(
                    instance.id, step.id, now + timedelta(hours=step.sla.breach_hours), step.sla.escalate_to,
                )
        if step.reminder is not None:
            ctx = self._condition_context(instance)
            self.timers.schedule_reminder(
                instance.id, step.id, now + timedelta(hours=step.reminder.after_hours),
                replace_tokens(step.reminder.recipient, ctx),
                replace_tokens(step.reminder.message, ctx) if step.reminder.message else None,
            )

    def _condition_context(self, instance: WorkflowInstance) -> ConditionContext:
        now = self.clock.now()
        system = {
            "workflowInstanceId": instance.id,
            "processId": instance.process_id,
            "currentUser": instance.started_by,
            "currentDate": now.date().isoformat(),
        }
        return ConditionContext(
            process=instance.process,
            variables={**system, **instance.variables},
            current_user=instance.started_by,
            now=now,
        )

    def _update_progress(self, instance: WorkflowInstance) -> None:
        done = sum(1 for s in self.store.list_step_statuses(instance_id=instance.id) if s.is_done)
        instance.completed_steps = done
        if instance.total_steps:
            instance.progress_percent = min(100, int(done * 100 / instance.total_steps))

    def _clear_wait(self, instance: WorkflowInstance, keep_timeout: bool = False) -> None:
        instance.wait_for_item_ids = []
        instance.wait_for_item_type = None
        if not keep_timeout:
            instance.timeout_at = None

    def _save(self, instance: WorkflowInstance) -> None:
        instance.updated_at = self.clock.now()
        self.store.save_instance(instance)

    def audit(
        self,
        instance_id: str,
        step_id: Optional[str],
        action: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **details,
    ) -> None:
        self.store.add_audit_entry(AuditLogEntry(
            instance_id=instance_id,
            step_id=step_id,
            action=action,
            level=level,
            message=message,
            timestamp=self.clock.now(),
            details={k: v for k, v in details.items() if v is not None},
        ))
        log = InstanceLogger(logger, instance_id)
        log.set_step(step_id)
        log_level = {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.WARNING: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
        }.get(level, logging.INFO)
        log.log(log_level, f"{action}: {message}")
