"""Step handlers, one per step type.

A handler performs the step's work and reports what the engine should do
next. Handlers never move the instance themselves: they return a StepResult
and the engine applies transitions, waits and error policies.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..core.models import (
    ApprovalStatus,
    StepStatus,
    TaskStatus,
    WaitItemType,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTask,
)
from ..errors.exceptions import NO_HANDLER, ExecutionError
from .conditions import (
    UNDEFINED,
    ConditionContext,
    evaluate_condition_groups,
    evaluate_expression,
    get_field_value,
    replace_tokens,
    resolve_date,
)
from .definition import ApprovalLevelConfig, DependencyType, Step, StepType, WorkflowDefinition

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

APPROVAL_REJECTED = "APPROVAL_REJECTED"
CHILD_WORKFLOW_FAILED = "CHILD_WORKFLOW_FAILED"


class NextAction(str, Enum):
    CONTINUE = "continue"
    WAIT = "wait"
    RETRY = "retry"
    FAIL = "fail"


@dataclass
class StepResult:
    """What a handler reports back to the engine.

    `state` is handler-private data persisted on the step status so a
    re-entered handler can pick up where it left off.
    """
    success: bool = True
    next_action: NextAction = NextAction.CONTINUE
    output_variables: Dict[str, Any] = field(default_factory=dict)
    wait_for_item_ids: List[str] = field(default_factory=list)
    wait_for_item_type: Optional[WaitItemType] = None
    state: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, output_variables: Optional[Dict[str, Any]] = None, **state) -> "StepResult":
        return cls(output_variables=output_variables or {}, state=state)

    @classmethod
    def wait(cls, item_type: WaitItemType, item_ids: Optional[List[str]] = None, **state) -> "StepResult":
        return cls(
            next_action=NextAction.WAIT,
            wait_for_item_type=item_type,
            wait_for_item_ids=list(item_ids or []),
            state=state,
        )

    @classmethod
    def fail(cls, error: str, code: Optional[str] = None) -> "StepResult":
        return cls(success=False, next_action=NextAction.FAIL, error=error, error_code=code)


@dataclass
class ExecutionContext:
    """Everything a handler may read while executing one step."""
    instance: WorkflowInstance
    definition: WorkflowDefinition
    step_status: StepStatus
    conditions: ConditionContext
    engine: "WorkflowEngine"

    @property
    def now(self) -> datetime:
        return self.conditions.current_time()

    @property
    def state(self) -> Dict[str, Any]:
        return self.step_status.result

    def render(self, template: str) -> str:
        return replace_tokens(template, self.conditions)


class StepHandler(ABC):
    @abstractmethod
    def execute(self, step: Step, ctx: ExecutionContext) -> StepResult:
        """Perform the step and report the next action."""


class PassThroughHandler(StepHandler):
    """Start, End and Parallel steps do no work of their own."""

    def execute(self, step, ctx) -> StepResult:
        return StepResult.ok()


ActionCallable = Callable[[Dict[str, Any], ExecutionContext], Optional[Dict[str, Any]]]


class ActionHandler(StepHandler):
    """Runs a registered action; its returned dict becomes output variables."""

    def execute(self, step, ctx) -> StepResult:
        name = step.config.action_name
        if not name:
            return StepResult.ok()
        action = ctx.engine.actions.get(name)
        if action is None:
            return StepResult.fail(f"No action registered under '{name}'", NO_HANDLER)

        parameters = {
            key: ctx.render(value) if isinstance(value, str) else value
            for key, value in step.config.parameters.items()
        }
        output = action(parameters, ctx) or {}
        return StepResult.ok(dict(output))


class SetVariableHandler(StepHandler):
    def execute(self, step, ctx) -> StepResult:
        output = {
            name: ctx.render(value) if isinstance(value, str) else value
            for name, value in step.config.assignments.items()
        }
        return StepResult.ok(output)


class ConditionHandler(StepHandler):
    """Evaluates the configured groups into a boolean output variable."""

    def execute(self, step, ctx) -> StepResult:
        config = step.config
        outcome = evaluate_condition_groups(config.condition_groups, ctx.conditions)
        if config.expression:
            outcome = outcome and evaluate_expression(config.expression, ctx.conditions)
        return StepResult.ok({config.result_variable: outcome})


class NotificationHandler(StepHandler):
    """Sends through the notification service.

    A delivery that exhausts its retries is dead-lettered, not failed, so
    the step still continues.
    """

    def execute(self, step, ctx) -> StepResult:
        config = step.config
        recipients = [ctx.render(r) for r in config.recipients]
        result = ctx.engine.notifications.notify(
            recipients,
            ctx.render(config.subject),
            ctx.render(config.message),
            config.priority,
            instance_id=ctx.instance.id,
        )
        output = {"notification_delivered": result.success}
        if result.dead_letter_item_id:
            output["notification_dead_letter_id"] = result.dead_letter_item_id
        return StepResult.ok(output)


class WaitHandler(StepHandler):
    """Delays the instance until a fixed duration or a date field passes."""

    def execute(self, step, ctx) -> StepResult:
        resume_at_raw = ctx.state.get("resume_at")
        if resume_at_raw is None:
            resume_at = self._resume_at(step, ctx)
            if resume_at is None or resume_at <= ctx.now:
                return StepResult.ok()
            ctx.engine.timers.schedule_step_execution(ctx.instance.id, step.id, resume_at)
            return StepResult.wait(WaitItemType.INPUT, resume_at=resume_at.isoformat())

        resume_at = datetime.fromisoformat(resume_at_raw)
        if ctx.now >= resume_at:
            return StepResult.ok()
        return StepResult.wait(WaitItemType.INPUT, resume_at=resume_at_raw)

    def _resume_at(self, step: Step, ctx: ExecutionContext) -> Optional[datetime]:
        config = step.config
        if config.until_field:
            value = get_field_value(config.until_field, ctx.conditions)
            if value is UNDEFINED:
                raise ExecutionError(
                    f"Wait field '{config.until_field}' is not set", step_id=step.id,
                )
            until = resolve_date(value, ctx.conditions)
            if until is None:
                raise ExecutionError(
                    f"Wait field '{config.until_field}' is not a date: {value!r}", step_id=step.id,
                )
            return until
        if config.duration_hours:
            return ctx.now + timedelta(hours=config.duration_hours)
        return None


class TaskHandler(StepHandler):
    """AssignTasks / CreateTask: create tasks and wire their dependencies."""

    def execute(self, step, ctx) -> StepResult:
        engine = ctx.engine
        created: Dict[str, WorkflowTask] = {}
        for template in step.config.tasks:
            assignee = template.assignee or template.assignee_role
            task = WorkflowTask(
                instance_id=ctx.instance.id,
                step_id=step.id,
                title=ctx.render(template.title),
                assignee=ctx.render(assignee) if assignee else None,
                due_at=ctx.now + timedelta(days=template.due_days) if template.due_days else None,
                created_at=ctx.now,
            )
            engine.store.save_task(task)
            created[template.title] = task

        for template in step.config.tasks:
            task = created[template.title]
            for title in template.depends_on:
                upstream = created.get(title)
                if upstream is None:
                    raise ExecutionError(
                        f"Task '{template.title}' depends on unknown task '{title}'", step_id=step.id,
                    )
                engine.tasks.add_dependency(task.id, upstream.id, template.dependency_type)

        for task in created.values():
            task.status = engine.tasks.initial_status(task.id)
            engine.store.save_task(task)
            if task.status == TaskStatus.NOT_STARTED and task.assignee:
                engine.notifications.notify(
                    [task.assignee],
                    f"New task: {task.title}",
                    f"You have been assigned '{task.title}'.",
                    instance_id=ctx.instance.id,
                )

        task_ids = [t.id for t in created.values()]
        logger.debug(f"Step {step.id} created {len(task_ids)} task(s) for {ctx.instance.id}")
        return StepResult.ok({"task_ids": task_ids})


class WaitForTasksHandler(StepHandler):
    """Waits until the instance's open tasks are done (all, or any one)."""

    def execute(self, step, ctx) -> StepResult:
        tasks = [
            t for t in ctx.engine.store.list_tasks(instance_id=ctx.instance.id)
            if t.status != TaskStatus.CANCELLED
        ]
        if not tasks:
            return StepResult.ok()

        done = [t for t in tasks if t.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)]
        open_ids = [t.id for t in tasks if t not in done]
        if step.config.wait_type == DependencyType.ANY:
            satisfied = bool(done)
        else:
            satisfied = not open_ids

        if satisfied:
            return StepResult.ok({"completed_task_ids": [t.id for t in done]})
        return StepResult.wait(WaitItemType.TASK, open_ids)


class ApprovalHandler(StepHandler):
    """Creates an approval chain on first entry and waits for its outcome."""

    def execute(self, step, ctx) -> StepResult:
        approvals = ctx.engine.approvals
        chain_id = ctx.state.get("chain_id")
        if chain_id is None:
            levels = [
                ApprovalLevelConfig(
                    approvers=[a for a in (ctx.render(x) for x in level.approvers) if a],
                    approval_type=level.approval_type,
                    escalation_days=level.escalation_days,
                    escalation_approvers=[ctx.render(x) for x in level.escalation_approvers],
                )
                for level in step.config.resolved_levels()
            ]
            if not levels or not all(level.approvers for level in levels):
                return StepResult.fail(f"Approval step '{step.id}' has no approvers")
            chain = approvals.create_approval_chain(
                levels,
                title=ctx.render(step.config.title or step.name or step.id),
                instance_id=ctx.instance.id,
                step_id=step.id,
            )
            return StepResult.wait(WaitItemType.APPROVAL, [chain.id], chain_id=chain.id)

        chain = approvals.get_chain(chain_id)
        if chain.status == ApprovalStatus.APPROVED:
            return StepResult.ok({"approval_status": chain.status.value, "approval_chain_id": chain.id})
        if chain.status == ApprovalStatus.REJECTED:
            reason = f"Rejected by {chain.rejected_by}"
            if chain.rejection_comments:
                reason += f": {chain.rejection_comments}"
            return StepResult.fail(reason, APPROVAL_REJECTED)
        return StepResult.wait(WaitItemType.APPROVAL, [chain.id], chain_id=chain.id)


class ForEachHandler(StepHandler):
    """Runs the referenced step once per collection item, inline."""

    def execute(self, step, ctx) -> StepResult:
        config = step.config
        collection = get_field_value(config.collection_field, ctx.conditions)
        if collection is UNDEFINED:
            collection = []
        if isinstance(collection, str):
            try:
                collection = json.loads(collection)
            except ValueError:
                collection = [collection]
        if not isinstance(collection, (list, tuple)):
            return StepResult.fail(f"'{config.collection_field}' is not a collection")

        body = ctx.definition.get_step(config.step_id)
        if body is None:
            return StepResult.fail(f"ForEach body step '{config.step_id}' not found")
        handler = ctx.engine.handlers.get(body.type)
        if handler is None:
            return StepResult.fail(f"No handler for step type {body.type.value}", NO_HANDLER)

        results = []
        for index, item in enumerate(collection):
            item_ctx = ExecutionContext(
                instance=ctx.instance,
                definition=ctx.definition,
                step_status=StepStatus(instance_id=ctx.instance.id, step_id=body.id),
                conditions=ConditionContext(
                    process=ctx.conditions.process,
                    variables={**ctx.conditions.variables, config.item_variable: item, "index": index},
                    current_user=ctx.conditions.current_user,
                    now=ctx.conditions.now,
                ),
                engine=ctx.engine,
            )
            result = handler.execute(body, item_ctx)
            if not result.success:
                return StepResult.fail(
                    f"Iteration {index} of '{step.id}' failed: {result.error}", result.error_code,
                )
            if result.next_action == NextAction.WAIT:
                return StepResult.fail(f"Step '{body.id}' cannot wait inside a ForEach")
            results.append(result.output_variables)

        return StepResult.ok({f"{step.id}_results": results})


class CallWorkflowHandler(StepHandler):
    """Starts a child instance; optionally waits for it to finish."""

    def execute(self, step, ctx) -> StepResult:
        engine = ctx.engine
        child_id = ctx.state.get("child_instance_id")
        if child_id is None:
            variables = {}
            for target, source in step.config.input_mapping.items():
                value = get_field_value(source, ctx.conditions)
                if value is not UNDEFINED:
                    variables[target] = value
            child = engine.start_workflow(
                step.config.workflow_code,
                process=ctx.instance.process,
                variables=variables,
                started_by=ctx.instance.started_by,
                process_id=ctx.instance.process_id,
                parent_instance_id=ctx.instance.id if step.config.wait_for_completion else None,
                parent_step_id=step.id if step.config.wait_for_completion else None,
            )
            if not step.config.wait_for_completion:
                return StepResult.ok({"child_instance_id": child.id})
        else:
            child = engine.get_instance(child_id)

        if child.status == WorkflowStatus.COMPLETED:
            return StepResult.ok({
                "child_instance_id": child.id,
                "child_status": child.status.value,
                "child_variables": dict(child.variables),
            })
        if child.is_terminal:
            return StepResult.fail(
                f"Child workflow {child.id} ended {child.status.value}", CHILD_WORKFLOW_FAILED,
            )
        return StepResult.wait(WaitItemType.INPUT, [child.id], child_instance_id=child.id)


class WebhookSender(ABC):
    @abstractmethod
    def send(self, url: str, method: str, body: Optional[str], headers: Dict[str, str]) -> Dict[str, Any]:
        """Deliver the request and return a response summary. Raise on failure."""


class LoggingWebhookSender(WebhookSender):
    """Records requests instead of sending them."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def send(self, url, method, body, headers) -> Dict[str, Any]:
        request = {"url": url, "method": method, "body": body, "headers": dict(headers)}
        self.sent.append(request)
        logger.info(f"Webhook {method} {url}")
        return {"status": "recorded"}


class WebhookHandler(StepHandler):
    def execute(self, step, ctx) -> StepResult:
        config = step.config
        if not config.url:
            return StepResult.fail(f"Webhook step '{step.id}' has no url")
        body = ctx.render(config.body_template) if config.body_template else None
        headers = {k: ctx.render(v) for k, v in config.headers.items()}
        response = ctx.engine.webhook_sender.send(ctx.render(config.url), config.method.upper(), body, headers)
        return StepResult.ok({"webhook_response": response})


def _default_handlers() -> Dict[StepType, StepHandler]:
    passthrough = PassThroughHandler()
    tasks = TaskHandler()
    return {
        StepType.START: passthrough,
        StepType.END: passthrough,
        StepType.PARALLEL: passthrough,
        StepType.ACTION: ActionHandler(),
        StepType.SET_VARIABLE: SetVariableHandler(),
        StepType.CONDITION: ConditionHandler(),
        StepType.NOTIFICATION: NotificationHandler(),
        StepType.WAIT: WaitHandler(),
        StepType.ASSIGN_TASKS: tasks,
        StepType.CREATE_TASK: tasks,
        StepType.WAIT_FOR_TASKS: WaitForTasksHandler(),
        StepType.APPROVAL: ApprovalHandler(),
        StepType.FOR_EACH: ForEachHandler(),
        StepType.CALL_WORKFLOW: CallWorkflowHandler(),
        StepType.WEBHOOK: WebhookHandler(),
    }


class HandlerRegistry:
    """Step type -> handler. Built-ins can be overridden per engine."""

    def __init__(self):
        self._handlers = _default_handlers()

    def get(self, step_type: StepType) -> Optional[StepHandler]:
        return self._handlers.get(StepType(step_type))

    def register(self, step_type: StepType, handler: StepHandler) -> None:
        self._handlers[StepType(step_type)] = handler

    def unregister(self, step_type: StepType) -> None:
        self._handlers.pop(StepType(step_type), None)

    def reset(self) -> None:
        self._handlers = _default_handlers()
