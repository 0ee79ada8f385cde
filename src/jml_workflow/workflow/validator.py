"""Static analysis of a workflow definition before it is published."""

import logging
import re
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set

from ..errors.exceptions import ConfigurationError, GraphError
from .conditions import extract_tokens
from .definition import (
    BranchTransition,
    DefinitionStatus,
    GotoTransition,
    ParallelTransition,
    Step,
    StepType,
    TransitionType,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)

SYSTEM_VARIABLES = frozenset({
    "currentDate", "currentUser", "workflowInstanceId", "processId",
    "employeeName", "employeeEmail", "department", "managerId", "managerEmail",
    "startDate", "processType",
})

# Variables the built-in handlers write
HANDLER_OUTPUT_VARIABLES = frozenset({
    "task_ids", "completed_task_ids", "approval_status", "approval_chain_id",
    "child_instance_id", "child_status", "child_variables", "webhook_response",
    "notification_delivered", "notification_dead_letter_id", "index",
})

_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")


class IssueSeverity(str, Enum):
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"


@dataclass
class ValidationIssue:
    severity: IssueSeverity
    code: str
    message: str
    step_id: Optional[str] = None
    field: Optional[str] = None

    def __str__(self) -> str:
        where = f" [{self.step_id}]" if self.step_id else ""
        return f"{self.code}{where}: {self.message}"


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    info: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def can_publish(self) -> bool:
        return self.valid

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "info": len(self.info),
        }

    def codes(self) -> List[str]:
        return [i.code for i in self.errors + self.warnings + self.info]

    def add(self, severity: IssueSeverity, code: str, message: str,
            step_id: Optional[str] = None, field: Optional[str] = None) -> None:
        issue = ValidationIssue(severity, code, message, step_id, field)
        if severity == IssueSeverity.ERROR:
            self.errors.append(issue)
        elif severity == IssueSeverity.WARNING:
            self.warnings.append(issue)
        else:
            self.info.append(issue)


def outgoing_edges(definition: WorkflowDefinition, step: Step) -> List[str]:
    """Every step id this step can hand control to, in declaration order.

    Includes the implicit next-by-order edge, on_timeout targets, join
    steps and the error-policy goto target.
    """
    edges: List[str] = []

    def add(target: Optional[str]) -> None:
        if target and target not in edges:
            edges.append(target)

    def add_transition(transition, implicit_next: bool) -> None:
        if transition is None or TransitionType(transition.type) == TransitionType.NEXT:
            if step.type == StepType.PARALLEL:
                for branch in step.config.branches:
                    add(branch)
                add(step.config.join_step)
            elif implicit_next and step.type != StepType.END:
                following = definition.next_step_by_order(step.id)
                add(following.id if following else None)
            return
        if isinstance(transition, GotoTransition):
            add(transition.target)
        elif isinstance(transition, BranchTransition):
            for path in transition.branches:
                add(path.target)
        elif isinstance(transition, ParallelTransition):
            for target in transition.targets:
                add(target)
            add(transition.join_step)

    add_transition(step.on_complete, implicit_next=True)
    if step.on_timeout is not None:
        add_transition(step.on_timeout, implicit_next=False)
    if step.error_policy is not None:
        add(step.error_policy.goto_step_id)
    return edges


class WorkflowValidator:
    """Runs structural, per-step, transition, graph and variable checks."""

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        result = ValidationResult()
        self._check_structure(definition, result)
        if not definition.steps:
            return result

        step_ids = {s.id for s in definition.steps if s.id}
        for step in definition.steps:
            self._check_step_fields(step, result)
            self._check_transitions(definition, step, step_ids, result)

        self._check_connectivity(definition, result)
        for cycle in self.find_cycles(definition):
            result.add(
                IssueSeverity.ERROR, "CYCLE_DETECTED",
                f"Circular reference detected: {' -> '.join(cycle)}",
                step_id=cycle[0],
            )
        self._check_variables(definition, result)

        counts = Counter(s.type.value for s in definition.steps)
        result.add(IssueSeverity.INFO, "STEP_COUNT", f"Workflow has {len(definition.steps)} step(s)")
        result.add(
            IssueSeverity.INFO, "STEP_TYPES",
            ", ".join(f"{name}: {n}" for name, n in sorted(counts.items())),
        )

        logger.debug(
            f"Validated {definition.id}: {len(result.errors)} error(s), {len(result.warnings)} warning(s)"
        )
        return result

    def assert_publishable(self, definition: WorkflowDefinition) -> ValidationResult:
        result = self.validate(definition)
        if not result.can_publish:
            raise ConfigurationError(
                f"Definition {definition.id} has {len(result.errors)} error(s)",
                [str(i) for i in result.errors],
            )
        return result

    def assert_acyclic(self, definition: WorkflowDefinition) -> None:
        cycles = self.find_cycles(definition)
        if cycles:
            raise GraphError(
                f"Definition {definition.id} contains {len(cycles)} cycle(s)",
                [" -> ".join(c) for c in cycles],
            )

    def publish(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validated copy moved Draft -> Validated -> Published. Does not persist."""
        self.assert_publishable(definition)
        if definition.status == DefinitionStatus.DRAFT:
            definition = definition.with_status(DefinitionStatus.VALIDATED)
        return definition.with_status(DefinitionStatus.PUBLISHED)

    # --- Structure ---

    def _check_structure(self, definition: WorkflowDefinition, result: ValidationResult) -> None:
        if definition.code and not _CODE_PATTERN.match(definition.code):
            result.add(
                IssueSeverity.WARNING, "INVALID_CODE_FORMAT",
                "Workflow code should only contain letters, numbers, underscores and hyphens",
                field="code",
            )
        if definition.version and not _VERSION_PATTERN.match(definition.version):
            result.add(
                IssueSeverity.WARNING, "INVALID_VERSION_FORMAT",
                "Version should follow semantic versioning (e.g. 1.0.0)",
                field="version",
            )

        steps = definition.steps
        if not steps:
            result.add(IssueSeverity.ERROR, "NO_STEPS", "Workflow must have at least one step")
            return

        starts = [s for s in steps if s.type == StepType.START]
        if not starts:
            result.add(IssueSeverity.ERROR, "NO_START", "Workflow must have a Start step")
        elif len(starts) > 1:
            result.add(
                IssueSeverity.ERROR, "MULTIPLE_STARTS",
                f"Workflow can only have one Start step, found {len(starts)}",
            )
        if not any(s.type == StepType.END for s in steps):
            result.add(IssueSeverity.ERROR, "NO_END", "Workflow must have at least one End step")

        counts = Counter(s.id for s in steps if s.id)
        duplicates = sorted(step_id for step_id, n in counts.items() if n > 1)
        if duplicates:
            result.add(
                IssueSeverity.ERROR, "DUPLICATE_IDS",
                f"Duplicate step IDs found: {', '.join(duplicates)}",
            )

    # --- Per-step required fields ---

    def _check_step_fields(self, step: Step, result: ValidationResult) -> None:
        sid = step.id or None
        if not step.id:
            result.add(IssueSeverity.ERROR, "MISSING_ID", f"Step '{step.name}' has no id", field="id")
        if not step.name:
            result.add(IssueSeverity.ERROR, "MISSING_NAME", "Step name is required", sid, "name")

        if step.timeout_hours is not None and step.timeout_hours < 0:
            result.add(IssueSeverity.ERROR, "INVALID_TIMEOUT", "Timeout hours cannot be negative", sid, "timeout_hours")

        sla = step.sla
        if sla and sla.warning_hours is not None and sla.breach_hours is not None \
                and sla.warning_hours >= sla.breach_hours:
            result.add(
                IssueSeverity.WARNING, "SLA_WARNING_AFTER_BREACH",
                f"SLA warning ({sla.warning_hours}h) should be less than breach time ({sla.breach_hours}h)",
                sid, "sla",
            )

        config = step.config
        if step.type in (StepType.ASSIGN_TASKS, StepType.CREATE_TASK):
            if not config.tasks:
                result.add(IssueSeverity.ERROR, "TASK_NO_ASSIGNEE", "Task step defines no tasks", sid, "tasks")
            for task in config.tasks:
                if not task.assignee and not task.assignee_role:
                    result.add(
                        IssueSeverity.ERROR, "TASK_NO_ASSIGNEE",
                        f"Task '{task.title}' needs an assignee or assignee role", sid, "tasks",
                    )
        elif step.type == StepType.APPROVAL:
            levels = config.resolved_levels()
            if not levels or any(not level.approvers for level in levels):
                result.add(
                    IssueSeverity.ERROR, "APPROVAL_NO_APPROVER",
                    "Approval step requires an approver on every level", sid, "approvers",
                )
        elif step.type == StepType.NOTIFICATION:
            if not config.message:
                result.add(
                    IssueSeverity.ERROR, "NOTIFICATION_NO_MESSAGE",
                    "Notification step requires a message", sid, "message",
                )
            if not config.recipients:
                result.add(
                    IssueSeverity.ERROR, "NOTIFICATION_NO_RECIPIENT",
                    "Notification step requires a recipient", sid, "recipients",
                )
        elif step.type == StepType.CONDITION:
            if not config.expression and not any(group.conditions for group in config.condition_groups):
                result.add(
                    IssueSeverity.ERROR, "CONDITION_NO_RULES",
                    "Condition step requires at least one condition", sid, "condition_groups",
                )
        elif step.type == StepType.WEBHOOK:
            if not config.url:
                result.add(IssueSeverity.ERROR, "WEBHOOK_NO_URL", "Webhook step requires a URL", sid, "url")

    # --- Transitions ---

    def _check_transitions(
        self, definition: WorkflowDefinition, step: Step, step_ids: Set[str], result: ValidationResult,
    ) -> None:
        sid = step.id or None
        if step.on_complete is None and step.type not in (StepType.END, StepType.PARALLEL):
            result.add(
                IssueSeverity.WARNING, "NO_TRANSITION",
                "Step has no transition defined and will use the order-based next step", sid, "on_complete",
            )

        for field_name, transition in (("on_complete", step.on_complete), ("on_timeout", step.on_timeout)):
            if transition is not None:
                self._check_transition(transition, sid, field_name, step_ids, result)

        if step.type == StepType.PARALLEL and (
            step.on_complete is None or TransitionType(step.on_complete.type) == TransitionType.NEXT
        ):
            config = step.config
            if not config.branches:
                result.add(
                    IssueSeverity.ERROR, "PARALLEL_NO_STEPS",
                    "Parallel step requires at least one branch", sid, "branches",
                )
            for branch in config.branches:
                if branch not in step_ids:
                    result.add(
                        IssueSeverity.ERROR, "PARALLEL_INVALID_STEP",
                        f"Parallel branch '{branch}' does not exist", sid, "branches",
                    )
            if config.join_step and config.join_step not in step_ids:
                result.add(
                    IssueSeverity.ERROR, "JOIN_INVALID_STEP",
                    f"Join step '{config.join_step}' does not exist", sid, "join_step",
                )

        if step.type == StepType.FOR_EACH and step.config.step_id not in step_ids:
            result.add(
                IssueSeverity.ERROR, "FOREACH_INVALID_STEP",
                f"ForEach body step '{step.config.step_id}' does not exist", sid, "step_id",
            )

        policy = step.error_policy
        if policy is not None and policy.action.value == "goto":
            if not policy.goto_step_id or policy.goto_step_id not in step_ids:
                result.add(
                    IssueSeverity.ERROR, "ERROR_GOTO_INVALID_TARGET",
                    f"Error policy goto target '{policy.goto_step_id}' does not exist", sid, "error_policy",
                )

    def _check_transition(self, transition, sid, field_name, step_ids, result: ValidationResult) -> None:
        if isinstance(transition, GotoTransition):
            if not transition.target:
                result.add(
                    IssueSeverity.ERROR, "GOTO_NO_TARGET",
                    "Goto transition requires a target step", sid, field_name,
                )
            elif transition.target not in step_ids:
                result.add(
                    IssueSeverity.ERROR, "GOTO_INVALID_TARGET",
                    f"Goto target '{transition.target}' does not exist in workflow", sid, field_name,
                )
        elif isinstance(transition, BranchTransition):
            if not transition.branches:
                result.add(
                    IssueSeverity.ERROR, "BRANCH_NO_PATHS",
                    "Branch transition requires at least one branch path", sid, field_name,
                )
                return
            for path in transition.branches:
                label = path.label or path.target or "?"
                if not path.target:
                    result.add(
                        IssueSeverity.ERROR, "BRANCH_NO_TARGET",
                        f"Branch '{label}' has no target step", sid, field_name,
                    )
                elif path.target not in step_ids:
                    result.add(
                        IssueSeverity.ERROR, "BRANCH_INVALID_TARGET",
                        f"Branch '{label}' target '{path.target}' does not exist", sid, field_name,
                    )
            if not any(path.is_default for path in transition.branches):
                result.add(
                    IssueSeverity.WARNING, "BRANCH_NO_DEFAULT",
                    "Branch transition has no default path and fails if no condition matches",
                    sid, field_name,
                )
        elif isinstance(transition, ParallelTransition):
            if not transition.targets:
                result.add(
                    IssueSeverity.ERROR, "PARALLEL_NO_STEPS",
                    "Parallel transition requires at least one target", sid, field_name,
                )
            for target in transition.targets:
                if target not in step_ids:
                    result.add(
                        IssueSeverity.ERROR, "PARALLEL_INVALID_STEP",
                        f"Parallel step '{target}' does not exist", sid, field_name,
                    )
            if transition.join_step and transition.join_step not in step_ids:
                result.add(
                    IssueSeverity.ERROR, "JOIN_INVALID_STEP",
                    f"Join step '{transition.join_step}' does not exist", sid, field_name,
                )

    # --- Graph ---

    def _graph(self, definition: WorkflowDefinition) -> Dict[str, List[str]]:
        ids = {s.id for s in definition.steps}
        graph: Dict[str, List[str]] = {}
        for step in definition.steps:
            edges = [t for t in outgoing_edges(definition, step) if t in ids]
            if step.type == StepType.FOR_EACH and step.config.step_id in ids:
                edges.append(step.config.step_id)
            graph.setdefault(step.id, [])
            graph[step.id].extend(e for e in edges if e not in graph[step.id])
        return graph

    def _check_connectivity(self, definition: WorkflowDefinition, result: ValidationResult) -> None:
        start = definition.start_step()
        if start is None:
            return
        graph = self._graph(definition)

        reachable = _bfs(start.id, graph)

        reverse: Dict[str, List[str]] = {step_id: [] for step_id in graph}
        for source, targets in graph.items():
            for target in targets:
                reverse.setdefault(target, []).append(source)
        reaches_end: Set[str] = set()
        for end in (s for s in definition.steps if s.type == StepType.END):
            reaches_end |= _bfs(end.id, reverse)
        # ForEach bodies run inside their loop step and hand control back to it
        loop_bodies = {s.config.step_id for s in definition.steps if s.type == StepType.FOR_EACH}

        for step in definition.steps:
            if step.id not in reachable and step.type != StepType.START:
                result.add(
                    IssueSeverity.WARNING, "UNREACHABLE_STEP",
                    f"Step '{step.name or step.id}' is not reachable from the Start step", step.id,
                )
            if step.id not in reaches_end and step.type != StepType.END and step.id not in loop_bodies:
                result.add(
                    IssueSeverity.WARNING, "DEAD_END_STEP",
                    f"Step '{step.name or step.id}' cannot reach any End step", step.id,
                )

    def find_cycles(self, definition: WorkflowDefinition) -> List[List[str]]:
        """Three-colour DFS; each distinct cycle (by node set) once, as a closed path."""
        white, gray, black = 0, 1, 2
        graph = self._graph(definition)
        color = {step_id: white for step_id in graph}
        path: List[str] = []
        seen: Set[FrozenSet[str]] = set()
        cycles: List[List[str]] = []

        def visit(node: str) -> None:
            color[node] = gray
            path.append(node)
            for neighbor in graph.get(node, []):
                if color.get(neighbor) == gray:
                    cycle = path[path.index(neighbor):]
                    key = frozenset(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle + [neighbor])
                elif color.get(neighbor) == white:
                    visit(neighbor)
            path.pop()
            color[node] = black

        for step in definition.ordered_steps():
            if color.get(step.id) == white:
                visit(step.id)
        return cycles

    # --- Variables ---

    def _check_variables(self, definition: WorkflowDefinition, result: ValidationResult) -> None:
        defined = {v.name for v in definition.variables} | SYSTEM_VARIABLES | HANDLER_OUTPUT_VARIABLES
        used: Dict[str, Optional[str]] = {}

        for step in definition.steps:
            config = step.config
            if step.type == StepType.SET_VARIABLE:
                defined.update(config.assignments)
            elif step.type == StepType.CONDITION:
                defined.add(config.result_variable)
            elif step.type == StepType.FOR_EACH:
                defined.add(config.item_variable)
                defined.add(f"{step.id}_results")
            for template in _templates(step):
                for token in extract_tokens(template):
                    used.setdefault(token, step.id)

        defined.update(
            f"branch_{i}_output"
            for i in range(max((len(s.config.branches) for s in definition.steps
                                if s.type == StepType.PARALLEL), default=0))
        )

        for token, step_id in used.items():
            if token.startswith("@") or token.startswith("process."):
                continue
            name = token[len("variables."):] if token.startswith("variables.") else token
            root = re.split(r"[.\[]", name, maxsplit=1)[0]
            if root not in defined:
                result.add(
                    IssueSeverity.WARNING, "UNDEFINED_VARIABLE",
                    f"Variable '{token}' is used but not defined", step_id,
                )


def _bfs(start: str, graph: Dict[str, List[str]]) -> Set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for neighbor in graph.get(current, []):
            if neighbor not in seen:
                seen.add(neighbor)
                queue.append(neighbor)
    return seen


def _templates(step: Step) -> List[str]:
    """String fields of a step that may carry {{token}} references."""
    config = step.config
    found: List[str] = []
    if step.type == StepType.NOTIFICATION:
        found += [config.subject, config.message, *config.recipients]
    elif step.type == StepType.WEBHOOK:
        found += [config.url or "", config.body_template or "", *config.headers.values()]
    elif step.type == StepType.SET_VARIABLE:
        found += [v for v in config.assignments.values() if isinstance(v, str)]
    elif step.type == StepType.ACTION:
        found += [v for v in config.parameters.values() if isinstance(v, str)]
    elif step.type in (StepType.ASSIGN_TASKS, StepType.CREATE_TASK):
        for task in config.tasks:
            found += [task.title, task.assignee or "", task.assignee_role or ""]
    elif step.type == StepType.APPROVAL:
        for level in config.resolved_levels():
            found += [*level.approvers, *level.escalation_approvers]
    if step.reminder is not None:
        found += [step.reminder.recipient, step.reminder.message or ""]
    return [t for t in found if t]
