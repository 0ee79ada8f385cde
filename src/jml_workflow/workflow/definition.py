"""Workflow definition: the immutable step graph an instance executes."""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..errors.exceptions import ConfigurationError, InvalidStateError

logger = logging.getLogger(__name__)


class StepType(str, Enum):
    START = "Start"
    END = "End"
    ASSIGN_TASKS = "AssignTasks"
    CREATE_TASK = "CreateTask"
    WAIT_FOR_TASKS = "WaitForTasks"
    APPROVAL = "Approval"
    CONDITION = "Condition"
    ACTION = "Action"
    NOTIFICATION = "Notification"
    WAIT = "Wait"
    PARALLEL = "Parallel"
    SET_VARIABLE = "SetVariable"
    FOR_EACH = "ForEach"
    CALL_WORKFLOW = "CallWorkflow"
    WEBHOOK = "Webhook"


class TransitionType(str, Enum):
    NEXT = "Next"
    GOTO = "Goto"
    BRANCH = "Branch"
    PARALLEL = "Parallel"
    END = "End"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IS_EMPTY = "isEmpty"
    IS_NOT_EMPTY = "isNotEmpty"
    IN = "in"
    NOT_IN = "notIn"
    DATE_BEFORE = "dateBefore"
    DATE_AFTER = "dateAfter"
    DATE_EQUALS = "dateEquals"


class Logic(str, Enum):
    AND = "AND"
    OR = "OR"


class JoinType(str, Enum):
    ALL = "all"
    ANY = "any"
    FIRST = "first"


class ApprovalType(str, Enum):
    ALL = "all"
    ANY = "any"


class DependencyType(str, Enum):
    ALL = "all"
    ANY = "any"


class ErrorAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    FAIL = "fail"
    GOTO = "goto"


class TimeoutAction(str, Enum):
    SKIP = "skip"
    FAIL = "fail"
    ESCALATE = "escalate"


class DefinitionStatus(str, Enum):
    DRAFT = "Draft"
    VALIDATED = "Validated"
    PUBLISHED = "Published"
    RETIRED = "Retired"


class ProcessType(str, Enum):
    JOINER = "Joiner"
    MOVER = "Mover"
    LEAVER = "Leaver"
    OTHER = "Other"


# --- Conditions ---


class Condition(BaseModel):
    """Single field comparison."""
    model_config = ConfigDict(populate_by_name=True)

    field: str
    operator: ConditionOperator
    value: Any = None
    # Compare against another field instead of the literal value
    value_field: Optional[str] = Field(default=None, alias="valueField")


class ConditionGroup(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)
    logic: Logic = Logic.AND


# --- Transitions ---


class NextTransition(BaseModel):
    type: Literal["Next"] = "Next"


class GotoTransition(BaseModel):
    type: Literal["Goto"] = "Goto"
    target: Optional[str] = None


class BranchPath(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    condition_groups: List[ConditionGroup] = Field(default_factory=list, alias="conditionGroups")
    target: Optional[str] = None
    is_default: bool = Field(default=False, alias="isDefault")
    label: Optional[str] = None


class BranchTransition(BaseModel):
    type: Literal["Branch"] = "Branch"
    branches: List[BranchPath] = Field(default_factory=list)


class ParallelTransition(BaseModel):
    type: Literal["Parallel"] = "Parallel"
    targets: List[str] = Field(default_factory=list)
    join_type: JoinType = JoinType.ALL
    join_step: Optional[str] = None


class EndTransition(BaseModel):
    type: Literal["End"] = "End"


Transition = Annotated[
    Union[NextTransition, GotoTransition, BranchTransition, ParallelTransition, EndTransition],
    Field(discriminator="type"),
]


# --- Step configuration, one variant per step type ---


class EmptyConfig(BaseModel):
    step_type: Literal["Start", "End"]


class TaskTemplate(BaseModel):
    title: str
    assignee: Optional[str] = None
    assignee_role: Optional[str] = None
    due_days: Optional[int] = None
    depends_on: List[str] = Field(default_factory=list)  # Titles of sibling tasks
    dependency_type: DependencyType = DependencyType.ALL


class TaskConfig(BaseModel):
    step_type: Literal["AssignTasks", "CreateTask"]
    tasks: List[TaskTemplate] = Field(default_factory=list)


class WaitForTasksConfig(BaseModel):
    step_type: Literal["WaitForTasks"]
    wait_type: DependencyType = DependencyType.ALL
    on_timeout_action: TimeoutAction = TimeoutAction.FAIL
    escalate_to: Optional[str] = None


class ApprovalLevelConfig(BaseModel):
    approvers: List[str] = Field(default_factory=list)
    approval_type: ApprovalType = ApprovalType.ALL
    escalation_days: Optional[int] = None
    escalation_approvers: List[str] = Field(default_factory=list)


class ApprovalConfig(BaseModel):
    step_type: Literal["Approval"]
    title: Optional[str] = None
    approvers: List[str] = Field(default_factory=list)
    approval_type: ApprovalType = ApprovalType.ALL
    escalation_days: Optional[int] = None
    escalation_approvers: List[str] = Field(default_factory=list)
    levels: List[ApprovalLevelConfig] = Field(default_factory=list)

    def resolved_levels(self) -> List[ApprovalLevelConfig]:
        """Explicit levels, or a single level built from the flat fields."""
        if self.levels:
            return self.levels
        if not self.approvers:
            return []
        return [ApprovalLevelConfig(
            approvers=self.approvers,
            approval_type=self.approval_type,
            escalation_days=self.escalation_days,
            escalation_approvers=self.escalation_approvers,
        )]


class ConditionConfig(BaseModel):
    step_type: Literal["Condition"]
    condition_groups: List[ConditionGroup] = Field(default_factory=list)
    expression: Optional[str] = None  # "field op value" clauses joined by && and ||
    result_variable: str = "condition_result"


class ActionConfig(BaseModel):
    step_type: Literal["Action"]
    action_name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class NotificationConfig(BaseModel):
    step_type: Literal["Notification"]
    recipients: List[str] = Field(default_factory=list)
    subject: str = ""
    message: str = ""
    priority: str = "Normal"


class WaitConfig(BaseModel):
    step_type: Literal["Wait"]
    duration_hours: Optional[float] = None
    until_field: Optional[str] = None


class ParallelConfig(BaseModel):
    step_type: Literal["Parallel"]
    branches: List[str] = Field(default_factory=list)
    join_type: JoinType = JoinType.ALL
    join_step: Optional[str] = None


class SetVariableConfig(BaseModel):
    step_type: Literal["SetVariable"]
    assignments: Dict[str, Any] = Field(default_factory=dict)


class ForEachConfig(BaseModel):
    step_type: Literal["ForEach"]
    collection_field: str
    item_variable: str = "item"
    step_id: str


class CallWorkflowConfig(BaseModel):
    step_type: Literal["CallWorkflow"]
    workflow_code: str
    input_mapping: Dict[str, str] = Field(default_factory=dict)
    wait_for_completion: bool = False


class WebhookConfig(BaseModel):
    step_type: Literal["Webhook"]
    url: Optional[str] = None
    method: str = "POST"
    body_template: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


StepConfig = Annotated[
    Union[
        EmptyConfig, TaskConfig, WaitForTasksConfig, ApprovalConfig, ConditionConfig,
        ActionConfig, NotificationConfig, WaitConfig, ParallelConfig, SetVariableConfig,
        ForEachConfig, CallWorkflowConfig, WebhookConfig,
    ],
    Field(discriminator="step_type"),
]


# --- Step-level policies ---


class SLAConfig(BaseModel):
    warning_hours: Optional[float] = None
    breach_hours: Optional[float] = None
    escalate_to: Optional[str] = None


class ErrorPolicy(BaseModel):
    action: ErrorAction = ErrorAction.FAIL
    retry_count: Optional[int] = None
    retry_delay_minutes: Optional[float] = None
    backoff_multiplier: Optional[float] = None
    max_delay_minutes: Optional[float] = None
    goto_step_id: Optional[str] = None
    notify: Optional[str] = None  # Recipient told about a permanent failure


class ReminderConfig(BaseModel):
    after_hours: float
    recipient: str
    message: Optional[str] = None


class Step(BaseModel):
    """Graph node: what to do and where to go afterwards."""
    id: str = ""
    name: str = ""
    type: StepType
    order: int = 0
    config: StepConfig
    entry_conditions: List[ConditionGroup] = Field(default_factory=list)
    on_complete: Optional[Transition] = None
    on_timeout: Optional[Transition] = None
    timeout_hours: Optional[float] = None
    sla: Optional[SLAConfig] = None
    error_policy: Optional[ErrorPolicy] = None
    reminder: Optional[ReminderConfig] = None

    @model_validator(mode="before")
    @classmethod
    def tag_config(cls, data: Any) -> Any:
        """Stamp the step type onto the config so the union can discriminate."""
        if not isinstance(data, dict):
            return data
        step_type = data.get("type")
        if step_type is None:
            return data
        config = data.get("config")
        if config is None:
            config = {}
        if isinstance(config, dict) and "step_type" not in config:
            data = dict(data)
            data["config"] = {**config, "step_type": StepType(step_type).value}
        return data


class VariableDeclaration(BaseModel):
    name: str
    type: Literal["string", "number", "boolean", "date", "list", "object"] = "string"
    default: Any = None
    required: bool = False
    description: Optional[str] = None


_STATUS_ORDER = [
    DefinitionStatus.DRAFT,
    DefinitionStatus.VALIDATED,
    DefinitionStatus.PUBLISHED,
    DefinitionStatus.RETIRED,
]


class WorkflowDefinition(BaseModel):
    """Template identified by code + version."""
    code: str
    version: str = "1.0.0"
    name: str = ""
    description: Optional[str] = None
    process_type: ProcessType = ProcessType.OTHER
    status: DefinitionStatus = DefinitionStatus.DRAFT
    steps: List[Step] = Field(default_factory=list)
    variables: List[VariableDeclaration] = Field(default_factory=list)
    trigger_conditions: List[ConditionGroup] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return f"{self.code}@{self.version}"

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def ordered_steps(self) -> List[Step]:
        return sorted(self.steps, key=lambda s: s.order)

    def start_step(self) -> Optional[Step]:
        for step in self.ordered_steps():
            if step.type == StepType.START:
                return step
        return None

    def next_step_by_order(self, step_id: str) -> Optional[Step]:
        """First step with a strictly greater order than step_id's."""
        current = self.get_step(step_id)
        if current is None:
            return None
        for step in self.ordered_steps():
            if step.order > current.order:
                return step
        return None

    def initial_variables(self) -> Dict[str, Any]:
        return {v.name: v.default for v in self.variables if v.default is not None}

    def with_status(self, status: DefinitionStatus) -> "WorkflowDefinition":
        """Copy in a later lifecycle status. Lifecycle only moves forward."""
        current = _STATUS_ORDER.index(self.status)
        target = _STATUS_ORDER.index(status)
        if self.status == DefinitionStatus.RETIRED or (
            target < current and status != DefinitionStatus.RETIRED
        ):
            raise InvalidStateError(
                f"Definition {self.id} cannot move from {self.status.value} to {status.value}"
            )
        return self.model_copy(update={"status": status})


def parse_definition(data: Dict[str, Any]) -> WorkflowDefinition:
    """Build a definition from raw dict data, wrapping schema errors."""
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        issues = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigurationError(f"Malformed workflow definition: {len(issues)} issue(s)", issues) from e


def load_definition(path: Path) -> WorkflowDefinition:
    """Load a definition from a YAML or JSON file."""
    if not path.exists():
        raise ConfigurationError(f"Definition file not found: {path}")

    text = path.read_text()
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"Definition file {path} must contain a mapping")

    definition = parse_definition(data)
    logger.debug(f"Loaded definition {definition.id} with {len(definition.steps)} steps from {path}")
    return definition
