"""Runtime records: instances, step statuses, timers, queues and audit entries."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..workflow.definition import ApprovalType, DependencyType, JoinType


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class WorkflowStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    PAUSED = "Paused"
    WAITING_FOR_INPUT = "WaitingForInput"
    WAITING_FOR_APPROVAL = "WaitingForApproval"
    WAITING_FOR_TASK = "WaitingForTask"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self in WAITING_STATUSES


TERMINAL_STATUSES = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
})

WAITING_STATUSES = frozenset({
    WorkflowStatus.WAITING_FOR_INPUT,
    WorkflowStatus.WAITING_FOR_APPROVAL,
    WorkflowStatus.WAITING_FOR_TASK,
})


class StepState(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class ScheduledActionType(str, Enum):
    EXECUTE_STEP = "ExecuteStep"
    REMINDER = "Reminder"
    ESCALATION = "Escalation"
    SLA_WARNING = "SLAWarning"
    SLA_BREACH = "SLABreach"


class ScheduledItemStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class LogLevel(str, Enum):
    DEBUG = "Debug"
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


class TaskStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    BLOCKED = "Blocked"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"


class ApprovalStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class ApprovalDecisionType(str, Enum):
    APPROVE = "Approve"
    REJECT = "Reject"


class WaitItemType(str, Enum):
    TASK = "task"
    APPROVAL = "approval"
    INPUT = "input"


class ParallelStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    PARTIAL = "Partial"


class WorkflowInstance(BaseModel):
    """One execution of a definition against a business process."""
    id: str = Field(default_factory=lambda: new_id("wf"))
    definition_code: str
    definition_version: str
    process_id: Optional[str] = None
    process: Dict[str, Any] = Field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_step_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)

    total_steps: int = 0
    completed_steps: int = 0
    progress_percent: int = 0

    started_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    error_step_id: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0

    # Set while waiting with a step timeout
    timeout_at: Optional[datetime] = None
    wait_for_item_ids: List[str] = Field(default_factory=list)
    wait_for_item_type: Optional[WaitItemType] = None

    parent_instance_id: Optional[str] = None
    parent_step_id: Optional[str] = None
    cancel_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class StepStatus(BaseModel):
    """Execution record for one (instance, step)."""
    id: str = Field(default_factory=lambda: new_id("ss"))
    instance_id: str
    step_id: str
    step_name: str = ""
    status: StepState = StepState.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    result: Dict[str, Any] = Field(default_factory=dict)
    output_variables: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    error_message: Optional[str] = None
    wait_for_item_ids: List[str] = Field(default_factory=list)
    wait_for_item_type: Optional[WaitItemType] = None

    # Set when the step ran as part of a parallel branch
    parallel_context_id: Optional[str] = None
    branch_id: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.status in (StepState.COMPLETED, StepState.SKIPPED)


class ScheduledItem(BaseModel):
    """Timer entry consumed by the scheduler tick."""
    id: str = Field(default_factory=lambda: new_id("sch"))
    instance_id: str
    step_id: Optional[str] = None
    action_type: ScheduledActionType
    scheduled_at: datetime
    status: ScheduledItemStatus = ScheduledItemStatus.PENDING
    retry_count: int = 0
    config: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class AuditLogEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("log"))
    instance_id: str
    step_id: Optional[str] = None
    action: str
    level: LogLevel = LogLevel.INFO
    message: str = ""
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


class ParallelBranch(BaseModel):
    branch_id: str
    step_id: str
    status: StepState = StepState.PENDING
    output: Optional[Dict[str, Any]] = None
    completed_at: Optional[datetime] = None


class ParallelExecutionContext(BaseModel):
    id: str = Field(default_factory=lambda: new_id("par"))
    instance_id: str
    parallel_step_id: str
    branches: List[ParallelBranch] = Field(default_factory=list)
    join_type: JoinType = JoinType.ALL
    join_step: Optional[str] = None
    status: ParallelStatus = ParallelStatus.RUNNING
    joined: bool = False
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ApprovalDecision(BaseModel):
    approver: str
    decision: ApprovalDecisionType
    comments: Optional[str] = None
    decided_at: datetime


class ApprovalLevel(BaseModel):
    level: int
    approvers: List[str] = Field(default_factory=list)
    approval_type: ApprovalType = ApprovalType.ALL
    escalation_days: Optional[int] = None
    escalation_approvers: List[str] = Field(default_factory=list)
    escalated: bool = False
    escalated_at: Optional[datetime] = None
    decisions: List[ApprovalDecision] = Field(default_factory=list)


class ApprovalChain(BaseModel):
    id: str = Field(default_factory=lambda: new_id("apc"))
    instance_id: Optional[str] = None
    step_id: Optional[str] = None
    title: str = ""
    levels: List[ApprovalLevel] = Field(default_factory=list)
    current_level: int = 1
    level_started_at: Optional[datetime] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    rejected_by: Optional[str] = None
    rejection_comments: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def get_level(self, number: int) -> Optional[ApprovalLevel]:
        for level in self.levels:
            if level.level == number:
                return level
        return None


class WorkflowTask(BaseModel):
    """A human task assigned by a workflow step."""
    id: str = Field(default_factory=lambda: new_id("task"))
    instance_id: Optional[str] = None
    step_id: Optional[str] = None
    title: str
    assignee: Optional[str] = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    due_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TaskDependency(BaseModel):
    id: str = Field(default_factory=lambda: new_id("dep"))
    task_id: str
    depends_on_task_id: str
    dependency_type: DependencyType = DependencyType.ALL


class DeadLetterItem(BaseModel):
    """Operation that exhausted its in-call retry budget."""
    id: str = Field(default_factory=lambda: new_id("dlq"))
    operation_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: str = ""
    attempts: int = 0
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    created_at: datetime
    last_attempt_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
