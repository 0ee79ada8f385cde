"""Abstract persistence store for definitions and runtime records."""

import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel

from ..core.models import (
    ApprovalChain,
    ApprovalStatus,
    AuditLogEntry,
    DeadLetterItem,
    DeadLetterStatus,
    ParallelExecutionContext,
    ScheduledActionType,
    ScheduledItem,
    ScheduledItemStatus,
    StepState,
    StepStatus,
    TaskDependency,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTask,
)
from ..workflow.definition import DefinitionStatus, WorkflowDefinition

M = TypeVar("M", bound=BaseModel)

DEFINITIONS = "definitions"
INSTANCES = "instances"
STEP_STATUSES = "step_statuses"
SCHEDULED_ITEMS = "scheduled_items"
PARALLEL_CONTEXTS = "parallel_contexts"
APPROVAL_CHAINS = "approval_chains"
TASKS = "tasks"
TASK_DEPENDENCIES = "task_dependencies"
DEAD_LETTERS = "dead_letters"
AUDIT_LOG = "audit_log"


def _version_key(version: str):
    parts = re.findall(r"\d+", version)
    return tuple(int(p) for p in parts)


def _filtered(records: Iterable[M], predicate: Callable[[M], bool]) -> List[M]:
    return [r for r in records if predicate(r)]


class WorkflowStore(ABC):
    """CRUD and filtered queries over every record the engine persists.

    Subclasses implement four primitives over (collection, key) pairs. Each
    put replaces one whole record atomically; reads return detached copies,
    so callers must save after mutating.
    """

    @abstractmethod
    def _put(self, collection: str, key: str, record: BaseModel) -> None:
        pass

    @abstractmethod
    def _fetch(self, collection: str, key: str, model: Type[M]) -> Optional[M]:
        pass

    @abstractmethod
    def _scan(self, collection: str, model: Type[M]) -> List[M]:
        pass

    @abstractmethod
    def _remove(self, collection: str, key: str) -> bool:
        pass

    # --- Definitions ---

    def save_definition(self, definition: WorkflowDefinition) -> None:
        self._put(DEFINITIONS, definition.id, definition)

    def get_definition(self, code: str, version: str) -> Optional[WorkflowDefinition]:
        return self._fetch(DEFINITIONS, f"{code}@{version}", WorkflowDefinition)

    def list_definitions(
        self,
        code: Optional[str] = None,
        status: Optional[DefinitionStatus] = None,
    ) -> List[WorkflowDefinition]:
        return _filtered(
            self._scan(DEFINITIONS, WorkflowDefinition),
            lambda d: (code is None or d.code == code) and (status is None or d.status == status),
        )

    def get_latest_definition(self, code: str, published_only: bool = True) -> Optional[WorkflowDefinition]:
        status = DefinitionStatus.PUBLISHED if published_only else None
        candidates = self.list_definitions(code=code, status=status)
        if not candidates:
            return None
        return max(candidates, key=lambda d: _version_key(d.version))

    # --- Instances ---

    def save_instance(self, instance: WorkflowInstance) -> None:
        self._put(INSTANCES, instance.id, instance)

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return self._fetch(INSTANCES, instance_id, WorkflowInstance)

    def list_instances(
        self,
        statuses: Optional[Iterable[WorkflowStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowInstance]:
        wanted = set(statuses) if statuses is not None else None
        instances = _filtered(
            self._scan(INSTANCES, WorkflowInstance),
            lambda i: wanted is None or i.status in wanted,
        )
        instances.sort(key=lambda i: (i.started_at.isoformat() if i.started_at else "", i.id))
        return instances[:limit] if limit is not None else instances

    # --- Step statuses ---

    def save_step_status(self, step_status: StepStatus) -> None:
        self._put(STEP_STATUSES, f"{step_status.instance_id}:{step_status.step_id}", step_status)

    def get_step_status(self, instance_id: str, step_id: str) -> Optional[StepStatus]:
        return self._fetch(STEP_STATUSES, f"{instance_id}:{step_id}", StepStatus)

    def list_step_statuses(
        self,
        instance_id: Optional[str] = None,
        status: Optional[StepState] = None,
    ) -> List[StepStatus]:
        return _filtered(
            self._scan(STEP_STATUSES, StepStatus),
            lambda s: (instance_id is None or s.instance_id == instance_id)
            and (status is None or s.status == status),
        )

    # --- Scheduled items ---

    def save_scheduled_item(self, item: ScheduledItem) -> None:
        self._put(SCHEDULED_ITEMS, item.id, item)

    def get_scheduled_item(self, item_id: str) -> Optional[ScheduledItem]:
        return self._fetch(SCHEDULED_ITEMS, item_id, ScheduledItem)

    def list_scheduled_items(
        self,
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
        status: Optional[ScheduledItemStatus] = None,
        action_type: Optional[ScheduledActionType] = None,
    ) -> List[ScheduledItem]:
        items = _filtered(
            self._scan(SCHEDULED_ITEMS, ScheduledItem),
            lambda i: (instance_id is None or i.instance_id == instance_id)
            and (step_id is None or i.step_id == step_id)
            and (status is None or i.status == status)
            and (action_type is None or i.action_type == action_type),
        )
        items.sort(key=lambda i: (i.scheduled_at, i.id))
        return items

    def get_due_items(self, now: datetime, limit: int) -> List[ScheduledItem]:
        """Pending items with scheduled_at <= now, oldest first."""
        due = [
            item for item in self.list_scheduled_items(status=ScheduledItemStatus.PENDING)
            if item.scheduled_at <= now
        ]
        return due[:limit]

    # --- Parallel contexts ---

    def save_parallel_context(self, context: ParallelExecutionContext) -> None:
        self._put(PARALLEL_CONTEXTS, context.id, context)

    def get_parallel_context(self, context_id: str) -> Optional[ParallelExecutionContext]:
        return self._fetch(PARALLEL_CONTEXTS, context_id, ParallelExecutionContext)

    def list_parallel_contexts(self, instance_id: Optional[str] = None) -> List[ParallelExecutionContext]:
        return _filtered(
            self._scan(PARALLEL_CONTEXTS, ParallelExecutionContext),
            lambda c: instance_id is None or c.instance_id == instance_id,
        )

    # --- Approval chains ---

    def save_approval_chain(self, chain: ApprovalChain) -> None:
        self._put(APPROVAL_CHAINS, chain.id, chain)

    def get_approval_chain(self, chain_id: str) -> Optional[ApprovalChain]:
        return self._fetch(APPROVAL_CHAINS, chain_id, ApprovalChain)

    def list_approval_chains(
        self,
        instance_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> List[ApprovalChain]:
        return _filtered(
            self._scan(APPROVAL_CHAINS, ApprovalChain),
            lambda c: (instance_id is None or c.instance_id == instance_id)
            and (status is None or c.status == status),
        )

    # --- Tasks ---

    def save_task(self, task: WorkflowTask) -> None:
        self._put(TASKS, task.id, task)

    def get_task(self, task_id: str) -> Optional[WorkflowTask]:
        return self._fetch(TASKS, task_id, WorkflowTask)

    def list_tasks(
        self,
        instance_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
    ) -> List[WorkflowTask]:
        return _filtered(
            self._scan(TASKS, WorkflowTask),
            lambda t: (instance_id is None or t.instance_id == instance_id)
            and (status is None or t.status == status),
        )

    def save_task_dependency(self, dependency: TaskDependency) -> None:
        self._put(TASK_DEPENDENCIES, dependency.id, dependency)

    def list_task_dependencies(
        self,
        task_id: Optional[str] = None,
        depends_on_task_id: Optional[str] = None,
    ) -> List[TaskDependency]:
        return _filtered(
            self._scan(TASK_DEPENDENCIES, TaskDependency),
            lambda d: (task_id is None or d.task_id == task_id)
            and (depends_on_task_id is None or d.depends_on_task_id == depends_on_task_id),
        )

    # --- Dead letters ---

    def save_dead_letter(self, item: DeadLetterItem) -> None:
        self._put(DEAD_LETTERS, item.id, item)

    def get_dead_letter(self, item_id: str) -> Optional[DeadLetterItem]:
        return self._fetch(DEAD_LETTERS, item_id, DeadLetterItem)

    def delete_dead_letter(self, item_id: str) -> bool:
        return self._remove(DEAD_LETTERS, item_id)

    def list_dead_letters(
        self,
        status: Optional[DeadLetterStatus] = None,
        operation_type: Optional[str] = None,
    ) -> List[DeadLetterItem]:
        items = _filtered(
            self._scan(DEAD_LETTERS, DeadLetterItem),
            lambda i: (status is None or i.status == status)
            and (operation_type is None or i.operation_type == operation_type),
        )
        items.sort(key=lambda i: (i.created_at, i.id))
        return items

    # --- Audit log ---

    def add_audit_entry(self, entry: AuditLogEntry) -> None:
        self._put(AUDIT_LOG, entry.id, entry)

    def list_audit_entries(
        self,
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        entries = _filtered(
            self._scan(AUDIT_LOG, AuditLogEntry),
            lambda e: (instance_id is None or e.instance_id == instance_id)
            and (step_id is None or e.step_id == step_id)
            and (action is None or e.action == action),
        )
        entries.sort(key=lambda e: e.timestamp)
        return entries
