"""Task dependency validation and the unblock cascade on task completion."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..core.clock import Clock
from ..core.models import TaskDependency, TaskStatus, WorkflowTask
from ..errors.exceptions import ConfigurationError, NotFoundError
from ..notifications.channel import NotificationPriority, NotificationService
from ..storage.base import WorkflowStore
from ..workflow.definition import DependencyType

logger = logging.getLogger(__name__)

_DONE = (TaskStatus.COMPLETED, TaskStatus.SKIPPED)


@dataclass
class DependencyValidation:
    can_start: bool
    dependency_type: Optional[DependencyType] = None
    blocking_task_ids: List[str] = field(default_factory=list)
    completed_task_ids: List[str] = field(default_factory=list)
    missing_task_ids: List[str] = field(default_factory=list)


@dataclass
class CascadeResult:
    completed_task_id: str
    unblocked_task_ids: List[str] = field(default_factory=list)
    failed_to_unblock: List[str] = field(default_factory=list)
    notifications_sent: int = 0

    @property
    def unblocked_count(self) -> int:
        return len(self.unblocked_task_ids)


class TaskDependencyService:
    """Explicit cascade: whoever marks a task Completed calls on_task_completed."""

    def __init__(
        self,
        store: WorkflowStore,
        clock: Clock,
        notifications: Optional[NotificationService] = None,
    ):
        self.store = store
        self.clock = clock
        self.notifications = notifications

    def _get_task(self, task_id: str) -> WorkflowTask:
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def add_dependency(
        self,
        task_id: str,
        depends_on_task_id: str,
        dependency_type: DependencyType = DependencyType.ALL,
    ) -> TaskDependency:
        if task_id == depends_on_task_id:
            raise ConfigurationError(f"Task {task_id} cannot depend on itself")
        if self._reaches(depends_on_task_id, task_id):
            raise ConfigurationError(
                f"Dependency {task_id} -> {depends_on_task_id} would create a cycle"
            )
        dependency = TaskDependency(
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
            dependency_type=dependency_type,
        )
        self.store.save_task_dependency(dependency)
        return dependency

    def _reaches(self, start: str, target: str) -> bool:
        """True if `start` already (transitively) depends on `target`."""
        seen: Set[str] = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(d.depends_on_task_id for d in self.store.list_task_dependencies(task_id=current))
        return False

    def validate_task_dependencies(self, task_id: str) -> DependencyValidation:
        dependencies = self.store.list_task_dependencies(task_id=task_id)
        if not dependencies:
            return DependencyValidation(can_start=True)

        dependency_type = dependencies[0].dependency_type
        completed, blocking, missing = [], [], []
        for dependency in dependencies:
            upstream = self.store.get_task(dependency.depends_on_task_id)
            if upstream is None:
                missing.append(dependency.depends_on_task_id)
            elif upstream.status in _DONE:
                completed.append(upstream.id)
            else:
                blocking.append(upstream.id)

        if dependency_type == DependencyType.ANY:
            can_start = len(completed) > 0
        else:
            can_start = not blocking and not missing

        return DependencyValidation(
            can_start=can_start,
            dependency_type=dependency_type,
            blocking_task_ids=blocking,
            completed_task_ids=completed,
            missing_task_ids=missing,
        )

    def initial_status(self, task_id: str) -> TaskStatus:
        return TaskStatus.NOT_STARTED if self.validate_task_dependencies(task_id).can_start else TaskStatus.BLOCKED

    def mark_task_completed(self, task_id: str) -> CascadeResult:
        task = self._get_task(task_id)
        task.status = TaskStatus.COMPLETED
        task.completed_at = self.clock.now()
        self.store.save_task(task)
        return self.on_task_completed(task_id)

    def on_task_completed(self, task_id: str) -> CascadeResult:
        """Re-validate every dependent of task_id and unblock the satisfied ones."""
        result = CascadeResult(completed_task_id=task_id)
        dependent_ids: Dict[str, None] = {}
        for dependency in self.store.list_task_dependencies(depends_on_task_id=task_id):
            dependent_ids.setdefault(dependency.task_id, None)

        for dependent_id in dependent_ids:
            try:
                dependent = self.store.get_task(dependent_id)
                if dependent is None or dependent.status != TaskStatus.BLOCKED:
                    continue
                if not self.validate_task_dependencies(dependent_id).can_start:
                    continue

                dependent.status = TaskStatus.NOT_STARTED
                self.store.save_task(dependent)
                result.unblocked_task_ids.append(dependent_id)
                if self._notify_unblocked(dependent):
                    result.notifications_sent += 1
            except Exception as e:
                logger.error(f"Failed to unblock task {dependent_id} after {task_id} completed: {e}")
                result.failed_to_unblock.append(dependent_id)

        if result.unblocked_task_ids:
            logger.info(f"Task {task_id} completed; unblocked {result.unblocked_count} task(s)")
        return result

    def _notify_unblocked(self, task: WorkflowTask) -> bool:
        if self.notifications is None or not task.assignee:
            return False
        outcome = self.notifications.notify(
            [task.assignee],
            f"Task ready: {task.title}",
            f"All prerequisites for '{task.title}' are complete. You can start it now.",
            NotificationPriority.NORMAL,
            instance_id=task.instance_id,
        )
        return outcome.success
