"""Parallel branch synchronization and join evaluation."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.clock import Clock
from ..core.models import (
    ParallelBranch,
    ParallelExecutionContext,
    ParallelStatus,
    StepState,
)
from ..errors.exceptions import NotFoundError
from ..storage.base import WorkflowStore
from .definition import JoinType

logger = logging.getLogger(__name__)

_DONE = (StepState.COMPLETED, StepState.SKIPPED)
_FINISHED = (StepState.COMPLETED, StepState.SKIPPED, StepState.FAILED, StepState.CANCELLED)


@dataclass
class BranchUpdateResult:
    context: ParallelExecutionContext
    can_proceed_to_join: bool
    merged_output: Dict[str, Any] = field(default_factory=dict)


def can_proceed_to_join(context: ParallelExecutionContext) -> bool:
    """
    Join rules:
    - all: no branch pending and none failed
    - any: at least one branch completed
    - first: at least one branch completed or failed
    """
    statuses = [b.status for b in context.branches]
    if context.join_type == JoinType.ANY:
        return any(s in _DONE for s in statuses)
    if context.join_type == JoinType.FIRST:
        return any(s in _DONE or s == StepState.FAILED for s in statuses)
    return bool(statuses) and all(s in _DONE for s in statuses)


def merge_outputs(context: ParallelExecutionContext) -> Dict[str, Any]:
    """One entry per completed branch, keyed by branch id to avoid collisions."""
    return {
        f"{branch.branch_id}_output": dict(branch.output or {})
        for branch in context.branches
        if branch.status in _DONE
    }


def _overall_status(context: ParallelExecutionContext) -> ParallelStatus:
    statuses = [b.status for b in context.branches]
    if any(s == StepState.FAILED for s in statuses):
        return ParallelStatus.PARTIAL
    if statuses and all(s in _FINISHED for s in statuses):
        return ParallelStatus.COMPLETED
    return ParallelStatus.RUNNING


class ParallelSynchronizer:
    """
    Tracks branch completion for parallel regions.

    Branch updates on one context are serialized with a per-context lock,
    since join evaluation reads the whole branch list and writes it back.
    """

    def __init__(self, store: WorkflowStore, clock: Clock):
        self.store = store
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, context_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(context_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[context_id] = lock
            return lock

    def initialize_parallel_execution(
        self,
        instance_id: str,
        parallel_step_id: str,
        branch_step_ids: List[str],
        join_type: JoinType = JoinType.ALL,
        join_step: Optional[str] = None,
    ) -> ParallelExecutionContext:
        context = ParallelExecutionContext(
            instance_id=instance_id,
            parallel_step_id=parallel_step_id,
            branches=[
                ParallelBranch(branch_id=f"branch_{i}", step_id=step_id)
                for i, step_id in enumerate(branch_step_ids)
            ],
            join_type=join_type,
            join_step=join_step,
            created_at=self.clock.now(),
        )
        self.store.save_parallel_context(context)
        logger.info(
            f"Parallel region '{parallel_step_id}' started for {instance_id} "
            f"with {len(branch_step_ids)} branches (join={join_type.value})"
        )
        return context

    def get_context(self, context_id: str) -> ParallelExecutionContext:
        context = self.store.get_parallel_context(context_id)
        if context is None:
            raise NotFoundError(f"Parallel context not found: {context_id}")
        return context

    def find_open_context(self, instance_id: str, step_id: str) -> Optional[ParallelExecutionContext]:
        """Unjoined context of this instance that has step_id as a branch."""
        for context in self.store.list_parallel_contexts(instance_id=instance_id):
            if context.joined:
                continue
            if get_branch_by_step(context, step_id) is not None:
                return context
        return None

    def update_branch_status(
        self,
        context_id: str,
        branch_id: str,
        status: StepState,
        output: Optional[Dict[str, Any]] = None,
    ) -> BranchUpdateResult:
        with self._lock_for(context_id):
            context = self.get_context(context_id)
            branch = next((b for b in context.branches if b.branch_id == branch_id), None)
            if branch is None:
                raise NotFoundError(f"Branch {branch_id} not found in parallel context {context_id}")

            branch.status = status
            if output is not None:
                branch.output = output
            if status in _FINISHED:
                branch.completed_at = self.clock.now()

            context.status = _overall_status(context)
            ready = can_proceed_to_join(context)
            merged: Dict[str, Any] = {}
            if ready and not context.joined:
                merged = merge_outputs(context)
                context.joined = True
                context.completed_at = self.clock.now()
            elif context.joined:
                # Join already taken by an earlier branch
                ready = False

            self.store.save_parallel_context(context)
        if context.joined:
            with self._locks_guard:
                self._locks.pop(context_id, None)
        return BranchUpdateResult(context=context, can_proceed_to_join=ready, merged_output=merged)


def get_branch_by_step(context: ParallelExecutionContext, step_id: str) -> Optional[ParallelBranch]:
    for branch in context.branches:
        if branch.step_id == step_id:
            return branch
    return None
