"""Resolve which step(s) run after a step completes."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..errors.exceptions import BRANCH_NO_MATCH
from .conditions import ConditionContext, evaluate_condition_groups
from .definition import (
    BranchTransition,
    GotoTransition,
    JoinType,
    ParallelTransition,
    Step,
    StepType,
    TransitionType,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    ADVANCE = "advance"
    PARALLEL = "parallel"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass
class TransitionOutcome:
    kind: OutcomeKind
    target_step_ids: List[str] = field(default_factory=list)
    join_type: JoinType = JoinType.ALL
    join_step: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def target(self) -> Optional[str]:
        return self.target_step_ids[0] if self.target_step_ids else None


class TransitionResolver:
    """Turns a step's transition plus the current context into one outcome.

    Goto targets are trusted here; the validator checks them before publish
    and the engine reports STEP_NOT_FOUND if one is missing at runtime.
    """

    def resolve(
        self,
        definition: WorkflowDefinition,
        step: Step,
        ctx: ConditionContext,
        use_timeout: bool = False,
    ) -> TransitionOutcome:
        transition = step.on_timeout if use_timeout else step.on_complete

        if transition is None:
            if step.type == StepType.END:
                return TransitionOutcome(OutcomeKind.COMPLETE)
            if step.type == StepType.PARALLEL:
                return self._parallel_from_config(step)
            return self._next_by_order(definition, step)

        kind = TransitionType(transition.type)

        if kind == TransitionType.END:
            return TransitionOutcome(OutcomeKind.COMPLETE)

        if kind == TransitionType.NEXT:
            if step.type == StepType.PARALLEL:
                return self._parallel_from_config(step)
            return self._next_by_order(definition, step)

        if kind == TransitionType.GOTO:
            return self._goto(step, transition)

        if kind == TransitionType.BRANCH:
            return self._branch(step, transition, ctx)

        return self._parallel(transition)

    def _next_by_order(self, definition: WorkflowDefinition, step: Step) -> TransitionOutcome:
        next_step = definition.next_step_by_order(step.id)
        if next_step is None:
            return TransitionOutcome(OutcomeKind.COMPLETE)
        return TransitionOutcome(OutcomeKind.ADVANCE, [next_step.id])

    def _goto(self, step: Step, transition: GotoTransition) -> TransitionOutcome:
        if not transition.target:
            return TransitionOutcome(
                OutcomeKind.FAIL,
                error_code="GOTO_NO_TARGET",
                error_message=f"Goto transition on step '{step.id}' has no target",
            )
        return TransitionOutcome(OutcomeKind.ADVANCE, [transition.target])

    def _branch(self, step: Step, transition: BranchTransition, ctx: ConditionContext) -> TransitionOutcome:
        default_target = None
        for path in transition.branches:
            if path.is_default:
                if default_target is None:
                    default_target = path.target
                continue
            if evaluate_condition_groups(path.condition_groups, ctx):
                logger.debug(f"Branch on '{step.id}' matched '{path.label or path.target}'")
                return TransitionOutcome(OutcomeKind.ADVANCE, [path.target])

        if default_target:
            return TransitionOutcome(OutcomeKind.ADVANCE, [default_target])

        return TransitionOutcome(
            OutcomeKind.FAIL,
            error_code=BRANCH_NO_MATCH,
            error_message=f"No branch condition matched on step '{step.id}' and no default branch is defined",
        )

    def _parallel(self, transition: ParallelTransition) -> TransitionOutcome:
        return TransitionOutcome(
            OutcomeKind.PARALLEL,
            list(transition.targets),
            join_type=transition.join_type,
            join_step=transition.join_step,
        )

    def _parallel_from_config(self, step: Step) -> TransitionOutcome:
        config = step.config
        return TransitionOutcome(
            OutcomeKind.PARALLEL,
            list(config.branches),
            join_type=config.join_type,
            join_step=config.join_step,
        )
