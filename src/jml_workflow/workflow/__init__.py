"""Workflow definitions, condition evaluation and step execution."""

from .definition import Step, StepType, WorkflowDefinition, load_definition
from .conditions import ConditionContext, ConditionRegistry, replace_tokens

__all__ = [
    "Step",
    "StepType",
    "WorkflowDefinition",
    "load_definition",
    "ConditionContext",
    "ConditionRegistry",
    "replace_tokens",
]
