"""Core models, clock and configuration."""

from .clock import Clock, ManualClock, SystemClock
from .config import EngineConfig, load_config
from .models import WorkflowInstance, WorkflowStatus, StepState, StepStatus

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "EngineConfig",
    "load_config",
    "WorkflowInstance",
    "WorkflowStatus",
    "StepState",
    "StepStatus",
]
