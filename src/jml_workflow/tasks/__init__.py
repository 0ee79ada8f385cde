"""Task dependency cascade."""

from .dependencies import CascadeResult, DependencyValidation, TaskDependencyService

__all__ = ["CascadeResult", "DependencyValidation", "TaskDependencyService"]
