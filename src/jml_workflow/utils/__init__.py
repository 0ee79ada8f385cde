"""Shared utilities."""

from .atomic_io import atomic_write_model, atomic_write_text
from .rich_logging import InstanceLogger, WorkflowLogFormatter, setup_logging
from .ttl_cache import TTLCache

__all__ = [
    "atomic_write_model",
    "atomic_write_text",
    "InstanceLogger",
    "WorkflowLogFormatter",
    "setup_logging",
    "TTLCache",
]
