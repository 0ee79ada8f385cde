"""Persistence backends."""

from .base import WorkflowStore
from .file_store import FileStore
from .memory import InMemoryStore

__all__ = ["WorkflowStore", "FileStore", "InMemoryStore"]
