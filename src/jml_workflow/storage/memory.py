"""In-process store used by tests and single-run CLI sessions."""

import threading
from typing import Dict, List, Optional, Type

from pydantic import BaseModel

from .base import M, WorkflowStore


class InMemoryStore(WorkflowStore):
    """Dict-backed store. Records are deep-copied on the way in and out."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, BaseModel]] = {}
        self._lock = threading.RLock()

    def _put(self, collection: str, key: str, record: BaseModel) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[key] = record.model_copy(deep=True)

    def _fetch(self, collection: str, key: str, model: Type[M]) -> Optional[M]:
        with self._lock:
            record = self._collections.get(collection, {}).get(key)
            return record.model_copy(deep=True) if record is not None else None

    def _scan(self, collection: str, model: Type[M]) -> List[M]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._collections.get(collection, {}).values()]

    def _remove(self, collection: str, key: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(key, None) is not None
