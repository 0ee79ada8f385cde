"""JSON-file store: one file per record, one directory per collection."""

import logging
import time
from pathlib import Path
from typing import List, Optional, Type

from pydantic import BaseModel, ValidationError

from ..utils.atomic_io import atomic_write_model
from ..utils.locks import FileLock
from .base import M, WorkflowStore

logger = logging.getLogger(__name__)


def _safe_key(key: str) -> str:
    return key.replace("/", "_").replace(":", "__")


class FileStore(WorkflowStore):
    """
    Durable store for single-process deployments.

    - Writes go through temp file + rename under a per-record mkdir lock
    - Records are (de)serialized only here; the engine sees pydantic models
    - Unreadable files are moved to malformed/ rather than failing a scan
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.lock_dir = self.root / "locks"
        self.malformed_dir = self.root / "malformed"
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self.malformed_dir.mkdir(parents=True, exist_ok=True)

    def _collection_dir(self, collection: str) -> Path:
        path = self.root / collection
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _record_path(self, collection: str, key: str) -> Path:
        return self._collection_dir(collection) / f"{_safe_key(key)}.json"

    def _put(self, collection: str, key: str, record: BaseModel) -> None:
        path = self._record_path(collection, key)
        with FileLock(self.lock_dir, f"{collection}-{_safe_key(key)}"):
            atomic_write_model(path, record)

    def _load(self, path: Path, model: Type[M]) -> Optional[M]:
        try:
            return model.model_validate_json(path.read_text())
        except FileNotFoundError:
            return None
        except (ValidationError, ValueError) as e:
            self._quarantine(path, e)
            return None

    def _fetch(self, collection: str, key: str, model: Type[M]) -> Optional[M]:
        return self._load(self._record_path(collection, key), model)

    def _scan(self, collection: str, model: Type[M]) -> List[M]:
        records = []
        for path in sorted(self._collection_dir(collection).glob("*.json")):
            record = self._load(path, model)
            if record is not None:
                records.append(record)
        return records

    def _remove(self, collection: str, key: str) -> bool:
        path = self._record_path(collection, key)
        with FileLock(self.lock_dir, f"{collection}-{_safe_key(key)}"):
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False

    def _quarantine(self, path: Path, error: Exception) -> None:
        """Move an unreadable record aside for investigation."""
        try:
            dest = self.malformed_dir / f"{path.parent.name}_{path.name}"
            if dest.exists():
                dest = self.malformed_dir / f"{path.parent.name}_{path.stem}_{int(time.time())}{path.suffix}"
            path.rename(dest)
            logger.warning(f"Quarantined malformed record: {path} -> {dest} (error: {error})")
        except OSError as move_error:
            logger.error(f"Failed to quarantine malformed record {path}: {move_error}")
