"""Definition lookup with an owned TTL cache."""

import logging
from typing import Optional

from ..core.clock import Clock
from ..core.config import DefinitionCacheConfig
from ..errors.exceptions import NotFoundError
from ..storage.base import WorkflowStore
from ..utils.ttl_cache import TTLCache
from .definition import DefinitionStatus, WorkflowDefinition
from .validator import WorkflowValidator

logger = logging.getLogger(__name__)


class DefinitionRepository:
    """Resolves definitions by code/version and handles the publish lifecycle."""

    def __init__(
        self,
        store: WorkflowStore,
        clock: Clock,
        cache_config: Optional[DefinitionCacheConfig] = None,
        validator: Optional[WorkflowValidator] = None,
    ):
        cache_config = cache_config or DefinitionCacheConfig()
        self.store = store
        self.validator = validator or WorkflowValidator()
        self.cache: TTLCache[WorkflowDefinition] = TTLCache(
            clock, ttl_seconds=cache_config.ttl_seconds, max_entries=cache_config.max_entries,
        )

    def get(self, code: str, version: Optional[str] = None) -> WorkflowDefinition:
        """Specific version, or the latest published one when version is None."""
        key = (code, version or "latest")
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        if version is None:
            definition = self.store.get_latest_definition(code)
        else:
            definition = self.store.get_definition(code, version)
        if definition is None:
            wanted = f"{code}@{version}" if version else f"published {code}"
            raise NotFoundError(f"Workflow definition not found: {wanted}")

        self.cache.put(key, definition)
        return definition

    def save(self, definition: WorkflowDefinition) -> None:
        self.store.save_definition(definition)
        self._invalidate(definition.code, definition.version)

    def publish(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate, persist as Published. Raises ConfigurationError on errors."""
        published = self.validator.publish(definition)
        self.save(published)
        logger.info(f"Published workflow definition {published.id}")
        return published

    def retire(self, code: str, version: str) -> WorkflowDefinition:
        retired = self.get(code, version).with_status(DefinitionStatus.RETIRED)
        self.save(retired)
        return retired

    def _invalidate(self, code: str, version: str) -> None:
        self.cache.invalidate((code, version))
        self.cache.invalidate((code, "latest"))
