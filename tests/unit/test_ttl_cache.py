"""Tests for the TTL cache and the definition repository that owns one."""

import pytest

from jml_workflow.core.config import DefinitionCacheConfig
from jml_workflow.errors.exceptions import ConfigurationError, InvalidStateError, NotFoundError
from jml_workflow.utils.ttl_cache import TTLCache
from jml_workflow.workflow.definition import DefinitionStatus
from jml_workflow.workflow.repository import DefinitionRepository

from workflow_fixtures import linear_definition, make_definition, start, step


class TestTTLCache:
    def test_entry_expires(self, clock):
        cache = TTLCache(clock, ttl_seconds=60)
        cache.put("k", "v")

        clock.advance(seconds=59)
        assert cache.get("k") == "v"
        clock.advance(seconds=1)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_oldest_entry_evicted_when_full(self, clock):
        cache = TTLCache(clock, max_entries=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("a", 10)
        cache.put("c", 3)

        assert "b" not in cache
        assert cache.get("a") == 10
        assert cache.get("c") == 3

    def test_hit_and_miss_counters(self, clock):
        cache = TTLCache(clock)
        cache.get("missing")
        cache.put("k", 1)
        cache.get("k")
        assert (cache.hits, cache.misses) == (1, 1)

    def test_invalidate_and_clear(self, clock):
        cache = TTLCache(clock)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.invalidate("a")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0


class TestDefinitionRepository:
    @pytest.fixture
    def repository(self, store, clock):
        return DefinitionRepository(store, clock, DefinitionCacheConfig(ttl_seconds=300))

    def test_latest_published_is_cached(self, repository, store):
        repository.save(linear_definition())
        first = repository.get("JOINER-ONBOARD")

        store.save_definition(linear_definition(version="1.1.0"))
        assert repository.get("JOINER-ONBOARD").version == first.version

    def test_save_invalidates_latest(self, repository):
        repository.save(linear_definition())
        repository.get("JOINER-ONBOARD")

        repository.save(linear_definition(version="1.1.0"))
        assert repository.get("JOINER-ONBOARD").version == "1.1.0"

    def test_cache_expiry_reloads(self, repository, store, clock):
        repository.save(linear_definition())
        repository.get("JOINER-ONBOARD")
        store.save_definition(linear_definition(version="1.1.0"))

        clock.advance(seconds=301)
        assert repository.get("JOINER-ONBOARD").version == "1.1.0"

    def test_unknown_definition(self, repository):
        with pytest.raises(NotFoundError):
            repository.get("NOPE")
        with pytest.raises(NotFoundError):
            repository.get("NOPE", "1.0.0")

    def test_publish_validates(self, repository):
        published = repository.publish(linear_definition(status="Draft"))
        assert published.status == DefinitionStatus.PUBLISHED

        broken = make_definition([start(), step("x", "SetVariable", 2)], version="2.0.0", status="Draft")
        with pytest.raises(ConfigurationError):
            repository.publish(broken)
        assert repository.get("JOINER-ONBOARD").version == "1.0.0"

    def test_retired_definition_cannot_be_republished(self, repository):
        repository.save(linear_definition())
        retired = repository.retire("JOINER-ONBOARD", "1.0.0")

        assert retired.status == DefinitionStatus.RETIRED
        with pytest.raises(InvalidStateError):
            retired.with_status(DefinitionStatus.PUBLISHED)
