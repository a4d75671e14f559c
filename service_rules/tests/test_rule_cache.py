"""
Unit tests for RuleCache.
"""

import pytest

from shared.errors import CacheError
from service_rules.app.cache.rule_cache import RuleCache
from service_rules.app.models import LoadedRule, RuleMetadata


def metadata(rule_id: str, version: str = "1.0.0", tags=()) -> RuleMetadata:
    return RuleMetadata(id=rule_id, version=version, tags=frozenset(tags))


class TestRuleCache:
    """Test cases for RuleCache."""

    @pytest.fixture
    def cache(self):
        cache = RuleCache(max_size=10)
        cache.set("pricing", b'{"rules": []}', metadata("pricing", tags=["finance", "pricing"]))
        cache.set("discount", b'{"rules": []}', metadata("discount", tags=["finance", "promo"]))
        cache.set("shipping", b'{"rules": []}', metadata("shipping", tags=["logistics"]))
        return cache

    def test_get_and_metadata(self, cache):
        assert cache.get("pricing") == b'{"rules": []}'
        assert cache.get_metadata("pricing").version == "1.0.0"
        assert cache.get("missing") is None
        assert cache.get_metadata("missing") is None

    def test_tags_intersection(self, cache):
        assert cache.get_rules_by_tags(["finance"]) == ["discount", "pricing"]
        assert cache.get_rules_by_tags(["finance", "promo"]) == ["discount"]
        assert cache.get_rules_by_tags(["finance", "logistics"]) == []
        assert cache.get_rules_by_tags(["unknown"]) == []

    def test_empty_tag_list_matches_nothing(self, cache):
        assert cache.get_rules_by_tags([]) == []

    def test_set_replaces_tag_index(self, cache):
        cache.set("pricing", b'{}', metadata("pricing", version="2.0.0", tags=["logistics"]))

        assert cache.get_rules_by_tags(["finance"]) == ["discount"]
        assert cache.get_rules_by_tags(["logistics"]) == ["pricing", "shipping"]
        assert "pricing" not in cache.tag_counts()

    def test_invalidate_removes_from_index(self, cache):
        assert cache.invalidate("discount") is True
        assert cache.invalidate("discount") is False

        assert "discount" not in cache
        assert cache.get_rules_by_tags(["promo"]) == []
        assert "promo" not in cache.tag_counts()

    def test_clear(self, cache):
        cache.clear()

        assert cache.size == 0
        assert cache.get_rules_by_tags(["finance"]) == []
        assert cache.get_all_metadata() == {}

    def test_is_version_current(self, cache):
        assert cache.is_version_current("pricing", "1.0.0") is True
        assert cache.is_version_current("pricing", "1.0.1") is False
        assert cache.is_version_current("missing", "1.0.0") is False

    def test_get_multiple_omits_missing(self, cache):
        assert set(cache.get_multiple(["pricing", "missing", "shipping"])) == {"pricing", "shipping"}

    def test_generation_changes_on_mutation(self, cache):
        before = cache.generation

        cache.get("pricing")
        assert cache.generation == before

        cache.invalidate("pricing")
        assert cache.generation == before + 1

    def test_set_multiple(self):
        cache = RuleCache()

        cache.set_multiple({
            "a": LoadedRule(b"{}", metadata("a", tags=["x"])),
            "b": LoadedRule(b"{}", metadata("b", tags=["x"])),
        })

        assert cache.rule_ids() == ["a", "b"]
        assert cache.get_rules_by_tags(["x"]) == ["a", "b"]

    def test_rejects_mismatched_metadata(self, cache):
        with pytest.raises(CacheError):
            cache.set("pricing", b"{}", metadata("other"))

    def test_rejects_non_bytes(self, cache):
        with pytest.raises(CacheError):
            cache.set("pricing", "{}", metadata("pricing"))

    def test_stats(self, cache):
        cache.get("pricing")
        cache.get("missing")

        stats = cache.stats()
        assert stats["size"] == 3
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_ratio"] == 0.5


class TestRuleCacheEviction:
    """Test cases for LRU eviction."""

    @pytest.fixture
    def cache(self):
        cache = RuleCache(max_size=2)
        cache.set("a", b"{}", metadata("a", tags=["t"]))
        cache.set("b", b"{}", metadata("b", tags=["t"]))
        return cache

    def test_size_bounded(self, cache):
        cache.set("c", b"{}", metadata("c"))

        assert cache.size == 2
        assert "a" not in cache
        assert cache.get_rules_by_tags(["t"]) == ["b"]
        assert cache.stats()["evictions"] == 1

    def test_read_marks_recently_used(self, cache):
        cache.get("a")

        cache.set("c", b"{}", metadata("c"))

        assert "a" in cache
        assert "b" not in cache

    def test_replace_does_not_evict(self, cache):
        cache.set("a", b'{"v": 2}', metadata("a", version="2"))

        assert cache.size == 2
        assert cache.stats()["evictions"] == 0

    def test_invalid_max_size(self):
        with pytest.raises(CacheError):
            RuleCache(max_size=0)
