"""
In-memory rule cache with a tag index and LRU eviction.
"""

import threading
from collections import OrderedDict
from typing import Dict, Any, Optional, List, Iterable, Mapping, Set

from shared.errors import CacheError
from shared.logging import get_logger
from ..models import CacheEntry, LoadedRule, RuleMetadata


class RuleCache:
    """Rule content and metadata keyed by rule id.

    Eviction is least-recently-used: ``get`` and ``set`` mark an entry as most
    recently used, and inserting a new id at capacity evicts the least
    recently used one. The tag index and its inverse are maintained on every
    mutation, and ``generation`` increments each time the rule set changes.
    """

    def __init__(self, max_size: int = 1000):
        if max_size <= 0:
            raise CacheError("max_size must be positive", details={"max_size": max_size})
        self.logger = get_logger("rules.cache")
        self._max_size = max_size
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._tag_index: Dict[str, Set[str]] = {}
        self._rule_tags: Dict[str, frozenset] = {}
        self._lock = threading.RLock()
        self._generation = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._entries

    def get(self, rule_id: str) -> Optional[bytes]:
        """Get rule content, or None when absent."""
        entry = self.get_entry(rule_id)
        return entry.data if entry is not None else None

    def get_entry(self, rule_id: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(rule_id)
            if entry is None:
                self._misses += 1
                return None
            self._entries.move_to_end(rule_id)
            self._hits += 1
            return entry

    def get_multiple(self, rule_ids: Iterable[str]) -> Dict[str, bytes]:
        """Content for every id present; absent ids are omitted."""
        found: Dict[str, bytes] = {}
        for rule_id in rule_ids:
            data = self.get(rule_id)
            if data is not None:
                found[rule_id] = data
        return found

    def get_metadata(self, rule_id: str) -> Optional[RuleMetadata]:
        entry = self._entries.get(rule_id)
        return entry.metadata if entry is not None else None

    def get_all_metadata(self) -> Dict[str, RuleMetadata]:
        with self._lock:
            return {rule_id: entry.metadata for rule_id, entry in self._entries.items()}

    def rule_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def set(self, rule_id: str, data: bytes, metadata: RuleMetadata):
        """Store or replace a rule."""
        if not isinstance(data, (bytes, bytearray)):
            raise CacheError("Rule content must be bytes", rule_id=rule_id, operation="cache.set")
        if metadata.id != rule_id:
            raise CacheError(
                f"Metadata id '{metadata.id}' does not match rule id '{rule_id}'",
                rule_id=rule_id,
                operation="cache.set"
            )

        with self._lock:
            if rule_id in self._entries:
                self._unindex(rule_id)
            elif len(self._entries) >= self._max_size:
                self._evict_lru()

            self._entries[rule_id] = CacheEntry(metadata=metadata, data=bytes(data))
            self._entries.move_to_end(rule_id)
            self._index(rule_id, metadata.tags)
            self._generation += 1

    def set_multiple(self, rules: Mapping[str, LoadedRule]):
        """Bulk store, used at initialization."""
        with self._lock:
            for rule_id, loaded in rules.items():
                self.set(rule_id, loaded.data, loaded.metadata)
        self.logger.info("Rules cached", count=len(rules), cache_size=self.size)

    def get_rules_by_tags(self, tags: Iterable[str]) -> List[str]:
        """Rule ids carrying every requested tag, sorted.

        An empty tag list requests nothing and returns an empty list.
        """
        tags = list(tags)
        if not tags:
            return []

        with self._lock:
            matched: Optional[Set[str]] = None
            for tag in tags:
                rule_ids = self._tag_index.get(tag)
                if not rule_ids:
                    return []
                matched = set(rule_ids) if matched is None else matched & rule_ids
                if not matched:
                    return []
            return sorted(matched)

    def is_version_current(self, rule_id: str, version: str) -> bool:
        metadata = self.get_metadata(rule_id)
        return metadata is not None and metadata.version == version

    def invalidate(self, rule_id: str) -> bool:
        """Remove a rule; False when it was not cached."""
        with self._lock:
            if rule_id not in self._entries:
                return False
            self._unindex(rule_id)
            del self._entries[rule_id]
            self._generation += 1

        self.logger.debug("Rule invalidated", rule_id=rule_id)
        return True

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._tag_index.clear()
            self._rule_tags.clear()
            self._generation += 1
        self.logger.info("Rule cache cleared")

    def tag_counts(self) -> Dict[str, int]:
        with self._lock:
            return {tag: len(rule_ids) for tag, rule_ids in self._tag_index.items()}

    def stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "size": self.size,
            "max_size": self._max_size,
            "generation": self._generation,
            "tags": len(self._tag_index),
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_ratio": self._hits / lookups if lookups else 0.0,
        }

    def _index(self, rule_id: str, tags: frozenset):
        self._rule_tags[rule_id] = tags
        for tag in tags:
            self._tag_index.setdefault(tag, set()).add(rule_id)

    def _unindex(self, rule_id: str):
        for tag in self._rule_tags.pop(rule_id, frozenset()):
            rule_ids = self._tag_index.get(tag)
            if rule_ids is None:
                continue
            rule_ids.discard(rule_id)
            if not rule_ids:
                del self._tag_index[tag]

    def _evict_lru(self):
        rule_id, _ = next(iter(self._entries.items()))
        self._unindex(rule_id)
        del self._entries[rule_id]
        self._evictions += 1
        self.logger.debug("Rule evicted", rule_id=rule_id, max_size=self._max_size)
