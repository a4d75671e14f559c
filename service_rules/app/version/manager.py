"""
Version drift detection, conflict resolution and rollback snapshots.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from shared.errors import (
    CacheError, ExecutionError, InvalidInputError, NetworkError,
    RuleNotFoundError, RulesEngineError
)
from shared.logging import get_logger
from shared.retry import RetryConfig
from ..cache.rule_cache import RuleCache
from ..loaders.base import RuleLoader
from ..models import LoadedRule, RollbackSnapshot, RuleMetadata

SEMVER_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")
DEFAULT_BATCH_SIZE = 10


class ConflictStrategy(str, Enum):
    """How to resolve a cached rule that differs from upstream."""
    UPSTREAM_WINS = "upstream-wins"
    CACHED_WINS = "cached-wins"
    NEWER_WINS = "newer-wins"
    MANUAL = "manual"
    ROLLBACK = "rollback"


class ConflictType(str, Enum):
    VERSION_MISMATCH = "version-mismatch"
    TIMESTAMP_CONFLICT = "timestamp-conflict"
    RULE_DELETED = "rule-deleted"


@dataclass
class VersionComparison:
    rule_id: str
    cached_version: str
    upstream_version: Optional[str]
    needs_update: bool
    version_diff: str
    cached_last_modified: datetime
    upstream_last_modified: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "cached_version": self.cached_version,
            "upstream_version": self.upstream_version,
            "needs_update": self.needs_update,
            "version_diff": self.version_diff,
            "cached_last_modified": self.cached_last_modified.isoformat(),
            "upstream_last_modified": (
                self.upstream_last_modified.isoformat() if self.upstream_last_modified else None
            ),
        }


@dataclass
class VersionConflict:
    rule_id: str
    cached_version: str
    upstream_version: Optional[str]
    cached_last_modified: datetime
    upstream_last_modified: Optional[datetime]
    conflict_type: ConflictType

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "cached_version": self.cached_version,
            "upstream_version": self.upstream_version,
            "conflict_type": self.conflict_type.value,
        }


@dataclass
class InvalidationOptions:
    strategy: ConflictStrategy = ConflictStrategy.UPSTREAM_WINS
    batch_size: int = DEFAULT_BATCH_SIZE
    max_retries: int = 3
    retry_delay: float = 1.0
    create_snapshot: bool = True
    validate_after_update: bool = True

    def __post_init__(self):
        try:
            self.strategy = ConflictStrategy(self.strategy)
        except ValueError as e:
            raise InvalidInputError(
                f"Unknown conflict resolution strategy: {self.strategy}",
                operation="version.options",
                cause=e
            ) from e
        if self.batch_size < 1 or self.max_retries < 1:
            raise InvalidInputError(
                "batch_size and max_retries must be at least 1",
                operation="version.options"
            )


@dataclass
class VersionManagementResult:
    processed: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    conflicts: List[VersionConflict] = field(default_factory=list)
    errors: Dict[str, BaseException] = field(default_factory=dict)
    rollbacks: List[str] = field(default_factory=list)
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": list(self.processed),
            "updated": list(self.updated),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "errors": {rule_id: str(error) for rule_id, error in self.errors.items()},
            "rollbacks": list(self.rollbacks),
            "processing_time_ms": round(self.processing_time_ms, 3),
        }


def compare_version_strings(cached: str, upstream: str) -> str:
    """Classify the difference between two versions."""
    if cached == upstream:
        return "same"

    left = SEMVER_RE.match(cached)
    right = SEMVER_RE.match(upstream)
    if not left or not right:
        return "unknown"

    for part, name in zip(range(1, 4), ("major", "minor", "patch")):
        if int(left.group(part)) != int(right.group(part)):
            return name
    return "same"


class VersionManager:
    """Tracks version drift between the cache and the loader.

    Before any overwrite the previous content is kept as a rollback snapshot;
    each rule keeps its ``snapshot_history_size`` most recent snapshots,
    newest first.
    """

    def __init__(self,
                 cache: RuleCache,
                 loader: RuleLoader,
                 snapshot_history_size: int = 5,
                 content_validator: Optional[Callable[[bytes], Any]] = None):
        self.cache = cache
        self.loader = loader
        self.snapshot_history_size = snapshot_history_size
        self.content_validator = content_validator
        self.logger = get_logger("rules.version")
        self._snapshots: Dict[str, List[RollbackSnapshot]] = {}

    # Loader access

    async def _check_upstream_versions(self, versions: Mapping[str, str]) -> Dict[str, bool]:
        try:
            return await self.loader.check_versions(versions)
        except NetworkError:
            raise
        except RulesEngineError as e:
            raise NetworkError(
                f"Version check failed: {e.message}",
                operation="version.check_versions",
                cause=e
            ) from e
        except Exception as e:
            raise NetworkError(
                f"Version check failed: {e}",
                operation="version.check_versions",
                cause=e
            ) from e

    async def _load_upstream(self, rule_id: str, retry: Optional[RetryConfig] = None) -> LoadedRule:
        """Load one rule; loader failures other than not-found become NetworkError.

        ``retry`` is handed to the loader, which applies it inside its own
        resilience stack.
        """
        operation = f"version.load.{rule_id}"
        try:
            return await self.loader.load_one(rule_id, retry=retry)
        except (RuleNotFoundError, NetworkError) as e:
            if e.rule_id is None:
                e.rule_id = rule_id
            raise
        except Exception as e:
            message = e.message if isinstance(e, RulesEngineError) else str(e)
            raise NetworkError(
                f"Failed to load rule {rule_id}: {message}",
                rule_id=rule_id,
                operation=operation,
                cause=e
            ) from e

    @staticmethod
    def _retry_config(options: InvalidationOptions) -> RetryConfig:
        return RetryConfig(
            max_attempts=options.max_retries,
            base_delay=options.retry_delay,
            max_delay=options.retry_delay,
            backoff_multiplier=1.0,
            jitter_factor=0.0,
            should_retry=lambda error, attempt: not isinstance(
                error, (RuleNotFoundError, InvalidInputError)
            ),
        )

    # Comparison

    async def compare_versions(self, rule_ids: Optional[List[str]] = None) -> List[VersionComparison]:
        """Compare cached versions against the loader's authoritative ones."""
        ids = list(rule_ids) if rule_ids is not None else self.cache.rule_ids()
        cached: Dict[str, RuleMetadata] = {}
        for rule_id in ids:
            metadata = self.cache.get_metadata(rule_id)
            if metadata is not None:
                cached[rule_id] = metadata

        if not cached:
            return []

        needs_update = await self._check_upstream_versions(
            {rule_id: metadata.version for rule_id, metadata in cached.items()}
        )

        upstream: Dict[str, Optional[RuleMetadata]] = {}
        outdated = [rule_id for rule_id in cached if needs_update.get(rule_id, False)]
        for start in range(0, len(outdated), DEFAULT_BATCH_SIZE):
            batch = outdated[start:start + DEFAULT_BATCH_SIZE]
            loaded = await asyncio.gather(
                *(self._load_upstream_metadata(rule_id) for rule_id in batch)
            )
            upstream.update(zip(batch, loaded))

        comparisons: List[VersionComparison] = []
        for rule_id, metadata in cached.items():
            outdated_rule = needs_update.get(rule_id, False)
            remote = upstream.get(rule_id)
            if remote is not None:
                diff = compare_version_strings(metadata.version, remote.version)
            elif outdated_rule:
                diff = "unknown"
            else:
                diff = "same"

            comparisons.append(VersionComparison(
                rule_id=rule_id,
                cached_version=metadata.version,
                upstream_version=remote.version if remote else (None if outdated_rule else metadata.version),
                needs_update=outdated_rule,
                version_diff=diff,
                cached_last_modified=metadata.last_modified,
                upstream_last_modified=remote.last_modified if remote else (
                    None if outdated_rule else metadata.last_modified
                ),
            ))

        return comparisons

    async def _load_upstream_metadata(self, rule_id: str) -> Optional[RuleMetadata]:
        try:
            return (await self._load_upstream(rule_id)).metadata
        except RuleNotFoundError:
            self.logger.warning("Rule missing upstream", rule_id=rule_id)
            return None

    async def detect_conflicts(self, rule_ids: Optional[List[str]] = None) -> List[VersionConflict]:
        """Outdated cached rules, classified by how they differ."""
        conflicts: List[VersionConflict] = []
        for comparison in await self.compare_versions(rule_ids):
            if not comparison.needs_update:
                continue

            if comparison.upstream_version is None:
                conflict_type = ConflictType.RULE_DELETED
            elif comparison.version_diff != "same":
                conflict_type = ConflictType.VERSION_MISMATCH
            elif comparison.cached_last_modified != comparison.upstream_last_modified:
                conflict_type = ConflictType.TIMESTAMP_CONFLICT
            else:
                conflict_type = ConflictType.VERSION_MISMATCH

            conflicts.append(VersionConflict(
                rule_id=comparison.rule_id,
                cached_version=comparison.cached_version,
                upstream_version=comparison.upstream_version,
                cached_last_modified=comparison.cached_last_modified,
                upstream_last_modified=comparison.upstream_last_modified,
                conflict_type=conflict_type,
            ))

        return conflicts

    # Refresh and invalidation

    async def auto_refresh_cache(self,
                                 rule_ids: Optional[List[str]] = None,
                                 options: Optional[InvalidationOptions] = None) -> VersionManagementResult:
        """Resolve every detected conflict according to ``options.strategy``."""
        options = options or InvalidationOptions()
        start_time = time.perf_counter()
        result = VersionManagementResult()

        result.conflicts = await self.detect_conflicts(rule_ids)

        for start in range(0, len(result.conflicts), options.batch_size):
            for conflict in result.conflicts[start:start + options.batch_size]:
                result.processed.append(conflict.rule_id)
                try:
                    if await self._resolve_conflict(conflict, options, result):
                        result.updated.append(conflict.rule_id)
                except Exception as e:
                    self.logger.error(
                        "Conflict resolution failed",
                        rule_id=conflict.rule_id,
                        strategy=options.strategy.value,
                        error=str(e)
                    )
                    result.errors[conflict.rule_id] = e

        result.processing_time_ms = (time.perf_counter() - start_time) * 1000
        self.logger.info(
            "Cache refresh completed",
            conflicts=len(result.conflicts),
            updated=len(result.updated),
            errors=len(result.errors),
            strategy=options.strategy.value,
            processing_time_ms=round(result.processing_time_ms, 2)
        )
        return result

    async def _resolve_conflict(self,
                                conflict: VersionConflict,
                                options: InvalidationOptions,
                                result: VersionManagementResult) -> bool:
        rule_id = conflict.rule_id
        strategy = options.strategy

        if strategy == ConflictStrategy.ROLLBACK:
            rolled_back = await self.rollback_rule(rule_id)
            if rolled_back:
                result.rollbacks.append(rule_id)
            return rolled_back

        if strategy in (ConflictStrategy.CACHED_WINS, ConflictStrategy.MANUAL):
            return False

        if conflict.conflict_type == ConflictType.RULE_DELETED:
            if strategy != ConflictStrategy.UPSTREAM_WINS:
                return False
            if options.create_snapshot:
                self.create_rollback_snapshot(rule_id, f"conflict-resolution-{strategy.value}")
            return self.cache.invalidate(rule_id)

        if strategy == ConflictStrategy.NEWER_WINS:
            if conflict.upstream_last_modified is None or \
                    conflict.upstream_last_modified <= conflict.cached_last_modified:
                return False

        if options.create_snapshot:
            self.create_rollback_snapshot(rule_id, f"conflict-resolution-{strategy.value}")
        return await self._update_from_upstream(rule_id, options, result)

    async def _update_from_upstream(self,
                                    rule_id: str,
                                    options: InvalidationOptions,
                                    result: VersionManagementResult) -> bool:
        loaded = await self._load_upstream(rule_id, self._retry_config(options))
        self.cache.set(rule_id, loaded.data, loaded.metadata)

        if options.validate_after_update:
            try:
                self._validate_cached(rule_id, loaded.data)
            except ExecutionError:
                if options.create_snapshot and await self.rollback_rule(rule_id, 0):
                    result.rollbacks.append(rule_id)
                raise

        return True

    def _validate_cached(self, rule_id: str, expected: bytes):
        cached = self.cache.get(rule_id)
        if cached is None or cached != expected:
            raise ExecutionError(
                "Validation failed after update",
                rule_id=rule_id,
                operation="version.validate"
            )
        if self.content_validator is not None:
            try:
                self.content_validator(cached)
            except Exception as e:
                raise ExecutionError(
                    f"Validation failed after update: {e}",
                    rule_id=rule_id,
                    operation="version.validate",
                    cause=e
                ) from e

    async def invalidate_rules(self,
                               rule_ids: List[str],
                               options: Optional[InvalidationOptions] = None) -> VersionManagementResult:
        """Evict and reload rules from the loader, snapshotting first."""
        options = options or InvalidationOptions()
        start_time = time.perf_counter()
        result = VersionManagementResult()

        if options.create_snapshot:
            for rule_id in rule_ids:
                self.create_rollback_snapshot(rule_id, "manual-invalidation")

        for start in range(0, len(rule_ids), options.batch_size):
            for rule_id in rule_ids[start:start + options.batch_size]:
                result.processed.append(rule_id)
                try:
                    self.cache.invalidate(rule_id)
                    loaded = await self._load_upstream(rule_id, self._retry_config(options))
                    self.cache.set(rule_id, loaded.data, loaded.metadata)
                    if options.validate_after_update:
                        self._validate_cached(rule_id, loaded.data)
                    result.updated.append(rule_id)
                except Exception as e:
                    self.logger.error("Rule invalidation failed", rule_id=rule_id, error=str(e))
                    result.errors[rule_id] = e

        result.processing_time_ms = (time.perf_counter() - start_time) * 1000
        self.logger.info(
            "Rules invalidated",
            processed=len(result.processed),
            updated=len(result.updated),
            errors=len(result.errors)
        )
        return result

    # Snapshots

    def create_rollback_snapshot(self, rule_id: str, reason: str) -> Optional[RollbackSnapshot]:
        """Capture the cached content of ``rule_id``; None when it is not cached."""
        entry = self.cache.get_entry(rule_id)
        if entry is None:
            return None

        snapshot = RollbackSnapshot(
            rule_id=rule_id,
            data=entry.data,
            metadata=entry.metadata,
            reason=reason,
        )
        history = self._snapshots.setdefault(rule_id, [])
        history.insert(0, snapshot)
        del history[self.snapshot_history_size:]

        self.logger.debug("Rollback snapshot created", rule_id=rule_id, reason=reason,
                          version=entry.metadata.version)
        return snapshot

    async def rollback_rule(self, rule_id: str, snapshot_index: int = 0) -> bool:
        """Restore the snapshot at ``snapshot_index``; False when there is none."""
        history = self._snapshots.get(rule_id, [])
        if snapshot_index < 0 or snapshot_index >= len(history):
            return False

        snapshot = history[snapshot_index]
        self.create_rollback_snapshot(rule_id, "pre-rollback")

        try:
            self.cache.set(rule_id, snapshot.data, snapshot.metadata)
        except Exception as e:
            raise CacheError(
                f"Rollback failed for rule {rule_id}: {e}",
                rule_id=rule_id,
                operation="version.rollback",
                cause=e
            ) from e

        self.logger.info(
            "Rule rolled back",
            rule_id=rule_id,
            version=snapshot.metadata.version,
            snapshot_reason=snapshot.reason
        )
        return True

    def get_rollback_snapshots(self, rule_id: str) -> List[RollbackSnapshot]:
        return list(self._snapshots.get(rule_id, []))

    def clear_rollback_snapshots(self, rule_id: Optional[str] = None):
        if rule_id is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(rule_id, None)

    def get_version_stats(self) -> Dict[str, Any]:
        captured = [s.captured_at for history in self._snapshots.values() for s in history]
        return {
            "total_snapshots": len(captured),
            "snapshots_by_rule": {rule_id: len(h) for rule_id, h in self._snapshots.items()},
            "oldest_snapshot": min(captured).isoformat() if captured else None,
            "newest_snapshot": max(captured).isoformat() if captured else None,
        }
