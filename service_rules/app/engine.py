"""
Rules engine facade wiring loader, cache, resolver, evaluator, resilience
and version management together.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shared.config import RulesConfig, get_config
from shared.errors import ExecutionError, RulesEngineError, wrap_error
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.resilience import ResilienceService
from .cache.rule_cache import RuleCache
from .documents import Document
from .evaluator.base import Evaluator
from .evaluator.condition import ConditionEvaluator, validate_rule_content
from .execution.engine import (
    BatchExecutionResult, BatchOptions, ExecutionEngine, ExecutionResult, MixedOptions
)
from .loaders.base import RuleLoader
from .loaders.factory import create_loader
from .loaders.local import LocalRuleLoader, RULE_DELETED
from .models import ExecutionMode, RollbackSnapshot, RuleMetadata, RuleSelector
from .selector.resolver import DependencyAnalyzer, SelectorResolver
from .version.manager import (
    InvalidationOptions, VersionComparison, VersionConflict,
    VersionManagementResult, VersionManager
)

ENGINE_VERSION = "1.0.0"


@dataclass
class VersionCheckResult:
    outdated_rules: List[str] = field(default_factory=list)
    up_to_date_rules: List[str] = field(default_factory=list)
    check_time_ms: float = 0.0

    @property
    def total_checked(self) -> int:
        return len(self.outdated_rules) + len(self.up_to_date_rules)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outdated_rules": list(self.outdated_rules),
            "up_to_date_rules": list(self.up_to_date_rules),
            "total_checked": self.total_checked,
            "check_time_ms": round(self.check_time_ms, 3),
        }


@dataclass
class CacheRefreshResult:
    refreshed_rules: List[str] = field(default_factory=list)
    failed_rules: Dict[str, BaseException] = field(default_factory=dict)
    refresh_time_ms: float = 0.0

    @property
    def total_processed(self) -> int:
        return len(self.refreshed_rules) + len(self.failed_rules)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refreshed_rules": list(self.refreshed_rules),
            "failed_rules": {rule_id: str(error) for rule_id, error in self.failed_rules.items()},
            "total_processed": self.total_processed,
            "refresh_time_ms": round(self.refresh_time_ms, 3),
        }


class RulesEngine:
    """Entry point for loading, resolving and executing rules."""

    def __init__(self,
                 config: Optional[RulesConfig] = None,
                 loader: Optional[RuleLoader] = None,
                 evaluator: Optional[Evaluator] = None,
                 metrics: Optional[MetricsCollector] = None,
                 resilience: Optional[ResilienceService] = None,
                 dependency_analyzer: Optional[DependencyAnalyzer] = None):
        self.config = config or get_config()
        self.logger = get_logger("rules.engine")
        self.metrics = metrics

        self.resilience = resilience or ResilienceService.from_settings(self.config, sink=metrics)
        self.loader = loader or create_loader(self.config, self.resilience)
        self.cache = RuleCache(max_size=self.config.cache_max_size)
        self.resolver = SelectorResolver(dependency_analyzer)
        self.evaluator = evaluator or ConditionEvaluator(self.cache.get)
        self.execution = ExecutionEngine.from_settings(
            self.config, self.cache, self.resolver, self.evaluator,
            resilience=self.resilience, sink=metrics
        )
        self.versions = VersionManager(
            self.cache,
            self.loader,
            snapshot_history_size=self.config.snapshot_history_size,
            content_validator=validate_rule_content if isinstance(self.evaluator, ConditionEvaluator) else None
        )

        self.initialized = False
        self.project_id: Optional[str] = self.config.project_id
        self.last_initialization: Optional[float] = None
        self._hot_reload_registered = False

    # Lifecycle

    def _ensure_initialized(self, operation: str):
        if not self.initialized:
            raise ExecutionError(
                "Engine not initialized. Call initialize() first.",
                operation=operation
            )

    def _cache_changed(self):
        if isinstance(self.evaluator, ConditionEvaluator):
            self.evaluator.forget()
        if self.metrics is not None:
            self.metrics.set_cache_size(self.cache.size)

    async def initialize(self, project_id: Optional[str] = None) -> Dict[str, Any]:
        """Load every rule into a fresh cache."""
        target = project_id or self.project_id
        start_time = time.perf_counter()

        try:
            self.cache.clear()
            rules = await self.loader.load_all(target)
            self.cache.set_multiple(rules)
        except Exception as e:
            self.initialized = False
            self.logger.error("Engine initialization failed", project_id=target, error=str(e))
            raise wrap_error(e, "engine.initialize") from e

        self.initialized = True
        self.project_id = target
        self.last_initialization = time.time()
        self._cache_changed()

        if isinstance(self.loader, LocalRuleLoader) and self.config.enable_hot_reload:
            if not self._hot_reload_registered:
                self.loader.on_change(self._on_rule_file_change)
                self._hot_reload_registered = True
            await self.loader.start_watching()

        self.logger.info(
            "Engine initialized",
            project_id=target,
            rules_loaded=self.cache.size,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2)
        )
        return self.get_status()

    async def _on_rule_file_change(self, rule_id: str, change: str):
        if change == RULE_DELETED:
            self.versions.create_rollback_snapshot(rule_id, "hot-reload")
            self.cache.invalidate(rule_id)
        else:
            loaded = await self.loader.load_one(rule_id)
            self.versions.create_rollback_snapshot(rule_id, "hot-reload")
            self.cache.set(rule_id, loaded.data, loaded.metadata)
        self._cache_changed()

    async def reset(self):
        """Clear cached rules and resilience state."""
        self.cache.clear()
        self.resolver.clear_indices()
        self.resilience.reset()
        self.initialized = False
        self.last_initialization = None
        self._cache_changed()
        self.logger.info("Engine reset")

    async def close(self):
        await self.loader.close()
        self.initialized = False

    # Execution

    async def execute(self, selector: RuleSelector, document: Document,
                      options: Optional[MixedOptions] = None) -> ExecutionResult:
        self._ensure_initialized("engine.execute")
        try:
            return await self.execution.execute(selector, document, options)
        except RulesEngineError:
            raise
        except Exception as e:
            raise wrap_error(e, "engine.execute") from e

    async def execute_rule(self, rule_id: str, document: Document) -> Any:
        self._ensure_initialized("engine.execute_rule")
        return await self.execution.execute_rule(rule_id, document)

    async def execute_rules(self, rule_ids: List[str], document: Document) -> ExecutionResult:
        return await self.execute(RuleSelector(ids=rule_ids, mode=ExecutionMode.parallel()), document)

    async def execute_by_tags(self, tags: List[str], document: Document,
                              mode: str = "parallel") -> ExecutionResult:
        return await self.execute(RuleSelector(tags=tags, mode=ExecutionMode(type=mode)), document)

    async def execute_batch(self, inputs: List[Document], selector: RuleSelector,
                            options: Optional[BatchOptions] = None) -> BatchExecutionResult:
        self._ensure_initialized("engine.execute_batch")
        return await self.execution.execute_batch(inputs, selector, options)

    # Versions

    async def check_versions(self) -> VersionCheckResult:
        """Ask the loader which cached rules are outdated."""
        self._ensure_initialized("engine.check_versions")
        start_time = time.perf_counter()

        versions = {rule_id: metadata.version for rule_id, metadata in self.cache.get_all_metadata().items()}
        try:
            outdated = await self.loader.check_versions(versions)
        except Exception as e:
            raise wrap_error(e, "engine.check_versions") from e

        result = VersionCheckResult()
        for rule_id, needs_update in outdated.items():
            (result.outdated_rules if needs_update else result.up_to_date_rules).append(rule_id)
        result.check_time_ms = (time.perf_counter() - start_time) * 1000
        return result

    async def refresh_cache(self, rule_ids: Optional[List[str]] = None) -> CacheRefreshResult:
        """Reload ``rule_ids``, or every outdated rule when omitted."""
        self._ensure_initialized("engine.refresh_cache")
        start_time = time.perf_counter()

        if rule_ids is None:
            rule_ids = (await self.check_versions()).outdated_rules

        result = CacheRefreshResult()
        for rule_id in rule_ids:
            try:
                loaded = await self.loader.refresh_rule(rule_id)
                self.versions.create_rollback_snapshot(rule_id, "refresh")
                self.cache.set(rule_id, loaded.data, loaded.metadata)
                result.refreshed_rules.append(rule_id)
            except Exception as e:
                self.logger.warning("Rule refresh failed", rule_id=rule_id, error=str(e))
                result.failed_rules[rule_id] = e

        self._cache_changed()
        result.refresh_time_ms = (time.perf_counter() - start_time) * 1000
        return result

    async def force_refresh_cache(self) -> Dict[str, Any]:
        return await self.initialize()

    async def compare_versions(self, rule_ids: Optional[List[str]] = None) -> List[VersionComparison]:
        self._ensure_initialized("engine.compare_versions")
        return await self.versions.compare_versions(rule_ids)

    async def detect_version_conflicts(self, rule_ids: Optional[List[str]] = None) -> List[VersionConflict]:
        self._ensure_initialized("engine.detect_version_conflicts")
        return await self.versions.detect_conflicts(rule_ids)

    async def auto_refresh_cache(self, rule_ids: Optional[List[str]] = None,
                                 options: Optional[InvalidationOptions] = None) -> VersionManagementResult:
        self._ensure_initialized("engine.auto_refresh_cache")
        result = await self.versions.auto_refresh_cache(rule_ids, options)
        self._cache_changed()
        return result

    async def invalidate_rules(self, rule_ids: List[str],
                               options: Optional[InvalidationOptions] = None) -> VersionManagementResult:
        self._ensure_initialized("engine.invalidate_rules")
        result = await self.versions.invalidate_rules(rule_ids, options)
        self._cache_changed()
        return result

    def create_rollback_snapshot(self, rule_id: str, reason: str) -> Optional[RollbackSnapshot]:
        return self.versions.create_rollback_snapshot(rule_id, reason)

    async def rollback_rule(self, rule_id: str, snapshot_index: int = 0) -> bool:
        self._ensure_initialized("engine.rollback_rule")
        rolled_back = await self.versions.rollback_rule(rule_id, snapshot_index)
        self._cache_changed()
        return rolled_back

    def get_rollback_snapshots(self, rule_id: str) -> List[RollbackSnapshot]:
        return self.versions.get_rollback_snapshots(rule_id)

    def clear_rollback_snapshots(self, rule_id: Optional[str] = None):
        self.versions.clear_rollback_snapshots(rule_id)

    def get_version_stats(self) -> Dict[str, Any]:
        return self.versions.get_version_stats()

    # Lookups

    def validate_rule(self, rule_id: str) -> bool:
        self._ensure_initialized("engine.validate_rule")
        return self.execution.validate_rule(rule_id)

    def get_rule_metadata(self, rule_id: str) -> Optional[RuleMetadata]:
        self._ensure_initialized("engine.get_rule_metadata")
        return self.cache.get_metadata(rule_id)

    def get_all_rule_metadata(self) -> Dict[str, RuleMetadata]:
        self._ensure_initialized("engine.get_all_rule_metadata")
        return self.cache.get_all_metadata()

    def get_rules_by_tags(self, tags: List[str]) -> List[str]:
        self._ensure_initialized("engine.get_rules_by_tags")
        return self.cache.get_rules_by_tags(tags)

    # Status

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def get_status(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "rules_loaded": self.cache.size if self.initialized else 0,
            "last_update": self.last_initialization,
            "project_id": self.project_id,
            "rule_source": self.config.rule_source,
            "version": ENGINE_VERSION,
            "cache": self.cache.stats(),
            "hot_reload": isinstance(self.loader, LocalRuleLoader) and self.loader.is_watching,
        }
