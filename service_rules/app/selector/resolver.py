"""
Selector validation and resolution into staged execution plans.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from shared.errors import CircularDependencyError, InvalidInputError
from shared.logging import get_logger
from ..models import (
    DependencyInfo, ExecutionGroup, ExecutionModeType, GROUP_MODES,
    ResolvedRulePlan, RuleMetadata, RuleSelector, SELECTOR_MODES
)

DependencyAnalyzer = Callable[[List[str], Mapping[str, RuleMetadata]], Dict[str, DependencyInfo]]


def no_dependencies(rule_ids: List[str], available: Mapping[str, RuleMetadata]) -> Dict[str, DependencyInfo]:
    """Default analyzer: rules declare no dependencies."""
    return {rule_id: DependencyInfo() for rule_id in rule_ids}


def selector_errors(selector: RuleSelector) -> List[str]:
    """Every structural problem with ``selector``."""
    errors: List[str] = []

    if selector.ids is None and selector.tags is None:
        errors.append("selector must specify ids and/or tags")
    if selector.ids is not None and len(selector.ids) == 0:
        errors.append("ids must not be empty when provided")
    if selector.tags is not None and len(selector.tags) == 0:
        errors.append("tags must not be empty when provided")

    mode = selector.mode
    if mode is None or mode.type not in SELECTOR_MODES:
        errors.append(f"mode.type must be one of {', '.join(SELECTOR_MODES)}")
        return errors

    if mode.type == ExecutionModeType.MIXED.value:
        if not mode.groups:
            errors.append("mixed mode requires at least one group")
        else:
            for index, group in enumerate(mode.groups):
                if not group.rules:
                    errors.append(f"group {index} must contain at least one rule")
                if group.mode not in GROUP_MODES:
                    errors.append(f"group {index} mode must be parallel or sequential, got '{group.mode}'")

    return errors


class SelectorResolver:
    """Turns selectors into resolved plans.

    Tag indices are rebuilt only when the available rule set changes, judged
    by the caller's generation token when given and by cardinality otherwise.
    """

    def __init__(self, dependency_analyzer: Optional[DependencyAnalyzer] = None):
        self.logger = get_logger("rules.selector")
        self.dependency_analyzer = dependency_analyzer or no_dependencies
        self._tag_to_rules: Dict[str, Set[str]] = {}
        self._rule_to_tags: Dict[str, frozenset] = {}
        self._indexed_size: Optional[int] = None
        self._indexed_generation: Optional[int] = None
        self._rebuilds = 0

    def validate_selector(self, selector: RuleSelector) -> bool:
        return not selector_errors(selector)

    def resolve(self,
                selector: RuleSelector,
                available: Mapping[str, RuleMetadata],
                generation: Optional[int] = None) -> ResolvedRulePlan:
        """Resolve ``selector`` against the available rules."""
        errors = selector_errors(selector)
        if errors:
            raise InvalidInputError(
                f"Invalid rule selector: {errors[0]}",
                errors=errors,
                operation="selector.resolve"
            )

        self._update_indices(available, generation)

        rule_ids: List[str] = []
        if selector.ids:
            rule_ids.extend(self.get_rules_by_ids(selector.ids, available))
        if selector.tags:
            rule_ids.extend(self.get_rules_by_tags(selector.tags))
        rule_ids = list(dict.fromkeys(rule_ids))

        dependencies = self.analyze_dependencies(rule_ids, available)
        has_edges = any(info.depends_on for info in dependencies.values())
        mode = selector.mode.type

        if has_edges:
            levels = self.create_execution_order(rule_ids, dependencies)
            if mode == ExecutionModeType.PARALLEL.value:
                execution_order = levels
            elif mode == ExecutionModeType.SEQUENTIAL.value:
                execution_order = [[rule_id] for level in levels for rule_id in level]
            else:
                execution_order = self._mixed_order(rule_ids, selector.mode.groups)
                self._check_stage_dependencies(execution_order, dependencies)
        elif mode == ExecutionModeType.PARALLEL.value:
            execution_order = [rule_ids] if rule_ids else []
        elif mode == ExecutionModeType.SEQUENTIAL.value:
            execution_order = [[rule_id] for rule_id in rule_ids]
        else:
            execution_order = self._mixed_order(rule_ids, selector.mode.groups)

        self.logger.debug(
            "Selector resolved",
            mode=mode,
            rule_count=len(rule_ids),
            stage_count=len(execution_order)
        )

        return ResolvedRulePlan(
            rule_ids=rule_ids,
            execution_order=execution_order,
            dependencies=dependencies
        )

    def get_rules_by_ids(self, rule_ids: List[str], available: Mapping[str, RuleMetadata]) -> List[str]:
        """Requested ids that exist, in request order."""
        found = [rule_id for rule_id in rule_ids if rule_id in available]
        missing = len(rule_ids) - len(found)
        if missing:
            self.logger.debug("Selector ids not available", missing=missing)
        return found

    def get_rules_by_tags(self, tags: List[str]) -> List[str]:
        """Rules carrying every tag; empty when any tag matches nothing."""
        if not tags:
            return []

        matched: Optional[Set[str]] = None
        for tag in tags:
            rule_ids = self._tag_to_rules.get(tag)
            if not rule_ids:
                return []
            matched = set(rule_ids) if matched is None else matched & rule_ids
            if not matched:
                return []
        return sorted(matched)

    def analyze_dependencies(self, rule_ids: List[str],
                             available: Mapping[str, RuleMetadata]) -> Dict[str, DependencyInfo]:
        """Dependency edges among ``rule_ids``; edges to unselected rules are dropped."""
        raw = self.dependency_analyzer(rule_ids, available)
        selected = set(rule_ids)
        dependencies = {rule_id: DependencyInfo() for rule_id in rule_ids}

        for rule_id in rule_ids:
            info = raw.get(rule_id)
            if info is None:
                continue
            for dependency in info.depends_on:
                if dependency in selected and dependency not in dependencies[rule_id].depends_on:
                    dependencies[rule_id].depends_on.append(dependency)
                    dependencies[dependency].dependents.append(rule_id)

        return dependencies

    def create_execution_order(self, rule_ids: List[str],
                               dependencies: Mapping[str, DependencyInfo]) -> List[List[str]]:
        """Level-grouped topological order (Kahn's algorithm)."""
        in_degree = {rule_id: 0 for rule_id in rule_ids}
        dependents: Dict[str, List[str]] = {rule_id: [] for rule_id in rule_ids}

        for rule_id in rule_ids:
            info = dependencies.get(rule_id)
            if info is None:
                continue
            for dependency in info.depends_on:
                if dependency in in_degree:
                    in_degree[rule_id] += 1
                    dependents[dependency].append(rule_id)

        order = {rule_id: index for index, rule_id in enumerate(rule_ids)}
        levels: List[List[str]] = []
        current = [rule_id for rule_id in rule_ids if in_degree[rule_id] == 0]
        processed = 0

        while current:
            levels.append(current)
            processed += len(current)
            ready: List[str] = []
            for rule_id in current:
                for dependent in dependents[rule_id]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        ready.append(dependent)
            current = sorted(ready, key=order.__getitem__)

        if processed < len(rule_ids):
            raise CircularDependencyError(operation="selector.execution_order")

        return levels

    def get_index_stats(self) -> Dict[str, Any]:
        return {
            "indexed_rules": len(self._rule_to_tags),
            "indexed_tags": len(self._tag_to_rules),
            "rebuilds": self._rebuilds,
            "generation": self._indexed_generation,
        }

    def clear_indices(self):
        self._tag_to_rules.clear()
        self._rule_to_tags.clear()
        self._indexed_size = None
        self._indexed_generation = None

    def _update_indices(self, available: Mapping[str, RuleMetadata], generation: Optional[int]):
        if generation is not None:
            stale = generation != self._indexed_generation
        else:
            stale = self._indexed_size is None or len(available) != self._indexed_size
        if not stale:
            return

        self._tag_to_rules = {}
        self._rule_to_tags = {}
        for rule_id, metadata in available.items():
            self._rule_to_tags[rule_id] = metadata.tags
            for tag in metadata.tags:
                self._tag_to_rules.setdefault(tag, set()).add(rule_id)

        self._indexed_size = len(available)
        self._indexed_generation = generation
        self._rebuilds += 1

    @staticmethod
    def _mixed_order(rule_ids: List[str], groups: List[ExecutionGroup]) -> List[List[str]]:
        selected = set(rule_ids)
        processed: Set[str] = set()
        stages: List[List[str]] = []

        for group in groups:
            group_rules = [
                rule_id for rule_id in dict.fromkeys(group.rules)
                if rule_id in selected and rule_id not in processed
            ]
            if not group_rules:
                continue

            if group.mode == ExecutionModeType.PARALLEL.value:
                stages.append(group_rules)
            else:
                stages.extend([rule_id] for rule_id in group_rules)
            processed.update(group_rules)

        remaining = [rule_id for rule_id in rule_ids if rule_id not in processed]
        if remaining:
            stages.append(remaining)

        return stages

    @staticmethod
    def _check_stage_dependencies(stages: List[List[str]], dependencies: Mapping[str, DependencyInfo]):
        stage_of = {rule_id: index for index, stage in enumerate(stages) for rule_id in stage}
        for rule_id, index in stage_of.items():
            for dependency in dependencies[rule_id].depends_on:
                if stage_of[dependency] >= index:
                    raise InvalidInputError(
                        f"Rule '{rule_id}' is scheduled before or alongside its dependency '{dependency}'",
                        rule_id=rule_id,
                        operation="selector.resolve"
                    )
