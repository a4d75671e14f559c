"""
Unit tests for SelectorResolver.
"""

import pytest

from shared.errors import CircularDependencyError, InvalidInputError
from service_rules.app.models import (
    DependencyInfo, ExecutionGroup, ExecutionMode, RuleMetadata, RuleSelector
)
from service_rules.app.selector.resolver import SelectorResolver, selector_errors


def available_rules():
    return {
        "validate": RuleMetadata("validate", "1.0.0", frozenset(["order", "stage-1"])),
        "price": RuleMetadata("price", "1.0.0", frozenset(["order", "finance"])),
        "discount": RuleMetadata("discount", "1.0.0", frozenset(["order", "finance", "promo"])),
        "ship": RuleMetadata("ship", "1.0.0", frozenset(["logistics"])),
    }


class TestSelectorValidation:
    """Test cases for selector validation."""

    def test_requires_ids_or_tags(self):
        errors = selector_errors(RuleSelector())

        assert "selector must specify ids and/or tags" in errors

    def test_empty_lists_rejected(self):
        errors = selector_errors(RuleSelector(ids=[], tags=[]))

        assert "ids must not be empty when provided" in errors
        assert "tags must not be empty when provided" in errors

    def test_unknown_mode(self):
        errors = selector_errors(RuleSelector(ids=["a"], mode=ExecutionMode(type="random")))

        assert errors == ["mode.type must be one of parallel, sequential, mixed"]

    def test_mixed_requires_groups(self):
        errors = selector_errors(RuleSelector(ids=["a"], mode=ExecutionMode(type="mixed")))

        assert errors == ["mixed mode requires at least one group"]

    def test_mixed_group_problems_all_reported(self):
        mode = ExecutionMode.mixed([
            ExecutionGroup(rules=[], mode="parallel"),
            ExecutionGroup(rules=["a"], mode="mixed"),
        ])

        errors = selector_errors(RuleSelector(ids=["a"], mode=mode))

        assert len(errors) == 2

    def test_resolver_validate_selector(self):
        resolver = SelectorResolver()

        assert resolver.validate_selector(RuleSelector(tags=["order"])) is True
        assert resolver.validate_selector(RuleSelector()) is False


class TestSelectorResolver:
    """Test cases for SelectorResolver."""

    @pytest.fixture
    def resolver(self):
        return SelectorResolver()

    @pytest.fixture
    def available(self):
        return available_rules()

    def test_parallel_ids_single_stage(self, resolver, available):
        plan = resolver.resolve(RuleSelector(ids=["price", "validate"]), available)

        assert plan.rule_ids == ["price", "validate"]
        assert plan.execution_order == [["price", "validate"]]

    def test_missing_ids_dropped(self, resolver, available):
        plan = resolver.resolve(RuleSelector(ids=["price", "ghost"]), available)

        assert plan.rule_ids == ["price"]

    def test_nothing_matches_gives_empty_plan(self, resolver, available):
        plan = resolver.resolve(RuleSelector(ids=["ghost"]), available)

        assert plan.rule_ids == []
        assert plan.execution_order == []

    def test_sequential_one_stage_per_rule(self, resolver, available):
        plan = resolver.resolve(
            RuleSelector(ids=["validate", "price"], mode=ExecutionMode.sequential()),
            available
        )

        assert plan.execution_order == [["validate"], ["price"]]

    def test_tags_and_ids_union_deduplicated(self, resolver, available):
        plan = resolver.resolve(RuleSelector(ids=["price", "ship"], tags=["finance"]), available)

        assert plan.rule_ids == ["price", "ship", "discount"]

    def test_tag_intersection(self, resolver, available):
        plan = resolver.resolve(RuleSelector(tags=["finance", "promo"]), available)

        assert plan.rule_ids == ["discount"]

    def test_invalid_selector_raises_with_errors(self, resolver, available):
        with pytest.raises(InvalidInputError) as exc_info:
            resolver.resolve(RuleSelector(ids=[]), available)

        assert exc_info.value.details["errors"] == ["ids must not be empty when provided"]
        assert exc_info.value.retryable is False

    def test_mixed_groups_and_leftovers(self, resolver, available):
        mode = ExecutionMode.mixed([
            ExecutionGroup(rules=["validate"], mode="sequential"),
            ExecutionGroup(rules=["price", "discount", "ghost"], mode="parallel"),
        ])

        plan = resolver.resolve(RuleSelector(tags=["order"], mode=mode), available)

        assert plan.execution_order == [["validate"], ["price", "discount"]]

    def test_mixed_sequential_group_and_trailing_stage(self, resolver, available):
        mode = ExecutionMode.mixed([ExecutionGroup(rules=["discount", "price"], mode="sequential")])

        plan = resolver.resolve(RuleSelector(ids=["validate", "price", "discount", "ship"], mode=mode), available)

        assert plan.execution_order == [["discount"], ["price"], ["validate", "ship"]]

    def test_mixed_rule_only_in_first_group(self, resolver, available):
        mode = ExecutionMode.mixed([
            ExecutionGroup(rules=["price"], mode="parallel"),
            ExecutionGroup(rules=["price", "ship"], mode="parallel"),
        ])

        plan = resolver.resolve(RuleSelector(ids=["price", "ship"], mode=mode), available)

        assert plan.execution_order == [["price"], ["ship"]]

    def test_indices_rebuilt_on_generation_change(self, resolver, available):
        resolver.resolve(RuleSelector(tags=["order"]), available, generation=1)
        resolver.resolve(RuleSelector(tags=["order"]), available, generation=1)
        assert resolver.get_index_stats()["rebuilds"] == 1

        available["extra"] = RuleMetadata("extra", "1.0.0", frozenset(["order"]))
        plan = resolver.resolve(RuleSelector(tags=["order"]), available, generation=2)

        assert "extra" in plan.rule_ids
        assert resolver.get_index_stats()["rebuilds"] == 2

    def test_indices_rebuilt_on_cardinality_without_generation(self, resolver, available):
        resolver.resolve(RuleSelector(tags=["logistics"]), available)
        available["truck"] = RuleMetadata("truck", "1.0.0", frozenset(["logistics"]))

        plan = resolver.resolve(RuleSelector(tags=["logistics"]), available)

        assert plan.rule_ids == ["ship", "truck"]


class TestDependencyOrdering:
    """Test cases for dependency-aware plans."""

    @staticmethod
    def analyzer(edges):
        def analyze(rule_ids, available):
            return {rule_id: DependencyInfo(depends_on=list(edges.get(rule_id, []))) for rule_id in rule_ids}
        return analyze

    def test_levels_for_parallel(self):
        resolver = SelectorResolver(self.analyzer({"price": ["validate"], "discount": ["price"]}))

        plan = resolver.resolve(RuleSelector(ids=["discount", "price", "validate", "ship"]), available_rules())

        assert plan.execution_order == [["validate", "ship"], ["price"], ["discount"]]
        assert plan.dependencies["price"].dependents == ["discount"]

    def test_sequential_respects_dependencies(self):
        resolver = SelectorResolver(self.analyzer({"price": ["validate"]}))

        plan = resolver.resolve(
            RuleSelector(ids=["price", "validate"], mode=ExecutionMode.sequential()),
            available_rules()
        )

        assert plan.execution_order == [["validate"], ["price"]]

    def test_edges_to_unselected_rules_dropped(self):
        resolver = SelectorResolver(self.analyzer({"price": ["validate"]}))

        plan = resolver.resolve(RuleSelector(ids=["price"]), available_rules())

        assert plan.execution_order == [["price"]]
        assert plan.dependencies["price"].depends_on == []

    def test_cycle_detected(self):
        resolver = SelectorResolver(self.analyzer({"price": ["discount"], "discount": ["price"]}))

        with pytest.raises(CircularDependencyError):
            resolver.resolve(RuleSelector(ids=["price", "discount"]), available_rules())

    def test_mixed_group_before_dependency_rejected(self):
        resolver = SelectorResolver(self.analyzer({"validate": ["price"]}))
        mode = ExecutionMode.mixed([ExecutionGroup(rules=["validate", "price"], mode="sequential")])

        with pytest.raises(InvalidInputError):
            resolver.resolve(RuleSelector(ids=["validate", "price"], mode=mode), available_rules())
