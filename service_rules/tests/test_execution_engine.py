"""
Unit tests for the execution engine.
"""

import asyncio
from typing import Any, Callable, Dict, List

import pytest
from unittest.mock import MagicMock

from shared.circuit_breaker import CircuitBreakerConfig
from shared.errors import ExecutionError, InvalidInputError, NetworkError, RuleTimeoutError
from shared.logging import execution_id_var
from shared.rate_limiter import RateLimiterConfig
from shared.resilience import ResilienceService
from shared.retry import RetryConfig
from service_rules.app.cache.rule_cache import RuleCache
from service_rules.app.evaluator.base import EvaluationOutcome
from service_rules.app.execution.engine import (
    BatchOptions, ExecutionEngine, MixedOptions, ParallelOptions, SequentialOptions
)
from service_rules.app.models import ExecutionGroup, ExecutionMode, RuleMetadata, RuleSelector
from service_rules.app.selector.resolver import SelectorResolver


class ScriptedEvaluator:
    """Evaluator whose per-rule behaviour is a callable of the input."""

    def __init__(self, behaviours: Dict[str, Callable[[Any], Any]]):
        self.behaviours = behaviours
        self.calls: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.execution_ids: Dict[str, str] = {}

    async def evaluate(self, rule_id: str, document: Any) -> EvaluationOutcome:
        self.calls.append((rule_id, document))
        self.execution_ids[rule_id] = execution_id_var.get()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            behaviour = self.behaviours[rule_id]
            result = behaviour(document)
            if asyncio.iscoroutine(result):
                result = await result
            return EvaluationOutcome(result=result)
        finally:
            self.in_flight -= 1


def fails(error: Exception):
    def behaviour(document):
        raise error
    return behaviour


def sleeps(seconds: float, value: Any = None):
    async def behaviour(document):
        await asyncio.sleep(seconds)
        return value if value is not None else {"slept": seconds}
    return behaviour


def make_cache(*rule_ids: str, tags=None) -> RuleCache:
    cache = RuleCache()
    for rule_id in rule_ids:
        cache.set(rule_id, b"{}", RuleMetadata(rule_id, "1", frozenset((tags or {}).get(rule_id, []))))
    return cache


class TestParallelExecution:
    """Test cases for parallel execution."""

    @pytest.fixture
    def evaluator(self):
        return ScriptedEvaluator({
            "a": lambda d: {"a": d.get("x", 0) + 1},
            "b": lambda d: {"b": True},
            "broken": fails(ValueError("bad row")),
            "slow": sleeps(0.2),
        })

    @pytest.fixture
    def sink(self):
        return MagicMock()

    @pytest.fixture
    def engine(self, evaluator, sink):
        return ExecutionEngine(make_cache("a", "b", "broken", "slow"), SelectorResolver(), evaluator,
                               sink=sink, execution_timeout=1.0)

    @pytest.mark.asyncio
    async def test_all_rules_see_same_input(self, engine, evaluator):
        result = await engine.execute_parallel(["a", "b"], {"x": 1})

        assert result.results == {"a": {"a": 2}, "b": {"b": True}}
        assert result.errors is None
        assert {call[1]["x"] for call in evaluator.calls} == {1}

    @pytest.mark.asyncio
    async def test_failures_contained(self, engine):
        result = await engine.execute_parallel(["a", "broken"], {})

        assert set(result.results) == {"a"}
        assert set(result.errors) == {"broken"}
        error = result.errors["broken"]
        assert isinstance(error, ExecutionError)
        assert error.rule_id == "broken"
        assert error.operation == "rule.evaluate"
        assert isinstance(error.cause, ValueError)

    @pytest.mark.asyncio
    async def test_timeout_recorded_as_timeout_error(self, engine):
        result = await engine.execute_parallel(["a", "slow"], {}, ParallelOptions(rule_timeout=0.05))

        assert set(result.results) == {"a"}
        assert isinstance(result.errors["slow"], RuleTimeoutError)
        assert result.errors["slow"].rule_id == "slow"

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        evaluator = ScriptedEvaluator({f"r{i}": sleeps(0.01) for i in range(8)})
        engine = ExecutionEngine(make_cache(*evaluator.behaviours), SelectorResolver(), evaluator)

        result = await engine.execute_parallel(list(evaluator.behaviours), {}, ParallelOptions(max_concurrency=3))

        assert len(result.results) == 8
        assert evaluator.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_fail_fast_raises_first_error(self, engine):
        with pytest.raises(ExecutionError) as exc_info:
            await engine.execute_parallel(["broken", "slow"], {}, ParallelOptions(fail_fast=True))

        assert exc_info.value.rule_id == "broken"

    @pytest.mark.asyncio
    async def test_sink_events(self, engine, sink):
        await engine.execute_parallel(["a", "broken"], {})

        assert sink.on_execution_start.call_count == 2
        sink.on_execution_success.assert_called_once()
        sink.on_execution_error.assert_called_once()
        assert sink.on_execution_error.call_args.kwargs["rule_id"] == "broken"

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_change_outcome(self, engine, sink):
        sink.on_execution_success.side_effect = RuntimeError("sink down")

        result = await engine.execute_parallel(["a"], {"x": 0})

        assert result.results == {"a": {"a": 1}}

    @pytest.mark.asyncio
    async def test_each_execution_gets_an_id(self, engine, evaluator):
        await engine.execute_parallel(["a", "b"], {})

        ids = evaluator.execution_ids
        assert ids["a"] and ids["b"] and ids["a"] != ids["b"]
        assert execution_id_var.get() is None


class TestSequentialExecution:
    """Test cases for sequential execution."""

    @pytest.fixture
    def evaluator(self):
        return ScriptedEvaluator({
            "step1": lambda d: {"total": 10},
            "step2": lambda d: {"total": d["total"] * 2, "doubled": True},
            "scalar": lambda d: 42,
            "broken": fails(KeyError("total")),
        })

    @pytest.fixture
    def engine(self, evaluator):
        return ExecutionEngine(make_cache("step1", "step2", "scalar", "broken"), SelectorResolver(), evaluator)

    @pytest.mark.asyncio
    async def test_pipeline_merges_outputs(self, engine, evaluator):
        result = await engine.execute_sequential(["step1", "step2"], {"order": "o-1"})

        assert result.results["step2"] == {"total": 20, "doubled": True}
        assert result.final_input == {"order": "o-1", "total": 20, "doubled": True}
        assert evaluator.calls[1][1] == {"order": "o-1", "total": 10}

    @pytest.mark.asyncio
    async def test_scalar_output_not_merged(self, engine):
        result = await engine.execute_sequential(["scalar", "step1"], {"order": "o-1"})

        assert result.results["scalar"] == 42
        assert result.final_input == {"order": "o-1", "total": 10}

    @pytest.mark.asyncio
    async def test_without_pipeline_input_unchanged(self, engine, evaluator):
        result = await engine.execute_sequential(
            ["step1", "scalar"], {"order": "o-1"}, SequentialOptions(pipeline_mode=False)
        )

        assert evaluator.calls[1][1] == {"order": "o-1"}
        assert result.final_input == {"order": "o-1"}

    @pytest.mark.asyncio
    async def test_continue_after_error_with_last_good_input(self, engine, evaluator):
        result = await engine.execute_sequential(["step1", "broken", "step2"], {})

        assert set(result.errors) == {"broken"}
        assert result.results["step2"] == {"total": 20, "doubled": True}
        assert evaluator.calls[2][1] == {"total": 10}

    @pytest.mark.asyncio
    async def test_stop_on_error(self, engine, evaluator):
        result = await engine.execute_sequential(
            ["step1", "broken", "step2"], {}, SequentialOptions(stop_on_error=True)
        )

        assert set(result.results) == {"step1"}
        assert set(result.errors) == {"broken"}
        assert [call[0] for call in evaluator.calls] == ["step1", "broken"]


class TestSelectorExecution:
    """Test cases for execute() across modes."""

    @pytest.fixture
    def evaluator(self):
        return ScriptedEvaluator({
            "validate": lambda d: {"valid": True},
            "price": lambda d: {"price": 100 if d.get("valid") else 0},
            "discount": lambda d: {"discount": 0.1 * d.get("price", 0)},
            "audit": lambda d: {"audited": sorted(k for k in d)},
        })

    @pytest.fixture
    def engine(self, evaluator):
        cache = make_cache("validate", "price", "discount", "audit", tags={
            "validate": ["order"], "price": ["order"], "discount": ["order"], "audit": ["ops"],
        })
        return ExecutionEngine(cache, SelectorResolver(), evaluator)

    @pytest.mark.asyncio
    async def test_empty_plan(self, engine):
        result = await engine.execute(RuleSelector(ids=["ghost"]), {"x": 1})

        assert result.results == {}
        assert result.errors is None
        assert result.plan.rule_ids == []

    @pytest.mark.asyncio
    async def test_invalid_selector_raises(self, engine):
        with pytest.raises(InvalidInputError):
            await engine.execute(RuleSelector(), {})

    @pytest.mark.asyncio
    async def test_parallel_mode(self, engine):
        result = await engine.execute(RuleSelector(tags=["order"]), {})

        assert result.results["price"] == {"price": 0}
        assert result.plan.execution_order == [["discount", "price", "validate"]]

    @pytest.mark.asyncio
    async def test_sequential_mode_pipelines(self, engine):
        selector = RuleSelector(ids=["validate", "price", "discount"], mode=ExecutionMode.sequential())

        result = await engine.execute(selector, {})

        assert result.results["discount"] == {"discount": 10.0}
        assert result.final_input == {"valid": True, "price": 100, "discount": 10.0}

    @pytest.mark.asyncio
    async def test_mixed_mode_stages(self, engine, evaluator):
        mode = ExecutionMode.mixed([
            ExecutionGroup(rules=["validate"], mode="sequential"),
            ExecutionGroup(rules=["price", "audit"], mode="parallel"),
            ExecutionGroup(rules=["discount"], mode="sequential"),
        ])

        result = await engine.execute(RuleSelector(ids=["validate", "price", "audit", "discount"], mode=mode), {})

        assert result.results["price"] == {"price": 100}
        assert result.results["audit"] == {"audited": ["valid"]}
        assert result.results["discount"] == {"discount": 10.0}
        assert result.plan.execution_order == [["validate"], ["price", "audit"], ["discount"]]

    @pytest.mark.asyncio
    async def test_mixed_without_pipeline(self, engine):
        mode = ExecutionMode.mixed([
            ExecutionGroup(rules=["validate"], mode="sequential"),
            ExecutionGroup(rules=["price"], mode="sequential"),
        ])

        result = await engine.execute(
            RuleSelector(ids=["validate", "price"], mode=mode), {}, MixedOptions(pipeline_mode=False)
        )

        assert result.results["price"] == {"price": 0}

    @pytest.mark.asyncio
    async def test_execute_mixed_groups_directly(self, engine):
        result = await engine.execute_mixed(
            [ExecutionGroup(rules=["validate"], mode="sequential"),
             ExecutionGroup(rules=["price", "audit"], mode="parallel")],
            {}
        )

        assert result.results["price"] == {"price": 100}

    @pytest.mark.asyncio
    async def test_metrics_collected_when_enabled(self, evaluator):
        engine = ExecutionEngine(make_cache("validate", "price"), SelectorResolver(), evaluator,
                                 collect_metrics=True)

        result = await engine.execute(RuleSelector(ids=["validate", "price"]), {})

        assert set(result.metrics["rule_timings"]) == {"validate", "price"}
        assert result.metrics["concurrency"]["max_concurrent_rules"] == 2
        assert "efficiency" in result.metrics["analysis"]

    @pytest.mark.asyncio
    async def test_execute_rule(self, engine):
        assert await engine.execute_rule("validate", {}) == {"valid": True}

    @pytest.mark.asyncio
    async def test_execute_rule_raises(self):
        evaluator = ScriptedEvaluator({"broken": fails(NetworkError("down"))})
        engine = ExecutionEngine(make_cache("broken"), SelectorResolver(), evaluator)

        with pytest.raises(NetworkError) as exc_info:
            await engine.execute_rule("broken", {})

        assert exc_info.value.rule_id == "broken"

    def test_validate_rule(self, engine):
        assert engine.validate_rule("price") is True
        assert engine.validate_rule("ghost") is False


class TestBatchExecution:
    """Test cases for batch execution."""

    @pytest.fixture
    def evaluator(self):
        def check(document):
            if document.get("amount", 0) < 0:
                raise ValueError("negative amount")
            return {"ok": True}

        return ScriptedEvaluator({
            "check": check,
            "tag": lambda d: {"tag": d.get("id")},
            "slow": sleeps(0.05),
        })

    @pytest.fixture
    def engine(self, evaluator):
        return ExecutionEngine(make_cache("check", "tag", "slow"), SelectorResolver(), evaluator,
                               max_concurrency=2)

    @pytest.mark.asyncio
    async def test_results_per_input(self, engine):
        inputs = [{"id": 1, "amount": 5}, {"id": 2, "amount": -1}, {"id": 3, "amount": 0}]

        batch = await engine.execute_batch(inputs, RuleSelector(ids=["check", "tag"]))

        assert [r.input_index for r in batch.results] == [0, 1, 2]
        assert [r.success for r in batch.results] == [True, False, True]
        assert batch.results[1].results == {"tag": {"tag": 2}}
        assert set(batch.results[1].errors) == {"check"}
        assert batch.results[2].errors is None

    @pytest.mark.asyncio
    async def test_stop_remaining_rules_for_failed_input(self, engine):
        inputs = [{"id": 1, "amount": -1}, {"id": 2, "amount": 1}]

        batch = await engine.execute_batch_by_rules(
            inputs, ["check", "slow"], BatchOptions(continue_on_error=False)
        )

        failed, passed = batch.results
        assert failed.success is False
        assert "slow" not in failed.results
        assert set(passed.results) == {"check", "slow"}

    @pytest.mark.asyncio
    async def test_empty_selection(self, engine):
        batch = await engine.execute_batch([{}, {}], RuleSelector(ids=["ghost"]))

        assert [(r.input_index, r.success, r.results) for r in batch.results] == [(0, True, {}), (1, True, {})]

    @pytest.mark.asyncio
    async def test_inputs_chunked_by_concurrency(self, engine, evaluator):
        inputs = [{"id": i} for i in range(5)]

        batch = await engine.execute_batch_by_rules(inputs, ["slow"])

        assert len(batch.results) == 5
        assert evaluator.max_in_flight <= 2


class TestResilientEvaluation:
    """Test cases for evaluation through the resilience service."""

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self):
        attempts = []

        def flaky(document):
            attempts.append(1)
            if len(attempts) < 3:
                raise NetworkError("temporary")
            return {"ok": True}

        resilience = ResilienceService(
            retry_config=RetryConfig(max_attempts=3, base_delay=0, jitter_factor=0),
            circuit_config=CircuitBreakerConfig(failure_threshold=5),
            rate_limit_config=RateLimiterConfig(max_requests=100, strategy="reject"),
        )
        engine = ExecutionEngine(make_cache("flaky"), SelectorResolver(), ScriptedEvaluator({"flaky": flaky}),
                                 resilience=resilience, use_resilience=True)

        result = await engine.execute_parallel(["flaky"], {})

        assert result.results == {"flaky": {"ok": True}}
        assert len(attempts) == 3
        assert resilience.get_stats("rule.evaluate.flaky")["total_successes"] == 1


class TestValidateExecutionGroups:
    """Test cases for group validation."""

    @pytest.fixture
    def engine(self):
        return ExecutionEngine(make_cache("a", "b"), SelectorResolver(), ScriptedEvaluator({}))

    def test_valid_groups(self, engine):
        groups = [ExecutionGroup(rules=["a"], mode="sequential"), ExecutionGroup(rules=["b"])]

        assert engine.validate_execution_groups(groups) == []

    def test_every_problem_reported(self, engine):
        groups = [
            ExecutionGroup(rules=["a", "ghost"], mode="parallel"),
            ExecutionGroup(rules=[], mode="sequential"),
            ExecutionGroup(rules=["a"], mode="batch"),
        ]

        errors = engine.validate_execution_groups(groups)

        assert "group 0: rule 'ghost' not found in cache" in errors
        assert "group 1: must contain at least one rule" in errors
        assert "group 2: invalid mode 'batch', expected parallel or sequential" in errors
        assert "group 2: rule 'a' already appears in group 0" in errors
        assert len(errors) == 4
