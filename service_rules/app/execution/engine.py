"""
Execution engine: runs resolved plans in parallel, sequential, mixed and
batch modes under a concurrency bound and a per-rule timeout.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shared.errors import RulesEngineError, RuleTimeoutError, wrap_error
from shared.logging import execution_context, get_logger
from shared.metrics import notify_sink
from shared.resilience import ResilienceService
from ..cache.rule_cache import RuleCache
from ..documents import Document, merge_documents
from ..evaluator.base import Evaluator
from ..models import ExecutionGroup, ExecutionModeType, GROUP_MODES, ResolvedRulePlan, RuleSelector
from ..selector.resolver import SelectorResolver
from .performance import ExecutionMetricsCollector


@dataclass
class ParallelOptions:
    fail_fast: bool = False
    max_concurrency: Optional[int] = None
    rule_timeout: Optional[float] = None


@dataclass
class SequentialOptions:
    pipeline_mode: Optional[bool] = None
    stop_on_error: Optional[bool] = None
    rule_timeout: Optional[float] = None


@dataclass
class MixedOptions:
    pipeline_mode: Optional[bool] = None
    stop_on_error: Optional[bool] = None
    rule_timeout: Optional[float] = None
    max_concurrency: Optional[int] = None


@dataclass
class BatchOptions:
    max_concurrency: Optional[int] = None
    continue_on_error: bool = True
    rule_timeout: Optional[float] = None


@dataclass
class RuleOutcome:
    """Value or error for one rule evaluation."""
    rule_id: str
    value: Any = None
    error: Optional[RulesEngineError] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def _errors_to_dict(errors: Optional[Dict[str, RulesEngineError]]) -> Optional[Dict[str, Dict[str, Any]]]:
    if not errors:
        return None
    return {rule_id: error.to_response().model_dump(exclude={"trace_id"}) for rule_id, error in errors.items()}


@dataclass
class ExecutionResult:
    results: Dict[str, Any] = field(default_factory=dict)
    execution_time_ms: float = 0.0
    errors: Optional[Dict[str, RulesEngineError]] = None
    final_input: Optional[Document] = None
    plan: Optional[ResolvedRulePlan] = None
    metrics: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": dict(self.results),
            "execution_time_ms": round(self.execution_time_ms, 3),
            "errors": _errors_to_dict(self.errors),
            "final_input": self.final_input,
            "plan": self.plan.to_dict() if self.plan else None,
            "metrics": self.metrics,
        }


@dataclass
class BatchInputResult:
    input_index: int
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Optional[Dict[str, RulesEngineError]] = None
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_index": self.input_index,
            "results": dict(self.results),
            "errors": _errors_to_dict(self.errors),
            "success": self.success,
        }


@dataclass
class BatchExecutionResult:
    results: List[BatchInputResult] = field(default_factory=list)
    execution_time_ms: float = 0.0
    metrics: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "execution_time_ms": round(self.execution_time_ms, 3),
            "metrics": self.metrics,
        }


def _collect(outcomes: List[RuleOutcome]) -> ExecutionResult:
    results: Dict[str, Any] = {}
    errors: Dict[str, RulesEngineError] = {}
    for outcome in outcomes:
        if outcome.ok:
            results[outcome.rule_id] = outcome.value
        else:
            errors[outcome.rule_id] = outcome.error
    return ExecutionResult(results=results, errors=errors or None)


class ExecutionEngine:
    """Executes rules through the evaluator.

    Per-rule failures are contained in the ``errors`` map of the result
    unless fail-fast is requested. Every evaluation is bounded by the rule
    timeout; when ``use_resilience`` is set it also runs through the
    resilience service under ``rule.evaluate.<rule_id>``.
    """

    def __init__(self,
                 cache: RuleCache,
                 resolver: SelectorResolver,
                 evaluator: Evaluator,
                 resilience: Optional[ResilienceService] = None,
                 sink: Optional[Any] = None,
                 execution_timeout: float = 5.0,
                 max_concurrency: int = 10,
                 pipeline_mode: bool = True,
                 stop_on_error: bool = False,
                 use_resilience: bool = False,
                 collect_metrics: bool = False):
        self.cache = cache
        self.resolver = resolver
        self.evaluator = evaluator
        self.resilience = resilience
        self.sink = sink
        self.execution_timeout = execution_timeout
        self.max_concurrency = max_concurrency
        self.pipeline_mode = pipeline_mode
        self.stop_on_error = stop_on_error
        self.use_resilience = use_resilience and resilience is not None
        self.collect_metrics = collect_metrics
        self.logger = get_logger("rules.execution")

    @classmethod
    def from_settings(cls, config, cache, resolver, evaluator, resilience=None, sink=None) -> "ExecutionEngine":
        return cls(
            cache,
            resolver,
            evaluator,
            resilience=resilience,
            sink=sink,
            execution_timeout=config.execution_timeout,
            max_concurrency=config.max_concurrency,
            pipeline_mode=config.pipeline_mode,
            stop_on_error=config.stop_on_error,
            use_resilience=config.enable_evaluation_resilience,
            collect_metrics=config.enable_performance_metrics,
        )

    # Single evaluation

    async def _evaluate(self,
                        rule_id: str,
                        document: Document,
                        timeout: Optional[float] = None,
                        collector: Optional[ExecutionMetricsCollector] = None) -> RuleOutcome:
        timeout = timeout or self.execution_timeout
        start_time = time.perf_counter()

        def call():
            return self.evaluator.evaluate(rule_id, document)

        with execution_context() as execution_id:
            notify_sink(self.sink, "on_execution_start", rule_id=rule_id, execution_id=execution_id)

            try:
                if self.use_resilience:
                    operation = self.resilience.with_resilience(call, f"rule.evaluate.{rule_id}")
                else:
                    operation = call()
                outcome = await asyncio.wait_for(operation, timeout=timeout)
                duration_ms = (time.perf_counter() - start_time) * 1000

                notify_sink(self.sink, "on_execution_success", rule_id=rule_id,
                            execution_id=execution_id, duration_ms=duration_ms)
                self.logger.debug("Rule executed", rule_id=rule_id, duration_ms=round(duration_ms, 3))
                if collector is not None:
                    collector.record_rule(rule_id, duration_ms)
                return RuleOutcome(rule_id, value=outcome.result, duration_ms=duration_ms)

            except asyncio.TimeoutError as e:
                error = RuleTimeoutError(
                    f"Rule {rule_id} timed out after {timeout}s",
                    timeout=timeout,
                    rule_id=rule_id,
                    operation="rule.evaluate",
                    cause=e
                )
            except asyncio.CancelledError as e:
                notify_sink(self.sink, "on_execution_error", rule_id=rule_id, execution_id=execution_id,
                            duration_ms=(time.perf_counter() - start_time) * 1000, error=e)
                raise
            except Exception as e:
                error = wrap_error(e, "rule.evaluate", rule_id)

        duration_ms = (time.perf_counter() - start_time) * 1000
        notify_sink(self.sink, "on_execution_error", rule_id=rule_id, execution_id=execution_id,
                    duration_ms=duration_ms, error=error)
        self.logger.warning(
            "Rule execution failed",
            rule_id=rule_id,
            execution_id=execution_id,
            code=error.code,
            error=error.message,
            duration_ms=round(duration_ms, 3)
        )
        if collector is not None:
            collector.record_rule(rule_id, duration_ms)
        return RuleOutcome(rule_id, error=error, duration_ms=duration_ms)

    async def execute_rule(self, rule_id: str, document: Document, timeout: Optional[float] = None) -> Any:
        """Evaluate one rule; raises on failure."""
        outcome = await self._evaluate(rule_id, document, timeout)
        if outcome.error is not None:
            raise outcome.error
        return outcome.value

    def validate_rule(self, rule_id: str) -> bool:
        return rule_id in self.cache

    # Primitives

    async def execute_parallel(self,
                               rule_ids: List[str],
                               document: Document,
                               options: Optional[ParallelOptions] = None,
                               collector: Optional[ExecutionMetricsCollector] = None) -> ExecutionResult:
        """Evaluate every rule concurrently against the same input."""
        options = options or ParallelOptions()
        start_time = time.perf_counter()
        limit = asyncio.Semaphore(options.max_concurrency or self.max_concurrency)

        async def run(rule_id: str) -> RuleOutcome:
            async with limit:
                return await self._evaluate(rule_id, document, options.rule_timeout, collector)

        if not options.fail_fast:
            outcomes = await asyncio.gather(*(run(rule_id) for rule_id in rule_ids))
        else:
            outcomes = await self._run_fail_fast([run(rule_id) for rule_id in rule_ids], raise_first=True)

        result = _collect(outcomes)
        result.execution_time_ms = (time.perf_counter() - start_time) * 1000
        if collector is not None:
            collector.record_batch(len(rule_ids), result.execution_time_ms)
        return result

    async def _run_fail_fast(self, coroutines, raise_first: bool) -> List[RuleOutcome]:
        """Run concurrently, stopping outstanding work at the first failure."""
        tasks = [asyncio.ensure_future(c) for c in coroutines]
        outcomes: List[RuleOutcome] = []
        try:
            for future in asyncio.as_completed(tasks):
                outcome = await future
                outcomes.append(outcome)
                if not outcome.ok:
                    if raise_first:
                        raise outcome.error
                    break
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return outcomes

    async def execute_sequential(self,
                                 rule_ids: List[str],
                                 document: Document,
                                 options: Optional[SequentialOptions] = None,
                                 collector: Optional[ExecutionMetricsCollector] = None) -> ExecutionResult:
        """Evaluate rules one at a time in list order."""
        options = options or SequentialOptions()
        pipeline = self.pipeline_mode if options.pipeline_mode is None else options.pipeline_mode
        stop_on_error = self.stop_on_error if options.stop_on_error is None else options.stop_on_error
        start_time = time.perf_counter()

        results: Dict[str, Any] = {}
        errors: Dict[str, RulesEngineError] = {}
        current = document

        for rule_id in rule_ids:
            outcome = await self._evaluate(rule_id, current, options.rule_timeout, collector)
            if collector is not None:
                collector.record_batch(1, outcome.duration_ms)

            if not outcome.ok:
                errors[rule_id] = outcome.error
                if stop_on_error:
                    break
                continue

            results[rule_id] = outcome.value
            if pipeline:
                current = merge_documents(current, outcome.value)

        return ExecutionResult(
            results=results,
            errors=errors or None,
            final_input=current,
            execution_time_ms=(time.perf_counter() - start_time) * 1000
        )

    async def execute_stages(self,
                             stages: List[List[str]],
                             document: Document,
                             options: Optional[MixedOptions] = None,
                             collector: Optional[ExecutionMetricsCollector] = None) -> ExecutionResult:
        """Run stages in order, rules within a stage concurrently.

        With pipelining, object outputs of a stage are merged into the input
        of the next one, in stage order.
        """
        options = options or MixedOptions()
        pipeline = self.pipeline_mode if options.pipeline_mode is None else options.pipeline_mode
        stop_on_error = self.stop_on_error if options.stop_on_error is None else options.stop_on_error
        start_time = time.perf_counter()

        results: Dict[str, Any] = {}
        errors: Dict[str, RulesEngineError] = {}
        current = document

        for stage in stages:
            stage_result = await self.execute_parallel(
                stage,
                current,
                ParallelOptions(max_concurrency=options.max_concurrency, rule_timeout=options.rule_timeout),
                collector
            )
            results.update(stage_result.results)
            if stage_result.errors:
                errors.update(stage_result.errors)

            if pipeline:
                for rule_id in stage:
                    if rule_id in stage_result.results:
                        current = merge_documents(current, stage_result.results[rule_id])

            if stage_result.errors and stop_on_error:
                break

        return ExecutionResult(
            results=results,
            errors=errors or None,
            final_input=current,
            execution_time_ms=(time.perf_counter() - start_time) * 1000
        )

    async def execute_mixed(self,
                            groups: List[ExecutionGroup],
                            document: Document,
                            options: Optional[MixedOptions] = None) -> ExecutionResult:
        """Run ad hoc groups, each per its own sub-mode."""
        stages: List[List[str]] = []
        for group in groups:
            if group.mode == ExecutionModeType.PARALLEL.value:
                stages.append(list(group.rules))
            else:
                stages.extend([rule_id] for rule_id in group.rules)
        return await self.execute_stages(stages, document, options)

    # Selector entry points

    def resolve(self, selector: RuleSelector) -> ResolvedRulePlan:
        return self.resolver.resolve(selector, self.cache.get_all_metadata(), self.cache.generation)

    async def execute(self,
                      selector: RuleSelector,
                      document: Document,
                      options: Optional[MixedOptions] = None) -> ExecutionResult:
        """Resolve ``selector`` and run the plan per its mode."""
        start_time = time.perf_counter()
        plan = self.resolve(selector)
        options = options or MixedOptions()
        collector = ExecutionMetricsCollector() if self.collect_metrics else None

        if not plan.rule_ids:
            return ExecutionResult(
                final_input=document,
                plan=plan,
                execution_time_ms=(time.perf_counter() - start_time) * 1000
            )

        mode = selector.mode.type
        if mode == ExecutionModeType.SEQUENTIAL.value:
            result = await self.execute_sequential(
                [rule_id for stage in plan.execution_order for rule_id in stage],
                document,
                SequentialOptions(options.pipeline_mode, options.stop_on_error, options.rule_timeout),
                collector
            )
        elif mode == ExecutionModeType.PARALLEL.value and len(plan.execution_order) == 1:
            result = await self.execute_parallel(
                plan.execution_order[0],
                document,
                ParallelOptions(max_concurrency=options.max_concurrency, rule_timeout=options.rule_timeout),
                collector
            )
        elif mode == ExecutionModeType.PARALLEL.value:
            # Dependency levels: ordered but not pipelined
            result = await self.execute_stages(
                plan.execution_order,
                document,
                MixedOptions(False, options.stop_on_error, options.rule_timeout, options.max_concurrency),
                collector
            )
        else:
            result = await self.execute_stages(plan.execution_order, document, options, collector)

        result.plan = plan
        result.execution_time_ms = (time.perf_counter() - start_time) * 1000
        if collector is not None:
            result.metrics = collector.get_metrics().to_dict()

        self.logger.info(
            "Execution completed",
            mode=mode,
            rules=len(plan.rule_ids),
            succeeded=len(result.results),
            failed=len(result.errors or {}),
            execution_time_ms=round(result.execution_time_ms, 3)
        )
        return result

    async def execute_batch(self,
                            inputs: List[Document],
                            selector: RuleSelector,
                            options: Optional[BatchOptions] = None) -> BatchExecutionResult:
        """Run the selector's rules against every input."""
        plan = self.resolve(selector)
        if not plan.rule_ids:
            return BatchExecutionResult(
                results=[BatchInputResult(input_index=i) for i in range(len(inputs))]
            )
        return await self.execute_batch_by_rules(inputs, plan.rule_ids, options)

    async def execute_batch_by_rules(self,
                                     inputs: List[Document],
                                     rule_ids: List[str],
                                     options: Optional[BatchOptions] = None) -> BatchExecutionResult:
        """Run ``rule_ids`` against every input, chunking inputs by the concurrency bound.

        Chunks run one after another; within a chunk every rule x input pair
        runs concurrently. Failures stay attributed to their input.
        """
        options = options or BatchOptions()
        chunk_size = options.max_concurrency or self.max_concurrency
        start_time = time.perf_counter()
        collector = ExecutionMetricsCollector() if self.collect_metrics else None
        results: List[BatchInputResult] = []

        for start in range(0, len(inputs), chunk_size):
            chunk = inputs[start:start + chunk_size]
            chunk_start = time.perf_counter()
            chunk_results = await asyncio.gather(*(
                self._run_input(start + offset, document, rule_ids, options)
                for offset, document in enumerate(chunk)
            ))
            results.extend(chunk_results)
            if collector is not None:
                collector.record_batch(len(chunk) * len(rule_ids), (time.perf_counter() - chunk_start) * 1000)

        execution_time_ms = (time.perf_counter() - start_time) * 1000
        self.logger.info(
            "Batch execution completed",
            inputs=len(inputs),
            rules=len(rule_ids),
            failed_inputs=sum(1 for r in results if not r.success),
            execution_time_ms=round(execution_time_ms, 3)
        )
        return BatchExecutionResult(
            results=results,
            execution_time_ms=execution_time_ms,
            metrics=collector.get_metrics().to_dict() if collector is not None else None
        )

    async def _run_input(self,
                         input_index: int,
                         document: Document,
                         rule_ids: List[str],
                         options: BatchOptions) -> BatchInputResult:
        coroutines = [self._evaluate(rule_id, document, options.rule_timeout) for rule_id in rule_ids]
        if options.continue_on_error:
            outcomes = await asyncio.gather(*coroutines)
        else:
            outcomes = await self._run_fail_fast(coroutines, raise_first=False)

        collected = _collect(outcomes)
        return BatchInputResult(
            input_index=input_index,
            results=collected.results,
            errors=collected.errors,
            success=collected.errors is None
        )

    # Validation

    def validate_execution_groups(self, groups: List[ExecutionGroup]) -> List[str]:
        """Every problem with ``groups``; empty when they are valid."""
        errors: List[str] = []
        seen: Dict[str, int] = {}

        for index, group in enumerate(groups):
            if group.mode not in GROUP_MODES:
                errors.append(f"group {index}: invalid mode '{group.mode}', expected parallel or sequential")
            if not group.rules:
                errors.append(f"group {index}: must contain at least one rule")
                continue

            for rule_id in group.rules:
                if rule_id not in self.cache:
                    errors.append(f"group {index}: rule '{rule_id}' not found in cache")
                if rule_id in seen and seen[rule_id] != index:
                    errors.append(
                        f"group {index}: rule '{rule_id}' already appears in group {seen[rule_id]}"
                    )
                seen.setdefault(rule_id, index)

        return errors
