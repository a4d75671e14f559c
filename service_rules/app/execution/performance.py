"""
Execution timing collection and analysis.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List


@dataclass
class ExecutionMetrics:
    total_time_ms: float
    rule_timings: Dict[str, float] = field(default_factory=dict)
    batch_timings: List[float] = field(default_factory=list)
    max_concurrent_rules: int = 0
    average_batch_size: float = 0.0
    total_batches: int = 0

    def to_dict(self) -> Dict[str, Any]:
        analysis = PerformanceAnalyzer.analyze_metrics(self)
        return {
            "total_time_ms": round(self.total_time_ms, 3),
            "rule_timings": {k: round(v, 3) for k, v in self.rule_timings.items()},
            "batch_timings": [round(v, 3) for v in self.batch_timings],
            "concurrency": {
                "max_concurrent_rules": self.max_concurrent_rules,
                "average_batch_size": round(self.average_batch_size, 3),
                "total_batches": self.total_batches,
            },
            "analysis": analysis,
        }


class ExecutionMetricsCollector:
    """Collects per-rule and per-batch timings for one execution."""

    def __init__(self):
        self._started = time.perf_counter()
        self._rule_starts: Dict[str, float] = {}
        self._rule_timings: Dict[str, float] = {}
        self._batch_timings: List[float] = []
        self._max_concurrent = 0
        self._total_batches = 0

    def start(self):
        self._started = time.perf_counter()
        self._rule_starts.clear()
        self._rule_timings.clear()
        self._batch_timings = []
        self._max_concurrent = 0
        self._total_batches = 0

    def start_rule(self, rule_id: str):
        self._rule_starts[rule_id] = time.perf_counter()

    def end_rule(self, rule_id: str):
        started = self._rule_starts.pop(rule_id, None)
        if started is not None:
            self._rule_timings[rule_id] = (time.perf_counter() - started) * 1000

    def record_rule(self, rule_id: str, duration_ms: float):
        self._rule_timings[rule_id] = duration_ms

    def record_batch(self, batch_size: int, duration_ms: float):
        self._batch_timings.append(duration_ms)
        self._max_concurrent = max(self._max_concurrent, batch_size)
        self._total_batches += 1

    def get_metrics(self) -> ExecutionMetrics:
        return ExecutionMetrics(
            total_time_ms=(time.perf_counter() - self._started) * 1000,
            rule_timings=dict(self._rule_timings),
            batch_timings=list(self._batch_timings),
            max_concurrent_rules=self._max_concurrent,
            average_batch_size=len(self._rule_timings) / max(self._total_batches, 1),
            total_batches=self._total_batches,
        )


class PerformanceAnalyzer:
    """Statistics and diagnostics over execution timings."""

    @staticmethod
    def calculate_percentiles(values: Iterable[float],
                              percentiles: Iterable[int] = (50, 90, 95, 99)) -> Dict[int, float]:
        ordered = sorted(values)
        if not ordered:
            return {}
        result = {}
        for percentile in percentiles:
            index = math.ceil(percentile / 100 * len(ordered)) - 1
            result[percentile] = ordered[max(0, index)]
        return result

    @staticmethod
    def calculate_stats(values: Iterable[float]) -> Dict[str, float]:
        values = list(values)
        if not values:
            return {"min": 0.0, "max": 0.0, "mean": 0.0, "median": 0.0, "std_dev": 0.0}

        ordered = sorted(values)
        mean = sum(values) / len(values)
        variance = sum((v - mean) ** 2 for v in values) / len(values)
        return {
            "min": ordered[0],
            "max": ordered[-1],
            "mean": mean,
            "median": ordered[len(ordered) // 2],
            "std_dev": math.sqrt(variance),
        }

    @classmethod
    def analyze_metrics(cls, metrics: ExecutionMetrics) -> Dict[str, Any]:
        """Efficiency score (0-1), bottlenecks and recommendations."""
        stats = cls.calculate_stats(metrics.rule_timings.values())

        if metrics.max_concurrent_rules > 1:
            efficiency = min(1.0, metrics.average_batch_size / metrics.max_concurrent_rules)
        else:
            efficiency = 1.0

        bottlenecks: List[str] = []
        recommendations: List[str] = []

        # Slower than 3x the median or one std dev above the mean, whichever is lower
        slow_threshold = min(stats["median"] * 3, stats["mean"] + stats["std_dev"])
        slow_rules = [rule_id for rule_id, duration in metrics.rule_timings.items() if duration > slow_threshold]
        if slow_rules:
            bottlenecks.append(f"Slow rules detected: {', '.join(slow_rules)}")
            recommendations.append("Consider optimizing slow rules or increasing timeout limits")

        if metrics.average_batch_size < metrics.max_concurrent_rules * 0.7:
            bottlenecks.append("Low batch utilization")
            recommendations.append("Consider adjusting concurrency limits or rule grouping")

        return {
            "efficiency": efficiency,
            "bottlenecks": bottlenecks,
            "recommendations": recommendations,
        }
