"""
Shared metrics and execution event sink for the rules orchestration service.
"""

from typing import Dict, Any, Optional, Protocol, runtime_checkable
import threading

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest

from shared.logging import get_logger

logger = get_logger("rules.metrics")

CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


@runtime_checkable
class ExecutionEventSink(Protocol):
    """Receiver of execution lifecycle events.

    Calls are fire-and-forget; implementations may raise without affecting
    rule outcomes.
    """

    def on_execution_start(self, rule_id: str, execution_id: str) -> None: ...

    def on_execution_success(self, rule_id: str, execution_id: str, duration_ms: float) -> None: ...

    def on_execution_error(self, rule_id: str, execution_id: str, duration_ms: float,
                           error: BaseException) -> None: ...

    def on_retry_attempt(self, operation: str, attempt: int, delay: float,
                         error: BaseException) -> None: ...

    def on_circuit_state_change(self, operation: str, from_state: str, to_state: str) -> None: ...


def notify_sink(sink: Optional[Any], event: str, **payload) -> None:
    """Deliver an event to the sink, logging and discarding sink failures."""
    if sink is None:
        return
    handler = getattr(sink, event, None)
    if handler is None:
        return
    try:
        handler(**payload)
    except Exception as e:
        logger.warning("Event sink failed", sink_event=event, error=str(e))


class MetricsCollector:
    """Prometheus metrics for the rules service; also an ExecutionEventSink."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up service metrics."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        # Rule execution metrics
        self._metrics["rule_executions_total"] = Counter(
            "rule_executions_total",
            "Total rule evaluations",
            ["rule_id", "status"],
            registry=self.registry
        )

        self._metrics["rule_execution_duration_seconds"] = Histogram(
            "rule_execution_duration_seconds",
            "Rule evaluation duration in seconds",
            ["rule_id"],
            registry=self.registry
        )

        self._metrics["rules_in_flight"] = Gauge(
            "rules_in_flight",
            "Rule evaluations currently running",
            registry=self.registry
        )

        # Resilience metrics
        self._metrics["retry_attempts_total"] = Counter(
            "retry_attempts_total",
            "Total retry attempts",
            ["operation"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_state"] = Gauge(
            "circuit_breaker_state",
            "Circuit breaker state (0 closed, 1 half-open, 2 open)",
            ["operation"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_transitions_total"] = Counter(
            "circuit_breaker_transitions_total",
            "Total circuit breaker state transitions",
            ["operation", "to_state"],
            registry=self.registry
        )

        self._metrics["rate_limit_rejections_total"] = Counter(
            "rate_limit_rejections_total",
            "Total calls rejected by the rate limiter",
            ["operation"],
            registry=self.registry
        )

        # Cache metrics
        self._metrics["rule_cache_size"] = Gauge(
            "rule_cache_size",
            "Number of rules held in the cache",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def render(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_rate_limit_rejection(self, operation: str):
        self._metrics["rate_limit_rejections_total"].labels(operation=operation).inc()

    def set_cache_size(self, size: int):
        self._metrics["rule_cache_size"].set(size)

    # ExecutionEventSink

    def on_execution_start(self, rule_id: str, execution_id: str) -> None:
        self._metrics["rules_in_flight"].inc()

    def on_execution_success(self, rule_id: str, execution_id: str, duration_ms: float) -> None:
        self._metrics["rules_in_flight"].dec()
        self._metrics["rule_executions_total"].labels(rule_id=rule_id, status="success").inc()
        self._metrics["rule_execution_duration_seconds"].labels(rule_id=rule_id).observe(duration_ms / 1000.0)

    def on_execution_error(self, rule_id: str, execution_id: str, duration_ms: float,
                           error: BaseException) -> None:
        self._metrics["rules_in_flight"].dec()
        self._metrics["rule_executions_total"].labels(rule_id=rule_id, status="error").inc()
        self._metrics["rule_execution_duration_seconds"].labels(rule_id=rule_id).observe(duration_ms / 1000.0)
        self.record_error(getattr(error, "code", error.__class__.__name__))

    def on_retry_attempt(self, operation: str, attempt: int, delay: float,
                         error: BaseException) -> None:
        self._metrics["retry_attempts_total"].labels(operation=operation).inc()

    def on_circuit_state_change(self, operation: str, from_state: str, to_state: str) -> None:
        self._metrics["circuit_breaker_state"].labels(operation=operation).set(
            CIRCUIT_STATE_VALUES.get(to_state, -1)
        )
        self._metrics["circuit_breaker_transitions_total"].labels(
            operation=operation, to_state=to_state
        ).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
