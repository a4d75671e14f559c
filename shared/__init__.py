"""
Shared utilities for the rules orchestrator.

This package aggregates common building blocks consumed by the rules service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request and execution correlation
- metrics: Prometheus metrics helpers and execution event sinks
- errors: Canonical error types and responses
- retry: Retry decorators and backoff
- circuit_breaker: Per-operation failure isolation
- rate_limiter: Sliding-window operation limits
- resilience: Rate limit, circuit breaker and retry composed per call
- base_service: FastAPI service scaffold

Do not import from service_* packages into shared/.
"""
