"""
Shared error handling for the rules orchestration service.
"""

from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import execution_id_var, request_id_var


class RulesErrorCode(str, Enum):
    """Canonical error codes."""
    RULE_NOT_FOUND = "RULE_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    INVALID_INPUT = "INVALID_INPUT"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    CACHE_ERROR = "CACHE_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CONFIG_ERROR = "CONFIG_ERROR"
    FILE_SYSTEM_ERROR = "FILE_SYSTEM_ERROR"


HTTP_STATUS_BY_CODE: Dict[str, int] = {
    RulesErrorCode.INVALID_INPUT.value: 400,
    RulesErrorCode.RULE_NOT_FOUND.value: 404,
    RulesErrorCode.NOT_FOUND.value: 404,
    RulesErrorCode.RATE_LIMIT_EXCEEDED.value: 429,
    RulesErrorCode.NETWORK_ERROR.value: 502,
    RulesErrorCode.CIRCUIT_OPEN.value: 503,
    RulesErrorCode.TIMEOUT.value: 504,
}


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    rule_id: Optional[str] = None
    operation: Optional[str] = None
    retryable: bool = False
    details: Dict[str, Any] = {}


class RulesEngineError(Exception):
    """Base exception for the rules core.

    Carries the operation name, the rule id when one applies and the wrapped
    original cause so callers can tell plan failures from rule failures.
    """

    default_retryable = False

    def __init__(self,
                 code: str,
                 message: str,
                 details: Optional[Dict[str, Any]] = None,
                 rule_id: Optional[str] = None,
                 operation: Optional[str] = None,
                 cause: Optional[BaseException] = None,
                 retryable: Optional[bool] = None):
        self.code = code.value if isinstance(code, RulesErrorCode) else code
        self.message = message
        self.details = details or {}
        self.rule_id = rule_id
        self.operation = operation
        self.cause = cause
        self.retryable = self.default_retryable if retryable is None else retryable
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        details = dict(self.details)
        if self.cause is not None:
            details.setdefault("cause", str(self.cause))

        return ErrorResponse(
            trace_id=execution_id_var.get() or request_id_var.get(),
            code=self.code,
            message=self.message,
            rule_id=self.rule_id,
            operation=self.operation,
            retryable=self.retryable,
            details=details
        )


class RuleNotFoundError(RulesEngineError):
    """Rule is not present in the cache or the upstream source."""

    def __init__(self, rule_id: str, message: Optional[str] = None, **kwargs):
        super().__init__(
            RulesErrorCode.RULE_NOT_FOUND,
            message or f"Rule not found: {rule_id}",
            rule_id=rule_id,
            **kwargs
        )


class ResourceNotFoundError(RulesEngineError):
    """A snapshot, circuit breaker or other named resource does not exist."""

    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(RulesErrorCode.NOT_FOUND, message, **kwargs)


class NetworkError(RulesEngineError):
    """Loader or transport failure."""

    default_retryable = True

    def __init__(self, message: str = "Network error", **kwargs):
        super().__init__(RulesErrorCode.NETWORK_ERROR, message, **kwargs)


class RuleTimeoutError(RulesEngineError):
    """A per-call deadline was exceeded."""

    default_retryable = True

    def __init__(self, message: str = "Operation timed out", timeout: Optional[float] = None, **kwargs):
        super().__init__(RulesErrorCode.TIMEOUT, message, **kwargs)
        if timeout is not None:
            self.details.setdefault("timeout_seconds", timeout)


class InvalidInputError(RulesEngineError):
    """Selector, group or configuration validation failure. Never retried."""

    def __init__(self, message: str = "Invalid input", errors: Optional[list] = None, **kwargs):
        kwargs["retryable"] = False
        super().__init__(RulesErrorCode.INVALID_INPUT, message, **kwargs)
        if errors:
            self.details.setdefault("errors", list(errors))


class CircularDependencyError(InvalidInputError):
    """The resolved dependency graph contains a cycle."""

    def __init__(self, message: str = "Circular dependency detected in rule execution order", **kwargs):
        super().__init__(message, **kwargs)


class ExecutionError(RulesEngineError):
    """Evaluator-side failure not otherwise classified."""

    def __init__(self, message: str = "Rule execution failed", **kwargs):
        super().__init__(RulesErrorCode.EXECUTION_ERROR, message, **kwargs)


class CacheError(RulesEngineError):
    """Cache mutation failure."""

    def __init__(self, message: str = "Cache operation failed", **kwargs):
        super().__init__(RulesErrorCode.CACHE_ERROR, message, **kwargs)


class CircuitOpenError(RulesEngineError):
    """Call rejected without being attempted because the circuit is open."""

    default_retryable = True

    def __init__(self, operation: str, message: Optional[str] = None, **kwargs):
        super().__init__(
            RulesErrorCode.CIRCUIT_OPEN,
            message or f"Circuit breaker is OPEN for operation: {operation}",
            operation=operation,
            **kwargs
        )


class RateLimitExceededError(RulesEngineError):
    """Sliding window is at capacity."""

    default_retryable = True

    def __init__(self, operation: str, message: Optional[str] = None, **kwargs):
        super().__init__(
            RulesErrorCode.RATE_LIMIT_EXCEEDED,
            message or f"Rate limit exceeded for operation: {operation}",
            operation=operation,
            **kwargs
        )


class ConfigurationError(RulesEngineError):
    """Invalid runtime configuration."""

    def __init__(self, message: str = "Invalid configuration", **kwargs):
        super().__init__(RulesErrorCode.CONFIG_ERROR, message, **kwargs)


class FileSystemError(RulesEngineError):
    """Local rule source could not be read."""

    def __init__(self, message: str = "File system error", **kwargs):
        super().__init__(RulesErrorCode.FILE_SYSTEM_ERROR, message, **kwargs)


class RetryExhaustedError(RulesEngineError):
    """Raised when all retry attempts are exhausted.

    Inherits code and retryability from the last failure so outer layers
    classify it the same way.
    """

    def __init__(self, operation: str, last_exception: BaseException, attempts: int):
        if isinstance(last_exception, RulesEngineError):
            code = last_exception.code
            retryable = last_exception.retryable
            rule_id = last_exception.rule_id
        else:
            code = RulesErrorCode.EXECUTION_ERROR.value
            retryable = False
            rule_id = None
        super().__init__(
            code,
            f"Operation '{operation}' failed after {attempts} attempts: {last_exception}",
            details={"attempts": attempts},
            rule_id=rule_id,
            operation=operation,
            cause=last_exception,
            retryable=retryable
        )
        self.last_exception = last_exception
        self.attempts = attempts


def wrap_error(error: BaseException,
               operation: str,
               rule_id: Optional[str] = None) -> RulesEngineError:
    """Attach operation and rule context to an arbitrary failure."""
    if isinstance(error, RulesEngineError):
        if error.operation is None:
            error.operation = operation
        if error.rule_id is None and rule_id is not None:
            error.rule_id = rule_id
        return error
    return ExecutionError(
        str(error) or error.__class__.__name__,
        rule_id=rule_id,
        operation=operation,
        cause=error
    )
