"""
Evaluator contract consumed by the execution engine.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass
class EvaluationOutcome:
    """Result of evaluating one rule against one input."""
    result: Any
    elapsed_ms: float = 0.0
    trace: Optional[Any] = None


@runtime_checkable
class Evaluator(Protocol):
    """Runs one rule against one input document."""

    async def evaluate(self, rule_id: str, document: Any) -> EvaluationOutcome: ...
