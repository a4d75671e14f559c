"""
Condition-table evaluator bundled with the rules service.

A rule document is JSON::

    {
      "name": "discounts",
      "hit_policy": "first",
      "rules": [
        {"id": "gold", "priority": 10,
         "conditions": [{"field": "customer.tier", "operator": "equals", "value": "gold"}],
         "output": {"discount": 0.2}}
      ],
      "default": {"discount": 0}
    }

Rows are tried in descending priority. ``first`` returns the first matching
row's output; ``collect`` returns every matching output under ``results``.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.errors import ExecutionError, RuleNotFoundError
from shared.logging import get_logger
from ..documents import MISSING, get_path
from .base import EvaluationOutcome

ContentSource = Callable[[str], Optional[bytes]]


class RuleConditionOperator(str, Enum):
    """Rule condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    EXISTS = "exists"


class HitPolicy(str, Enum):
    FIRST = "first"
    COLLECT = "collect"


@dataclass
class RuleCondition:
    """Rule condition."""
    field: str
    operator: RuleConditionOperator
    value: Any = None


@dataclass
class RuleRow:
    """One row of a rule table."""
    row_id: str
    conditions: List[RuleCondition] = field(default_factory=list)
    output: Any = None
    priority: int = 0


@dataclass
class RuleDocument:
    """Parsed rule content."""
    name: str
    rows: List[RuleRow]
    hit_policy: HitPolicy = HitPolicy.FIRST
    default: Any = None


def parse_rule_document(data: bytes, rule_id: Optional[str] = None) -> RuleDocument:
    """Parse and structurally validate rule content; raises ExecutionError."""
    try:
        raw = json.loads(data)
    except (ValueError, UnicodeDecodeError) as e:
        raise ExecutionError(
            f"Malformed rule content: {e}",
            rule_id=rule_id,
            operation="evaluator.parse",
            cause=e
        ) from e

    def invalid(message: str) -> ExecutionError:
        return ExecutionError(f"Malformed rule content: {message}", rule_id=rule_id, operation="evaluator.parse")

    if not isinstance(raw, dict):
        raise invalid("top level must be an object")
    if not isinstance(raw.get("rules", []), list):
        raise invalid("'rules' must be a list")

    try:
        hit_policy = HitPolicy(raw.get("hit_policy", HitPolicy.FIRST.value))
    except ValueError as e:
        raise invalid(f"unknown hit_policy '{raw.get('hit_policy')}'") from e

    rows: List[RuleRow] = []
    for index, row in enumerate(raw.get("rules", [])):
        if not isinstance(row, dict):
            raise invalid(f"row {index} must be an object")
        if not isinstance(row.get("conditions", []), list):
            raise invalid(f"row {index} conditions must be a list")
        conditions: List[RuleCondition] = []
        for condition in row.get("conditions", []):
            if not isinstance(condition, dict) or "field" not in condition:
                raise invalid(f"row {index} has a condition without a field")
            try:
                operator = RuleConditionOperator(condition.get("operator", "equals"))
            except ValueError as e:
                raise invalid(f"row {index} uses unknown operator '{condition.get('operator')}'") from e
            conditions.append(RuleCondition(
                field=str(condition["field"]),
                operator=operator,
                value=condition.get("value")
            ))
        try:
            priority = int(row.get("priority", 0))
        except (TypeError, ValueError) as e:
            raise invalid(f"row {index} priority must be an integer") from e
        rows.append(RuleRow(
            row_id=str(row.get("id", index)),
            conditions=conditions,
            output=row.get("output"),
            priority=priority
        ))

    # Stable sort keeps declaration order among equal priorities
    rows.sort(key=lambda r: r.priority, reverse=True)

    return RuleDocument(
        name=str(raw.get("name", rule_id or "")),
        rows=rows,
        hit_policy=hit_policy,
        default=raw.get("default")
    )


def validate_rule_content(data: bytes, rule_id: Optional[str] = None) -> None:
    parse_rule_document(data, rule_id)


class ConditionEvaluator:
    """Evaluates condition-table rules read from a content source."""

    def __init__(self, content_source: ContentSource):
        self.content_source = content_source
        self.logger = get_logger("rules.evaluator")
        self._parsed: Dict[str, Tuple[bytes, RuleDocument]] = {}

    def _document(self, rule_id: str) -> RuleDocument:
        data = self.content_source(rule_id)
        if data is None:
            self._parsed.pop(rule_id, None)
            raise RuleNotFoundError(rule_id, operation="evaluator.evaluate")

        cached = self._parsed.get(rule_id)
        if cached is not None and (cached[0] is data or cached[0] == data):
            return cached[1]

        document = parse_rule_document(data, rule_id)
        self._parsed[rule_id] = (data, document)
        return document

    async def evaluate(self, rule_id: str, document: Any) -> EvaluationOutcome:
        """Evaluate rule ``rule_id`` against ``document``."""
        start_time = time.perf_counter()
        rule = self._document(rule_id)

        matched: List[RuleRow] = []
        for row in rule.rows:
            if self._evaluate_row(row, document):
                matched.append(row)
                if rule.hit_policy == HitPolicy.FIRST:
                    break

        if not matched:
            result = rule.default if rule.default is not None else {}
        elif rule.hit_policy == HitPolicy.FIRST:
            result = matched[0].output
        else:
            result = {"results": [row.output for row in matched]}

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        self.logger.debug(
            "Rule evaluated",
            rule_id=rule_id,
            matched_rows=[row.row_id for row in matched],
            elapsed_ms=round(elapsed_ms, 3)
        )

        return EvaluationOutcome(
            result=result,
            elapsed_ms=elapsed_ms,
            trace={"rule": rule.name, "matched": [row.row_id for row in matched]}
        )

    def forget(self, rule_id: Optional[str] = None):
        """Drop memoized parses."""
        if rule_id is None:
            self._parsed.clear()
        else:
            self._parsed.pop(rule_id, None)

    def _evaluate_row(self, row: RuleRow, document: Any) -> bool:
        for condition in row.conditions:
            if not self._evaluate_condition(condition, document):
                return False
        return True

    def _evaluate_condition(self, condition: RuleCondition, document: Any) -> bool:
        """Evaluate a single condition."""
        field_value = get_path(document, condition.field, MISSING)

        if condition.operator == RuleConditionOperator.EXISTS:
            expected = True if condition.value is None else bool(condition.value)
            return (field_value is not MISSING) == expected

        if field_value is MISSING or field_value is None:
            return False

        try:
            if condition.operator == RuleConditionOperator.EQUALS:
                return field_value == condition.value

            elif condition.operator == RuleConditionOperator.NOT_EQUALS:
                return field_value != condition.value

            elif condition.operator == RuleConditionOperator.IN:
                return field_value in condition.value

            elif condition.operator == RuleConditionOperator.NOT_IN:
                return field_value not in condition.value

            elif condition.operator == RuleConditionOperator.GREATER_THAN:
                return field_value > condition.value

            elif condition.operator == RuleConditionOperator.GREATER_THAN_OR_EQUAL:
                return field_value >= condition.value

            elif condition.operator == RuleConditionOperator.LESS_THAN:
                return field_value < condition.value

            elif condition.operator == RuleConditionOperator.LESS_THAN_OR_EQUAL:
                return field_value <= condition.value

            elif condition.operator == RuleConditionOperator.CONTAINS:
                if isinstance(field_value, (list, tuple, set)):
                    return condition.value in field_value
                return str(condition.value) in str(field_value)

            elif condition.operator == RuleConditionOperator.STARTS_WITH:
                return str(field_value).startswith(str(condition.value))

            elif condition.operator == RuleConditionOperator.ENDS_WITH:
                return str(field_value).endswith(str(condition.value))

        except TypeError as e:
            self.logger.debug(
                "Condition not comparable",
                field=condition.field,
                operator=condition.operator.value,
                error=str(e)
            )
            return False

        return False
