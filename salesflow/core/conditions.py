"""Condition evaluation against lead snapshots.

Evaluation never raises: an unknown field, an unknown operator or an
operand that cannot be compared all evaluate to False.
"""

from typing import Any, Iterable, Optional, Union

from ..models.core import Condition, ConditionOperator, LeadSnapshot
from .logging import get_logger

logger = get_logger(__name__)

SCALAR_FIELDS = (
    "name",
    "phone",
    "email",
    "company",
    "source",
    "status",
    "stage_id",
    "responsible_user",
    "whatsapp_jid",
    "instance_name",
    "value",
)

TAG_FIELDS = ("tags", "tag")

_OPERATORS = {op.value for op in ConditionOperator}


def _to_number(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return float(str(raw).strip())
    except ValueError:
        return None


def _as_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, float) and raw.is_integer():
        return str(int(raw))
    return str(raw)


def _compare_numbers(operator: str, actual: Any, expected: str) -> bool:
    left = _to_number(actual)
    right = _to_number(expected)
    if left is None or right is None:
        return False
    if operator == ConditionOperator.GREATER_THAN.value:
        return left > right
    return left < right


def _evaluate_tags(operator: str, expected: str, snapshot: LeadSnapshot) -> bool:
    values = snapshot.tag_values()
    if operator == ConditionOperator.EQUALS.value:
        return expected in values
    if operator == ConditionOperator.NOT_EQUALS.value:
        return expected not in values
    if operator == ConditionOperator.CONTAINS.value:
        return any(expected in value for value in values)
    if operator == ConditionOperator.NOT_CONTAINS.value:
        return not any(expected in value for value in values)
    # Ordering a set of tags is meaningless
    return False


def evaluate(
    field: str,
    operator: Union[ConditionOperator, str],
    value: Any,
    snapshot: LeadSnapshot,
) -> bool:
    """Test one condition. All string comparisons are case-insensitive."""
    field_name = (field or "").strip().lower()
    op = str(getattr(operator, "value", operator) or "").strip().lower()
    expected = _as_text(value).strip()

    if op not in _OPERATORS:
        logger.debug(f"Unknown condition operator '{operator}', evaluating to False")
        return False

    if field_name in TAG_FIELDS:
        return _evaluate_tags(op, expected.lower(), snapshot)

    if field_name not in SCALAR_FIELDS:
        logger.debug(f"Unknown condition field '{field}', evaluating to False")
        return False

    actual = getattr(snapshot, field_name)
    if field_name == "value" and actual is None:
        actual = 0

    if op in (ConditionOperator.GREATER_THAN.value, ConditionOperator.LESS_THAN.value):
        return _compare_numbers(op, actual, expected)

    if field_name == "value" and op in (ConditionOperator.EQUALS.value, ConditionOperator.NOT_EQUALS.value):
        left, right = _to_number(actual), _to_number(expected)
        if left is not None and right is not None:
            return (left == right) == (op == ConditionOperator.EQUALS.value)

    actual_text = _as_text(actual).strip().lower()
    expected_text = expected.lower()

    if op == ConditionOperator.EQUALS.value:
        return actual_text == expected_text
    if op == ConditionOperator.NOT_EQUALS.value:
        return actual_text != expected_text
    if op == ConditionOperator.CONTAINS.value:
        return expected_text in actual_text
    return expected_text not in actual_text


def evaluate_condition(condition: Condition, snapshot: LeadSnapshot) -> bool:
    return evaluate(condition.field, condition.operator, condition.value, snapshot)


def evaluate_all(conditions: Iterable[Condition], snapshot: LeadSnapshot) -> bool:
    """Logical AND of the conditions; an empty list is True."""
    return all(evaluate_condition(condition, snapshot) for condition in conditions)
