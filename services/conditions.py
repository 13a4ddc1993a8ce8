import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)


class ConditionType(str, Enum):
    LEAD_STAGE = "lead_stage"
    LEAD_SCORE = "lead_score"
    TAG = "tag"
    LEAD_SOURCE = "lead_source"
    CALL_OUTCOME = "call_outcome"
    HOURS_SINCE_LAST_INTERACTION = "hours_since_last_interaction"
    PREVIOUS_ACTION_OUTCOME = "previous_action_outcome"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"
    IN = "in"


# Context key each condition type reads
CONDITION_FIELDS = {
    ConditionType.LEAD_STAGE: "lead_stage",
    ConditionType.LEAD_SCORE: "lead_score",
    ConditionType.TAG: "tags",
    ConditionType.LEAD_SOURCE: "source",
    ConditionType.CALL_OUTCOME: "call_outcome",
    ConditionType.HOURS_SINCE_LAST_INTERACTION: "last_interaction_at",
    ConditionType.PREVIOUS_ACTION_OUTCOME: "last_outcome",
}

DEFAULT_OPERATORS = {
    ConditionType.LEAD_STAGE: ConditionOperator.EQUALS,
    ConditionType.LEAD_SCORE: ConditionOperator.GREATER_THAN,
    ConditionType.TAG: ConditionOperator.CONTAINS,
    ConditionType.LEAD_SOURCE: ConditionOperator.EQUALS,
    ConditionType.CALL_OUTCOME: ConditionOperator.EQUALS,
    ConditionType.HOURS_SINCE_LAST_INTERACTION: ConditionOperator.GREATER_THAN,
    ConditionType.PREVIOUS_ACTION_OUTCOME: ConditionOperator.EQUALS,
}


def get_context_value(context: dict, key: str):
    """
    Resolves a variable from an execution context.
    Supports dotted keys (e.g. 'trigger.lead_stage'), then falls back to the
    values produced by earlier actions, then to the triggering event.
    """
    if not key:
        return None

    parts = key.split(".")
    val = context
    for p in parts:
        if isinstance(val, dict):
            val = val.get(p)
        else:
            val = None
            break

    if val is None and len(parts) == 1:
        val = (context.get("variables") or {}).get(key)

    if val is None and len(parts) == 1:
        val = (context.get("trigger") or {}).get(key)

    return val


def to_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[^\d.\-]", "", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return None


def _hours_since(value, now: datetime) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - value).total_seconds() / 3600


def _norm(value) -> str:
    return str(value).strip().lower()


def compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    if operator == ConditionOperator.EXISTS:
        return actual is not None and actual != "" and actual != []

    if actual is None:
        # Cannot compare None; only the negated operators hold
        return operator in (ConditionOperator.NOT_EQUALS, ConditionOperator.NOT_CONTAINS)

    if operator == ConditionOperator.EQUALS:
        return _norm(actual) == _norm(expected)

    if operator == ConditionOperator.NOT_EQUALS:
        return _norm(actual) != _norm(expected)

    if operator in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
        if isinstance(actual, (list, tuple, set)):
            found = _norm(expected) in {_norm(item) for item in actual}
        else:
            found = _norm(expected) in _norm(actual)
        return found if operator == ConditionOperator.CONTAINS else not found

    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left, right = to_number(actual), to_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == ConditionOperator.GREATER_THAN else left < right

    if operator == ConditionOperator.IN:
        options = expected if isinstance(expected, (list, tuple, set)) else [expected]
        return _norm(actual) in {_norm(option) for option in options}

    return False


def evaluate_condition(condition_type, operator, expected, context: dict, now: Optional[datetime] = None) -> bool:
    condition_type = ConditionType(condition_type)
    operator = ConditionOperator(operator) if operator else DEFAULT_OPERATORS[condition_type]

    actual = get_context_value(context, CONDITION_FIELDS[condition_type])
    if condition_type == ConditionType.HOURS_SINCE_LAST_INTERACTION:
        actual = _hours_since(actual, now or datetime.now(timezone.utc))

    return compare(operator, actual, expected)


def evaluate_trigger_conditions(conditions: Iterable, context: dict, now: Optional[datetime] = None) -> bool:
    """
    ANDs a flow's trigger conditions against an event context.
    Evaluation is lazy and stops at the first false condition.
    An empty set always matches.
    """
    for condition in conditions:
        if not evaluate_condition(
            condition.condition_type,
            condition.condition_operator,
            condition.condition_value,
            context,
            now,
        ):
            logger.debug(
                f"[Conditions] {condition.condition_type} {condition.condition_operator} "
                f"{condition.condition_value!r} failed"
            )
            return False
    return True


def evaluate_action_gate(action: dict, context: dict, now: Optional[datetime] = None) -> bool:
    """An action without a gate always runs."""
    if not action.get("condition_type"):
        return True
    return evaluate_condition(action["condition_type"], None, action.get("condition_value"), context, now)
