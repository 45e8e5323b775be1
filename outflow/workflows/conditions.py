"""Condition evaluation for CONDITION nodes.

A condition compares one named variable with a value. Two shapes are accepted
in node data:

- an expression string, ``"score > 10"``; when the right-hand side is left
  out (``"score >"``) the node's ``value`` field is used instead
- a mapping, ``{"variable": "score", "operator": "greaterThan", "value": 10}``

Mappings may carry a ``type`` (or the node a ``conditionType``) selecting the
kind of comparison:

LEAD_PROPERTY / CUSTOM_FIELD (default)
    - == / equals, != / notEquals
    - > / greaterThan, >= / greaterThanOrEqual
    - < / lessThan, <= / lessThanOrEqual
    - contains / notContains (strings and lists)
    - isSet / isNotSet (presence checks, the only operators that accept a
      missing variable)

DATE_COMPARISON
    ``{"type": "DATE_COMPARISON", "dateField": "lastContactedAt",
    "operator": "greaterThan", "value": 3, "unit": "days"}``

    - lessThan: the date is less than ``value`` ``unit`` away from now
    - greaterThan: the date is more than ``value`` ``unit`` away from now
    - before / after: the date is before or after now

    Units are minutes, hours, days and weeks (default days).

EMAIL_PROPERTY
    Reads the email held in ``source`` (default ``emailData``, which email
    triggers seed).

    - equals / notEquals / contains / notContains on ``property``
    - hasSubject / hasBody: subject or body contains ``value``
    - isOpened / isNotOpened

Anything that cannot be evaluated raises ConditionError. There is no default
branch.
"""

import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict

from outflow.core.config import lookup_variable
from outflow.core.db import utcnow

log = structlog.get_logger()


class ConditionError(ValueError):
    """A condition that cannot be parsed or evaluated."""


PROPERTY = "property"
DATE = "date"
EMAIL = "email"

CONDITION_KINDS = {
    "LEAD_PROPERTY": PROPERTY,
    "CUSTOM_FIELD": PROPERTY,
    "PROPERTY": PROPERTY,
    "DATE_COMPARISON": DATE,
    "EMAIL_PROPERTY": EMAIL,
}

OPERATOR_ALIASES = {
    "==": "eq", "=": "eq", "eq": "eq", "equals": "eq",
    "!=": "neq", "neq": "neq", "notEquals": "neq",
    ">": "gt", "gt": "gt", "greaterThan": "gt",
    ">=": "gte", "gte": "gte", "greaterThanOrEqual": "gte",
    "<": "lt", "lt": "lt", "lessThan": "lt",
    "<=": "lte", "lte": "lte", "lessThanOrEqual": "lte",
    "contains": "contains",
    "notContains": "not_contains",
    "isSet": "is_set",
    "isNotSet": "is_not_set",
}

DATE_OPERATORS = {
    "lessThan": "within", "within": "within",
    "greaterThan": "older_than", "olderThan": "older_than",
    "before": "before",
    "after": "after",
}

EMAIL_OPERATORS = {
    "equals": "eq", "==": "eq",
    "notEquals": "neq", "!=": "neq",
    "contains": "contains",
    "notContains": "not_contains",
    "hasSubject": "has_subject",
    "hasBody": "has_body",
    "isOpened": "is_opened",
    "isNotOpened": "is_not_opened",
}

OPERATORS_BY_KIND = {PROPERTY: OPERATOR_ALIASES, DATE: DATE_OPERATORS, EMAIL: EMAIL_OPERATORS}

# Operators that compare against nothing
VALUELESS_OPERATORS = {
    PROPERTY: {"is_set", "is_not_set"},
    DATE: {"before", "after"},
    EMAIL: {"is_opened", "is_not_opened"},
}

PRESENCE_OPERATORS = VALUELESS_OPERATORS[PROPERTY]

DATE_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}

DEFAULT_EMAIL_SOURCE = "emailData"

_MISSING = object()

EXPRESSION_PATTERN = re.compile(
    r"^\s*(?P<variable>[A-Za-z_][\w.]*)\s*"
    r"(?P<operator>==|!=|>=|<=|>|<|=|\b(?:equals|notEquals|greaterThan|lessThan|contains|notContains|isSet|isNotSet)\b)"
    r"\s*(?P<literal>.*?)\s*$"
)


class Condition(BaseModel):
    model_config = ConfigDict(frozen=True)

    variable: Optional[str] = None
    operator: str
    value: Any = None
    kind: str = PROPERTY
    unit: str = "days"
    source: str = DEFAULT_EMAIL_SOURCE


def parse_literal(text: str) -> Any:
    """Parse the right-hand side of an expression: numbers, booleans, null or strings."""
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    try:
        return json.loads(text)
    except ValueError:
        return text


def _kind(raw: dict, data: dict) -> str:
    name = raw.get("type") or data.get("conditionType") or "LEAD_PROPERTY"
    kind = CONDITION_KINDS.get(name)
    if kind is None:
        raise ConditionError(f"Unknown condition type {name!r}")
    return kind


def parse_condition(data: dict) -> Condition:
    """Build a Condition from CONDITION node data."""
    raw = data.get("condition")
    fallback_value = data.get("value", _MISSING)
    extras: dict = {}

    if raw is None and data.get("operator"):
        # Top-level keys on the node itself
        raw = {key: item for key, item in data.items() if key not in ("value", "conditionType")}

    if isinstance(raw, dict):
        kind = _kind(raw, data)
        variable = (raw.get("variable") or raw.get("property") or raw.get("field")
                    or raw.get("fieldName") or raw.get("dateField"))
        operator = raw.get("operator")
        value = raw.get("value", None if fallback_value is _MISSING else fallback_value)
        if raw.get("unit"):
            extras["unit"] = raw["unit"]
        if raw.get("source"):
            extras["source"] = raw["source"]
    elif isinstance(raw, str):
        kind = PROPERTY
        match = EXPRESSION_PATTERN.match(raw)
        if not match:
            raise ConditionError(f"Cannot parse condition {raw!r}")
        variable = match.group("variable")
        operator = match.group("operator")
        literal = match.group("literal")
        if literal:
            value = parse_literal(literal)
        elif fallback_value is not _MISSING:
            value = fallback_value
        else:
            value = None
    else:
        raise ConditionError("Condition node has no condition")

    if not operator:
        raise ConditionError("Condition needs an operator")

    canonical = OPERATORS_BY_KIND[kind].get(operator)
    if canonical is None:
        raise ConditionError(f"Unknown operator {operator!r}")

    valueless = canonical in VALUELESS_OPERATORS[kind]
    needs_variable = kind != EMAIL or canonical in ("eq", "neq", "contains", "not_contains")
    if needs_variable and not variable:
        raise ConditionError("Condition needs a variable and an operator")

    if not valueless and value is None:
        raise ConditionError(f"Condition on '{variable or kind}' has no comparison value")

    if kind == DATE:
        unit = extras.get("unit", "days")
        if unit not in DATE_UNITS:
            raise ConditionError(f"Unknown date unit {unit!r}")
        if not valueless and _as_number(value) is None:
            raise ConditionError(f"Date comparison needs a numeric value, got {value!r}")

    return Condition(variable=variable, operator=canonical, value=value, kind=kind, **extras)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _ordered(actual: Any, target: Any) -> tuple[Any, Any]:
    """Coerce both sides to a comparable pair: numbers first, then strings."""
    a, b = _as_number(actual), _as_number(target)
    if a is not None and b is not None:
        return a, b
    if isinstance(actual, str) and isinstance(target, str):
        return actual, target
    raise ConditionError(f"Cannot order {actual!r} against {target!r}")


def _equal(actual: Any, target: Any) -> bool:
    if actual == target:
        return True
    a, b = _as_number(actual), _as_number(target)
    if a is not None and b is not None:
        return a == b
    if isinstance(actual, bool) or isinstance(target, bool):
        return str(actual).lower() == str(target).lower()
    return False


def _contains(actual: Any, target: Any) -> bool:
    if isinstance(actual, str):
        return str(target) in actual
    if isinstance(actual, (list, tuple, dict)):
        return target in actual
    raise ConditionError(f"Cannot check containment in {type(actual).__name__}")


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ConditionError(f"Cannot read {value!r} as a date")
    else:
        raise ConditionError(f"Cannot read {value!r} as a date")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _evaluate_property(condition: Condition, variables: dict) -> bool:
    found, actual = lookup_variable(variables, condition.variable)

    if condition.operator == "is_set":
        return found and actual is not None
    if condition.operator == "is_not_set":
        return not found or actual is None

    if not found:
        raise ConditionError(f"Variable '{condition.variable}' is not set")

    target = condition.value
    op = condition.operator

    if op == "eq":
        return _equal(actual, target)
    if op == "neq":
        return not _equal(actual, target)
    if op == "contains":
        return _contains(actual, target)
    if op == "not_contains":
        return not _contains(actual, target)

    a, b = _ordered(actual, target)
    if op == "gt":
        return a > b
    if op == "gte":
        return a >= b
    if op == "lt":
        return a < b
    if op == "lte":
        return a <= b

    raise ConditionError(f"Unknown operator {op!r}")


def _evaluate_date(condition: Condition, variables: dict, now: datetime) -> bool:
    found, actual = lookup_variable(variables, condition.variable)
    if not found or actual is None:
        raise ConditionError(f"Date variable '{condition.variable}' is not set")

    moment = _as_datetime(actual)
    op = condition.operator

    if op == "before":
        return moment < now
    if op == "after":
        return moment > now

    span = DATE_UNITS[condition.unit] * _as_number(condition.value)
    distance = abs(now - moment)
    if op == "within":
        return distance < span
    if op == "older_than":
        return distance > span

    raise ConditionError(f"Unknown operator {op!r}")


def _evaluate_email(condition: Condition, variables: dict) -> bool:
    found, email = lookup_variable(variables, condition.source)
    if not found or not isinstance(email, dict):
        raise ConditionError(f"No email in variable '{condition.source}'")

    op = condition.operator
    if op == "is_opened":
        return email.get("opened") is True
    if op == "is_not_opened":
        return email.get("opened") is not True
    if op in ("has_subject", "has_body"):
        text = email.get("subject" if op == "has_subject" else "body")
        return isinstance(text, str) and str(condition.value) in text

    actual = email.get(condition.variable)
    if op == "eq":
        return _equal(actual, condition.value)
    if op == "neq":
        return not _equal(actual, condition.value)
    if op == "contains":
        return _contains(actual, condition.value)
    if op == "not_contains":
        return not _contains(actual, condition.value)

    raise ConditionError(f"Unknown operator {op!r}")


def evaluate(condition: Condition, variables: dict, now: Optional[datetime] = None) -> bool:
    """Evaluate a parsed condition against execution variables.

    ``now`` anchors date comparisons; it defaults to the current UTC time.
    """
    if condition.kind == DATE:
        return _evaluate_date(condition, variables, now or utcnow())
    if condition.kind == EMAIL:
        return _evaluate_email(condition, variables)
    return _evaluate_property(condition, variables)


def evaluate_condition(data: dict, variables: dict, now: Optional[datetime] = None) -> bool:
    """Parse and evaluate CONDITION node data."""
    condition = parse_condition(data)
    result = evaluate(condition, variables, now)
    log.debug(
        "condition_evaluated",
        kind=condition.kind,
        variable=condition.variable,
        operator=condition.operator,
        value=condition.value,
        result=result,
    )
    return result
