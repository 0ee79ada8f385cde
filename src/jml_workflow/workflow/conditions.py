"""Condition evaluators for entry conditions and branch transitions.

Field values are looked up by dot-path in a ConditionContext. A path that
cannot be resolved yields UNDEFINED, and every operator except isEmpty is
false for an undefined value. Evaluation never raises: errors are logged and
the condition counts as not met.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, Dict, List, Optional

from .definition import Condition, ConditionGroup, ConditionOperator, Logic

logger = logging.getLogger(__name__)


class _Undefined:
    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()

_TOKEN_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_INDEX_PATTERN = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")
_RELATIVE_DAY_PATTERN = re.compile(r"^@today\s*([+-])\s*(\d+)$", re.IGNORECASE)
_TRUE_STRINGS = {"true", "yes", "1"}
_FALSE_STRINGS = {"false", "no", "0"}


@dataclass
class ConditionContext:
    """Everything a condition can reference."""
    process: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    current_user: Optional[str] = None
    now: Optional[datetime] = None

    def current_time(self) -> datetime:
        return self.now or datetime.now(UTC)


# --- Value resolution ---


def _walk(value: Any, segments: List[str]) -> Any:
    for segment in segments:
        match = _INDEX_PATTERN.match(segment)
        if not match:
            return UNDEFINED
        key, indexes = match.group(1), match.group(2)
        if key:
            if isinstance(value, dict) and key in value:
                value = value[key]
            elif hasattr(value, key) and not isinstance(value, (dict, list, str)):
                value = getattr(value, key)
            else:
                return UNDEFINED
        for raw in re.findall(r"\[(\d+)\]", indexes):
            idx = int(raw)
            if isinstance(value, (list, tuple)) and 0 <= idx < len(value):
                value = value[idx]
            else:
                return UNDEFINED
    return value


def get_field_value(path: str, ctx: ConditionContext) -> Any:
    """Resolve a dot-path against the context.

    Unprefixed paths look in variables first, then process fields.
    """
    if path is None:
        return UNDEFINED
    path = path.strip()
    token = path.lower()
    if token == "@today":
        return ctx.current_time().date()
    if token == "@now":
        return ctx.current_time()
    if token == "@currentuser":
        return ctx.current_user if ctx.current_user is not None else UNDEFINED

    segments = path.split(".")
    if segments[0] == "variables":
        value = _walk(ctx.variables, segments[1:])
    elif segments[0] == "process":
        value = _walk(ctx.process, segments[1:])
    else:
        value = _walk(ctx.variables, segments)
        if value is UNDEFINED:
            value = _walk(ctx.process, segments)

    return UNDEFINED if value is None else value


def _to_number(value: Any) -> Optional[float]:
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


def _to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return None


def resolve_date(value: Any, ctx: ConditionContext) -> Optional[datetime]:
    """Coerce a literal or relative expression (@today+3) to a datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if not isinstance(value, str):
        return None

    text = value.strip()
    lowered = text.lower()
    now = ctx.current_time()
    if lowered == "@now":
        return now
    if lowered == "@today":
        return datetime(now.year, now.month, now.day, tzinfo=UTC)
    relative = _RELATIVE_DAY_PATTERN.match(text)
    if relative:
        days = int(relative.group(2))
        if relative.group(1) == "-":
            days = -days
        today = datetime(now.year, now.month, now.day, tzinfo=UTC)
        return today + timedelta(days=days)

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def loose_equals(actual: Any, expected: Any) -> bool:
    """Equality with boolean normalisation, numeric coercion and case folding."""
    if isinstance(actual, bool) or isinstance(expected, bool):
        a, b = _to_bool(actual), _to_bool(expected)
        if a is not None and b is not None:
            return a == b

    a_num, b_num = _to_number(actual), _to_number(expected)
    if a_num is not None and b_num is not None:
        return a_num == b_num

    return str(actual).strip().lower() == str(expected).strip().lower()


def _parse_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
                if isinstance(parsed, list):
                    return parsed
            except json.JSONDecodeError:
                pass
        return [part.strip() for part in text.split(",") if part.strip()]
    return [value]


def _is_empty(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


# --- Operators ---


class OperatorEvaluator(ABC):
    """Compares a resolved field value to the expected value."""

    @abstractmethod
    def evaluate(self, actual: Any, expected: Any, ctx: ConditionContext) -> bool:
        pass


class EqualsOperator(OperatorEvaluator):
    def evaluate(self, actual, expected, ctx) -> bool:
        return loose_equals(actual, expected)


class NotEqualsOperator(OperatorEvaluator):
    def evaluate(self, actual, expected, ctx) -> bool:
        return not loose_equals(actual, expected)


class ContainsOperator(OperatorEvaluator):
    def evaluate(self, actual, expected, ctx) -> bool:
        if isinstance(actual, (list, tuple, set)):
            return any(loose_equals(item, expected) for item in actual)
        return str(expected).lower() in str(actual).lower()


class StartsWithOperator(OperatorEvaluator):
    def evaluate(self, actual, expected, ctx) -> bool:
        return str(actual).lower().startswith(str(expected).lower())


class EndsWithOperator(OperatorEvaluator):
    def evaluate(self, actual, expected, ctx) -> bool:
        return str(actual).lower().endswith(str(expected).lower())


class OrderingOperator(OperatorEvaluator):
    """Numeric comparison, falling back to dates."""

    def __init__(self, compare):
        self.compare = compare

    def evaluate(self, actual, expected, ctx) -> bool:
        a_num, b_num = _to_number(actual), _to_number(expected)
        if a_num is not None and b_num is not None:
            return self.compare(a_num, b_num)
        a_date, b_date = resolve_date(actual, ctx), resolve_date(expected, ctx)
        if a_date is not None and b_date is not None:
            return self.compare(a_date, b_date)
        return False


class IsEmptyOperator(OperatorEvaluator):
    def evaluate(self, actual, expected, ctx) -> bool:
        return _is_empty(actual)


class IsNotEmptyOperator(OperatorEvaluator):
    def evaluate(self, actual, expected, ctx) -> bool:
        return not _is_empty(actual)


class InOperator(OperatorEvaluator):
    def __init__(self, negate: bool = False):
        self.negate = negate

    def evaluate(self, actual, expected, ctx) -> bool:
        candidates = _parse_list(expected)
        found = any(loose_equals(actual, candidate) for candidate in candidates)
        return not found if self.negate else found


class DateOperator(OperatorEvaluator):
    """Calendar-day comparison."""

    def __init__(self, compare):
        self.compare = compare

    def evaluate(self, actual, expected, ctx) -> bool:
        a_date, b_date = resolve_date(actual, ctx), resolve_date(expected, ctx)
        if a_date is None or b_date is None:
            return False
        return self.compare(a_date.date(), b_date.date())


def _default_evaluators() -> Dict[ConditionOperator, OperatorEvaluator]:
    return {
        ConditionOperator.EQ: EqualsOperator(),
        ConditionOperator.NE: NotEqualsOperator(),
        ConditionOperator.CONTAINS: ContainsOperator(),
        ConditionOperator.STARTS_WITH: StartsWithOperator(),
        ConditionOperator.ENDS_WITH: EndsWithOperator(),
        ConditionOperator.GT: OrderingOperator(lambda a, b: a > b),
        ConditionOperator.GTE: OrderingOperator(lambda a, b: a >= b),
        ConditionOperator.LT: OrderingOperator(lambda a, b: a < b),
        ConditionOperator.LTE: OrderingOperator(lambda a, b: a <= b),
        ConditionOperator.IS_EMPTY: IsEmptyOperator(),
        ConditionOperator.IS_NOT_EMPTY: IsNotEmptyOperator(),
        ConditionOperator.IN: InOperator(),
        ConditionOperator.NOT_IN: InOperator(negate=True),
        ConditionOperator.DATE_BEFORE: DateOperator(lambda a, b: a < b),
        ConditionOperator.DATE_AFTER: DateOperator(lambda a, b: a > b),
        ConditionOperator.DATE_EQUALS: DateOperator(lambda a, b: a == b),
    }


class ConditionRegistry:
    """Registry mapping operators to evaluators."""

    _evaluators: Dict[ConditionOperator, OperatorEvaluator] = _default_evaluators()

    @classmethod
    def evaluate(cls, condition: Condition, ctx: ConditionContext) -> bool:
        """Evaluate a single condition; never raises."""
        try:
            operator = ConditionOperator(condition.operator)
            evaluator = cls._evaluators.get(operator)
            if not evaluator:
                logger.error(f"No evaluator found for operator: {condition.operator}")
                return False

            actual = get_field_value(condition.field, ctx)
            if actual is UNDEFINED:
                return operator == ConditionOperator.IS_EMPTY

            expected = condition.value
            if condition.value_field:
                expected = get_field_value(condition.value_field, ctx)
                if expected is UNDEFINED:
                    return False
            elif isinstance(expected, str) and expected.strip().lower() == "@currentuser":
                expected = ctx.current_user

            return evaluator.evaluate(actual, expected, ctx)
        except Exception as e:
            logger.error(f"Error evaluating condition on '{condition.field}' ({condition.operator}): {e}")
            return False

    @classmethod
    def register(cls, operator: ConditionOperator, evaluator: OperatorEvaluator):
        """Register a custom operator evaluator."""
        cls._evaluators[operator] = evaluator

    @classmethod
    def reset(cls):
        """Restore default evaluators (useful in tests)."""
        cls._evaluators = _default_evaluators()


def evaluate_condition(condition: Condition, ctx: ConditionContext) -> bool:
    return ConditionRegistry.evaluate(condition, ctx)


def evaluate_condition_group(group: ConditionGroup, ctx: ConditionContext) -> bool:
    """AND/OR within a group. An empty group holds."""
    if not group.conditions:
        return True
    results = (evaluate_condition(c, ctx) for c in group.conditions)
    if group.logic == Logic.OR:
        return any(results)
    return all(results)


def evaluate_condition_groups(groups: List[ConditionGroup], ctx: ConditionContext) -> bool:
    """AND across groups. No groups means no constraint."""
    return all(evaluate_condition_group(g, ctx) for g in groups)


def _format_token_value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def replace_tokens(template: str, ctx: ConditionContext) -> str:
    """Substitute {{path}} tokens; unresolved tokens are left verbatim."""
    if not template:
        return template

    def _replace(match: re.Match) -> str:
        value = get_field_value(match.group(1), ctx)
        if value is UNDEFINED:
            return match.group(0)
        return _format_token_value(value)

    return _TOKEN_PATTERN.sub(_replace, template)


def extract_tokens(template: str) -> List[str]:
    """Paths referenced by {{...}} tokens in a template."""
    if not template:
        return []
    return [m.group(1) for m in _TOKEN_PATTERN.finditer(template)]


_EXPRESSION_OPERATORS = [
    (">=", ConditionOperator.GTE),
    ("<=", ConditionOperator.LTE),
    ("!=", ConditionOperator.NE),
    ("==", ConditionOperator.EQ),
    (">", ConditionOperator.GT),
    ("<", ConditionOperator.LT),
    (" contains ", ConditionOperator.CONTAINS),
]


def _parse_clause(clause: str) -> Optional[Condition]:
    for symbol, operator in _EXPRESSION_OPERATORS:
        if symbol in clause:
            left, right = clause.split(symbol, 1)
            value = right.strip().strip("'\"")
            return Condition(field=left.strip(), operator=operator, value=value)
    return None


def evaluate_expression(expression: str, ctx: ConditionContext) -> bool:
    """Evaluate 'field op value' clauses joined by && and ||.

    && binds tighter than ||. Unparseable clauses are false.
    """
    if not expression or not expression.strip():
        return True
    try:
        for alternative in expression.split("||"):
            clauses = [c.strip() for c in alternative.split("&&") if c.strip()]
            matched = True
            for clause in clauses:
                condition = _parse_clause(clause)
                if condition is None:
                    logger.warning(f"Unparseable expression clause: '{clause}'")
                    matched = False
                    break
                if not evaluate_condition(condition, ctx):
                    matched = False
                    break
            if matched and clauses:
                return True
        return False
    except Exception as e:
        logger.error(f"Error evaluating expression '{expression}': {e}")
        return False
