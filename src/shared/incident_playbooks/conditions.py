"""Typed predicates for runtime conditions.

Action conditions, auto-approval rules and detection-rule conditions are
expressed as a small predicate tree instead of evaluated source code. Trees
are built from plain dictionaries (as loaded from YAML) and evaluated against
a read-only context; evaluation never calls into user-supplied code.

Dictionary forms:

    {"field": "incident.confidence_score", "op": "gte", "value": 80}
    {"all": [<predicate>, ...]}
    {"any": [<predicate>, ...]}
    {"not": <predicate>}

A single comparison may also be written as a string, e.g.
``"incident.severity == HIGH"``; the right-hand side is parsed as a YAML
scalar so numbers and booleans keep their types.
"""

import fnmatch
import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import yaml

from .errors import ConditionError

logger = logging.getLogger(__name__)


class _Missing:
    """Sentinel for a path that does not resolve."""

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def resolve_path(context: Any, path: str) -> Any:
    """Resolve a dotted path against nested mappings and sequences.

    Returns MISSING if any segment does not resolve.
    """
    current = context
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            if not segment.isdigit() or int(segment) >= len(current):
                return MISSING
            current = current[int(segment)]
        else:
            return MISSING
    if isinstance(current, Enum):
        return current.value
    return current


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return str(right) in left
    return right in left


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda left, right: left == right,
    "ne": lambda left, right: left != right,
    "gt": lambda left, right: left > right,
    "gte": lambda left, right: left >= right,
    "lt": lambda left, right: left < right,
    "lte": lambda left, right: left <= right,
    "in": lambda left, right: left in right,
    "not_in": lambda left, right: left not in right,
    "contains": _contains,
    "glob": lambda left, right: fnmatch.fnmatch(str(left).lower(), str(right).lower()),
}

_SYMBOLS = {
    "==": "eq",
    "!=": "ne",
    ">=": "gte",
    "<=": "lte",
    ">": "gt",
    "<": "lt",
}

_STRING_CONDITION = re.compile(
    r"^\s*(?P<field>[A-Za-z_][\w.]*)\s*(?P<op>==|!=|>=|<=|>|<|\bin\b|\bcontains\b)\s*(?P<value>.+?)\s*$"
)


class Predicate(ABC):
    """A side-effect free boolean test over an evaluation context."""

    @abstractmethod
    def evaluate(self, context: Mapping[str, Any]) -> bool:
        """Evaluate the predicate."""

    @abstractmethod
    def to_dict(self) -> Any:
        """Serialize back to the dictionary form."""

    def __call__(self, context: Mapping[str, Any]) -> bool:
        return self.evaluate(context)


class Always(Predicate):
    """Predicate that is always true (an absent condition)."""

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return True

    def to_dict(self) -> Any:
        return True


class Never(Predicate):
    """Predicate that is always false."""

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return False

    def to_dict(self) -> Any:
        return False


class Comparison(Predicate):
    """Compare the value at a dotted path with a literal."""

    def __init__(self, field: str, op: str, value: Any = None):
        if op not in _OPERATORS and op != "exists":
            raise ConditionError(f"Unknown condition operator: {op}")
        self.field = field
        self.op = op
        self.value = value

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        actual = resolve_path(context, self.field)
        if self.op == "exists":
            expected = True if self.value is None else bool(self.value)
            return (actual is not MISSING and actual is not None) == expected
        if actual is MISSING:
            return False
        try:
            return bool(_OPERATORS[self.op](actual, self.value))
        except TypeError as e:
            logger.debug(f"Condition {self.field} {self.op} {self.value!r} not comparable: {e}")
            return False

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "op": self.op, "value": self.value}

    def __repr__(self) -> str:
        return f"Comparison({self.field!r}, {self.op!r}, {self.value!r})"


class AllOf(Predicate):
    """Logical AND of child predicates (true when empty)."""

    def __init__(self, predicates: List[Predicate]):
        self.predicates = predicates

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return all(p.evaluate(context) for p in self.predicates)

    def to_dict(self) -> Dict[str, Any]:
        return {"all": [p.to_dict() for p in self.predicates]}


class AnyOf(Predicate):
    """Logical OR of child predicates (false when empty)."""

    def __init__(self, predicates: List[Predicate]):
        self.predicates = predicates

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return any(p.evaluate(context) for p in self.predicates)

    def to_dict(self) -> Dict[str, Any]:
        return {"any": [p.to_dict() for p in self.predicates]}


class Not(Predicate):
    """Logical negation."""

    def __init__(self, predicate: Predicate):
        self.predicate = predicate

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return not self.predicate.evaluate(context)

    def to_dict(self) -> Dict[str, Any]:
        return {"not": self.predicate.to_dict()}


def _parse_string(expression: str) -> Predicate:
    match = _STRING_CONDITION.match(expression)
    if not match:
        raise ConditionError(f"Cannot parse condition: {expression!r}")
    op = match.group("op")
    op = _SYMBOLS.get(op, op)
    raw_value = match.group("value")
    try:
        value = yaml.safe_load(raw_value)
    except yaml.YAMLError as e:
        raise ConditionError(f"Invalid condition value {raw_value!r}: {e}") from e
    return Comparison(match.group("field"), op, value)


def parse_predicate(data: Any) -> Predicate:
    """Build a predicate tree from its dictionary or string form.

    Args:
        data: None/True (always), False, a comparison string, or a dict

    Returns:
        Predicate

    Raises:
        ConditionError: If the structure is not a recognised predicate
    """
    if isinstance(data, Predicate):
        return data
    if data is None or data is True:
        return Always()
    if data is False:
        return Never()
    if isinstance(data, str):
        return _parse_string(data)
    if isinstance(data, Mapping):
        if "all" in data:
            return AllOf([parse_predicate(p) for p in data["all"]])
        if "any" in data:
            return AnyOf([parse_predicate(p) for p in data["any"]])
        if "not" in data:
            return Not(parse_predicate(data["not"]))
        if "field" in data:
            return Comparison(data["field"], data.get("op", "eq"), data.get("value"))
    if isinstance(data, list):
        return AllOf([parse_predicate(p) for p in data])
    raise ConditionError(f"Unrecognised condition: {data!r}")


def freeze(value: Any) -> Any:
    """Return a read-only view of nested mappings and lists."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(freeze(v) for v in value)
    return value


def evaluate(condition: Optional[Predicate], context: Mapping[str, Any]) -> bool:
    """Evaluate an optional predicate against a frozen copy of the context."""
    if condition is None:
        return True
    return condition.evaluate(freeze(context))
