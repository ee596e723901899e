"""
Row value model.

Rows are insertion-ordered ``dict[str, Value]``. A value is one of a small
set of kinds (string, number, bool, datetime, null, nested). ``kind_of``
classifies any Python value so that comparison, sorting and schema inference
can dispatch on the kind instead of on ad hoc isinstance chains.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

Value = Union[str, int, float, bool, datetime, None, Dict[str, Any], List[Any]]
Row = Dict[str, Value]


class ValueKind(Enum):
    """Kinds of row values."""
    NULL = "null"
    BOOL = "boolean"
    NUMBER = "number"
    STRING = "string"
    DATE = "date"
    OBJECT = "object"
    ARRAY = "array"


def kind_of(value: Any) -> ValueKind:
    """Classify a Python value. Unknown objects are treated as strings."""
    if value is None:
        return ValueKind.NULL
    # bool before number: bool is an int subclass
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (datetime, date)):
        return ValueKind.DATE
    if isinstance(value, dict):
        return ValueKind.OBJECT
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    return ValueKind.STRING


def _as_number(value: Any) -> Optional[float]:
    kind = kind_of(value)
    if kind is ValueKind.NUMBER:
        return value
    if kind is ValueKind.STRING:
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _comparable_pair(left: Any, right: Any) -> Optional[Tuple[Any, Any]]:
    """
    Coerce two values into a mutually ordered pair.

    Returns None when the kinds cannot be ordered against each other.
    """
    lk, rk = kind_of(left), kind_of(right)

    if lk is rk and lk in (ValueKind.NUMBER, ValueKind.STRING, ValueKind.BOOL):
        return left, right

    if lk is ValueKind.DATE or rk is ValueKind.DATE:
        ld, rd = _as_datetime(left), _as_datetime(right)
        if ld is None or rd is None:
            return None
        # naive/aware mixes cannot be ordered
        if (ld.tzinfo is None) != (rd.tzinfo is None):
            return None
        return ld, rd

    if {lk, rk} == {ValueKind.NUMBER, ValueKind.STRING}:
        ln, rn = _as_number(left), _as_number(right)
        if ln is None or rn is None:
            return None
        return ln, rn

    return None


def values_equal(left: Any, right: Any) -> bool:
    """Equality with numeric/date coercion; ``null = null`` holds."""
    if left is None or right is None:
        return left is None and right is None
    if kind_of(left) is kind_of(right) and kind_of(left) in (ValueKind.OBJECT, ValueKind.ARRAY):
        return left == right
    pair = _comparable_pair(left, right)
    if pair is None:
        return False
    return pair[0] == pair[1]


def compare(left: Any, operator: str, right: Any) -> bool:
    """
    Evaluate ``left <operator> right``.

    Incomparable kinds make ordering operators false, ``=`` false and
    ``!=`` true.
    """
    if operator == "=":
        return values_equal(left, right)
    if operator == "!=":
        return not values_equal(left, right)

    if left is None or right is None:
        return False
    pair = _comparable_pair(left, right)
    if pair is None:
        return False
    a, b = pair
    if operator == "<":
        return a < b
    if operator == "<=":
        return a <= b
    if operator == ">":
        return a > b
    if operator == ">=":
        return a >= b
    raise ValueError(f"Unsupported comparison operator: {operator}")


_KIND_RANK = {
    ValueKind.BOOL: 0,
    ValueKind.NUMBER: 1,
    ValueKind.DATE: 2,
    ValueKind.STRING: 3,
    ValueKind.ARRAY: 4,
    ValueKind.OBJECT: 5,
}


def sort_key(value: Any) -> Tuple[int, Any]:
    """
    Total-order key for non-null values of mixed kinds.

    Values of the same kind order naturally; different kinds order by a
    fixed kind rank. Nested values order by their string form.
    """
    kind = kind_of(value)
    if kind is ValueKind.DATE:
        return _KIND_RANK[kind], _as_datetime(value).timestamp()
    if kind in (ValueKind.OBJECT, ValueKind.ARRAY):
        return _KIND_RANK[kind], repr(value)
    if kind is ValueKind.STRING and not isinstance(value, str):
        return _KIND_RANK[kind], str(value)
    return _KIND_RANK[kind], value
