from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy import func, literal_column

from ..exceptions import InvalidArgumentError

if TYPE_CHECKING:
    from sqlalchemy.sql import ColumnElement


def to_column(name: Any) -> Any:
    """Turn a column name (``"posts.id"``) into a Core column element."""
    if isinstance(name, str):
        return literal_column(name)
    return name


def apply_operator(col: Any, operator: str, value: Any) -> "ColumnElement[bool]":
    """Apply an SQL comparison operator (``"="``, ``">="``, ``"like"``...) to a column."""
    operators: dict[str, Callable[[Any, Any], "ColumnElement[bool]"]] = {
        "=": lambda c, v: c.is_(None) if v is None else c == v,
        "==": lambda c, v: c.is_(None) if v is None else c == v,
        "!=": lambda c, v: c.isnot(None) if v is None else c != v,
        "<>": lambda c, v: c.isnot(None) if v is None else c != v,
        "<": lambda c, v: c < v,
        "<=": lambda c, v: c <= v,
        ">": lambda c, v: c > v,
        ">=": lambda c, v: c >= v,
        "like": lambda c, v: c.like(v),
        "not like": lambda c, v: c.not_like(v),
        "ilike": lambda c, v: c.ilike(v),
        "in": lambda c, v: c.in_(list(v)),
        "not in": lambda c, v: c.not_in(list(v)),
        "is": lambda c, v: c.is_(v),
        "is not": lambda c, v: c.isnot(v),
    }

    key = operator.lower().strip()
    if key not in operators:
        supported = ", ".join(operators.keys())
        msg = f"Unsupported operator '{operator}'. Supported: {supported}"
        raise InvalidArgumentError(msg)
    return operators[key](col, value)


def parse_lookup(key: str) -> tuple[str, str]:
    """
    Split a ``column__lookup`` keyword into ``(column, lookup)``.

    >>> parse_lookup("votes__gte")
    ('votes', 'gte')
    >>> parse_lookup("posts.title")
    ('posts.title', 'exact')
    """
    parts = key.split("__")
    if len(parts) > 2:
        msg = f"Unsupported lookup '{key}'. Nested lookups are not supported."
        raise InvalidArgumentError(msg)
    return parts[0], parts[1] if len(parts) > 1 else "exact"


def apply_lookup(col: Any, lookup: str, value: Any) -> "ColumnElement[bool]":
    """Apply a keyword lookup operator to a column."""
    operators: dict[str, Callable[[Any, Any], "ColumnElement[bool]"]] = {
        "exact": lambda c, v: c.is_(None) if v is None else c == v,
        "iexact": lambda c, v: func.lower(c) == func.lower(v),
        "contains": lambda c, v: c.contains(v),
        "icontains": lambda c, v: func.lower(c).contains(func.lower(v)),
        "gt": lambda c, v: c > v,
        "gte": lambda c, v: c >= v,
        "lt": lambda c, v: c < v,
        "lte": lambda c, v: c <= v,
        "in": lambda c, v: c.in_(list(v)),
        "startswith": lambda c, v: c.startswith(v),
        "endswith": lambda c, v: c.endswith(v),
        "isnull": lambda c, v: c.is_(None) if v else c.isnot(None),
        "range": lambda c, v: c.between(v[0], v[1]),
    }

    if lookup not in operators:
        supported = ", ".join(operators.keys())
        msg = f"Unsupported lookup '{lookup}'. Supported: {supported}"
        raise InvalidArgumentError(msg)
    return operators[lookup](col, value)
