from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Hashable, Iterable

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
_NON_WORD = re.compile(r"[^0-9a-zA-Z]+")

# Declared key type -> caster
KEY_CASTS: dict[str, Callable[[Any], Any]] = {
    "int": int,
    "integer": int,
    "float": float,
    "real": float,
    "double": float,
    "decimal": float,
    "str": str,
    "string": str,
    "uuid": str,
}


def snake_case(value: str) -> str:
    """
    Convert ``CamelCase`` or free text to ``snake_case``.

    >>> snake_case("BlogPost")
    'blog_post'
    >>> snake_case("posts count *")
    'posts_count'
    """
    value = _CAMEL_BOUNDARY.sub("_", value)
    return _NON_WORD.sub("_", value).strip("_").lower()


def cast_key(value: Any, key_type: str) -> Any:
    """
    Coerce a key to the declared key type of a model.

    Keys read back from storage or passed by callers may be strings, ints or
    floats for the same logical id; every set comparison goes through this.
    ``None`` and unknown key types pass through unchanged.
    """
    if value is None:
        return None
    caster = KEY_CASTS.get(key_type.lower())
    if caster is None:
        return value
    if caster is int and isinstance(value, str):
        return int(float(value)) if "." in value else int(value)
    if caster is int and isinstance(value, (float, Decimal)):
        return int(value)
    return caster(value)


def dictionary_key(value: Any) -> Hashable:
    """
    Normalize a join column value for in-memory matching.

    ``1``, ``1.0`` and ``"1"`` all produce the same dictionary key.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, (float, Decimal)) and value == int(value):
        value = int(value)
    return str(value)


def _sort_key(value: Any) -> tuple[str, Any]:
    return (type(value).__name__, value)


def unique_keys(values: Iterable[Any]) -> list[Any]:
    """
    Deduplicate and sort join keys, dropping ``None``.

    The sort makes the generated ``IN (...)`` list deterministic.
    """
    seen: dict[Hashable, Any] = {}
    for value in values:
        if value is None:
            continue
        seen.setdefault(dictionary_key(value), value)
    return sorted(seen.values(), key=_sort_key)


def fresh_timestamp() -> datetime:
    """Timestamp used for ``created_at`` / ``updated_at`` / ``deleted_at``."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
