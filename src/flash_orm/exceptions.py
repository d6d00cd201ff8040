from __future__ import annotations

from typing import Any, Iterable


class FlashOrmError(Exception):
    """Base class for all Flash ORM exceptions."""


class RelationNotFoundError(FlashOrmError, AttributeError):
    """Raised when a model has no relation registered under the requested name."""

    def __init__(self, model: str, relation: str):
        self.model = model
        self.relation = relation
        super().__init__(f"Model [{model}]'s relation [{relation}] doesn't exist.")


class ScopeNotFoundError(FlashOrmError, AttributeError):
    """Raised when a named local scope is not registered on the model."""

    def __init__(self, model: str, scope: str):
        self.model = model
        self.scope = scope
        super().__init__(f"Model [{model}] has no scope named [{scope}].")


class ModelNotFoundError(FlashOrmError, LookupError):
    """
    Raised by the ``*_or_fail`` finders when no (or not every) row matched.

    Attributes:
        model: Name of the model class that was queried.
        ids: The missing keys, empty when the lookup was not key based.
    """

    def __init__(self, model: str, ids: Iterable[Any] = ()):
        self.model = model
        self.ids = list(ids)
        message = f"No query results for model [{model}]"
        if self.ids:
            message += " " + ", ".join(str(key) for key in self.ids)
        super().__init__(message)


class InvalidArgumentError(FlashOrmError, ValueError):
    """Raised for malformed scope registrations, operators or paging arguments."""
