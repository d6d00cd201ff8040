from __future__ import annotations

from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Union

from .exceptions import InvalidArgumentError
from .utils import snake_case

if TYPE_CHECKING:
    from .builder import Builder
    from .models import Model

GlobalScope = Union["Scope", Callable[["Builder"], Any]]


class Scope(ABC):
    """
    A reusable constraint applied to every query of a model.

    Example:
        >>> class ActiveScope(Scope):
        ...     def apply(self, builder, model):
        ...         builder.where(model.qualify_column("active"), True)
        ...
        >>> class User(Model):
        ...     __global_scopes__ = (ActiveScope(),)
    """

    @abstractmethod
    def apply(self, builder: Builder, model: Model) -> None:
        """Constrain ``builder``."""
        raise NotImplementedError


class SoftDeletingScope(Scope):
    """Hides rows whose ``deleted_at`` column is set."""

    name = "soft_deleting"

    def apply(self, builder: Builder, model: Model) -> None:
        builder.where_null(model.get_qualified_deleted_at_column())


def _scope_name(scope: Scope) -> str:
    return getattr(scope, "name", None) or snake_case(type(scope).__name__)


def normalize_global_scopes(
    scopes: Mapping[str, GlobalScope] | Iterable[Scope] | None,
) -> Mapping[str, GlobalScope]:
    """
    Build the read-only name -> scope registry of a model class.

    Accepts a mapping of names to ``Scope`` instances or callables, or an
    iterable of ``Scope`` instances named after their class.
    """
    registry: dict[str, GlobalScope] = {}
    if scopes is None:
        return MappingProxyType(registry)

    if isinstance(scopes, Mapping):
        items = list(scopes.items())
    else:
        items = []
        for scope in scopes:
            if not isinstance(scope, Scope):
                msg = "Global scope must be an instance of Scope or a callable."
                raise InvalidArgumentError(msg)
            items.append((_scope_name(scope), scope))

    for name, scope in items:
        if not isinstance(name, str) or not name:
            msg = f"Global scope names must be non-empty strings, got {name!r}."
            raise InvalidArgumentError(msg)
        if not isinstance(scope, Scope) and not callable(scope):
            msg = "Global scope must be an instance of Scope or a callable."
            raise InvalidArgumentError(msg)
        registry[name] = scope
    return MappingProxyType(registry)
