from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Mapping, Union

if TYPE_CHECKING:
    from ..models import Model

DefaultSpec = Union[bool, Mapping[str, Any], Callable[["Model", "Model"], Any]]


class SupportsDefaultModels:
    """
    To-one relations that yield a placeholder model instead of ``None``.

    Example:
        >>> @relation
        ... def author(self):
        ...     return self.belongs_to(User, relation="author").with_default({"name": "Guest"})
    """

    _with_default: DefaultSpec | None = None

    def with_default(self, default: DefaultSpec = True) -> Any:
        """``True``, an attribute mapping, or ``callback(instance, parent)``."""
        self._with_default = default
        return self

    def new_related_instance_for(self, parent: Model) -> Model:
        raise NotImplementedError

    def get_default_for(self, parent: Model) -> Model | None:
        if not self._with_default:
            return None
        instance = self.new_related_instance_for(parent)
        if callable(self._with_default):
            return self._with_default(instance, parent) or instance
        if isinstance(self._with_default, Mapping):
            instance.fill(**self._with_default)
        return instance
