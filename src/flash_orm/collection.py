from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Generic, Hashable, Iterable, TypeVar, overload

from .utils import dictionary_key

if TYPE_CHECKING:
    from .models import Model

M = TypeVar("M", bound="Model")


def _key_of(item: Any) -> Hashable:
    from .models import Model

    if isinstance(item, Model):
        return dictionary_key(item.get_key())
    return dictionary_key(item)


class Collection(list, Generic[M]):
    """
    An ordered list of model instances with key-based helpers.

    Dictionaries keyed by primary key are built on demand; ``1``, ``1.0``
    and ``"1"`` address the same model.

    Example:
        >>> users = await User.query(db).get()
        >>> users.find(2)
        <User id=2>
        >>> await users.load("posts")
    """

    def model_keys(self) -> list[Any]:
        return [model.get_key() for model in self]

    def get_dictionary(self, items: Iterable[M] | None = None) -> dict[Hashable, M]:
        """Key -> model, the last-seen model wins for duplicate keys."""
        return {_key_of(model): model for model in (self if items is None else items)}

    @overload
    def find(self, key: list[Any] | Collection[M], default: Any = None) -> Collection[M]: ...

    @overload
    def find(self, key: Any, default: Any = None) -> M | Any: ...

    def find(self, key, default=None):
        """
        Find by primary key, a model, or a list of keys.

        A list returns a (possibly empty) collection in this collection's order.
        """
        if isinstance(key, (list, tuple, set)):
            wanted = {_key_of(k) for k in key}
            return self.__class__(m for m in self if _key_of(m) in wanted)
        return self.get_dictionary().get(_key_of(key), default)

    def contains(self, key: Any) -> bool:
        """Membership by primary key, by model, or by predicate."""
        from .models import Model

        if callable(key) and not isinstance(key, Model):
            return any(key(model) for model in self)
        return self.find(key) is not None

    def diff(self, items: Iterable[M]) -> Collection[M]:
        """Models whose key is not present in ``items``."""
        other = self.get_dictionary(items)
        return self.__class__(m for m in self if _key_of(m) not in other)

    def intersect(self, items: Iterable[M]) -> Collection[M]:
        """Models whose key is also present in ``items``."""
        other = self.get_dictionary(items)
        return self.__class__(m for m in self if _key_of(m) in other)

    def unique(self, attribute: str | Callable[[M], Any] | None = None) -> Collection[M]:
        """Drop repeated models, by key or by attribute/callable, keeping the first."""
        seen: set[Hashable] = set()
        result = self.__class__()
        for model in self:
            if attribute is None:
                marker = _key_of(model)
            elif callable(attribute):
                marker = dictionary_key(attribute(model))
            else:
                marker = dictionary_key(model.get_attribute(attribute))
            if marker not in seen:
                seen.add(marker)
                result.append(model)
        return result

    def only(self, keys: Iterable[Any]) -> Collection[M]:
        wanted = {_key_of(k) for k in keys}
        return self.__class__(m for m in self if _key_of(m) in wanted)

    def except_(self, keys: Iterable[Any]) -> Collection[M]:
        unwanted = {_key_of(k) for k in keys}
        return self.__class__(m for m in self if _key_of(m) not in unwanted)

    def pluck(self, name: str) -> list[Any]:
        return [model.get_attribute(name) for model in self]

    def key_by(self, name: str) -> dict[Any, M]:
        return {model.get_attribute(name): model for model in self}

    def filter(self, predicate: Callable[[M], bool]) -> Collection[M]:
        return self.__class__(m for m in self if predicate(m))

    def first(self, default: Any = None) -> M | Any:
        return self[0] if self else default

    def last(self, default: Any = None) -> M | Any:
        return self[-1] if self else default

    def is_empty(self) -> bool:
        return not self

    def to_dicts(self) -> list[dict[str, Any]]:
        return [model.to_dict() for model in self]

    async def load(self, *relations: Any) -> Collection[M]:
        """
        Eager load relations onto every model, one query per relation path.

        Example:
            >>> await users.load("posts.comments", {"roles": lambda r: r.where("active", True)})
        """
        if self:
            builder = self[0].new_query_without_relationships().with_(*relations)
            await builder.eager_load_relations(self)
        return self

    async def load_count(self, *relations: Any) -> Collection[M]:
        """Set ``<relation>_count`` attributes on every model in one query."""
        if not self:
            return self
        first = self[0]
        key_name = first.get_key_name()
        rows = await (
            first.new_query_without_relationships()
            .without_global_scopes()
            .where_in(first.get_qualified_key_name(), self.model_keys())
            .select(first.get_qualified_key_name())
            .with_count(*relations)
            .get_query()
            .get()
        )
        by_key = {dictionary_key(row[key_name]): row for row in rows}
        for model in self:
            row = by_key.get(_key_of(model))
            if row is None:
                continue
            for column, value in row.items():
                if column != key_name:
                    model.set_attribute(column, value)
            model.sync_original()
        return self

    async def fresh(self, *with_: Any) -> Collection[M]:
        """Re-query every model, in this collection's order, dropping deleted ones."""
        if not self:
            return self.__class__()
        first = self[0]
        fresh = await first.new_query().with_(*with_).find_many(self.model_keys())
        by_key = fresh.get_dictionary()
        return self.__class__(
            by_key[_key_of(m)] for m in self if _key_of(m) in by_key
        )
