from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from contextlib import contextmanager
from contextvars import ContextVar
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Generator,
    Iterable,
    Self,
    Sequence,
)

from sqlalchemy import literal_column

from ..utils import unique_keys

if TYPE_CHECKING:
    from ..builder import Builder
    from ..collection import Collection
    from ..models import Model
    from ..pagination import Paginator

ChunkCallback = Callable[["Collection[Any]", int], "Awaitable[Any] | Any"]

_constraints_enabled: ContextVar[bool] = ContextVar("relation_constraints", default=True)


@contextmanager
def no_constraints() -> Generator[None, None, None]:
    """
    Build relations without their single-parent constraint.

    Used when a relation is only a template for an eager load or an
    existence query. Scoped to the current context, so concurrent tasks
    never see each other's setting.
    """
    token = _constraints_enabled.set(False)
    try:
        yield
    finally:
        _constraints_enabled.reset(token)


def constraints_enabled() -> bool:
    return _constraints_enabled.get()


class Relation(ABC):
    """
    A relation between a parent model and a related model.

    The relation owns a ``Builder`` over the related table. Constructed
    through a parent instance it is constrained to that parent
    (``add_constraints``); constructed inside ``no_constraints()`` it is a
    template that ``add_eager_constraints`` points at a whole batch of
    parents. ``match`` then distributes the fetched rows onto the parents.

    Subclasses resolve their key names before calling ``super().__init__``;
    they are never recomputed afterwards.
    """

    _self_join_count: ClassVar[int] = 0

    def __init__(self, query: Builder, parent: Model):
        self.query = query
        self.parent = parent
        self.related: Model = query.get_model()
        self.add_constraints()

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {type(self.parent).__name__}"
            f" -> {type(self.related).__name__}>"
        )

    # --- Contract ----------------------------------------------------------

    @abstractmethod
    def add_constraints(self) -> None:
        """Constrain the query to the single parent this relation was built from."""

    @abstractmethod
    def add_eager_constraints(self, models: Sequence[Model]) -> None:
        """Constrain the query to every parent of an eager load."""

    @abstractmethod
    def init_relation(self, models: Sequence[Model], relation: str) -> Sequence[Model]:
        """Give every parent the empty value of the relation."""

    @abstractmethod
    def match(
        self, models: Sequence[Model], results: Collection[Any], relation: str
    ) -> Sequence[Model]:
        """Distribute eagerly fetched ``results`` onto their parents."""

    @abstractmethod
    async def get_results(self) -> Any:
        """Lazily fetch the relation value for the single parent."""

    def clone(self) -> Self:
        """A copy over a cloned query; composing on it leaves this relation as is."""
        relation = copy.copy(self)
        relation.query = self.query.clone()
        return relation

    # --- Fetching ----------------------------------------------------------

    async def get(self, columns: list[Any] | None = None) -> Collection[Any]:
        return await self.query.get(columns)

    async def get_eager(self) -> Collection[Any]:
        """Fetch the rows of an eager load; one query."""
        return await self.get()

    async def first(self, columns: list[Any] | None = None) -> Any:
        results = await self.clone().limit(1).get(columns)
        return results.first()

    async def paginate(
        self, per_page: int | None = None, page: int = 1, columns: list[Any] | None = None
    ) -> Paginator:
        """
        One page of related models.

        Example:
            >>> page = await user.related("posts").latest().paginate(per_page=10)
        """
        return await self.query.paginate(per_page, page, columns)

    async def chunk(self, size: int, callback: ChunkCallback) -> bool:
        """Feed related models to ``callback(models, page)`` ``size`` at a time."""
        return await self.query.chunk(size, callback)

    async def count(self) -> int:
        return await self.query.count()

    async def exists(self) -> bool:
        return await self.query.exists()

    async def pluck(self, column: str) -> list[Any]:
        return await self.query.pluck(column)

    # --- Keys and accessors ------------------------------------------------

    def get_keys(self, models: Iterable[Model], key: str | None = None) -> list[Any]:
        """Deduplicated, sorted, non-null values of ``key`` across ``models``."""
        return unique_keys(
            model.get_attribute(key) if key else model.get_key() for model in models
        )

    def get_query(self) -> Builder:
        return self.query

    def get_base_query(self) -> Any:
        return self.query.get_query()

    def get_parent(self) -> Model:
        return self.parent

    def get_related(self) -> Model:
        return self.related

    def get_qualified_parent_key_name(self) -> str:
        return self.parent.get_qualified_key_name()

    def get_existence_compare_key(self) -> str:
        raise NotImplementedError

    def qualify_select_column(self, column: str) -> str:
        """How a bare column of a ``"relation:col1,col2"`` eager load is selected."""
        return column

    # --- Existence queries -------------------------------------------------

    def get_relation_existence_query(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        """
        Constrain ``query`` (over the related table) to rows related to the
        rows of ``parent_query``, for ``has()`` / ``with_count()``.
        """
        return query.select(*columns).where_column(
            self.get_qualified_parent_key_name(), "=", self.get_existence_compare_key()
        )

    def get_relation_existence_count_query(self, query: Builder, parent_query: Builder) -> Builder:
        return self.get_relation_existence_query(
            query, parent_query, [literal_column("count(*)")]
        )

    @classmethod
    def get_relation_count_hash(cls, increment: bool = True) -> str:
        """Alias of the related table in self-referencing existence queries."""
        name = f"flash_reserved_{Relation._self_join_count}"
        if increment:
            Relation._self_join_count += 1
        return name

    # --- Composition, delegated to the related query -------------------------

    def select(self, *columns: Any) -> Any:
        self.query.select(*columns)
        return self

    def add_select(self, *columns: Any) -> Any:
        self.query.add_select(*columns)
        return self

    def where(self, *args: Any, **kwargs: Any) -> Any:
        self.query.where(*args, **kwargs)
        return self

    def or_where(self, *args: Any) -> Any:
        self.query.or_where(*args)
        return self

    def filter(self, **lookups: Any) -> Any:
        self.query.filter(**lookups)
        return self

    def where_in(self, column: str, values: Iterable[Any]) -> Any:
        self.query.where_in(column, values)
        return self

    def where_not_in(self, column: str, values: Iterable[Any]) -> Any:
        self.query.where_not_in(column, values)
        return self

    def where_null(self, column: str) -> Any:
        self.query.where_null(column)
        return self

    def where_not_null(self, column: str) -> Any:
        self.query.where_not_null(column)
        return self

    def where_column(self, first: str, operator: str, second: str | None = None) -> Any:
        self.query.where_column(first, operator, second)
        return self

    def where_has(self, relation: str, callback: Any = None, operator: str = ">=", count: int = 1) -> Any:
        self.query.where_has(relation, callback, operator, count)
        return self

    def order_by(self, column: Any, direction: str = "asc") -> Any:
        self.query.order_by(column, direction)
        return self

    def latest(self, column: str | None = None) -> Any:
        self.query.latest(column)
        return self

    def oldest(self, column: str | None = None) -> Any:
        self.query.oldest(column)
        return self

    def limit(self, count: int | None) -> Any:
        self.query.limit(count)
        return self

    take = limit

    def offset(self, count: int | None) -> Any:
        self.query.offset(count)
        return self

    skip = offset

    def for_page(self, page: int, per_page: int) -> Any:
        self.query.for_page(page, per_page)
        return self

    def with_(self, *relations: Any) -> Any:
        self.query.with_(*relations)
        return self

    def without(self, *relations: str) -> Any:
        self.query.without(*relations)
        return self

    def with_count(self, *relations: Any) -> Any:
        self.query.with_count(*relations)
        return self

    def scope(self, name: str, *args: Any, **kwargs: Any) -> Any:
        self.query.scope(name, *args, **kwargs)
        return self

    def with_trashed(self) -> Any:
        self.query.with_trashed()
        return self

    def only_trashed(self) -> Any:
        self.query.only_trashed()
        return self

    def without_global_scope(self, scope: Any) -> Any:
        self.query.without_global_scope(scope)
        return self

    def to_sql(self) -> tuple[str, dict[str, Any]]:
        return self.query.to_sql()
