from __future__ import annotations

import inspect
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Hashable, Iterable, Mapping, Sequence

from ..query.construction import _MISSING
from ..utils import dictionary_key
from .base import ChunkCallback, Relation, constraints_enabled
from .pivot import InteractsWithPivotTable, Pivot

if TYPE_CHECKING:
    from ..builder import Builder
    from ..collection import Collection
    from ..models import Model
    from ..pagination import Paginator

PIVOT_PREFIX = "pivot_"


class ManyToMany(InteractsWithPivotTable, Relation):
    """
    ``belongs_to_many`` through a join table.

    Fetched related rows carry their join-table row as a ``Pivot`` under
    ``accessor`` (``"pivot"`` by default):

        >>> roles = await user.related("roles").with_pivot("level").get()
        >>> roles[0].get_relation("pivot").get_attribute("level")
        'admin'
    """

    def __init__(
        self,
        query: Builder,
        parent: Model,
        table: str,
        foreign_pivot_key: str,
        related_pivot_key: str,
        parent_key: str,
        related_key: str,
    ):
        self.table = table
        self.foreign_pivot_key = foreign_pivot_key
        self.related_pivot_key = related_pivot_key
        self.parent_key = parent_key
        self.related_key = related_key
        self.accessor = "pivot"
        self.pivot_columns: list[str] = []
        self.pivot_values: list[tuple[str, Any]] = []
        self.pivot_wheres: list[Any] = []
        self.pivot_created_at = "created_at"
        self.pivot_updated_at = "updated_at"
        super().__init__(query, parent)

    # --- Constraints -------------------------------------------------------

    def add_constraints(self) -> None:
        self.perform_join()
        if constraints_enabled():
            self.add_where_constraints()

    def perform_join(self, query: Builder | None = None) -> ManyToMany:
        (query or self.query).join(
            self.table,
            self.get_qualified_related_key_name(),
            "=",
            self.get_qualified_related_pivot_key_name(),
        )
        return self

    def add_where_constraints(self) -> None:
        self.query.where(
            self.get_qualified_foreign_pivot_key_name(),
            "=",
            self.parent.get_attribute(self.parent_key),
        )

    def add_eager_constraints(self, models: Sequence[Model]) -> None:
        self.query.where_in(
            self.get_qualified_foreign_pivot_key_name(), self.get_keys(models, self.parent_key)
        )

    # --- Matching ----------------------------------------------------------

    def init_relation(self, models: Sequence[Model], relation: str) -> Sequence[Model]:
        for model in models:
            model.set_relation(relation, self.related.new_collection())
        return models

    def build_dictionary(self, results: Iterable[Model]) -> dict[Hashable, list[Model]]:
        dictionary: dict[Hashable, list[Model]] = defaultdict(list)
        for result in results:
            pivot = result.get_relation(self.accessor)
            dictionary[dictionary_key(pivot.get_attribute(self.foreign_pivot_key))].append(result)
        return dictionary

    def match(self, models: Sequence[Model], results: Collection[Any], relation: str) -> Sequence[Model]:
        dictionary = self.build_dictionary(results)
        for model in models:
            key = dictionary_key(model.get_attribute(self.parent_key))
            if key is not None and key in dictionary:
                model.set_relation(relation, self.related.new_collection(dictionary[key]))
        return models

    # --- Fetching ----------------------------------------------------------

    async def get_results(self) -> Collection[Any]:
        if self.parent.get_attribute(self.parent_key) is None:
            return self.related.new_collection()
        return await self.get()

    def clone(self) -> ManyToMany:
        relation = super().clone()
        relation.pivot_columns = list(self.pivot_columns)
        relation.pivot_values = list(self.pivot_values)
        relation.pivot_wheres = list(self.pivot_wheres)
        return relation

    def prepare_query_builder(self, columns: list[Any] | None = None) -> Builder:
        """A scoped copy of the query selecting the aliased pivot columns."""
        builder = self.query.apply_scopes()
        if builder.get_query().columns:
            return builder.add_select(*self.aliased_pivot_columns())
        return builder.select(*self.should_select(columns or ["*"]))

    async def get(self, columns: list[Any] | None = None) -> Collection[Any]:
        builder = self.prepare_query_builder(columns)
        models = await builder.get_models()
        self.hydrate_pivot_relation(models)
        if models:
            models = await builder.eager_load_relations(models)
        return self.related.new_collection(models)

    async def paginate(
        self, per_page: int | None = None, page: int = 1, columns: list[Any] | None = None
    ) -> Paginator:
        """One page of related models, each carrying its ``Pivot``."""
        paginator = await self.prepare_query_builder(columns).paginate(per_page, page)
        self.hydrate_pivot_relation(paginator.items)
        return paginator

    async def chunk(self, size: int, callback: ChunkCallback) -> bool:
        async def with_pivots(models: Collection[Any], page: int) -> Any:
            self.hydrate_pivot_relation(models)
            outcome = callback(models, page)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return outcome

        return await self.prepare_query_builder().chunk(size, with_pivots)

    def should_select(self, columns: list[Any]) -> list[Any]:
        if columns == ["*"]:
            columns = [f"{self.related.get_table()}.*"]
        return [*columns, *self.aliased_pivot_columns()]

    def pivot_column_names(self) -> list[str]:
        return list(dict.fromkeys([self.foreign_pivot_key, self.related_pivot_key, *self.pivot_columns]))

    def aliased_pivot_columns(self) -> list[str]:
        return [
            f"{self.table}.{column} as {PIVOT_PREFIX}{column}"
            for column in self.pivot_column_names()
        ]

    def hydrate_pivot_relation(self, models: Iterable[Model]) -> None:
        """Move the ``pivot_*`` columns of every row into a ``Pivot`` record."""
        for model in models:
            attributes = {}
            for column in self.pivot_column_names():
                aliased = f"{PIVOT_PREFIX}{column}"
                attributes[column] = model.get_attributes().get(aliased)
                model.forget_attribute(aliased)
            model.set_relation(self.accessor, self.new_existing_pivot(attributes))

    # --- Configuration -------------------------------------------------------

    def as_(self, accessor: str) -> ManyToMany:
        """Attach pivots under ``accessor`` instead of ``"pivot"``."""
        self.accessor = accessor
        return self

    def with_pivot(self, *columns: str) -> ManyToMany:
        """Extra join-table columns to hydrate onto each ``Pivot``."""
        self.pivot_columns.extend(c for c in columns if c not in self.pivot_columns)
        return self

    def with_timestamps(
        self, created_at: str | None = None, updated_at: str | None = None
    ) -> ManyToMany:
        """Maintain timestamp columns on the join table."""
        self.pivot_created_at = created_at or self.pivot_created_at
        self.pivot_updated_at = updated_at or self.pivot_updated_at
        return self.with_pivot(self.pivot_created_at, self.pivot_updated_at)

    def with_pivot_value(self, column: str | Mapping[str, Any], value: Any = None) -> ManyToMany:
        """Filter on a pivot column and write the same value on attach."""
        values = column if isinstance(column, Mapping) else {column: value}
        for name, val in values.items():
            self.where_pivot(name, "=", val)
            self.pivot_values.append((name, val))
        return self

    # --- Pivot filters -----------------------------------------------------

    def _pivot_where(self, method: str, column: str, *args: Any) -> ManyToMany:
        qualified = f"{self.table}.{column}"
        getattr(self.query, method)(qualified, *args)
        self.pivot_wheres.append(lambda query: getattr(query, method)(qualified, *args))
        return self

    def where_pivot(
        self, column: str, operator: Any = _MISSING, value: Any = _MISSING, boolean: str = "and"
    ) -> ManyToMany:
        return self._pivot_where("where", column, operator, value, boolean)

    def or_where_pivot(self, column: str, operator: Any = _MISSING, value: Any = _MISSING) -> ManyToMany:
        return self.where_pivot(column, operator, value, "or")

    def where_pivot_in(self, column: str, values: Iterable[Any], boolean: str = "and") -> ManyToMany:
        return self._pivot_where("where_in", column, list(values), boolean)

    def where_pivot_not_in(self, column: str, values: Iterable[Any], boolean: str = "and") -> ManyToMany:
        return self._pivot_where("where_not_in", column, list(values), boolean)

    def where_pivot_between(
        self, column: str, values: Sequence[Any], boolean: str = "and", not_between: bool = False
    ) -> ManyToMany:
        return self._pivot_where("where_between", column, list(values), boolean, not_between)

    def or_where_pivot_between(self, column: str, values: Sequence[Any]) -> ManyToMany:
        return self.where_pivot_between(column, values, "or")

    def where_pivot_not_between(
        self, column: str, values: Sequence[Any], boolean: str = "and"
    ) -> ManyToMany:
        return self.where_pivot_between(column, values, boolean, not_between=True)

    def or_where_pivot_not_between(self, column: str, values: Sequence[Any]) -> ManyToMany:
        return self.where_pivot_between(column, values, "or", not_between=True)

    def where_pivot_null(self, column: str, boolean: str = "and") -> ManyToMany:
        return self._pivot_where("where_null", column, boolean)

    def where_pivot_not_null(self, column: str, boolean: str = "and") -> ManyToMany:
        return self._pivot_where("where_not_null", column, boolean)

    def order_by_pivot(self, column: str, direction: str = "asc") -> ManyToMany:
        self.query.order_by(f"{self.table}.{column}", direction)
        return self

    # --- Key names ---------------------------------------------------------

    def get_qualified_foreign_pivot_key_name(self) -> str:
        return f"{self.table}.{self.foreign_pivot_key}"

    def get_qualified_related_pivot_key_name(self) -> str:
        return f"{self.table}.{self.related_pivot_key}"

    def get_qualified_parent_key_name(self) -> str:
        return self.parent.qualify_column(self.parent_key)

    def get_qualified_related_key_name(self) -> str:
        return self.related.qualify_column(self.related_key)

    def get_existence_compare_key(self) -> str:
        return self.get_qualified_foreign_pivot_key_name()

    def get_table(self) -> str:
        return self.table

    def get_pivot_accessor(self) -> str:
        return self.accessor

    def qualify_select_column(self, column: str) -> str:
        return self.related.qualify_column(column)

    # --- Existence queries -------------------------------------------------

    def get_relation_existence_query(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        if parent_query.get_query().table == query.get_query().table:
            return self.get_relation_existence_query_for_self_join(query, parent_query, columns)
        self.perform_join(query)
        return super().get_relation_existence_query(query, parent_query, columns)

    def get_relation_existence_query_for_self_join(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        alias = self.get_relation_count_hash()
        query.select(*columns)
        query.from_(f"{self.related.get_table()} as {alias}")
        self.related.set_table(alias)
        self.perform_join(query)
        return super().get_relation_existence_query(query, parent_query, columns)


__all__ = ["ManyToMany", "Pivot"]
