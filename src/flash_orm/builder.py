from __future__ import annotations

import inspect
from contextlib import nullcontext
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Sequence

from sqlalchemy import literal_column
from sqlalchemy.sql import ClauseElement

from .collection import Collection
from .config import orm_settings
from .eager import (
    Constraint,
    merge_eager_loads,
    noop,
    normalize_with_arguments,
    parse_with_relations,
    relations_nested_under,
    top_level,
)
from .exceptions import (
    InvalidArgumentError,
    ModelNotFoundError,
    RelationNotFoundError,
    ScopeNotFoundError,
)
from .interfaces import QueryEngine, SoftDeletable, Timestamped
from .logging import get_logger, query_cycle, scoped_query_cycle
from .pagination import Paginator
from .query.construction import _MISSING
from .relations.base import no_constraints
from .scopes import Scope, SoftDeletingScope
from .utils import dictionary_key, fresh_timestamp, snake_case, unique_keys

if TYPE_CHECKING:
    from .models import Model
    from .query import Query
    from .relations import Relation
    from .scopes import GlobalScope

logger = get_logger(__name__)


class Builder:
    """
    Model-aware query builder.

    Wraps a ``Query`` over the model's table and adds what the raw engine
    knows nothing about: hydration into models, global and local scopes,
    eager loading, relation existence and relation aggregates.

    Composition methods mutate the builder and return it. Terminal methods
    (``get``, ``first``, ``count``, ``update``, ``delete``, ...) work on a
    scoped copy, so the builder can be reused after them.

    Example:
        >>> users = await (
        ...     User.query(db)
        ...     .where("active", True)
        ...     .with_("posts.comments", {"roles": lambda r: r.where_pivot("level", "admin")})
        ...     .with_count("posts")
        ...     .get()
        ... )
    """

    def __init__(self, query: Query):
        if not isinstance(query, QueryEngine):
            msg = f"Builder needs a query engine, got {type(query).__name__}."
            raise InvalidArgumentError(msg)
        self.query = query
        self.model: Model | None = None
        self.eager_load: dict[str, Constraint] = {}
        self._scopes: dict[str, GlobalScope] = {}
        self._removed_scopes: list[str] = []

    def __repr__(self) -> str:
        name = type(self.model).__name__ if self.model is not None else None
        return f"<Builder {name} on '{self.query.table}'>"

    # --- State -------------------------------------------------------------

    def set_model(self, model: Model) -> Builder:
        self.model = model
        return self

    def get_model(self) -> Model:
        if self.model is None:
            msg = "Builder has no model; call set_model() first."
            raise RuntimeError(msg)
        return self.model

    def get_query(self) -> Query:
        return self.query

    def clone(self) -> Builder:
        builder = self.__class__(self.query.clone())
        builder.model = self.model
        builder.eager_load = dict(self.eager_load)
        builder._scopes = dict(self._scopes)
        builder._removed_scopes = list(self._removed_scopes)
        return builder

    def _wrap(self, query: Query) -> Builder:
        return self.__class__(query).set_model(self.get_model())

    def new_model_instance(self, attributes: Mapping[str, Any] | None = None) -> Model:
        return self.get_model().new_instance(attributes)

    # --- Composition, delegated to the query engine ---------------------------

    def select(self, *columns: Any) -> Builder:
        self.query.select(*columns)
        return self

    def add_select(self, *columns: Any) -> Builder:
        self.query.add_select(*columns)
        return self

    def from_(self, table: str) -> Builder:
        self.query.from_(table)
        return self

    def where(
        self, column: Any, operator: Any = _MISSING, value: Any = _MISSING, boolean: str = "and"
    ) -> Builder:
        """
        Same forms as ``Query.where``; a callable receives a ``Builder`` so
        local scopes can be used inside the nested group.
        """
        if callable(column) and not isinstance(column, (str, Mapping, ClauseElement)):
            callback = column
            self.query.where(lambda group: callback(self._wrap(group)), boolean=boolean)
            return self
        self.query.where(column, operator, value, boolean)
        return self

    def or_where(self, column: Any, operator: Any = _MISSING, value: Any = _MISSING) -> Builder:
        return self.where(column, operator, value, "or")

    def filter(self, **lookups: Any) -> Builder:
        self.query.filter(**lookups)
        return self

    def where_in(self, column: str, values: Iterable[Any], boolean: str = "and") -> Builder:
        self.query.where_in(column, values, boolean)
        return self

    def where_not_in(self, column: str, values: Iterable[Any], boolean: str = "and") -> Builder:
        self.query.where_not_in(column, values, boolean)
        return self

    def or_where_in(self, column: str, values: Iterable[Any]) -> Builder:
        return self.where_in(column, values, "or")

    def where_between(
        self, column: str, values: Sequence[Any], boolean: str = "and", not_between: bool = False
    ) -> Builder:
        self.query.where_between(column, values, boolean, not_between)
        return self

    def where_not_between(self, column: str, values: Sequence[Any], boolean: str = "and") -> Builder:
        return self.where_between(column, values, boolean, not_between=True)

    def or_where_between(self, column: str, values: Sequence[Any]) -> Builder:
        return self.where_between(column, values, "or")

    def where_null(self, column: str, boolean: str = "and") -> Builder:
        self.query.where_null(column, boolean)
        return self

    def where_not_null(self, column: str, boolean: str = "and") -> Builder:
        self.query.where_not_null(column, boolean)
        return self

    def where_column(
        self, first: str, operator: str, second: str | None = None, boolean: str = "and"
    ) -> Builder:
        self.query.where_column(first, operator, second, boolean)
        return self

    def where_key(self, id: Any) -> Builder:
        """Constrain by primary key: a value, a model, or a list of either."""
        from .models import Model

        key_name = self.get_model().get_qualified_key_name()
        if isinstance(id, Model):
            id = id.get_key()
        if isinstance(id, (list, tuple, set)):
            keys = [item.get_key() if isinstance(item, Model) else item for item in id]
            return self.where_in(key_name, unique_keys(keys))
        return self.where(key_name, "=", id)

    def where_key_not(self, id: Any) -> Builder:
        key_name = self.get_model().get_qualified_key_name()
        if isinstance(id, (list, tuple, set)):
            return self.where_not_in(key_name, unique_keys(id))
        return self.where(key_name, "!=", id)

    def join(self, table: str, first: str, operator: str, second: str | None = None) -> Builder:
        self.query.join(table, first, operator, second)
        return self

    def left_join(self, table: str, first: str, operator: str, second: str | None = None) -> Builder:
        self.query.left_join(table, first, operator, second)
        return self

    def order_by(self, column: Any, direction: str = "asc") -> Builder:
        self.query.order_by(column, direction)
        return self

    def _timestamp_column(self, column: str | None) -> str:
        if column is None:
            model = self.get_model()
            column = model.CREATED_AT if isinstance(model, Timestamped) else "created_at"
        return self.get_model().qualify_column(column)

    def latest(self, column: str | None = None) -> Builder:
        return self.order_by(self._timestamp_column(column), "desc")

    def oldest(self, column: str | None = None) -> Builder:
        return self.order_by(self._timestamp_column(column), "asc")

    def group_by(self, *columns: Any) -> Builder:
        self.query.group_by(*columns)
        return self

    def limit(self, count: int | None) -> Builder:
        self.query.limit(count)
        return self

    take = limit

    def offset(self, count: int | None) -> Builder:
        self.query.offset(count)
        return self

    skip = offset

    def for_page(self, page: int, per_page: int) -> Builder:
        self.query.for_page(page, per_page)
        return self

    def distinct(self) -> Builder:
        self.query.distinct()
        return self

    def merge_constraints_from(self, other: Builder) -> Builder:
        """Copy the where clauses and removed scopes of another builder."""
        for boolean, clause in other.get_query().wheres:
            self.query.where(clause, boolean=boolean)
        return self.without_global_scopes(other.removed_scopes())

    # --- Scopes ------------------------------------------------------------

    def with_global_scope(self, identifier: str, scope: GlobalScope) -> Builder:
        self._scopes[identifier] = scope
        return self

    def without_global_scope(self, scope: str | Scope | type[Scope]) -> Builder:
        if isinstance(scope, str):
            names = [scope]
        else:
            kind = scope if isinstance(scope, type) else type(scope)
            names = [name for name, value in self._scopes.items() if isinstance(value, kind)]
        for name in names:
            self._scopes.pop(name, None)
            if name not in self._removed_scopes:
                self._removed_scopes.append(name)
        return self

    def without_global_scopes(self, scopes: Iterable[str | Scope] | None = None) -> Builder:
        for scope in list(self._scopes) if scopes is None else scopes:
            self.without_global_scope(scope)
        return self

    def removed_scopes(self) -> list[str]:
        return list(self._removed_scopes)

    def scope(self, name: str, *args: Any, **kwargs: Any) -> Builder:
        """
        Apply a named local scope now.

        Example:
            >>> Post.query(db).scope("published").scope("by_author", user)
        """
        local_scope = self.get_model()._meta.local_scopes.get(name)
        if local_scope is None:
            raise ScopeNotFoundError(type(self.get_model()).__name__, name)
        result = local_scope(self, *args, **kwargs)
        return self if result is None else result

    def scopes(self, scopes: str | Iterable[Any] | Mapping[str, Any]) -> Builder:
        """Apply several local scopes; a mapping supplies each scope's arguments."""
        if isinstance(scopes, str):
            scopes = [scopes]
        if isinstance(scopes, Mapping):
            for name, args in scopes.items():
                args = args if isinstance(args, (list, tuple)) else [args]
                self.scope(name, *args)
            return self
        for name in scopes:
            self.scope(name)
        return self

    def apply_scopes(self) -> Builder:
        """
        A copy of this builder with every registered global scope applied.

        Always a copy, so terminal methods and relations may add columns or
        paging to the result without touching this builder.
        """
        builder = self.clone()
        if not self._scopes:
            return builder
        scopes, builder._scopes = builder._scopes, {}
        if any(boolean == "or" for boolean, _ in builder.query.wheres):
            builder.query.group_wheres()
        model = builder.get_model()
        for scope in scopes.values():
            if isinstance(scope, Scope):
                scope.apply(builder, model)
            else:
                scope(builder)
        return builder

    # --- Soft deletes ------------------------------------------------------

    def _soft_deleting_model(self) -> Any:
        model = self.get_model()
        if not isinstance(model, SoftDeletable):
            msg = f"{type(model).__name__} does not soft delete."
            raise InvalidArgumentError(msg)
        return model

    def with_trashed(self, with_trashed: bool = True) -> Builder:
        if not with_trashed:
            return self.without_trashed()
        self._soft_deleting_model()
        return self.without_global_scope(SoftDeletingScope.name)

    def without_trashed(self) -> Builder:
        model = self._soft_deleting_model()
        self.without_global_scope(SoftDeletingScope.name)
        return self.where_null(model.get_qualified_deleted_at_column())

    def only_trashed(self) -> Builder:
        model = self._soft_deleting_model()
        self.without_global_scope(SoftDeletingScope.name)
        return self.where_not_null(model.get_qualified_deleted_at_column())

    async def restore(self) -> int:
        model = self._soft_deleting_model()
        return await self.clone().with_trashed().update({model.DELETED_AT: None})

    async def force_delete(self) -> int:
        return await self.apply_scopes().query.delete()

    # --- Eager loading -----------------------------------------------------

    def with_(self, *relations: Any) -> Builder:
        """
        Register relations to eager load.

        Accepts names, dotted paths, ``"relation:col1,col2"``, lists,
        mappings of path -> constraint, and ``with_("name", constraint)``.
        Unknown top-level names raise ``RelationNotFoundError`` immediately;
        deeper segments are checked when their level is loaded.
        """
        parsed = parse_with_relations(normalize_with_arguments(relations))
        model = self.get_model()
        for name in top_level(parsed):
            if name not in model._meta.relations:
                raise RelationNotFoundError(type(model).__name__, name)
        self.eager_load = merge_eager_loads(self.eager_load, parsed)
        return self

    def without(self, *relations: str) -> Builder:
        for name in relations:
            self.eager_load = {
                path: constraint
                for path, constraint in self.eager_load.items()
                if path != name and not path.startswith(f"{name}.")
            }
        return self

    def relations_nested_under(self, relation: str) -> dict[str, Constraint]:
        return relations_nested_under(self.eager_load, relation)

    def get_relation(self, name: str) -> Relation:
        """
        Build an unconstrained relation template for an eager load, with the
        deeper paths of ``name`` pushed onto its query.
        """
        with no_constraints():
            relation = self.get_model().new_instance().related(name)

        nested = self.relations_nested_under(name)
        if nested:
            relation.get_query().with_(nested)
        return relation

    def get_relation_without_constraints(self, name: str) -> Relation:
        with no_constraints():
            return self.get_model().related(name)

    async def eager_load_relations(self, models: Sequence[Model]) -> Sequence[Model]:
        """
        Load every top-level eager path onto ``models``, one query per path.

        Paths run one after the other because they share one session;
        nested paths are loaded by the child relation's own builder once
        the children are fetched.

        Log lines of the pass are tagged ``<Model>#<batch id>`` unless the
        caller already opened a query cycle.
        """
        cycle = (
            nullcontext()
            if query_cycle.get() is not None
            else scoped_query_cycle(f"{type(self.get_model()).__name__}#{id(models):x}")
        )
        with cycle:
            for name, constraints in top_level(self.eager_load).items():
                models = await self.eager_load_relation(models, name, constraints)
        return models

    async def eager_load_relation(
        self, models: Sequence[Model], name: str, constraints: Constraint = noop
    ) -> Sequence[Model]:
        relation = self.get_relation(name)
        relation.add_eager_constraints(models)
        constraints(relation)
        logger.debug(
            f"Eager loading {type(self.get_model()).__name__}.{name} for {len(models)} models"
        )
        results = await relation.get_eager()
        return relation.match(relation.init_relation(models, name), results, name)

    # --- Relation existence ------------------------------------------------

    @staticmethod
    def _can_use_exists(operator: str, count: int) -> bool:
        return operator in (">=", "<") and count == 1

    def has(
        self,
        relation: str | Relation,
        operator: str = ">=",
        count: int = 1,
        boolean: str = "and",
        callback: Callable[[Builder], Any] | None = None,
    ) -> Builder:
        """
        Keep rows having related rows.

        Example:
            >>> User.query(db).has("posts")              # at least one
            >>> User.query(db).has("posts", ">=", 3)     # at least three
            >>> User.query(db).has("posts.comments")     # posts that have comments
        """
        if isinstance(relation, str):
            if "." in relation:
                return self.has_nested(relation, operator, count, boolean, callback)
            relation = self.get_relation_without_constraints(relation)

        related_query = relation.get_related().new_query_without_relationships()
        if self._can_use_exists(operator, count):
            has_query = relation.get_relation_existence_query(related_query, self)
        else:
            has_query = relation.get_relation_existence_count_query(related_query, self)

        if callback is not None:
            callback(has_query)
        has_query.merge_constraints_from(relation.get_query())
        has_query = has_query.apply_scopes()

        if self._can_use_exists(operator, count):
            not_exists = operator == "<" and count == 1
            self.query.where_exists(has_query.get_query(), boolean, not_exists)
        else:
            self.query.where_sub(has_query.get_query(), operator, count, boolean)
        return self

    def has_nested(
        self,
        relations: str,
        operator: str = ">=",
        count: int = 1,
        boolean: str = "and",
        callback: Callable[[Builder], Any] | None = None,
    ) -> Builder:
        names = relations.split(".")
        doesnt_have = operator == "<" and count == 1
        if doesnt_have:
            operator, count = ">=", 1

        def nested(query: Builder) -> None:
            name = names.pop(0)
            if len(names) > 0:
                query.where_has(name, nested)
            else:
                query.has(name, operator, count, "and", callback)

        return self.has(names.pop(0), "<" if doesnt_have else ">=", 1, boolean, nested)

    def or_has(self, relation: str, operator: str = ">=", count: int = 1) -> Builder:
        return self.has(relation, operator, count, "or")

    def doesnt_have(
        self,
        relation: str,
        boolean: str = "and",
        callback: Callable[[Builder], Any] | None = None,
    ) -> Builder:
        return self.has(relation, "<", 1, boolean, callback)

    def or_doesnt_have(self, relation: str) -> Builder:
        return self.doesnt_have(relation, "or")

    def where_has(
        self,
        relation: str,
        callback: Callable[[Builder], Any] | None = None,
        operator: str = ">=",
        count: int = 1,
    ) -> Builder:
        """
        Example:
            >>> User.query(db).where_has("posts", lambda q: q.where("votes", ">", 10))
        """
        return self.has(relation, operator, count, "and", callback)

    def or_where_has(
        self,
        relation: str,
        callback: Callable[[Builder], Any] | None = None,
        operator: str = ">=",
        count: int = 1,
    ) -> Builder:
        return self.has(relation, operator, count, "or", callback)

    def where_doesnt_have(
        self, relation: str, callback: Callable[[Builder], Any] | None = None
    ) -> Builder:
        return self.doesnt_have(relation, "and", callback)

    # --- Relation aggregates -----------------------------------------------

    def with_aggregate(self, relations: Any, column: str, function: str | None = None) -> Builder:
        """
        Select an aggregate of each relation as an extra column.

        The column is named ``<relation>_<function>_<column>`` in snake case
        (``posts_count``, ``posts_sum_votes``), or ``"posts as total"`` picks
        the name.
        """
        relations = normalize_with_arguments(
            relations if isinstance(relations, tuple) else (relations,)
        )
        if not relations:
            return self

        for name, constraints in relations.items():
            segments = name.split()
            alias = None
            if len(segments) == 3 and segments[1].lower() == "as":
                name, alias = segments[0], segments[2]

            relation = self.get_relation_without_constraints(name)
            related = relation.get_related()
            if function and function != "exists":
                if column == "*":
                    target = "*"
                elif related.get_table() == self.get_model().get_table():
                    target = f"{relation.get_relation_count_hash(increment=False)}.{column}"
                else:
                    target = related.qualify_column(column)
                expression = f"{function}({target})"
            else:
                expression = column if column == "*" else related.qualify_column(column)

            query = relation.get_relation_existence_query(
                related.new_query_without_relationships(), self, [literal_column(expression)]
            )
            if constraints:
                constraints(query)
            query.merge_constraints_from(relation.get_query())
            query = query.apply_scopes()

            alias = alias or snake_case(f"{name} {function or ''} {column}")
            if function == "exists":
                self.query.select_exists(query.get_query(), alias)
            elif function:
                self.query.select_sub(query.get_query(), alias)
            else:
                self.query.select_sub(query.get_query().limit(1), alias)
        return self

    def with_count(self, *relations: Any) -> Builder:
        """
        Example:
            >>> users = await User.query(db).with_count("posts").get()
            >>> users[0].get_attribute("posts_count")
            2
        """
        return self.with_aggregate(relations, "*", "count")

    def with_max(self, relation: Any, column: str) -> Builder:
        return self.with_aggregate(relation, column, "max")

    def with_min(self, relation: Any, column: str) -> Builder:
        return self.with_aggregate(relation, column, "min")

    def with_sum(self, relation: Any, column: str) -> Builder:
        return self.with_aggregate(relation, column, "sum")

    def with_avg(self, relation: Any, column: str) -> Builder:
        return self.with_aggregate(relation, column, "avg")

    def with_exists(self, *relations: Any) -> Builder:
        return self.with_aggregate(relations, "*", "exists")

    # --- Fetching ----------------------------------------------------------

    async def get_models(self, columns: list[Any] | None = None) -> list[Model]:
        """Run the query as is and hydrate every row; no scopes, no eager loads."""
        rows = await self.query.get(columns)
        return self.hydrate(rows)

    def hydrate(self, rows: Iterable[Mapping[str, Any]]) -> list[Model]:
        model = self.get_model()
        return [model.new_instance(row, exists=True) for row in rows]

    async def get(self, columns: list[Any] | None = None) -> Collection[Any]:
        """
        Fetch, hydrate and eager load.

        Example:
            >>> users = await User.query(db).with_("posts").get()
            >>> [len(u.get_relation("posts")) for u in users]
            [2, 1]
        """
        builder = self.apply_scopes()
        models = await builder.get_models(columns)
        if models:
            models = list(await builder.eager_load_relations(models))
        return builder.get_model().new_collection(models)

    async def first(self, columns: list[Any] | None = None) -> Any:
        results = await self.clone().take(1).get(columns)
        return results.first()

    async def first_or_fail(self, columns: list[Any] | None = None) -> Model:
        model = await self.first(columns)
        if model is None:
            raise ModelNotFoundError(type(self.get_model()).__name__)
        return model

    async def find(self, id: Any, columns: list[Any] | None = None) -> Any:
        """A model by primary key, or a collection when given a list."""
        if isinstance(id, (list, tuple, set)):
            return await self.find_many(id, columns)
        return await self.clone().where_key(id).first(columns)

    async def find_many(self, ids: Iterable[Any], columns: list[Any] | None = None) -> Collection[Any]:
        ids = list(ids)
        if not ids:
            return self.get_model().new_collection()
        return await self.clone().where_key(ids).get(columns)

    async def find_or_fail(self, id: Any, columns: list[Any] | None = None) -> Any:
        """
        Like ``find`` but raises ``ModelNotFoundError`` with the missing keys.

        For a list every distinct key must match a row.
        """
        result = await self.find(id, columns)
        name = type(self.get_model()).__name__
        if isinstance(id, (list, tuple, set)):
            wanted = unique_keys(id)
            found = {dictionary_key(key) for key in result.model_keys()}
            missing = [key for key in wanted if dictionary_key(key) not in found]
            if missing:
                raise ModelNotFoundError(name, missing)
            return result
        if result is None:
            raise ModelNotFoundError(name, [id])
        return result

    async def find_or_new(self, id: Any, columns: list[Any] | None = None) -> Model:
        model = await self.find(id, columns)
        return model if model is not None else self.new_model_instance()

    async def first_or_new(
        self, attributes: Mapping[str, Any], values: Mapping[str, Any] | None = None
    ) -> Model:
        model = await self.clone().where(dict(attributes)).first()
        if model is not None:
            return model
        return self.new_model_instance({**attributes, **(values or {})})

    async def first_or_create(
        self, attributes: Mapping[str, Any], values: Mapping[str, Any] | None = None
    ) -> Model:
        model = await self.first_or_new(attributes, values)
        if not model.exists:
            await model.save()
        return model

    async def update_or_create(
        self, attributes: Mapping[str, Any], values: Mapping[str, Any] | None = None
    ) -> Model:
        model = await self.first_or_new(attributes)
        model.fill(**(values or {}))
        await model.save()
        return model

    async def create(self, **attributes: Any) -> Model:
        model = self.new_model_instance(attributes)
        await model.save()
        return model

    async def count(self, column: str = "*") -> int:
        return await self.apply_scopes().query.count(column)

    async def exists(self) -> bool:
        return await self.apply_scopes().query.exists()

    async def doesnt_exist(self) -> bool:
        return not await self.exists()

    async def max(self, column: str) -> Any:
        return await self.apply_scopes().query.max(column)

    async def min(self, column: str) -> Any:
        return await self.apply_scopes().query.min(column)

    async def sum(self, column: str) -> Any:
        return await self.apply_scopes().query.sum(column)

    async def avg(self, column: str) -> Any:
        return await self.apply_scopes().query.avg(column)

    async def pluck(self, column: str) -> list[Any]:
        return await self.apply_scopes().query.pluck(column)

    async def paginate(
        self, per_page: int | None = None, page: int = 1, columns: list[Any] | None = None
    ) -> Paginator:
        """
        One page of models plus the total row count.

        Example:
            >>> page = await Post.query(db).latest().paginate(per_page=20, page=2)
            >>> page.last_page
            5
        """
        per_page = per_page or orm_settings.DEFAULT_PER_PAGE
        if page < 1 or not 1 <= per_page <= orm_settings.MAX_PER_PAGE:
            msg = (
                f"Invalid page {page} / per_page {per_page};"
                f" per_page must be between 1 and {orm_settings.MAX_PER_PAGE}."
            )
            raise InvalidArgumentError(msg)
        total = await self.count()
        items = await self.clone().for_page(page, per_page).get(columns) if total else (
            self.get_model().new_collection()
        )
        return Paginator(items=items, total=total, per_page=per_page, current_page=page)

    async def chunk(
        self, size: int, callback: Callable[[Collection[Any], int], Awaitable[Any] | Any]
    ) -> bool:
        """
        Feed results to ``callback(models, page)`` ``size`` rows at a time.

        Returning ``False`` from the callback stops the iteration.
        """
        if size < 1:
            msg = "Chunk size must be at least 1."
            raise InvalidArgumentError(msg)
        builder = self.clone()
        if not builder.query.orders:
            builder.order_by(builder.get_model().get_qualified_key_name())

        page = 1
        while True:
            results = await builder.clone().for_page(page, size).get()
            if not results:
                break
            outcome = callback(results, page)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if outcome is False:
                return False
            if len(results) < size:
                break
            page += 1
        return True

    # --- Writes ------------------------------------------------------------

    def _add_updated_at(self, values: dict[str, Any]) -> dict[str, Any]:
        model = self.get_model()
        if isinstance(model, Timestamped) and model.UPDATED_AT not in values:
            values[model.UPDATED_AT] = fresh_timestamp()
        return values

    async def update(self, values: Mapping[str, Any]) -> int:
        """Update every row matching the scoped query, touching ``updated_at``."""
        return await self.apply_scopes().query.update(self._add_updated_at(dict(values)))

    async def increment(self, column: str, amount: int | float = 1, extra: Mapping[str, Any] | None = None) -> int:
        values = self._add_updated_at(dict(extra or {}))
        return await self.apply_scopes().query.increment(column, amount, values)

    async def decrement(self, column: str, amount: int | float = 1, extra: Mapping[str, Any] | None = None) -> int:
        return await self.increment(column, -amount, extra)

    async def delete(self) -> int:
        """Delete matching rows; soft deleting models get ``deleted_at`` set instead."""
        model = self.get_model()
        if isinstance(model, SoftDeletable):
            return await self.update({model.DELETED_AT: fresh_timestamp()})
        return await self.apply_scopes().query.delete()

    async def insert(self, rows: Mapping[str, Any] | Iterable[Mapping[str, Any]]) -> int:
        return await self.query.insert(rows)

    async def transaction(self, fn: Callable[[Builder], Awaitable[Any] | Any]) -> Any:
        """Run ``fn(builder)`` inside ``atomic`` on this builder's session."""
        return await self.query.transaction(lambda _query: fn(self))

    def to_sql(self) -> tuple[str, dict[str, Any]]:
        return self.apply_scopes().query.to_sql()
