from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any, Hashable, Iterable, Sequence

from ..exceptions import ModelNotFoundError
from ..interfaces import SoftDeletable
from ..utils import dictionary_key, unique_keys
from .base import ChunkCallback, Relation, constraints_enabled
from .defaults import SupportsDefaultModels

if TYPE_CHECKING:
    from ..builder import Builder
    from ..collection import Collection
    from ..models import Model
    from ..pagination import Paginator

THROUGH_KEY = "flash_through_key"
THROUGH_SCOPE = "soft_deleted_through_parent"


class OneToManyThrough(Relation):
    """
    Reach related rows through an intermediate table.

    For ``Country -> User -> Post`` (``users.country_id``, ``posts.user_id``):

    - ``first_key``: column on the intermediate table pointing at the far
      parent (``users.country_id``);
    - ``second_key``: column on the related table pointing at the
      intermediate row (``posts.user_id``);
    - ``local_key``: key of the far parent (``countries.id``);
    - ``second_local_key``: key of the intermediate table (``users.id``).

    Fetched rows carry ``first_key`` as ``flash_through_key``, which is what
    they are matched back to their far parent by.
    """

    def __init__(
        self,
        query: Builder,
        far_parent: Model,
        through_parent: Model,
        first_key: str,
        second_key: str,
        local_key: str,
        second_local_key: str,
    ):
        self.far_parent = far_parent
        self.through_parent = through_parent
        self.first_key = first_key
        self.second_key = second_key
        self.local_key = local_key
        self.second_local_key = second_local_key
        super().__init__(query, through_parent)

    # --- Constraints -------------------------------------------------------

    def add_constraints(self) -> None:
        self.perform_join()
        if constraints_enabled():
            self.query.where(
                self.get_qualified_first_key_name(),
                "=",
                self.far_parent.get_attribute(self.local_key),
            )

    def perform_join(self, query: Builder | None = None) -> None:
        query = query or self.query
        query.join(
            self.through_parent.get_table(),
            self.get_qualified_parent_key_name(),
            "=",
            self.get_qualified_far_key_name(),
        )
        if self.through_parent_soft_deletes():
            column = self.through_parent.get_qualified_deleted_at_column()  # type: ignore[attr-defined]
            query.with_global_scope(THROUGH_SCOPE, lambda builder: builder.where_null(column))

    def through_parent_soft_deletes(self) -> bool:
        return isinstance(self.through_parent, SoftDeletable)

    def with_trashed_parents(self) -> OneToManyThrough:
        """Include rows reached through soft deleted intermediate rows."""
        self.query.without_global_scope(THROUGH_SCOPE)
        return self

    def add_eager_constraints(self, models: Sequence[Model]) -> None:
        self.query.where_in(
            self.get_qualified_first_key_name(), self.get_keys(models, self.local_key)
        )

    # --- Matching ----------------------------------------------------------

    def init_relation(self, models: Sequence[Model], relation: str) -> Sequence[Model]:
        for model in models:
            model.set_relation(relation, self.related.new_collection())
        return models

    def build_dictionary(self, results: Iterable[Model]) -> dict[Hashable, list[Model]]:
        dictionary: dict[Hashable, list[Model]] = defaultdict(list)
        for result in results:
            dictionary[dictionary_key(result.get_attribute(THROUGH_KEY))].append(result)
        return dictionary

    def match(self, models: Sequence[Model], results: Collection[Any], relation: str) -> Sequence[Model]:
        dictionary = self.build_dictionary(results)
        for model in models:
            key = dictionary_key(model.get_attribute(self.local_key))
            if key is not None and key in dictionary:
                model.set_relation(relation, self.related.new_collection(dictionary[key]))
        return models

    # --- Fetching ----------------------------------------------------------

    async def get_results(self) -> Any:
        if self.far_parent.get_attribute(self.local_key) is None:
            return self.related.new_collection()
        return await self.get()

    def should_select(self, columns: list[Any]) -> list[Any]:
        if columns == ["*"]:
            columns = [f"{self.related.get_table()}.*"]
        return [*columns, f"{self.get_qualified_first_key_name()} as {THROUGH_KEY}"]

    def prepare_query_builder(self, columns: list[Any] | None = None) -> Builder:
        builder = self.query.apply_scopes()
        if builder.get_query().columns:
            return builder.add_select(f"{self.get_qualified_first_key_name()} as {THROUGH_KEY}")
        return builder.select(*self.should_select(columns or ["*"]))

    async def get(self, columns: list[Any] | None = None) -> Collection[Any]:
        builder = self.prepare_query_builder(columns)
        models = await builder.get_models()
        if models:
            models = await builder.eager_load_relations(models)
        return self.related.new_collection(models)

    async def paginate(
        self, per_page: int | None = None, page: int = 1, columns: list[Any] | None = None
    ) -> Paginator:
        """One page of related models, each carrying ``flash_through_key``."""
        return await self.prepare_query_builder(columns).paginate(per_page, page)

    async def chunk(self, size: int, callback: ChunkCallback) -> bool:
        return await self.prepare_query_builder().chunk(size, callback)

    async def first(self, columns: list[Any] | None = None) -> Model | None:
        results = await self.clone().take(1).get(columns)
        return results.first()

    async def first_or_fail(self, columns: list[Any] | None = None) -> Model:
        model = await self.first(columns)
        if model is None:
            raise ModelNotFoundError(type(self.related).__name__)
        return model

    async def find(self, id: Any, columns: list[Any] | None = None) -> Any:
        """
        Find related rows by their own key, a list returns a collection.

        Example:
            >>> await country.related("posts").find(10)
        """
        if isinstance(id, (list, tuple, set)):
            return await self.find_many(id, columns)
        relation = self.clone().where(self.related.get_qualified_key_name(), "=", id)
        return await relation.first(columns)

    async def find_many(self, ids: Iterable[Any], columns: list[Any] | None = None) -> Collection[Any]:
        ids = list(ids)
        if not ids:
            return self.related.new_collection()
        relation = self.clone().where_in(self.related.get_qualified_key_name(), ids)
        return await relation.get(columns)

    async def find_or_fail(self, id: Any, columns: list[Any] | None = None) -> Any:
        result = await self.find(id, columns)
        if isinstance(id, (list, tuple, set)):
            wanted = unique_keys(id)
            found = {dictionary_key(key) for key in result.model_keys()}
            missing = [key for key in wanted if dictionary_key(key) not in found]
            if missing:
                raise ModelNotFoundError(type(self.related).__name__, missing)
            return result
        if result is None:
            raise ModelNotFoundError(type(self.related).__name__, [id])
        return result

    # --- Key names ---------------------------------------------------------

    def get_qualified_first_key_name(self) -> str:
        return self.through_parent.qualify_column(self.first_key)

    def get_qualified_far_key_name(self) -> str:
        return self.related.qualify_column(self.second_key)

    def get_qualified_parent_key_name(self) -> str:
        return self.through_parent.qualify_column(self.second_local_key)

    def get_qualified_local_key_name(self) -> str:
        return self.far_parent.qualify_column(self.local_key)

    def get_existence_compare_key(self) -> str:
        return self.get_qualified_first_key_name()

    def qualify_select_column(self, column: str) -> str:
        return self.related.qualify_column(column)

    # --- Existence queries -------------------------------------------------

    def get_relation_existence_query(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        if parent_query.get_query().table == query.get_query().table:
            return self.get_relation_existence_query_for_self_relation(query, parent_query, columns)
        if parent_query.get_query().table == self.through_parent.get_table():
            return self.get_relation_existence_query_for_through_self_relation(
                query, parent_query, columns
            )
        self.perform_join(query)
        return query.select(*columns).where_column(
            self.get_qualified_local_key_name(), "=", self.get_qualified_first_key_name()
        )

    def get_relation_existence_query_for_self_relation(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        alias = self.get_relation_count_hash()
        query.from_(f"{query.get_model().get_table()} as {alias}")
        query.join(
            self.through_parent.get_table(),
            self.get_qualified_parent_key_name(),
            "=",
            f"{alias}.{self.second_key}",
        )
        if self.through_parent_soft_deletes():
            query.where_null(self.through_parent.get_qualified_deleted_at_column())  # type: ignore[attr-defined]
        query.get_model().set_table(alias)
        return query.select(*columns).where_column(
            f"{parent_query.get_query().from_name}.{self.local_key}",
            "=",
            self.get_qualified_first_key_name(),
        )

    def get_relation_existence_query_for_through_self_relation(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        alias = self.get_relation_count_hash()
        query.join(
            f"{self.through_parent.get_table()} as {alias}",
            f"{alias}.{self.second_local_key}",
            "=",
            self.get_qualified_far_key_name(),
        )
        if self.through_parent_soft_deletes():
            query.where_null(f"{alias}.{self.through_parent.DELETED_AT}")  # type: ignore[attr-defined]
        return query.select(*columns).where_column(
            self.get_qualified_local_key_name(), "=", f"{alias}.{self.first_key}"
        )


class OneToOneThrough(SupportsDefaultModels, OneToManyThrough):
    """``has_one_through``: the first related row reached through the intermediate table."""

    def init_relation(self, models: Sequence[Model], relation: str) -> Sequence[Model]:
        for model in models:
            model.set_relation(relation, self.get_default_for(model))
        return models

    def match(self, models: Sequence[Model], results: Collection[Any], relation: str) -> Sequence[Model]:
        dictionary = self.build_dictionary(results)
        for model in models:
            key = dictionary_key(model.get_attribute(self.local_key))
            if key is not None and key in dictionary:
                model.set_relation(relation, dictionary[key][0])
        return models

    def new_related_instance_for(self, parent: Model) -> Model:
        return self.related.new_instance()

    async def get_results(self) -> Model | None:
        if self.far_parent.get_attribute(self.local_key) is None:
            return self.get_default_for(self.far_parent)
        return (await self.first()) or self.get_default_for(self.far_parent)
