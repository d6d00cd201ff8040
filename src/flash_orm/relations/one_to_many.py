from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any, Hashable, Iterable, Mapping, Sequence

from ..utils import dictionary_key
from .base import Relation, constraints_enabled
from .defaults import SupportsDefaultModels

if TYPE_CHECKING:
    from ..builder import Builder
    from ..collection import Collection
    from ..models import Model


class OneToOneOrMany(Relation):
    """
    Shared logic of ``has_one`` / ``has_many``: the related table holds a
    foreign key pointing at the parent's local key.
    """

    def __init__(self, query: Builder, parent: Model, foreign_key: str, local_key: str):
        # foreign_key is qualified: "posts.user_id"
        self.foreign_key = foreign_key
        self.local_key = local_key
        super().__init__(query, parent)

    def add_constraints(self) -> None:
        if constraints_enabled():
            self.query.where(self.foreign_key, "=", self.get_parent_key())
            self.query.where_not_null(self.foreign_key)

    def add_eager_constraints(self, models: Sequence[Model]) -> None:
        self.query.where_in(self.foreign_key, self.get_keys(models, self.local_key))

    def build_dictionary(self, results: Iterable[Model]) -> dict[Hashable, list[Model]]:
        foreign = self.get_foreign_key_name()
        dictionary: dict[Hashable, list[Model]] = defaultdict(list)
        for result in results:
            dictionary[dictionary_key(result.get_attribute(foreign))].append(result)
        return dictionary

    def match_one_or_many(
        self, models: Sequence[Model], results: Iterable[Model], relation: str, kind: str
    ) -> Sequence[Model]:
        dictionary = self.build_dictionary(results)
        for model in models:
            key = dictionary_key(model.get_attribute(self.local_key))
            if key is not None and key in dictionary:
                matches = dictionary[key]
                value = matches[0] if kind == "one" else self.related.new_collection(matches)
                model.set_relation(relation, value)
        return models

    def get_parent_key(self) -> Any:
        return self.parent.get_attribute(self.local_key)

    def get_foreign_key_name(self) -> str:
        return self.foreign_key.split(".")[-1]

    def get_qualified_foreign_key_name(self) -> str:
        return self.foreign_key

    def get_local_key_name(self) -> str:
        return self.local_key

    def get_qualified_parent_key_name(self) -> str:
        return self.parent.qualify_column(self.local_key)

    def get_existence_compare_key(self) -> str:
        return self.get_qualified_foreign_key_name()

    def get_relation_existence_query(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        if query.get_query().table == parent_query.get_query().table:
            return self.get_relation_existence_query_for_self_relation(query, parent_query, columns)
        return super().get_relation_existence_query(query, parent_query, columns)

    def get_relation_existence_query_for_self_relation(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        alias = self.get_relation_count_hash()
        query.from_(f"{query.get_model().get_table()} as {alias}")
        query.get_model().set_table(alias)
        return query.select(*columns).where_column(
            self.get_qualified_parent_key_name(), "=", f"{alias}.{self.get_foreign_key_name()}"
        )

    # --- Writes --------------------------------------------------------------

    def set_foreign_attributes_for_create(self, model: Model) -> Model:
        model.set_attribute(self.get_foreign_key_name(), self.get_parent_key())
        return model

    def make(self, **attributes: Any) -> Model:
        """A new, unsaved related model with the foreign key filled in."""
        return self.set_foreign_attributes_for_create(self.related.new_instance(attributes))

    async def create(self, **attributes: Any) -> Model:
        """
        Example:
            >>> post = await user.related("posts").create(title="Hello")
            >>> post.user_id == user.id
            True
        """
        model = self.make(**attributes)
        await model.save()
        return model

    async def create_many(self, records: Iterable[Mapping[str, Any]]) -> Collection[Any]:
        return self.related.new_collection([await self.create(**record) for record in records])

    async def save(self, model: Model) -> Model:
        self.set_foreign_attributes_for_create(model)
        await model.save()
        return model

    async def save_many(self, models: Iterable[Model]) -> list[Model]:
        return [await self.save(model) for model in models]


class OneToOne(SupportsDefaultModels, OneToOneOrMany):
    """``has_one``: at most one related row per parent."""

    def init_relation(self, models: Sequence[Model], relation: str) -> Sequence[Model]:
        for model in models:
            model.set_relation(relation, self.get_default_for(model))
        return models

    def match(self, models: Sequence[Model], results: Collection[Any], relation: str) -> Sequence[Model]:
        return self.match_one_or_many(models, results, relation, "one")

    def new_related_instance_for(self, parent: Model) -> Model:
        return self.related.new_instance().set_attribute(
            self.get_foreign_key_name(), parent.get_attribute(self.local_key)
        )

    async def get_results(self) -> Model | None:
        if self.get_parent_key() is None:
            return self.get_default_for(self.parent)
        return (await self.query.first()) or self.get_default_for(self.parent)


class OneToMany(OneToOneOrMany):
    """``has_many``: a collection of related rows per parent."""

    def init_relation(self, models: Sequence[Model], relation: str) -> Sequence[Model]:
        for model in models:
            model.set_relation(relation, self.related.new_collection())
        return models

    def match(self, models: Sequence[Model], results: Collection[Any], relation: str) -> Sequence[Model]:
        return self.match_one_or_many(models, results, relation, "many")

    async def get_results(self) -> Collection[Any]:
        if self.get_parent_key() is None:
            return self.related.new_collection()
        return await self.query.get()
