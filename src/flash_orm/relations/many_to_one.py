from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

from ..interfaces import Attributable, Relatable
from ..utils import dictionary_key, unique_keys
from .base import Relation, constraints_enabled
from .defaults import SupportsDefaultModels

if TYPE_CHECKING:
    from ..builder import Builder
    from ..collection import Collection
    from ..models import Model


class ManyToOne(SupportsDefaultModels, Relation):
    """
    ``belongs_to``: the parent (child row) holds the foreign key, the related
    model owns the referenced key.

    Example:
        >>> class Post(Model):
        ...     @relation
        ...     def author(self):
        ...         return self.belongs_to(User, "user_id", relation="author")
    """

    def __init__(
        self,
        query: Builder,
        child: Model,
        foreign_key: str,
        owner_key: str,
        relation_name: str,
    ):
        self.child = child
        self.foreign_key = foreign_key
        self.owner_key = owner_key
        self.relation_name = relation_name
        super().__init__(query, child)

    def add_constraints(self) -> None:
        if constraints_enabled():
            self.query.where(
                self.related.qualify_column(self.owner_key),
                "=",
                self.child.get_attribute(self.foreign_key),
            )

    def add_eager_constraints(self, models: Sequence[Model]) -> None:
        self.query.where_in(
            self.related.qualify_column(self.owner_key), self.get_eager_model_keys(models)
        )

    def get_eager_model_keys(self, models: Sequence[Model]) -> list[Any]:
        return unique_keys(model.get_attribute(self.foreign_key) for model in models)

    def init_relation(self, models: Sequence[Model], relation: str) -> Sequence[Model]:
        for model in models:
            model.set_relation(relation, self.get_default_for(model))
        return models

    def match(self, models: Sequence[Model], results: Collection[Any], relation: str) -> Sequence[Model]:
        dictionary = {
            dictionary_key(result.get_attribute(self.owner_key)): result for result in results
        }
        for model in models:
            key = dictionary_key(model.get_attribute(self.foreign_key))
            if key is not None and key in dictionary:
                model.set_relation(relation, dictionary[key])
        return models

    async def get_results(self) -> Model | None:
        if self.child.get_attribute(self.foreign_key) is None:
            return self.get_default_for(self.parent)
        return (await self.query.first()) or self.get_default_for(self.parent)

    def new_related_instance_for(self, parent: Model) -> Model:
        return self.related.new_instance()

    def associate(self, model: Model | Any) -> Model:
        """Point the child at ``model`` (or a raw key) and cache the relation."""
        is_model = isinstance(model, Attributable)
        owner_key = model.get_attribute(self.owner_key) if is_model else model
        self.child.set_attribute(self.foreign_key, owner_key)
        if is_model and isinstance(model, Relatable):
            self.child.set_relation(self.relation_name, model)
        else:
            self.child.unset_relation(self.relation_name)
        return self.child

    def dissociate(self) -> Model:
        self.child.set_attribute(self.foreign_key, None)
        return self.child.set_relation(self.relation_name, None)

    def get_foreign_key_name(self) -> str:
        return self.foreign_key

    def get_qualified_foreign_key_name(self) -> str:
        return self.child.qualify_column(self.foreign_key)

    def get_owner_key_name(self) -> str:
        return self.owner_key

    def get_qualified_owner_key_name(self) -> str:
        return self.related.qualify_column(self.owner_key)

    def get_relation_name(self) -> str:
        return self.relation_name

    def get_relation_existence_query(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        if parent_query.get_query().table == query.get_query().table:
            return self.get_relation_existence_query_for_self_relation(query, parent_query, columns)
        return query.select(*columns).where_column(
            self.get_qualified_foreign_key_name(),
            "=",
            query.get_model().qualify_column(self.owner_key),
        )

    def get_relation_existence_query_for_self_relation(
        self, query: Builder, parent_query: Builder, columns: Sequence[Any] = ("*",)
    ) -> Builder:
        alias = self.get_relation_count_hash()
        query.from_(f"{query.get_model().get_table()} as {alias}")
        query.get_model().set_table(alias)
        return query.select(*columns).where_column(
            f"{alias}.{self.owner_key}", "=", self.get_qualified_foreign_key_name()
        )
