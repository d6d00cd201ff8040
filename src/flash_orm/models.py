from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Iterable, Mapping, Self

from .collection import Collection
from .exceptions import InvalidArgumentError, RelationNotFoundError
from .interfaces import Relatable, SoftDeletable, Timestamped
from .scopes import SoftDeletingScope, normalize_global_scopes
from .utils import dictionary_key, fresh_timestamp, snake_case

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from .builder import Builder
    from .relations import (
        ManyToMany,
        ManyToOne,
        OneToMany,
        OneToManyThrough,
        OneToOne,
        OneToOneThrough,
        Relation,
    )
    from .scopes import GlobalScope

_ACCESSOR = re.compile(r"^(get|set)_(\w+)_attribute$")


def relation(fn: Callable[..., Relation]) -> Callable[..., Relation]:
    """
    Register a method as a named relation of its model.

    Example:
        >>> class User(Model):
        ...     @relation
        ...     def posts(self):
        ...         return self.has_many(Post)
    """
    fn.__flash_relation__ = True  # type: ignore[attr-defined]
    return fn


def scope(fn: Callable[..., Any]) -> staticmethod:
    """
    Register a named local scope, invoked as ``builder.scope("name", *args)``.

    Example:
        >>> class Post(Model):
        ...     @scope
        ...     def published(query, year=None):
        ...         query.where_not_null("published_at")
    """
    fn.__flash_scope__ = True  # type: ignore[attr-defined]
    return staticmethod(fn)


@dataclass(frozen=True)
class ModelOptions:
    """Read-only registry built once per model class."""

    table: str
    primary_key: str
    key_type: str
    incrementing: bool
    columns: tuple[str, ...]
    relations: Mapping[str, Callable[..., Relation]]
    local_scopes: Mapping[str, Callable[..., Any]]
    global_scopes: Mapping[str, GlobalScope]
    getters: Mapping[str, Callable[[Any, Any], Any]]
    setters: Mapping[str, Callable[[Any, Any], Any]]
    default_with: tuple[Any, ...]
    hidden: frozenset[str]
    appends: tuple[str, ...]


def build_options(cls: type[Model]) -> ModelOptions:
    relations: dict[str, Callable[..., Relation]] = {}
    local_scopes: dict[str, Callable[..., Any]] = {}
    getters: dict[str, Callable[[Any, Any], Any]] = {}
    setters: dict[str, Callable[[Any, Any], Any]] = {}

    for klass in reversed(cls.__mro__):
        for name, value in vars(klass).items():
            if getattr(value, "__flash_relation__", False):
                relations[name] = value
            elif isinstance(value, staticmethod) and getattr(
                value.__func__, "__flash_scope__", False
            ):
                local_scopes[name] = value.__func__
            elif callable(value) and (match := _ACCESSOR.match(name)):
                target = getters if match.group(1) == "get" else setters
                target[match.group(2)] = value

    global_scopes = dict(normalize_global_scopes(cls.__global_scopes__))
    if issubclass(cls, SoftDeleteMixin):
        global_scopes.setdefault(SoftDeletingScope.name, SoftDeletingScope())

    key = cls.__primary_key__
    columns = tuple(dict.fromkeys((key, *cls.__columns__)))
    return ModelOptions(
        table=cls.__tablename__ or f"{snake_case(cls.__name__)}s",
        primary_key=key,
        key_type=cls.__key_type__,
        incrementing=cls.__incrementing__,
        columns=columns,
        relations=MappingProxyType(relations),
        local_scopes=MappingProxyType(local_scopes),
        global_scopes=MappingProxyType(global_scopes),
        getters=MappingProxyType(getters),
        setters=MappingProxyType(setters),
        default_with=tuple(cls.__with__),
        hidden=frozenset(cls.__hidden__),
        appends=tuple(cls.__appends__),
    )


def _column_property(name: str) -> property:
    def fget(self: Model) -> Any:
        return self.get_attribute(name)

    def fset(self: Model, value: Any) -> None:
        self.set_attribute(name, value)

    return property(fget, fset, doc=f"The '{name}' attribute.")


class TimestampMixin:
    """Maintains ``created_at`` on insert and ``updated_at`` on every save."""

    CREATED_AT: ClassVar[str] = "created_at"
    UPDATED_AT: ClassVar[str] = "updated_at"
    __columns__: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")

    def fresh_timestamp(self) -> datetime:
        return fresh_timestamp()

    def update_timestamps(self: Any) -> None:
        now = self.fresh_timestamp()
        if not self.is_dirty(self.UPDATED_AT):
            self.set_attribute(self.UPDATED_AT, now)
        if not self.exists and not self.is_dirty(self.CREATED_AT):
            self.set_attribute(self.CREATED_AT, now)


class SoftDeleteMixin:
    """
    Flags rows deleted through ``deleted_at`` instead of removing them.

    Queries of a soft deleting model hide trashed rows through
    ``SoftDeletingScope``; use ``with_trashed()`` or ``only_trashed()`` to
    see them.
    """

    DELETED_AT: ClassVar[str] = "deleted_at"
    __columns__: ClassVar[tuple[str, ...]] = ("deleted_at",)

    def get_qualified_deleted_at_column(self: Any) -> str:
        return self.qualify_column(self.DELETED_AT)

    def trashed(self: Any) -> bool:
        return self.get_attribute(self.DELETED_AT) is not None

    async def run_soft_delete(self: Any) -> None:
        now = fresh_timestamp()
        columns = {self.DELETED_AT: now}
        self.set_attribute(self.DELETED_AT, now)
        if isinstance(self, Timestamped):
            columns[self.UPDATED_AT] = now
            self.set_attribute(self.UPDATED_AT, now)
        query = self.set_keys_for_save_query(self.new_model_query())
        await query.get_query().update(columns)
        self.sync_original()

    async def restore(self: Any) -> bool:
        self.set_attribute(self.DELETED_AT, None)
        return await self.save()


class Model:
    """
    Active-Record base class.

    Subclasses describe their table and relations; instances hold attribute
    values, loaded relations and the session they were read with.

    Example:
        >>> class User(Model, TimestampMixin):
        ...     __tablename__ = "users"
        ...     __columns__ = ("name", "email")
        ...
        ...     @relation
        ...     def posts(self):
        ...         return self.has_many(Post)
        ...
        >>> users = await User.query(db).with_("posts").get()
    """

    __abstract__: ClassVar[bool] = True
    __tablename__: ClassVar[str | None] = None
    __primary_key__: ClassVar[str] = "id"
    __key_type__: ClassVar[str] = "int"
    __incrementing__: ClassVar[bool] = True
    __columns__: ClassVar[tuple[str, ...]] = ()
    __with__: ClassVar[tuple[Any, ...]] = ()
    __hidden__: ClassVar[tuple[str, ...]] = ()
    __appends__: ClassVar[tuple[str, ...]] = ()
    __global_scopes__: ClassVar[Any] = None

    _meta: ClassVar[ModelOptions]

    def __init_subclass__(cls, **kwargs: Any):
        super().__init_subclass__(**kwargs)
        if cls.__dict__.get("__abstract__", False):
            return
        cls.__columns__ = tuple(
            dict.fromkeys(
                col
                for klass in reversed(cls.__mro__)
                for col in vars(klass).get("__columns__", ())
            )
        )
        cls._meta = build_options(cls)
        for name in (*cls._meta.columns, *cls._meta.getters):
            if not hasattr(cls, name):
                setattr(cls, name, _column_property(name))

    def __init__(self, **attributes: Any):
        self._attributes: dict[str, Any] = {}
        self._original: dict[str, Any] = {}
        self._relations: dict[str, Any] = {}
        self._exists = False
        self._db: AsyncSession | None = None
        self._table: str | None = None
        self.fill(**attributes)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.get_key_name()}={self.get_key()!r}>"

    # --- Session -------------------------------------------------------

    @property
    def db(self) -> AsyncSession | None:
        return self._db

    def set_db(self, db: AsyncSession | None) -> Self:
        self._db = db
        return self

    @property
    def exists(self) -> bool:
        return self._exists

    # --- Table and keys --------------------------------------------------

    def get_table(self) -> str:
        return self._table or self._meta.table

    def set_table(self, table: str) -> Self:
        self._table = table
        return self

    def get_key_name(self) -> str:
        return self._meta.primary_key

    def get_key_type(self) -> str:
        return self._meta.key_type

    def get_key(self) -> Any:
        return self._attributes.get(self.get_key_name())

    def get_qualified_key_name(self) -> str:
        return self.qualify_column(self.get_key_name())

    def qualify_column(self, column: str) -> str:
        if "." in column:
            return column
        return f"{self.get_table()}.{column}"

    def get_foreign_key(self) -> str:
        """Default foreign key pointing at this model, e.g. ``user_id``."""
        return f"{snake_case(type(self).__name__)}_{self.get_key_name()}"

    def is_(self, other: Model | None) -> bool:
        """Same table and same primary key."""
        return (
            other is not None
            and self.get_table() == other.get_table()
            and self.get_key() is not None
            and dictionary_key(self.get_key()) == dictionary_key(other.get_key())
        )

    # --- Attributes ------------------------------------------------------

    def get_attribute(self, name: str) -> Any:
        getter = self._meta.getters.get(name)
        value = self._attributes.get(name)
        if getter is not None:
            return getter(self, value)
        return value

    def set_attribute(self, name: str, value: Any) -> Self:
        setter = self._meta.setters.get(name)
        if setter is not None:
            value = setter(self, value)
        self._attributes[name] = value
        return self

    def get_attributes(self) -> dict[str, Any]:
        return dict(self._attributes)

    def set_raw_attributes(self, attributes: Mapping[str, Any], sync: bool = False) -> Self:
        self._attributes = dict(attributes)
        if sync:
            self.sync_original()
        return self

    def forget_attribute(self, name: str) -> Self:
        self._attributes.pop(name, None)
        self._original.pop(name, None)
        return self

    def fill(self, **attributes: Any) -> Self:
        for name, value in attributes.items():
            self.set_attribute(name, value)
        return self

    def get_original(self, name: str | None = None) -> Any:
        if name is None:
            return dict(self._original)
        return self._original.get(name)

    def sync_original(self) -> Self:
        self._original = dict(self._attributes)
        return self

    def get_dirty(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in self._attributes.items()
            if name not in self._original or self._original[name] != value
        }

    def is_dirty(self, *names: str) -> bool:
        dirty = self.get_dirty()
        if not names:
            return bool(dirty)
        return any(name in dirty for name in names)

    # --- Relations -------------------------------------------------------

    def get_relation(self, name: str, default: Any = None) -> Any:
        return self._relations.get(name, default)

    def set_relation(self, name: str, value: Any) -> Self:
        self._relations[name] = value
        return self

    def unset_relation(self, name: str) -> Self:
        self._relations.pop(name, None)
        return self

    def relation_loaded(self, name: str) -> bool:
        return name in self._relations

    def get_relations(self) -> dict[str, Any]:
        return dict(self._relations)

    def related(self, name: str) -> Relation:
        """
        Build the relation registered under ``name``, constrained to this model.

        Example:
            >>> posts = await user.related("posts").where("votes", ">", 5).get()
        """
        resolver = self._meta.relations.get(name)
        if resolver is None:
            raise RelationNotFoundError(type(self).__name__, name)
        return resolver(self)

    async def get_related(self, name: str) -> Any:
        """Loaded value of a relation, fetching and caching it on first access."""
        if not self.relation_loaded(name):
            self.set_relation(name, await self.related(name).get_results())
        return self._relations[name]

    async def load(self, *relations: Any) -> Self:
        """Eager load relations onto this model, e.g. ``await post.load("comments")``."""
        builder = self.new_query_without_relationships().with_(*relations)
        await builder.eager_load_relations([self])
        return self

    def new_collection(self, items: Iterable[Any] = ()) -> Collection[Any]:
        return Collection(items)

    # --- Instances and queries -------------------------------------------

    def new_instance(self, attributes: Mapping[str, Any] | None = None, exists: bool = False) -> Self:
        """
        A new model of the same class sharing session and table.

        ``exists=True`` stores ``attributes`` raw and marks them clean, which
        is how fetched rows are hydrated.
        """
        model = self.__class__()
        model._db = self._db
        model._table = self._table
        if exists:
            model.set_raw_attributes(attributes or {}, sync=True)
        else:
            model.fill(**(attributes or {}))
        model._exists = exists
        return model

    def new_related_instance(self, related: type[Model]) -> Model:
        return related().set_db(self._db)

    @classmethod
    def query(cls, db: AsyncSession | None) -> Builder:
        """
        Start a query for this model on ``db``.

        Example:
            >>> await User.query(db).where("name", "A").first()
        """
        return cls().set_db(db).new_query()

    @classmethod
    async def create(cls, db: AsyncSession, **attributes: Any) -> Self:
        """Insert a new row and return the saved model."""
        return await cls.query(db).create(**attributes)

    def new_model_query(self) -> Builder:
        from .builder import Builder
        from .query import Query

        return Builder(Query(self._db, self.get_table())).set_model(self)

    def register_global_scopes(self, builder: Builder) -> Builder:
        for name, global_scope in self._meta.global_scopes.items():
            builder.with_global_scope(name, global_scope)
        return builder

    def new_query_without_scopes(self) -> Builder:
        return self.new_model_query().with_(*self._meta.default_with)

    def new_query_without_relationships(self) -> Builder:
        return self.register_global_scopes(self.new_model_query())

    def new_query(self) -> Builder:
        return self.register_global_scopes(self.new_query_without_scopes())

    # --- Relation factories ----------------------------------------------

    def has_one(
        self, related: type[Model], foreign_key: str | None = None, local_key: str | None = None
    ) -> OneToOne:
        from .relations import OneToOne

        instance = self.new_related_instance(related)
        foreign_key = foreign_key or self.get_foreign_key()
        return OneToOne(
            instance.new_query(),
            self,
            instance.qualify_column(foreign_key),
            local_key or self.get_key_name(),
        )

    def has_many(
        self, related: type[Model], foreign_key: str | None = None, local_key: str | None = None
    ) -> OneToMany:
        from .relations import OneToMany

        instance = self.new_related_instance(related)
        foreign_key = foreign_key or self.get_foreign_key()
        return OneToMany(
            instance.new_query(),
            self,
            instance.qualify_column(foreign_key),
            local_key or self.get_key_name(),
        )

    def belongs_to(
        self,
        related: type[Model],
        foreign_key: str | None = None,
        owner_key: str | None = None,
        *,
        relation: str,
    ) -> ManyToOne:
        """
        The owning side of a one-to-many relation.

        ``relation`` must be the name the relation is registered under; it is
        used by ``associate()`` and ``dissociate()``.
        """
        from .relations import ManyToOne

        instance = self.new_related_instance(related)
        foreign_key = foreign_key or instance.get_foreign_key()
        return ManyToOne(
            instance.new_query(),
            self,
            foreign_key,
            owner_key or instance.get_key_name(),
            relation,
        )

    def joining_table(self, related: type[Model]) -> str:
        """Default pivot table: both snake-cased class names, sorted, joined by ``_``."""
        names = sorted([snake_case(type(self).__name__), snake_case(related.__name__)])
        return "_".join(names)

    def belongs_to_many(
        self,
        related: type[Model],
        table: str | None = None,
        foreign_pivot_key: str | None = None,
        related_pivot_key: str | None = None,
        parent_key: str | None = None,
        related_key: str | None = None,
    ) -> ManyToMany:
        from .relations import ManyToMany

        instance = self.new_related_instance(related)
        return ManyToMany(
            instance.new_query(),
            self,
            table or self.joining_table(related),
            foreign_pivot_key or self.get_foreign_key(),
            related_pivot_key or instance.get_foreign_key(),
            parent_key or self.get_key_name(),
            related_key or instance.get_key_name(),
        )

    def has_many_through(
        self,
        related: type[Model],
        through: type[Model],
        first_key: str | None = None,
        second_key: str | None = None,
        local_key: str | None = None,
        second_local_key: str | None = None,
    ) -> OneToManyThrough:
        """
        Reach ``related`` rows through an intermediate model.

        Example:
            >>> # countries -> users.country_id -> posts.user_id
            >>> self.has_many_through(Post, User)
        """
        from .relations import OneToManyThrough

        return OneToManyThrough(*self._through_arguments(
            related, through, first_key, second_key, local_key, second_local_key
        ))

    def has_one_through(
        self,
        related: type[Model],
        through: type[Model],
        first_key: str | None = None,
        second_key: str | None = None,
        local_key: str | None = None,
        second_local_key: str | None = None,
    ) -> OneToOneThrough:
        from .relations import OneToOneThrough

        return OneToOneThrough(*self._through_arguments(
            related, through, first_key, second_key, local_key, second_local_key
        ))

    def _through_arguments(
        self,
        related: type[Model],
        through: type[Model],
        first_key: str | None,
        second_key: str | None,
        local_key: str | None,
        second_local_key: str | None,
    ) -> tuple[Any, ...]:
        through_instance = self.new_related_instance(through)
        return (
            self.new_related_instance(related).new_query(),
            self,
            through_instance,
            first_key or self.get_foreign_key(),
            second_key or through_instance.get_foreign_key(),
            local_key or self.get_key_name(),
            second_local_key or through_instance.get_key_name(),
        )

    # --- Persistence -----------------------------------------------------

    def uses_timestamps(self) -> bool:
        return isinstance(self, Timestamped)

    def set_keys_for_save_query(self, builder: Builder) -> Builder:
        key = self._original.get(self.get_key_name(), self.get_key())
        if key is None:
            msg = f"No primary key value set on {type(self).__name__}."
            raise InvalidArgumentError(msg)
        return builder.where(self.get_qualified_key_name(), "=", key)

    async def save(self) -> bool:
        """
        Insert or update this model's row.

        Updates only write dirty attributes; a clean model issues no query.
        """
        if self._exists:
            if not self.is_dirty():
                return True
            if self.uses_timestamps():
                self.update_timestamps()  # type: ignore[attr-defined]
            query = self.set_keys_for_save_query(self.new_model_query())
            await query.get_query().update(self.get_dirty())
        else:
            if self.uses_timestamps():
                self.update_timestamps()  # type: ignore[attr-defined]
            attributes = self.get_attributes()
            key_name = self.get_key_name()
            query = self.new_model_query().get_query()
            if self._meta.incrementing and attributes.get(key_name) is None:
                attributes.pop(key_name, None)
                self._attributes[key_name] = await query.insert_get_id(attributes, key_name)
            else:
                await query.insert(attributes)
            self._exists = True
        self.sync_original()
        return True

    async def delete(self) -> bool:
        """Delete the row, or flag it trashed for soft deleting models."""
        if not self._exists:
            return False
        if isinstance(self, SoftDeletable):
            await self.run_soft_delete()  # type: ignore[attr-defined]
        else:
            await self.force_delete()
        return True

    async def force_delete(self) -> bool:
        if not self._exists:
            return False
        await self.set_keys_for_save_query(self.new_model_query()).get_query().delete()
        self._exists = False
        return True

    async def refresh(self) -> Self:
        """Reload attributes from storage and reload already loaded relations."""
        query = self.set_keys_for_save_query(self.new_query_without_scopes().without(*self._relations))
        row = await query.get_query().first()
        if row is None:
            from .exceptions import ModelNotFoundError

            raise ModelNotFoundError(type(self).__name__, [self.get_key()])
        self.set_raw_attributes(row, sync=True)
        loaded = [name for name in self._relations if name in self._meta.relations]
        if loaded:
            await self.load(*loaded)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Visible attributes, appended accessors and loaded relations."""
        data = {
            name: self.get_attribute(name)
            for name in self._attributes
            if name not in self._meta.hidden
        }
        for name in self._meta.appends:
            data[name] = self.get_attribute(name)
        for name, value in self._relations.items():
            if isinstance(value, Relatable):
                data[name] = value.to_dict()
            elif isinstance(value, list):
                data[name] = [item.to_dict() for item in value]
            else:
                data[name] = value
        return data
