from .builder import Builder
from .collection import Collection
from .config import OrmSettings, orm_settings
from .db import close_db, get_db, get_engine, init_db
from .exceptions import (
    FlashOrmError,
    InvalidArgumentError,
    ModelNotFoundError,
    RelationNotFoundError,
    ScopeNotFoundError,
)
from .logging import get_logger, scoped_query_cycle, setup_logging
from .models import Model, SoftDeleteMixin, TimestampMixin, relation, scope
from .pagination import Paginator
from .query import Query
from .relations import (
    ManyToMany,
    ManyToOne,
    OneToMany,
    OneToManyThrough,
    OneToOne,
    OneToOneThrough,
    Pivot,
    Relation,
    no_constraints,
)
from .scopes import Scope, SoftDeletingScope
from .transaction import Atomic, atomic

__all__ = [
    "Atomic",
    "Builder",
    "Collection",
    "FlashOrmError",
    "InvalidArgumentError",
    "ManyToMany",
    "ManyToOne",
    "Model",
    "ModelNotFoundError",
    "OneToMany",
    "OneToManyThrough",
    "OneToOne",
    "OneToOneThrough",
    "OrmSettings",
    "Paginator",
    "Pivot",
    "Query",
    "Relation",
    "RelationNotFoundError",
    "Scope",
    "ScopeNotFoundError",
    "SoftDeleteMixin",
    "SoftDeletingScope",
    "TimestampMixin",
    "atomic",
    "close_db",
    "get_db",
    "get_engine",
    "get_logger",
    "init_db",
    "no_constraints",
    "orm_settings",
    "relation",
    "scope",
    "setup_logging",
    "scoped_query_cycle",
]
