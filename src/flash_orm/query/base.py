from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql import ColumnElement


@dataclass(frozen=True)
class JoinClause:
    """One ``JOIN`` of a query: target table, optional alias, ``ON`` clause, kind."""

    table: str
    alias: str | None
    onclause: ColumnElement[bool]
    kind: str = "inner"


def split_alias(name: str) -> tuple[str, str | None]:
    """
    Split ``"posts as p"`` into ``("posts", "p")``.

    >>> split_alias("posts")
    ('posts', None)
    """
    parts = name.split()
    if len(parts) == 3 and parts[1].lower() == "as":
        return parts[0], parts[2]
    return name.strip(), None


class QueryBase:
    """
    State of a single-table query.

    A ``Query`` is mutable: every composition method changes it in place
    and returns it for chaining. ``clone()`` gives an independent copy that
    can be extended without touching the original, which is how relations
    and scopes build on a shared starting point.
    """

    def __init__(self, db: AsyncSession | None, table: str):
        self._db = db
        self._table, self._alias = split_alias(table)
        self._columns: list[Any] = []
        # (boolean, clause) pairs combined left to right
        self._wheres: list[tuple[str, ColumnElement[bool]]] = []
        self._joins: list[JoinClause] = []
        self._orders: list[Any] = []
        self._groups: list[Any] = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._distinct = False

    @property
    def db(self) -> AsyncSession | None:
        return self._db

    @property
    def table(self) -> str:
        return self._table

    @property
    def from_name(self) -> str:
        """The name columns of the base table are qualified with."""
        return self._alias or self._table

    @property
    def columns(self) -> list[Any]:
        return list(self._columns)

    @property
    def wheres(self) -> list[tuple[str, ColumnElement[bool]]]:
        return list(self._wheres)

    @property
    def joins(self) -> list[JoinClause]:
        return list(self._joins)

    @property
    def orders(self) -> list[Any]:
        return list(self._orders)

    def set_db(self, db: AsyncSession | None) -> Any:
        self._db = db
        return self

    def clone(self) -> Any:
        """Return an independent copy sharing the session handle."""
        clone = copy.copy(self)
        clone._columns = list(self._columns)
        clone._wheres = list(self._wheres)
        clone._joins = list(self._joins)
        clone._orders = list(self._orders)
        clone._groups = list(self._groups)
        return clone

    def _require_db(self) -> AsyncSession:
        if self._db is None:
            msg = f"Query on '{self._table}' has no database session attached."
            raise RuntimeError(msg)
        return self._db
