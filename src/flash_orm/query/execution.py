from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, literal_column, select
from sqlalchemy import table as sa_table

from ..config import orm_settings
from ..logging import get_logger
from .construction import QueryConstruction, combine_wheres
from .expressions import to_column

if TYPE_CHECKING:
    from sqlalchemy.sql import ColumnElement, FromClause, Select

logger = get_logger(__name__)

# "table.column", labelled with its bare name so rows are keyed "column"
_QUALIFIED = re.compile(r"^\w+\.(\w+)$")


def _select_column(column: Any) -> Any:
    if isinstance(column, str):
        parts = column.split()
        if len(parts) == 3 and parts[1].lower() == "as":
            return literal_column(parts[0]).label(parts[2])
        if match := _QUALIFIED.match(column):
            return literal_column(column).label(match.group(1))
        return literal_column(column)
    return column


def _result_key(column: str) -> str:
    parts = column.split()
    if len(parts) == 3 and parts[1].lower() == "as":
        return parts[2]
    return column.split(".")[-1]


class QueryExecution(QueryConstruction):
    """
    Compile the accumulated state into a ``Select`` and run it on the session.

    Rows come back as plain dictionaries; hydration into models is the job
    of ``Builder``.
    """

    def _from_clause(self) -> FromClause:
        source: FromClause = sa_table(self._table)
        if self._alias:
            source = source.alias(self._alias)
        for join in self._joins:
            target: FromClause = sa_table(join.table)
            if join.alias:
                target = target.alias(join.alias)
            source = source.join(target, join.onclause, isouter=join.kind == "left")
        return source

    def _where_clause(self) -> ColumnElement[bool] | None:
        return combine_wheres(self._wheres)

    def to_statement(self, columns: list[Any] | None = None) -> Select:
        """Build the ``Select`` for the current state."""
        selected = columns or self._columns or [f"{self.from_name}.*"]
        stmt = select(*[_select_column(c) for c in selected]).select_from(
            self._from_clause()
        )
        clause = self._where_clause()
        if clause is not None:
            stmt = stmt.where(clause)
        if self._groups:
            stmt = stmt.group_by(*self._groups)
        if self._orders:
            stmt = stmt.order_by(*self._orders)
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        if self._offset is not None:
            stmt = stmt.offset(self._offset)
        if self._distinct:
            stmt = stmt.distinct()
        return stmt

    def to_sql(self) -> tuple[str, dict[str, Any]]:
        """
        Compiled SQL text and bound parameters, for debugging.

        Example:
            >>> Query(None, "users").where("id", 1).to_sql()
            ('SELECT users.* \\nFROM users \\nWHERE id = :param_1', {'param_1': 1})
        """
        dialect = self._db.bind.dialect if self._db is not None else None
        compiled = self.to_statement().compile(dialect=dialect)
        return str(compiled), dict(compiled.params)

    async def _execute(self, stmt: Any) -> Any:
        db = self._require_db()
        if orm_settings.LOG_QUERIES:
            logger.debug(f"Executing on '{self._table}': {stmt}")
        return await db.execute(stmt)

    async def get(self, columns: list[Any] | None = None) -> list[dict[str, Any]]:
        """
        Run the select and return every row as a dictionary.

        Example:
            >>> rows = await Query(db, "users").where("active", True).get()
            # [{'id': 1, 'name': 'A', 'active': True}, ...]
        """
        result = await self._execute(self.to_statement(columns))
        return [dict(row) for row in result.mappings().all()]

    async def first(self, columns: list[Any] | None = None) -> dict[str, Any] | None:
        rows = await self.clone().limit(1).get(columns)
        return rows[0] if rows else None

    async def aggregate(self, function: str, column: str = "*") -> Any:
        """
        Run an aggregate (``count``, ``max``, ``min``, ``sum``, ``avg``) over the query.

        Paged, grouped or distinct queries are wrapped in a subquery so the
        aggregate sees exactly the rows ``get()`` would return.
        """
        fn = getattr(func, function)
        if self._limit is not None or self._offset is not None or self._groups or self._distinct:
            inner = self.clone().reorder().to_statement().subquery()
            target = literal_column("*" if column == "*" else column.split(".")[-1])
            stmt = select(fn(target)).select_from(inner)
        else:
            target = literal_column("*") if column == "*" else to_column(column)
            stmt = self.clone().reorder().to_statement([fn(target)])
        result = await self._execute(stmt)
        return result.scalar()

    async def count(self, column: str = "*") -> int:
        return int(await self.aggregate("count", column) or 0)

    async def max(self, column: str) -> Any:
        return await self.aggregate("max", column)

    async def min(self, column: str) -> Any:
        return await self.aggregate("min", column)

    async def sum(self, column: str) -> Any:
        return await self.aggregate("sum", column) or 0

    async def avg(self, column: str) -> Any:
        return await self.aggregate("avg", column)

    async def exists(self) -> bool:
        stmt = self.clone().reorder().limit(1).to_statement([literal_column("1")])
        result = await self._execute(stmt)
        return result.first() is not None

    async def pluck(self, column: str) -> list[Any]:
        """Values of a single column, in result order."""
        rows = await self.clone().select(column).get()
        key = _result_key(column)
        return [row[key] for row in rows]
