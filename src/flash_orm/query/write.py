from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Iterable, Mapping, TypeVar

from sqlalchemy import column as sa_column
from sqlalchemy import delete, insert, literal_column, update
from sqlalchemy import table as sa_table

from ..transaction import atomic
from .execution import QueryExecution

R = TypeVar("R")


class QueryWrite(QueryExecution):
    """
    Insert, update and delete against the base table.

    ``update()`` and ``delete()`` refuse to run without a where clause so a
    forgotten filter can never rewrite or wipe a whole table.
    """

    def _target(self, *names: str) -> Any:
        return sa_table(self._table, *[sa_column(name) for name in dict.fromkeys(names)])

    async def insert(self, rows: Mapping[str, Any] | Iterable[Mapping[str, Any]]) -> int:
        """
        Insert one or many rows, returns the number of rows written.

        Rows with different key sets are inserted in separate batches so no
        column is ever forced to NULL.

        Example:
            >>> await Query(db, "role_user").insert([
            ...     {"user_id": 1, "role_id": 2},
            ...     {"user_id": 1, "role_id": 3},
            ... ])
        """
        records = [dict(rows)] if isinstance(rows, Mapping) else [dict(r) for r in rows]
        batches: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for record in records:
            batches.setdefault(tuple(record), []).append(record)

        for keys, batch in batches.items():
            target = self._target(*keys)
            if len(batch) == 1:
                await self._execute(insert(target).values(batch[0]))
            else:
                await self._require_db().execute(insert(target), batch)
        return len(records)

    async def insert_get_id(self, values: Mapping[str, Any], key: str = "id") -> Any:
        """Insert a single row and return its generated primary key."""
        target = self._target(*values, key)
        stmt = insert(target).values(dict(values)).returning(target.c[key])
        result = await self._execute(stmt)
        return result.scalar_one()

    def _require_filters(self, action: str) -> Any:
        clause = self._where_clause()
        if clause is None:
            msg = f"Refusing to {action} without filters"
            raise ValueError(msg)
        return clause

    async def update(self, values: Mapping[str, Any]) -> int:
        """
        Update every matching row, returns the affected row count.

        Example:
            >>> await Query(db, "posts").where("user_id", 1).update({"status": "draft"})
        """
        clause = self._require_filters("update")
        if not values:
            return 0
        stmt = update(self._target(*values)).where(clause).values(dict(values))
        result = await self._execute(stmt)
        return result.rowcount

    async def increment(
        self, column: str, amount: int | float = 1, extra: Mapping[str, Any] | None = None
    ) -> int:
        values = {column: literal_column(column) + amount, **(extra or {})}
        return await self.update(values)

    async def decrement(
        self, column: str, amount: int | float = 1, extra: Mapping[str, Any] | None = None
    ) -> int:
        return await self.increment(column, -amount, extra)

    async def delete(self) -> int:
        """Delete every matching row, returns the affected row count."""
        clause = self._require_filters("delete")
        result = await self._execute(delete(sa_table(self._table)).where(clause))
        return result.rowcount

    async def transaction(self, fn: Callable[[Any], Awaitable[R] | R]) -> R:
        """
        Run ``fn(query)`` inside ``atomic`` on this query's session.

        Example:
            >>> await query.transaction(lambda q: q.where("id", 1).delete())
        """
        async with atomic(self._require_db()):
            result = fn(self)
            if inspect.isawaitable(result):
                result = await result
            return result
