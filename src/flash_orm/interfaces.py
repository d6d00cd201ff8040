from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Mapping, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime


@runtime_checkable
class QueryEngine(Protocol):
    """The query-execution contract relations and builders compose against."""

    def select(self, *columns: Any) -> Any: ...

    def where(self, column: Any, operator: Any = ..., value: Any = ..., boolean: str = ...) -> Any: ...

    def where_in(self, column: str, values: Iterable[Any], boolean: str = ..., not_in: bool = ...) -> Any: ...

    def where_null(self, column: str, boolean: str = ..., not_null: bool = ...) -> Any: ...

    def join(self, table: str, first: str, operator: str, second: str | None = ..., kind: str = ...) -> Any: ...

    def clone(self) -> Any: ...

    async def get(self, columns: list[Any] | None = ...) -> list[dict[str, Any]]: ...

    async def count(self, column: str = ...) -> int: ...

    async def insert(self, rows: Any) -> int: ...

    async def update(self, values: Mapping[str, Any]) -> int: ...

    async def delete(self) -> int: ...

    async def transaction(self, fn: Any) -> Any: ...


@runtime_checkable
class Attributable(Protocol):
    """Attribute storage: raw values by column name."""

    def get_attribute(self, name: str) -> Any: ...

    def set_attribute(self, name: str, value: Any) -> Any: ...

    def get_attributes(self) -> dict[str, Any]: ...


@runtime_checkable
class Relatable(Protocol):
    """A relations map keyed by relation name."""

    def get_relation(self, name: str) -> Any: ...

    def set_relation(self, name: str, value: Any) -> Any: ...

    def relation_loaded(self, name: str) -> bool: ...


@runtime_checkable
class Timestamped(Protocol):
    """Models maintaining ``created_at`` / ``updated_at`` on save."""

    CREATED_AT: str
    UPDATED_AT: str

    def update_timestamps(self) -> None: ...

    def fresh_timestamp(self) -> datetime: ...


@runtime_checkable
class SoftDeletable(Protocol):
    """Models flagged deleted through a ``deleted_at`` column instead of removed."""

    DELETED_AT: str

    def get_qualified_deleted_at_column(self) -> str: ...

    def trashed(self) -> bool: ...
