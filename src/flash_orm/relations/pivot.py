from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Mapping

from ..collection import Collection
from ..interfaces import Attributable
from ..logging import get_logger
from ..models import Model, TimestampMixin
from ..query import Query
from ..utils import cast_key, fresh_timestamp

if TYPE_CHECKING:
    from ..builder import Builder

logger = get_logger(__name__)


class Pivot(Model, TimestampMixin):
    """
    A row of a many-to-many join table.

    Pivots are hydrated from the ``pivot_*`` columns of a many-to-many fetch
    and attached to each related model under the relation's accessor.
    They have no primary key of their own; saves and deletes address the
    row through both pivot keys.
    """

    __tablename__ = "pivots"
    __incrementing__ = False

    pivot_parent: Model | None = None
    foreign_pivot_key: str | None = None
    related_pivot_key: str | None = None

    @classmethod
    def from_raw_attributes(
        cls, parent: Model, attributes: Mapping[str, Any], table: str, exists: bool = False
    ) -> Pivot:
        instance = cls()
        instance.set_table(table)
        instance.set_db(parent.db)
        instance.set_raw_attributes(attributes, sync=True)
        instance._exists = exists
        instance.pivot_parent = parent
        return instance

    def set_pivot_keys(self, foreign_key: str, related_key: str) -> Pivot:
        self.foreign_pivot_key = foreign_key
        self.related_pivot_key = related_key
        return self

    def uses_timestamps(self) -> bool:
        return self.CREATED_AT in self._attributes and self.UPDATED_AT in self._attributes

    def set_keys_for_save_query(self, builder: Builder) -> Builder:
        if self.foreign_pivot_key is None or self.related_pivot_key is None:
            return super().set_keys_for_save_query(builder)
        for key in (self.foreign_pivot_key, self.related_pivot_key):
            builder.where(
                self.qualify_column(key), "=", self._original.get(key, self.get_attribute(key))
            )
        return builder

    def __repr__(self) -> str:
        return f"<Pivot {self.get_table()} {self._attributes!r}>"


class InteractsWithPivotTable:
    """
    Attach, detach and sync rows of a many-to-many join table.

    Expects the host relation to provide ``parent``, ``related``, ``table``,
    the pivot key names, ``pivot_columns``, ``pivot_values`` and
    ``pivot_wheres``.

    Every comparison between stored and requested ids happens after both
    sides were cast to the related model's key type, so ``"3"`` and ``3``
    are the same id.
    """

    parent: Model
    related: Model
    table: str
    foreign_pivot_key: str
    related_pivot_key: str
    parent_key: str
    related_key: str
    pivot_columns: list[str]
    pivot_values: list[tuple[str, Any]]
    pivot_wheres: list[Any]
    pivot_created_at: str
    pivot_updated_at: str

    # --- Pivot queries -------------------------------------------------------

    def new_pivot_statement(self) -> Query:
        return Query(self.parent.db, self.table)

    def new_pivot_query(self) -> Query:
        """Pivot rows of this parent, with the relation's pivot filters applied."""
        query = self.new_pivot_statement()
        for apply in self.pivot_wheres:
            apply(query)
        return query.where(
            f"{self.table}.{self.foreign_pivot_key}", "=", self.parent.get_attribute(self.parent_key)
        )

    def new_pivot(self, attributes: Mapping[str, Any] | None = None, exists: bool = False) -> Pivot:
        pivot = Pivot.from_raw_attributes(self.parent, attributes or {}, self.table, exists)
        return pivot.set_pivot_keys(self.foreign_pivot_key, self.related_pivot_key)

    def new_existing_pivot(self, attributes: Mapping[str, Any] | None = None) -> Pivot:
        return self.new_pivot(attributes, exists=True)

    def has_pivot_column(self, column: str) -> bool:
        return column in self.pivot_columns

    # --- Id normalization ----------------------------------------------------

    def cast_key(self, key: Any) -> Any:
        return cast_key(key, self.related.get_key_type())

    def cast_keys(self, keys: Iterable[Any]) -> list[Any]:
        return [self.cast_key(key) for key in keys]

    def parse_ids(self, value: Any) -> list[Any]:
        """Ids from a model, a collection or list of models, a list, a mapping or a scalar."""
        if isinstance(value, Attributable):
            return [value.get_attribute(self.related_key)]
        if isinstance(value, Mapping):
            return list(value)
        if isinstance(value, (list, tuple, set, Collection)):
            return [
                item.get_attribute(self.related_key) if isinstance(item, Attributable) else item
                for item in value
            ]
        return [value]

    def format_record_list(self, ids: Any) -> dict[Any, dict[str, Any]]:
        """
        Normalize ids into cast id -> extra pivot attributes.

        >>> relation.format_record_list(["2", 3])
        {2: {}, 3: {}}
        >>> relation.format_record_list({2: {"level": "admin"}})
        {2: {'level': 'admin'}}
        """
        if isinstance(ids, Mapping):
            return {self.cast_key(key): dict(value or {}) for key, value in ids.items()}
        return {self.cast_key(key): {} for key in self.parse_ids(ids)}

    # --- Attach ------------------------------------------------------------

    def add_timestamps_to_attach_record(
        self, record: dict[str, Any], exists: bool = False
    ) -> dict[str, Any]:
        now = fresh_timestamp()
        if not exists and self.has_pivot_column(self.pivot_created_at):
            record[self.pivot_created_at] = now
        if self.has_pivot_column(self.pivot_updated_at):
            record[self.pivot_updated_at] = now
        return record

    def base_attach_record(self, key: Any, timed: bool) -> dict[str, Any]:
        record = {
            self.related_pivot_key: key,
            self.foreign_pivot_key: self.parent.get_attribute(self.parent_key),
        }
        if timed:
            self.add_timestamps_to_attach_record(record)
        for column, value in self.pivot_values:
            record[column] = value
        return record

    def format_attach_records(
        self, records: Mapping[Any, Mapping[str, Any]], attributes: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        timed = self.has_pivot_column(self.pivot_created_at) or self.has_pivot_column(
            self.pivot_updated_at
        )
        return [
            {**self.base_attach_record(key, timed), **values, **attributes}
            for key, values in records.items()
        ]

    async def attach(self, ids: Any, attributes: Mapping[str, Any] | None = None) -> int:
        """
        Insert one pivot row per id.

        Example:
            >>> await user.related("roles").attach([1, 2], {"granted_by": admin.id})
            >>> await user.related("roles").attach({3: {"level": "owner"}})
        """
        records = self.format_attach_records(self.format_record_list(ids), attributes or {})
        if not records:
            return 0
        return await self.new_pivot_statement().insert(records)

    # --- Detach ------------------------------------------------------------

    async def detach(self, ids: Any = None) -> int:
        """
        Delete pivot rows of this parent; ``None`` detaches everything.

        An empty id list detaches nothing and issues no query.
        """
        query = self.new_pivot_query()
        if ids is not None:
            keys = self.cast_keys(self.parse_ids(ids))
            if not keys:
                return 0
            query.where_in(f"{self.table}.{self.related_pivot_key}", keys)
        return await query.delete()

    # --- Update ------------------------------------------------------------

    async def update_existing_pivot(
        self, id: Any, attributes: Mapping[str, Any], touch: bool = True
    ) -> int:
        """Update the extra columns of one attached row, refreshing ``updated_at``."""
        values = dict(attributes)
        if touch and self.has_pivot_column(self.pivot_updated_at):
            values[self.pivot_updated_at] = fresh_timestamp()
        query = self.new_pivot_query().where(
            f"{self.table}.{self.related_pivot_key}", "=", self.cast_key(id)
        )
        return await query.update(values)

    # --- Sync --------------------------------------------------------------

    async def sync(self, ids: Any, detaching: bool = True) -> dict[str, list[Any]]:
        """
        Make the attached set equal ``ids``.

        Rows of ids no longer listed are detached (unless ``detaching`` is
        False), new ids are attached, and already attached ids that carry
        extra attributes are updated when a value differs. Running the same
        sync twice changes nothing the second time.

        Returns:
            ``{"attached": [...], "detached": [...], "updated": [...]}`` with
            every id cast to the related key type.

        Example:
            >>> await user.related("roles").sync(["2", "3"])
            {'attached': [3], 'detached': [4], 'updated': []}
        """
        changes: dict[str, list[Any]] = {"attached": [], "detached": [], "updated": []}

        rows = await self.new_pivot_query().get()
        current = {self.cast_key(row[self.related_pivot_key]): row for row in rows}
        records = self.format_record_list(ids)

        detach = [key for key in current if key not in records]
        if detaching and detach:
            await self.detach(detach)
            changes["detached"] = detach

        new_records = {key: values for key, values in records.items() if key not in current}
        if new_records:
            await self.attach(new_records)
            changes["attached"] = list(new_records)

        for key, values in records.items():
            if key not in current or not values:
                continue
            row = current[key]
            if any(row.get(column) != value for column, value in values.items()):
                await self.update_existing_pivot(key, values)
                changes["updated"].append(key)

        logger.info(
            f"Synced {self.table} for {type(self.parent).__name__}"
            f" {self.parent.get_attribute(self.parent_key)}: attached={changes['attached']}"
            f" detached={changes['detached']} updated={changes['updated']}"
        )
        return changes

    async def sync_without_detaching(self, ids: Any) -> dict[str, list[Any]]:
        return await self.sync(ids, detaching=False)

    async def sync_with_pivot_values(
        self, ids: Any, values: Mapping[str, Any], detaching: bool = True
    ) -> dict[str, list[Any]]:
        """Sync where every id gets the same extra attributes."""
        records = {key: dict(values) for key in self.parse_ids(ids)}
        return await self.sync(records, detaching)
