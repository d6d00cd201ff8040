from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy import and_, literal_column, not_, or_
from sqlalchemy.sql import ClauseElement

from ..exceptions import InvalidArgumentError
from .base import JoinClause, QueryBase, split_alias
from .expressions import apply_lookup, apply_operator, parse_lookup, to_column

if TYPE_CHECKING:
    from sqlalchemy.sql import ColumnElement

_MISSING: Any = object()


def combine_wheres(
    wheres: Iterable[tuple[str, ColumnElement[bool]]],
) -> ColumnElement[bool] | None:
    """
    Fold ``(boolean, clause)`` pairs into one expression.

    ``AND`` binds tighter than ``OR``, the same as in SQL text:
    ``a OR b AND c`` becomes ``a OR (b AND c)``.
    """
    groups: list[list[ColumnElement[bool]]] = []
    for boolean, clause in wheres:
        if boolean == "or" or not groups:
            groups.append([clause])
        else:
            groups[-1].append(clause)
    if not groups:
        return None
    terms = [group[0] if len(group) == 1 else and_(*group) for group in groups]
    return terms[0] if len(terms) == 1 else or_(*terms)


class QueryConstruction(QueryBase):
    """
    Chainable composition methods.

    Every method mutates the query and returns it:

        >>> Query(db, "posts").where("votes", ">", 10).order_by("id").limit(5)
    """

    def from_(self, table: str) -> Any:
        """Change the base table, ``"posts as p"`` aliases it."""
        self._table, self._alias = split_alias(table)
        return self

    def select(self, *columns: Any) -> Any:
        """Replace the selected columns."""
        self._columns = list(columns)
        return self

    def add_select(self, *columns: Any) -> Any:
        """Append columns, selecting ``<table>.*`` first if nothing was selected."""
        if not self._columns:
            self._columns.append(f"{self.from_name}.*")
        self._columns.extend(columns)
        return self

    def select_sub(self, query: QueryConstruction, alias: str) -> Any:
        """Add a correlated scalar sub-select as a named column."""
        sub = query.to_statement().scalar_subquery().label(alias)
        return self.add_select(sub)

    def select_exists(self, query: QueryConstruction, alias: str) -> Any:
        """Add an ``EXISTS (...)`` boolean column."""
        return self.add_select(query.to_statement().exists().label(alias))

    def _add_where(self, clause: ColumnElement[bool], boolean: str) -> Any:
        if boolean not in ("and", "or"):
            msg = f"Unsupported boolean '{boolean}', use 'and' or 'or'."
            raise InvalidArgumentError(msg)
        self._wheres.append((boolean, clause))
        return self

    def _nested(self, callback: Callable[[Any], Any]) -> ColumnElement[bool] | None:
        group = self.__class__(self._db, self._table)
        callback(group)
        return combine_wheres(group._wheres)

    def where(
        self,
        column: Any,
        operator: Any = _MISSING,
        value: Any = _MISSING,
        boolean: str = "and",
    ) -> Any:
        """
        Add a where clause.

        Example:
            >>> query.where("votes", 100)
            >>> query.where("votes", ">=", 100)
            >>> query.where({"status": "draft", "user_id": 1})
            >>> query.where(lambda q: q.where("a", 1).or_where("b", 2))
        """
        if isinstance(column, Mapping):
            clause = combine_wheres(
                ("and", apply_operator(to_column(key), "=", val))
                for key, val in column.items()
            )
        elif isinstance(column, ClauseElement):
            clause = column
        elif callable(column):
            clause = self._nested(column)
        else:
            if value is _MISSING:
                operator, value = "=", operator
            if operator is _MISSING:
                msg = f"where('{column}') needs a value to compare against."
                raise InvalidArgumentError(msg)
            clause = apply_operator(to_column(column), operator, value)
        if clause is None:
            return self
        return self._add_where(clause, boolean)

    def or_where(self, column: Any, operator: Any = _MISSING, value: Any = _MISSING) -> Any:
        return self.where(column, operator, value, "or")

    def filter(self, **lookups: Any) -> Any:
        """
        Keyword lookups, ANDed together.

        Example:
            >>> query.filter(votes__gte=10, title__startswith="Intro")
        """
        for key, value in lookups.items():
            name, lookup = parse_lookup(key)
            self._add_where(apply_lookup(to_column(name), lookup, value), "and")
        return self

    def where_in(
        self, column: str, values: Iterable[Any], boolean: str = "and", not_in: bool = False
    ) -> Any:
        operator = "not in" if not_in else "in"
        return self._add_where(apply_operator(to_column(column), operator, values), boolean)

    def where_not_in(self, column: str, values: Iterable[Any], boolean: str = "and") -> Any:
        return self.where_in(column, values, boolean, not_in=True)

    def or_where_in(self, column: str, values: Iterable[Any]) -> Any:
        return self.where_in(column, values, "or")

    def where_between(
        self, column: str, values: Sequence[Any], boolean: str = "and", not_between: bool = False
    ) -> Any:
        """Inclusive range, ``where_between("votes", [1, 100])``."""
        if len(values) != 2:
            msg = f"where_between('{column}') needs exactly two values, got {len(values)}."
            raise InvalidArgumentError(msg)
        clause = to_column(column).between(values[0], values[1])
        return self._add_where(not_(clause) if not_between else clause, boolean)

    def where_not_between(self, column: str, values: Sequence[Any], boolean: str = "and") -> Any:
        return self.where_between(column, values, boolean, not_between=True)

    def or_where_between(self, column: str, values: Sequence[Any]) -> Any:
        return self.where_between(column, values, "or")

    def where_null(self, column: str, boolean: str = "and", not_null: bool = False) -> Any:
        col = to_column(column)
        return self._add_where(col.isnot(None) if not_null else col.is_(None), boolean)

    def where_not_null(self, column: str, boolean: str = "and") -> Any:
        return self.where_null(column, boolean, not_null=True)

    def or_where_null(self, column: str) -> Any:
        return self.where_null(column, "or")

    def where_column(
        self, first: str, operator: str, second: str | None = None, boolean: str = "and"
    ) -> Any:
        """Compare two columns, ``where_column("users.id", "=", "posts.user_id")``."""
        if second is None:
            operator, second = "=", operator
        clause = apply_operator(literal_column(first), operator, literal_column(second))
        return self._add_where(clause, boolean)

    def where_exists(
        self, query: QueryConstruction, boolean: str = "and", not_exists: bool = False
    ) -> Any:
        clause = query.to_statement().exists()
        return self._add_where(not_(clause) if not_exists else clause, boolean)

    def where_sub(
        self, query: QueryConstruction, operator: str, value: Any, boolean: str = "and"
    ) -> Any:
        """Compare a scalar sub-select, e.g. a correlated ``count(*)``, with a value."""
        sub = query.to_statement().scalar_subquery()
        return self._add_where(apply_operator(sub, operator, value), boolean)

    def group_wheres(self) -> Any:
        """Wrap the current where clauses into one parenthesized group."""
        if len(self._wheres) > 1:
            clause = combine_wheres(self._wheres)
            self._wheres = [("and", clause)]
        return self

    def join(
        self,
        table: str,
        first: str,
        operator: str,
        second: str | None = None,
        kind: str = "inner",
    ) -> Any:
        """
        Join another table.

        Example:
            >>> query.join("role_user", "roles.id", "=", "role_user.role_id")
        """
        if second is None:
            operator, second = "=", operator
        name, alias = split_alias(table)
        onclause = apply_operator(literal_column(first), operator, literal_column(second))
        self._joins.append(JoinClause(name, alias, onclause, kind))
        return self

    def left_join(self, table: str, first: str, operator: str, second: str | None = None) -> Any:
        return self.join(table, first, operator, second, kind="left")

    def order_by(self, column: Any, direction: str = "asc") -> Any:
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            msg = f"Order direction must be 'asc' or 'desc', got '{direction}'."
            raise InvalidArgumentError(msg)
        col = to_column(column)
        self._orders.append(col.desc() if direction == "desc" else col.asc())
        return self

    def reorder(self) -> Any:
        self._orders = []
        return self

    def group_by(self, *columns: Any) -> Any:
        self._groups.extend(to_column(c) for c in columns)
        return self

    def limit(self, count: int | None) -> Any:
        self._limit = count
        return self

    def offset(self, count: int | None) -> Any:
        self._offset = count
        return self

    def for_page(self, page: int, per_page: int) -> Any:
        return self.offset((page - 1) * per_page).limit(per_page)

    def distinct(self) -> Any:
        self._distinct = True
        return self
