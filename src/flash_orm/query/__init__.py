from .base import JoinClause, split_alias
from .construction import combine_wheres
from .write import QueryWrite


class Query(QueryWrite):
    """
    The query engine: one table, chainable composition, async execution.

    Layers, bottom up: ``QueryBase`` (state, clone), ``QueryConstruction``
    (select/where/join/order), ``QueryExecution`` (get/count/aggregates),
    ``QueryWrite`` (insert/update/delete/transaction).

    Example:
        >>> rows = await Query(db, "posts").where_in("user_id", [1, 2]).get()
    """


__all__ = ["JoinClause", "Query", "combine_wheres", "split_alias"]
