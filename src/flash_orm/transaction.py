from __future__ import annotations

from functools import wraps
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ParamSpec, Self, TypeVar

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager
    from types import TracebackType

    from sqlalchemy.ext.asyncio import AsyncSession

P = ParamSpec("P")
T = TypeVar("T")


class Atomic:
    """
    Run a block of ORM calls as one unit of work.

    The relation layer never opens transactions itself. Callers that need a
    multi-statement operation such as ``ManyToMany.sync`` to be all or
    nothing wrap it in ``atomic``:

        >>> async with atomic(db):
        ...     await user.related("roles").sync([1, 2, 3])

    Inside an already running transaction a SAVEPOINT is used, so blocks
    nest. Also usable as a decorator:

        >>> @atomic(db)
        ... async def replace_roles(user, ids):
        ...     return await user.related("roles").sync(ids)
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._cm: AbstractAsyncContextManager[Any] | None = None

    def _begin(self) -> AbstractAsyncContextManager[Any]:
        if self.db.in_transaction():
            return self.db.begin_nested()
        return self.db.begin()

    async def __aenter__(self) -> Self:
        self._cm = self._begin()
        await self._cm.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        # Commit (or release the savepoint) on success, roll back on error
        if self._cm:
            await self._cm.__aexit__(exc_type, exc, tb)

    def __call__(self, func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            async with Atomic(self.db):
                return await func(*args, **kwargs)

        return wrapper


def atomic(db: AsyncSession) -> Atomic:
    """
    Factory helper for ``Atomic``.

    Args:
        db: The session every statement of the block runs on.
    """
    return Atomic(db)
