from math import ceil
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Paginator(BaseModel):
    """One page of query results plus the numbers needed to render pager links.

    Attributes:
        items: The models of this page, as a ``Collection``.
        total: Number of rows matching the query across all pages.
        per_page: Page size the query was run with.
        current_page: 1-based number of this page.

    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    items: Any
    total: int = Field(ge=0)
    per_page: int = Field(ge=1)
    current_page: int = Field(ge=1)

    @property
    def last_page(self) -> int:
        return max(1, ceil(self.total / self.per_page))

    @property
    def has_more_pages(self) -> bool:
        return self.current_page < self.last_page

    @property
    def from_item(self) -> int | None:
        """1-based position of the first item on this page, ``None`` when empty."""
        if not self.items:
            return None
        return (self.current_page - 1) * self.per_page + 1

    @property
    def to_item(self) -> int | None:
        if not self.items:
            return None
        return (self.current_page - 1) * self.per_page + len(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [item.to_dict() for item in self.items],
            "total": self.total,
            "per_page": self.per_page,
            "current_page": self.current_page,
            "last_page": self.last_page,
            "from": self.from_item,
            "to": self.to_item,
        }

    def __len__(self) -> int:
        return len(self.items)

    def __repr__(self) -> str:
        return f"<Paginator page={self.current_page}/{self.last_page} total={self.total}>"
