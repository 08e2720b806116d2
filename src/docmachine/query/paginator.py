"""Page of results plus pagination metadata."""

import math
from typing import Any, Generic, Iterator, TypeVar

T = TypeVar("T")


class Paginator(Generic[T]):
    """
    One page of results.

    Attributes:
        data: The items on this page
        meta: ``total``, ``page``, ``per_page``, ``last_page``, ``has_next``,
            ``has_prev``, ``from`` and ``to`` (1-based positions of the first
            and last item on the page, None when the page is empty).
            ``last_page`` is ``ceil(total / per_page)``, so 0 for no results

    Example:
        >>> page = await User.query().where("status", "active").paginate(2, 10)
        >>> page.meta["total"], page.meta["last_page"], len(page.data)
        (30, 3, 10)
    """

    def __init__(self, data: list[T], *, total: int, page: int, per_page: int):
        self.data = data
        self.total = total
        self.page = page
        self.per_page = per_page

    @property
    def last_page(self) -> int:
        return math.ceil(self.total / self.per_page)

    @property
    def has_next(self) -> bool:
        return self.page < self.last_page

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def meta(self) -> dict[str, Any]:
        start = (self.page - 1) * self.per_page
        return {
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "last_page": self.last_page,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
            "from": start + 1 if self.data else None,
            "to": start + len(self.data) if self.data else None,
        }

    def to_json(self) -> dict[str, Any]:
        """Serialize items with their own ``to_json`` when they have one."""
        return {
            "data": [item.to_json() if hasattr(item, "to_json") else item for item in self.data],
            "meta": self.meta,
        }

    def __iter__(self) -> Iterator[T]:
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"<Paginator page={self.page}/{self.last_page} items={len(self.data)} total={self.total}>"
