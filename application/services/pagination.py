"""
Offset/limit cursor over adapter search results.

The cursor holds no state between calls: every page is fetched from the
adapter again, so callers restart by asking for an offset. Gateways may add
or drop records between calls; duplicates or gaps at page edges are the
caller's concern.
"""
from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, TypeVar

from application.dtos.payments import Page
from domain.payment.exceptions import PaymentValidationError


T = TypeVar("T")

MAX_PAGE_SIZE = 100

PageFetcher = Callable[[str, int, int], Awaitable[Page[T]]]


def compute_has_more(offset: int, limit: int, count: int, total_count: Optional[int]) -> bool:
    if count == 0:
        return False
    if total_count is not None:
        return offset + count < total_count
    return count >= limit


class PaginationCursor(Generic[T]):
    def __init__(self, fetch: PageFetcher, *, max_page_size: int = MAX_PAGE_SIZE) -> None:
        self._fetch = fetch
        self._max_page_size = max_page_size

    def _check(self, offset: int, limit: int) -> int:
        if offset < 0:
            raise PaymentValidationError("offset must not be negative", field="offset")
        if limit <= 0:
            raise PaymentValidationError("limit must be positive", field="limit")
        return min(limit, self._max_page_size)

    async def page(self, search_key: str, offset: int, limit: int) -> Page[T]:
        """Fetch one page and recompute ``has_more`` from what came back."""
        limit = self._check(offset, limit)
        fetched = await self._fetch(search_key, offset, limit)
        # Never trust an adapter that overfills a page
        items = list(fetched.items)[:limit]
        return Page(
            items=items,
            offset=offset,
            limit=limit,
            total_count=fetched.total_count,
            has_more=compute_has_more(offset, limit, len(items), fetched.total_count),
        )

    async def next_page(self, search_key: str, offset: int, limit: int) -> tuple[list[T], bool]:
        page = await self.page(search_key, offset, limit)
        return page.items, page.has_more

    async def iterate(self, search_key: str, *, offset: int = 0, limit: int = MAX_PAGE_SIZE) -> AsyncIterator[T]:
        """Yield records lazily, one adapter call per page."""
        while True:
            items, has_more = await self.next_page(search_key, offset, limit)
            for item in items:
                yield item
            if not has_more:
                return
            offset += len(items)
