"""Pagination helpers shared by the store and the API."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Generic, Sequence, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class PageRequest:
    page: int
    page_size: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @classmethod
    def normalize(
        cls,
        page: int | None,
        page_size: int | None,
        *,
        default_size: int = 10,
        max_size: int = 100,
    ) -> "PageRequest":
        """Clamp user supplied values: pages start at 1 and sizes stay within bounds."""

        normalized_page = max(int(page or 1), 1)
        size = default_size if page_size is None else int(page_size)
        normalized_size = min(max(size, 1), max_size)
        return cls(page=normalized_page, page_size=normalized_size)


@dataclass(frozen=True)
class Page(Generic[T]):
    items: Sequence[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return math.ceil(self.total / self.page_size)


__all__ = ["Page", "PageRequest"]
