"""
Page/limit pagination shared by forum listings.
"""

import math
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from app.modules.forum.exceptions import ForumValidationError

T = TypeVar("T")

MAX_PAGE_SIZE = 100


@dataclass
class Page(Generic[T]):
    """One page of a listing."""

    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def meta(self) -> dict[str, Any]:
        """Pagination block for API responses."""
        return {
            "current_page": self.page,
            "total_pages": self.total_pages,
            "total_items": self.total,
            "items_per_page": self.limit,
        }


def page_offset(page: int, limit: int) -> int:
    """Validate page/limit and return the row offset."""
    if page < 1:
        raise ForumValidationError("page must be 1 or greater")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ForumValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * limit
