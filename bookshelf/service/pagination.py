from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, List, TypeVar

T = TypeVar("T")


def build_pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    """Pagination metadata for list responses."""
    total_pages = (total + limit - 1) // limit if limit > 0 else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_items": total,
        "items_per_page": limit,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


@dataclass
class Page(Generic[T]):
    items: List[T]
    pagination: Dict[str, Any]
