"""Pagination utilities"""

from typing import List, Any
from math import ceil


def paginate_from_end(items: List[Any], page: int = 1, limit: int = 50) -> dict:
    """
    Paginate a chronological list counting back from its newest item

    Page 1 holds the newest ``limit`` items, page 2 the ``limit`` items
    before them, and so on. Each window keeps chronological order.

    Args:
        items: Items ordered oldest first
        page: Page number (1-indexed, 1 = newest)
        limit: Number of items per page

    Returns:
        Dictionary with pagination data
    """
    total = len(items)
    pages = ceil(total / limit) if total > 0 else 1

    end = max(total - (page - 1) * limit, 0)
    start = max(end - limit, 0)

    return {
        "data": items[start:end],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": pages
    }
