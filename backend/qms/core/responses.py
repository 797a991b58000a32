"""Standardized API response helpers.

List endpoints return a consistent envelope:
    {"items": [...], "total": <int>, "skip": <int>, "limit": <int>, "has_more": <bool>}

Single-item endpoints return the object directly (no wrapper).
"""

from typing import Any, Sequence


def paginated_response(items: Sequence[Any], total: int, skip: int = 0, limit: int = 20) -> dict:
    """Wrap one page of *items* (of *total* matches) in the standard envelope."""
    items = list(items)
    return {
        "items": items,
        "total": total,
        "skip": skip,
        "limit": limit,
        "has_more": skip + len(items) < total,
    }
