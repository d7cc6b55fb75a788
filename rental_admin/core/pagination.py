"""
Page/limit helper shared by the listing endpoints.
"""

import math
from typing import Any, Callable, Dict, List

from sqlalchemy.orm import Query


def paginate(query: Query, page: int, limit: int, serialize: Callable[[Any], Dict[str, Any]]) -> Dict[str, Any]:
    """
    Apply page/limit to a query and wrap the results.

    Returns:
        {"items": [...], "total": n, "page": p, "limit": l, "total_pages": t}
    """
    page = max(page, 1)
    limit = max(limit, 1)
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    items: List[Dict[str, Any]] = [serialize(row) for row in rows]
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": max(1, math.ceil(total / limit)),
    }
