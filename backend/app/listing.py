import math
from typing import Mapping, Optional

from .config import settings


def page_window(page: int, limit: Optional[int]):
    """Clamp pagination params and return (page, limit, offset)."""
    page = max(int(page or 1), 1)
    limit = int(limit or 0)
    if limit <= 0:
        limit = settings.default_page_size
    limit = min(limit, settings.max_page_size)
    return page, limit, (page - 1) * limit


def pagination(total: int, page: int, limit: int) -> dict:
    total = int(total or 0)
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


def order_clause(sort_by: Optional[str], sort_order: Optional[str], allowed: Mapping[str, str], default: str) -> str:
    # Column names can't be parameterized; only whitelisted identifiers reach the SQL.
    col = allowed.get(sort_by or "") or allowed[default]
    direction = "DESC" if str(sort_order or "").strip().upper() == "DESC" else "ASC"
    return f"{col} {direction}"
