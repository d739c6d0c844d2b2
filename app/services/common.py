"""Shared service utilities: UUID coercion, timestamps, pagination."""
from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

T = TypeVar("T")


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def require_uuid(value: Any) -> uuid.UUID:
    """Convert a string or UUID to UUID, raising ValueError if None."""
    result = coerce_uuid(value)
    if result is None:
        raise ValueError("UUID value is required but got None")
    return result


def make_aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is timezone-aware (UTC). SQLite doesn't preserve tz info."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def is_unique_violation(exc: IntegrityError) -> bool:
    """True for a duplicate key, False for NOT NULL, FK or CHECK failures."""
    orig = getattr(exc, "orig", None)
    if getattr(orig, "sqlstate", None) == "23505":
        return True
    return "unique" in str(orig).lower()


def paginate(
    db: Session,
    query: Select[Any],
    *,
    page: int = 1,
    page_size: int = 25,
    max_page_size: int = 100,
) -> dict[str, Any]:
    """Execute a query with pagination and return a standardized response.

    Returns:
        {
            "items": [...],
            "total": 150,
            "page": 1,
            "page_size": 25,
            "pages": 6,
        }
    """
    page = max(1, page)
    page_size = min(max(1, page_size), max_page_size)
    offset = (page - 1) * page_size

    # Count total matching rows (strip ordering for efficiency)
    count_query = select(func.count()).select_from(query.order_by(None).subquery())
    total = db.scalar(count_query) or 0

    # Fetch page
    items = list(db.scalars(query.limit(page_size).offset(offset)).all())

    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
        "pages": math.ceil(total / page_size) if page_size else 0,
    }
