from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ListResponse(BaseModel, Generic[T]):
    """Page of results, shaped like :func:`app.services.common.paginate`."""

    items: list[T]
    total: int
    page: int
    page_size: int
    pages: int
