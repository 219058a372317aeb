import math
from typing import Literal, Optional

from fastapi import Query
from sqlalchemy import asc, desc, inspect, or_
from sqlalchemy.orm import Query as OrmQuery

from . import schemas


class PageParams:
    """Query-string paging and sorting shared by every list endpoint."""

    def __init__(
            self,
            page: int = Query(1, ge=1),
            limit: int = Query(10, ge=1, le=100),
            sort_by: Optional[str] = None,
            sort_order: Literal["asc", "desc"] = "desc",
    ):
        self.page = page
        self.limit = limit
        self.sort_by = sort_by
        self.sort_order = sort_order

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def search_filter(term: Optional[str], *columns):
    if not term:
        return None
    pattern = f"%{term}%"
    return or_(*[column.ilike(pattern) for column in columns])


def paginate(query: OrmQuery, params: PageParams, model, default_sort: str = "created_at"):
    """
    Applies sorting, offset and limit to ``query``.
    Unknown ``sort_by`` values fall back to ``default_sort``.
    Returns ``(items, meta)``.
    """
    total = query.order_by(None).count()

    sort_by = default_sort
    if params.sort_by and params.sort_by in inspect(model).columns:
        sort_by = params.sort_by
    column = getattr(model, sort_by)
    ordering = asc(column) if params.sort_order == "asc" else desc(column)

    items = query.order_by(ordering, desc(model.id)).offset(params.skip).limit(params.limit).all()
    meta = schemas.PageMeta(
        page=params.page,
        limit=params.limit,
        total=total,
        total_pages=math.ceil(total / params.limit) if total else 0,
    )
    return items, meta
