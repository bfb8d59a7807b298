"""
Generic pagination engine.

Runs a ``QueryPlan`` as two statements: the page itself (OFFSET/LIMIT)
and an independent COUNT under the same WHERE clause.  The two are not
executed atomically, so under concurrent writes ``total`` may briefly
disagree with the rows actually returned across pages.
"""
import math
from typing import Any, Callable

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.query_builder import QueryPlan


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool
    next_page: int | None = None
    prev_page: int | None = None

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        pages = math.ceil(total / limit) if total > 0 else 0
        has_next = page < pages
        has_prev = page > 1
        return cls(
            page=page,
            limit=limit,
            total=total,
            pages=pages,
            has_next=has_next,
            has_prev=has_prev,
            next_page=page + 1 if has_next else None,
            prev_page=page - 1 if has_prev else None,
        )


class Page(BaseModel):
    data: list
    pagination: Pagination


def offset_for(page: int, limit: int) -> int:
    return (page - 1) * limit


async def paginate(
    db: AsyncSession,
    plan: QueryPlan,
    page: int,
    limit: int,
    serialize: Callable[[Any], Any] = lambda row: row,
) -> Page:
    """
    Fetch page *page* of *plan* (``limit`` rows at most) plus the total.

    A page past the end yields an empty ``data`` list; ``total`` still
    reports the true count.
    """
    total: int = (await db.execute(plan.count_statement())).scalar_one()

    rows: list = []
    if offset_for(page, limit) < total:
        stmt = plan.statement().offset(offset_for(page, limit)).limit(limit)
        result = await db.execute(stmt)
        rows = list(result.unique().scalars().all())

    return Page(
        data=[serialize(row) for row in rows],
        pagination=Pagination.build(page, limit, total),
    )
