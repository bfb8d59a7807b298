"""
Ranking service: the two specialised read paths that bypass pagination.

- Related content: posts sharing the source's category or any of its
  tags, category match weighted above all tag overlap combined.
- Popularity: published posts by views then likes, optionally limited to
  a category and a creation window.

Both are timed with ``monitor_query`` and return ``{"data", "performance"}``.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.filters import PopularParams
from app.models import Post
from app.monitoring import monitor_query
from app.query_builder import QueryPlan, build_popular_plan, build_related_plan
from app.services.post_service import post_to_dict


async def _fetch(db: AsyncSession, plan: QueryPlan, limit: int) -> list[dict]:
    result = await db.execute(plan.statement().limit(limit))
    return [post_to_dict(p) for p in result.unique().scalars().all()]


async def get_related_posts(db: AsyncSession, post_id: int, limit: int) -> dict | None:
    """
    At most *limit* published posts related to *post_id*, best first.
    The source itself is never included.  Returns None when the source
    post does not exist.
    """
    result = await db.execute(
        select(Post)
        .where(Post.id == post_id)
        .options(selectinload(Post.tags))
        .execution_options(populate_existing=True)
    )
    source = result.scalar_one_or_none()
    if source is None:
        return None

    plan = build_related_plan(source.id, source.category, source.tag_names)
    return await monitor_query(
        lambda: _fetch(db, plan, limit),
        f"get_related_posts post={post_id} limit={limit}",
    )


async def get_popular_posts(db: AsyncSession, params: PopularParams) -> dict:
    window = ""
    if params.created_after or params.created_before:
        window = f" after={params.created_after} before={params.created_before}"
    plan = build_popular_plan(params)
    return await monitor_query(
        lambda: _fetch(db, plan, params.limit),
        f"get_popular_posts category={params.category or 'all'} limit={params.limit}{window}",
    )
