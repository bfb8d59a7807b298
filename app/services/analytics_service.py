"""
Analytics service: the editorial dashboard reports.

Unlike the public rankings these cover posts of every status, optionally
limited to a ``created_at`` window.  Likes are counted through a grouped
``post_likes`` subquery joined onto the posts, so a report costs a fixed
number of statements however many posts it covers.

Every report is timed with ``monitor_query`` and returns
``{"data", "date_range", "performance"}``.
"""
from collections import defaultdict
from datetime import datetime, timezone

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.filters import ANALYTICS_PERIODS, AnalyticsParams
from app.models import Post, User
from app.monitoring import monitor_query
from app.query_builder import build_top_posts_plan, created_between, likes_per_post
from app.services.post_service import post_to_dict

PUBLISHED = "published"


def _ratio(total: float, count: int) -> float:
    return round(total / count, 1) if count else 0.0


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive values; they are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _window_name(params: AnalyticsParams) -> str:
    if params.start is None and params.end is None:
        return ""
    return f" start={params.start} end={params.end}"


async def _report(query_fn, query_name: str, params: AnalyticsParams) -> dict:
    result = await monitor_query(query_fn, query_name)
    return {
        "data": result["data"],
        "date_range": params.date_range(),
        "performance": result["performance"],
    }


# ---------------------------------------------------------------------------
# Overview
# ---------------------------------------------------------------------------

async def get_overview(db: AsyncSession, params: AnalyticsParams) -> dict:
    """
    Post counts per status, total views and likes, and the averages over
    published posts, for posts created in the window.  ``total_users`` is
    not windowed.
    """
    window = created_between(params.start, params.end)

    async def query() -> dict:
        by_status = dict(
            (await db.execute(select(Post.status, func.count()).where(*window).group_by(Post.status))).all()
        )

        likes = likes_per_post()
        total_views, total_likes = (
            await db.execute(
                select(
                    func.coalesce(func.sum(Post.view_count), 0),
                    func.coalesce(func.sum(likes.c.likes), 0),
                )
                .select_from(Post)
                .outerjoin(likes, likes.c.post_id == Post.id)
                .where(*window)
            )
        ).one()

        avg_views, avg_reading_time = (
            await db.execute(
                select(
                    func.coalesce(func.avg(Post.view_count), 0),
                    func.coalesce(func.avg(Post.reading_time), 0),
                ).where(*window, Post.status == PUBLISHED)
            )
        ).one()

        total_users = (await db.execute(select(func.count()).select_from(User))).scalar_one()

        return {
            "total_posts": sum(by_status.values()),
            "published_posts": by_status.get(PUBLISHED, 0),
            "draft_posts": by_status.get("draft", 0),
            "archived_posts": by_status.get("archived", 0),
            "total_views": int(total_views),
            "total_likes": int(total_likes),
            "total_users": total_users,
            "avg_view_count": round(float(avg_views), 1),
            "avg_reading_time": round(float(avg_reading_time), 1),
        }

    return await _report(query, f"analytics_overview{_window_name(params)}", params)


# ---------------------------------------------------------------------------
# Top posts
# ---------------------------------------------------------------------------

async def get_top_posts(db: AsyncSession, params: AnalyticsParams, by: str) -> dict:
    """The ``params.limit`` most viewed (``by="views"``) or most liked posts."""
    plan = build_top_posts_plan(params, by)

    async def query() -> list[dict]:
        result = await db.execute(plan.statement().limit(params.limit))
        return [post_to_dict(p) for p in result.unique().scalars().all()]

    return await _report(
        query, f"analytics_top_posts by={by} limit={params.limit}{_window_name(params)}", params
    )


# ---------------------------------------------------------------------------
# Engagement trends
# ---------------------------------------------------------------------------

def bucket_engagement(rows, period: str) -> list[dict]:
    """
    Group ``(created_at, status, view_count, likes)`` rows into buckets
    labelled by *period* (``%Y-%m-%d``, ``%Y-%U`` or ``%Y-%m`` of the UTC
    creation time), oldest bucket first.
    """
    label_format = ANALYTICS_PERIODS[period]
    buckets: dict[str, dict] = defaultdict(
        lambda: {"post_count": 0, "published_count": 0, "total_views": 0, "total_likes": 0}
    )
    for created_at, status, views, likes in rows:
        bucket = buckets[_as_utc(created_at).strftime(label_format)]
        bucket["post_count"] += 1
        bucket["total_views"] += views or 0
        bucket["total_likes"] += likes or 0
        if status == PUBLISHED:
            bucket["published_count"] += 1

    return [
        {
            "date": label,
            **totals,
            "avg_views_per_post": _ratio(totals["total_views"], totals["post_count"]),
            "avg_likes_per_post": _ratio(totals["total_likes"], totals["post_count"]),
        }
        for label, totals in sorted(buckets.items())
    ]


async def get_engagement_trends(db: AsyncSession, params: AnalyticsParams) -> dict:
    """Per-period post, view and like totals for posts created in the window."""
    likes = likes_per_post()
    q = (
        select(Post.created_at, Post.status, Post.view_count, func.coalesce(likes.c.likes, 0))
        .outerjoin(likes, likes.c.post_id == Post.id)
        .where(*created_between(params.start, params.end))
    )

    async def query() -> list[dict]:
        rows = (await db.execute(q)).all()
        return bucket_engagement(rows, params.period)

    report = await _report(
        query, f"analytics_engagement_trends period={params.period}{_window_name(params)}", params
    )
    report["period"] = params.period
    return report


# ---------------------------------------------------------------------------
# Category performance
# ---------------------------------------------------------------------------

async def get_category_performance(db: AsyncSession, params: AnalyticsParams) -> dict:
    """Per-category totals and averages, most viewed category first."""
    likes = likes_per_post()
    q = (
        select(
            Post.category,
            func.count(),
            func.sum(case((Post.status == PUBLISHED, 1), else_=0)),
            func.coalesce(func.sum(Post.view_count), 0),
            func.coalesce(func.sum(likes.c.likes), 0),
            func.avg(Post.reading_time),
        )
        .outerjoin(likes, likes.c.post_id == Post.id)
        .where(*created_between(params.start, params.end))
        .group_by(Post.category)
    )

    async def query() -> list[dict]:
        stats = []
        for category, count, published, views, total_likes, reading in (await db.execute(q)).all():
            stats.append({
                "category": category,
                "post_count": count,
                "published_count": int(published or 0),
                "total_views": int(views),
                "total_likes": int(total_likes),
                "avg_reading_time": round(float(reading or 0), 1),
                "avg_views_per_post": _ratio(int(views), count),
                "avg_likes_per_post": _ratio(int(total_likes), count),
            })
        stats.sort(key=lambda s: (-s["total_views"], s["category"]))
        return stats

    return await _report(query, f"analytics_category_performance{_window_name(params)}", params)
