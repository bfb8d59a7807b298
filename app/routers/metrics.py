from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import Category, Post, User, post_likes
from app.schemas import MetricsResponse

router = APIRouter(prefix="/api/v1/metrics", tags=["metrics"])


@router.get("", response_model=MetricsResponse)
async def get_metrics(request: Request, db: AsyncSession = Depends(get_db)):

    total_posts = (await db.execute(select(func.count()).select_from(Post))).scalar_one()

    by_status = dict(
        (await db.execute(select(Post.status, func.count()).group_by(Post.status))).all()
    )

    total_categories = (await db.execute(select(func.count()).select_from(Category))).scalar_one()

    total_users = (await db.execute(select(func.count()).select_from(User))).scalar_one()

    views, avg_views, avg_reading_time = (
        await db.execute(
            select(
                func.coalesce(func.sum(Post.view_count), 0),
                func.coalesce(func.avg(Post.view_count), 0),
                func.coalesce(func.avg(Post.reading_time), 0),
            ).where(Post.status == "published")
        )
    ).one()

    likes = (
        await db.execute(
            select(func.count())
            .select_from(post_likes.join(Post.__table__, Post.id == post_likes.c.post_id))
            .where(Post.status == "published")
        )
    ).scalar_one()

    return MetricsResponse(
        total_posts=total_posts,
        published_posts=by_status.get("published", 0),
        total_categories=total_categories,
        total_users=total_users,
        post_stats={
            "by_status": by_status,
            "total_views": int(views),
            "total_likes": likes,
            "avg_view_count": round(float(avg_views), 2),
            "avg_reading_time": round(float(avg_reading_time), 2),
        },
        cache_info=request.app.state.cache.stats,
    )
