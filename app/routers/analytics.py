from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.database import get_db
from app.dependencies import get_settings, require
from app.filters import AnalyticsParams, normalize_analytics_params
from app.policies import EDITORS, Actor
from app.services import analytics_service

router = APIRouter(prefix="/api/v1/analytics", tags=["analytics"])


def analytics_params(
    start_date: str | None = Query(None, description="ISO-8601 lower bound on created_at."),
    end_date: str | None = Query(None, description="ISO-8601 upper bound on created_at."),
    period: str | None = Query(None, description="Trend bucket: day, week (default) or month."),
    limit: str | None = Query(None, description="Size of top-N reports."),
    settings: Settings = Depends(get_settings),
) -> AnalyticsParams:
    return normalize_analytics_params(
        start_date=start_date, end_date=end_date, period=period, limit=limit, settings=settings
    )


@router.get("/overview")
async def overview(
    actor: Actor = Depends(require(EDITORS)),
    params: AnalyticsParams = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    return await analytics_service.get_overview(db, params)


@router.get("/popular")
async def most_viewed(
    actor: Actor = Depends(require(EDITORS)),
    params: AnalyticsParams = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    return await analytics_service.get_top_posts(db, params, by="views")


@router.get("/liked")
async def most_liked(
    actor: Actor = Depends(require(EDITORS)),
    params: AnalyticsParams = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    return await analytics_service.get_top_posts(db, params, by="likes")


@router.get("/engagement-trends")
async def engagement_trends(
    actor: Actor = Depends(require(EDITORS)),
    params: AnalyticsParams = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    return await analytics_service.get_engagement_trends(db, params)


@router.get("/category-performance")
async def category_performance(
    actor: Actor = Depends(require(EDITORS)),
    params: AnalyticsParams = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    return await analytics_service.get_category_performance(db, params)
