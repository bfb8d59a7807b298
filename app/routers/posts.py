from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import CacheManager
from app.config import Settings
from app.database import commit_and_invalidate, get_db
from app.dependencies import PostListParams, get_cache, get_settings, require
from app.filters import normalize_limit, normalize_popular_params
from app.policies import ADMIN_ONLY, ANY_USER, EDITORS, Actor, RequireOwnerOrAdmin, authorize
from app.schemas import PostCreate, PostUpdate
from app.services import post_service, ranking_service

router = APIRouter(prefix="/api/v1/posts", tags=["posts"])

_SLUG_TAKEN = "A post with a similar title already exists. Please choose a different title."

# Write routes commit with ``commit_and_invalidate`` before returning.


@router.get("")
async def list_posts(
    params: PostListParams = Depends(),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    return await post_service.list_posts(db, params.resolve(settings))


@router.get("/popular")
async def popular_posts(
    category: str | None = Query(None),
    timeframe: str | None = Query(None, description="week, month, year or all"),
    created_after: str | None = Query(None, description="ISO-8601 lower bound on created_at"),
    created_before: str | None = Query(None, description="ISO-8601 upper bound on created_at"),
    limit: str | None = Query(None),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    params = normalize_popular_params(
        category=category,
        timeframe=timeframe,
        created_after=created_after,
        created_before=created_before,
        limit=limit,
        settings=settings,
    )
    return await ranking_service.get_popular_posts(db, params)


@router.get("/by-slug/{slug}")
async def get_post_by_slug(slug: str, db: AsyncSession = Depends(get_db)):
    post = await post_service.get_post_by_slug(db, slug)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


@router.get("/{post_id}")
async def get_post(post_id: int, db: AsyncSession = Depends(get_db)):
    post = await post_service.get_post(db, post_id)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


@router.get("/{post_id}/related")
async def related_posts(
    post_id: int,
    limit: str | None = Query(None),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    limit = normalize_limit(limit, settings.RELATED_DEFAULT_LIMIT, settings.MAX_PAGE_SIZE)
    result = await ranking_service.get_related_posts(db, post_id, limit)
    if result is None:
        raise HTTPException(status_code=404, detail="Post not found")
    return result


@router.post("", status_code=201)
async def create_post(
    data: PostCreate,
    actor: Actor = Depends(require(EDITORS)),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    try:
        post = await post_service.create_post(db, data, author_id=actor.id)
        await commit_and_invalidate(db, cache)
    except IntegrityError:
        raise HTTPException(status_code=409, detail=_SLUG_TAKEN)
    return post


@router.api_route("/{post_id}", methods=["PUT", "PATCH"])
async def update_post(
    post_id: int,
    data: PostUpdate,
    actor: Actor = Depends(require(EDITORS)),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    owner_id = await post_service.get_author_id(db, post_id)
    if owner_id is None:
        raise HTTPException(status_code=404, detail="Post not found")
    authorize(actor, RequireOwnerOrAdmin(), owner_id=owner_id)
    try:
        post = await post_service.update_post(db, post_id, data)
        await commit_and_invalidate(db, cache)
    except IntegrityError:
        raise HTTPException(status_code=409, detail=_SLUG_TAKEN)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


@router.delete("/{post_id}", status_code=204)
async def delete_post(
    post_id: int,
    actor: Actor = Depends(require(ADMIN_ONLY)),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    deleted = await post_service.delete_post(db, post_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Post not found")
    await commit_and_invalidate(db, cache)


@router.post("/{post_id}/like")
async def toggle_like(
    post_id: int,
    actor: Actor = Depends(require(ANY_USER)),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    result = await post_service.toggle_like(db, post_id, actor.id)
    if result is None:
        raise HTTPException(status_code=404, detail="Post not found")
    await commit_and_invalidate(db, cache)
    return result


@router.post("/{post_id}/view")
async def record_view(
    post_id: int,
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    view_count = await post_service.increment_view(db, post_id)
    if view_count is None:
        raise HTTPException(status_code=404, detail="Post not found")
    await commit_and_invalidate(db, cache)
    return {"post_id": post_id, "view_count": view_count}
