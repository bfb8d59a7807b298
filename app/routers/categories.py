from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import CacheManager
from app.config import Settings
from app.database import commit_and_invalidate, get_db
from app.dependencies import get_cache, get_settings, require
from app.filters import normalize_limit, normalize_page
from app.policies import ADMIN_ONLY, Actor
from app.schemas import CategoryCreate, CategoryResponse, CategoryUpdate, CategoryUpdateResult
from app.services import category_service, counter_service

router = APIRouter(prefix="/api/v1/categories", tags=["categories"])

_NAME_TAKEN = "A category with this name already exists"


@router.get("")
async def list_categories(
    page: str | None = Query(None),
    limit: str | None = Query(None),
    include_inactive: bool = Query(False),
    search: str | None = Query(None),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    return await category_service.list_categories(
        db,
        page=normalize_page(page),
        limit=normalize_limit(limit, settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE),
        include_inactive=include_inactive,
        search=(search or "").strip() or None,
    )


@router.get("/stats")
async def category_stats(db: AsyncSession = Depends(get_db)):
    return {"data": await category_service.get_category_stats(db)}


@router.post("/reconcile")
async def reconcile_all_counts(
    actor: Actor = Depends(require(ADMIN_ONLY)),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    counts = await counter_service.reconcile_all(db)
    await commit_and_invalidate(db, cache)
    return {"data": counts}


@router.get("/{slug}")
async def get_category(slug: str, db: AsyncSession = Depends(get_db)):
    category = await category_service.get_category_by_slug(db, slug)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@router.post("", status_code=201, response_model=CategoryResponse)
async def create_category(
    data: CategoryCreate,
    actor: Actor = Depends(require(ADMIN_ONLY)),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    try:
        category = await category_service.create_category(db, data)
        await commit_and_invalidate(db, cache)
    except IntegrityError:
        raise HTTPException(status_code=409, detail=_NAME_TAKEN)
    return category


@router.put("/{category_id}", response_model=CategoryUpdateResult)
async def update_category(
    category_id: int,
    data: CategoryUpdate,
    actor: Actor = Depends(require(ADMIN_ONLY)),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    try:
        category = await category_service.update_category(db, category_id, data)
        await commit_and_invalidate(db, cache)
    except IntegrityError:
        raise HTTPException(status_code=409, detail=_NAME_TAKEN)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@router.delete("/{category_id}")
async def delete_category(
    category_id: int,
    reassign_to: str | None = Query(None, description="Category name receiving the posts of the deleted one."),
    actor: Actor = Depends(require(ADMIN_ONLY)),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    result = await category_service.delete_category(db, category_id, reassign_to)
    if not result:
        raise HTTPException(status_code=404, detail="Category not found")
    await commit_and_invalidate(db, cache)
    return result


@router.post("/{category_id}/reconcile")
async def reconcile_count(
    category_id: int,
    actor: Actor = Depends(require(ADMIN_ONLY)),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    name = await category_service.get_category_name(db, category_id)
    if name is None:
        raise HTTPException(status_code=404, detail="Category not found")
    count = await counter_service.reconcile_category_count(db, name)
    await commit_and_invalidate(db, cache)
    return {"id": category_id, "name": name, "post_count": count}
