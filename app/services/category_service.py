"""
Category service: cRUD for categories and the bulk post rewrites that
renames and deletions require.

Posts reference their category by *name*, so:

- renaming rewrites ``posts.category`` for every referencing post; the
  counter stays on the same row and carries over untouched;
- deleting is refused while posts still reference the category unless a
  ``reassign_to`` target (existing, active, different) is supplied, in
  which case posts move first and the target's counter grows by the
  published posts it received.
"""
import logging

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import CATEGORIES_PREFIX, POSTS_PREFIX
from app.database import mark_stale
from app.errors import ConflictError, ValidationError
from app.models import Category, Post, post_likes
from app.pagination import paginate
from app.query_builder import QueryPlan
from app.schemas import CategoryCreate, CategoryUpdate
from app.services import counter_service
from app.services.post_service import slugify

logger = logging.getLogger(__name__)


def _category_to_dict(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "slug": category.slug,
        "description": category.description,
        "is_active": category.is_active,
        "post_count": category.post_count,
        "created_at": category.created_at.isoformat() if category.created_at else None,
        "updated_at": category.updated_at.isoformat() if category.updated_at else None,
    }


async def _get(db: AsyncSession, category_id: int) -> Category | None:
    result = await db.execute(
        select(Category).where(Category.id == category_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _get_by_name(db: AsyncSession, name: str) -> Category | None:
    result = await db.execute(select(Category).where(Category.name == name))
    return result.scalar_one_or_none()


async def _unique_slug(db: AsyncSession, name: str, exclude_id: int | None = None) -> str:
    base = slugify(name) or "category"
    candidate, n = base, 2
    while True:
        q = select(Category.id).where(Category.slug == candidate)
        if exclude_id is not None:
            q = q.where(Category.id != exclude_id)
        if (await db.execute(q)).first() is None:
            return candidate
        candidate = f"{base}-{n}"
        n += 1


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def list_categories(
    db: AsyncSession,
    page: int,
    limit: int,
    include_inactive: bool = False,
    search: str | None = None,
) -> dict:
    where = []
    if not include_inactive:
        where.append(Category.is_active.is_(True))
    if search:
        where.append(
            or_(
                Category.name.icontains(search, autoescape=True),
                Category.description.icontains(search, autoescape=True),
            )
        )
    plan = QueryPlan(Category, tuple(where), (Category.name.asc(), Category.id.asc()))
    page_result = await paginate(db, plan, page, limit, _category_to_dict)
    return {"data": page_result.data, "pagination": page_result.pagination.model_dump()}


async def get_category_name(db: AsyncSession, category_id: int) -> str | None:
    result = await db.execute(select(Category.name).where(Category.id == category_id))
    return result.scalar_one_or_none()


async def get_category_by_slug(db: AsyncSession, slug: str) -> dict | None:
    """Active category by slug, with the live published count next to the stored one."""
    result = await db.execute(
        select(Category).where(Category.slug == slug, Category.is_active.is_(True))
    )
    category = result.scalar_one_or_none()
    if category is None:
        return None
    data = _category_to_dict(category)
    data["actual_post_count"] = await counter_service.count_published(db, category.name)
    return data


async def get_category_stats(db: AsyncSession) -> list[dict]:
    """
    Per active category: stored counter, live published count, total views
    and likes of its published posts.  Most populated first.
    """
    published_join = (Post.category == Category.name) & (Post.status == "published")
    rows = (
        await db.execute(
            select(
                Category.name,
                Category.slug,
                Category.post_count,
                func.count(Post.id),
                func.coalesce(func.sum(Post.view_count), 0),
            )
            .outerjoin(Post, published_join)
            .where(Category.is_active.is_(True))
            .group_by(Category.id, Category.name, Category.slug, Category.post_count)
        )
    ).all()

    likes = dict(
        (
            await db.execute(
                select(Post.category, func.count())
                .select_from(post_likes)
                .join(Post, Post.id == post_likes.c.post_id)
                .where(Post.status == "published")
                .group_by(Post.category)
            )
        ).all()
    )

    stats = [
        {
            "name": name,
            "slug": slug,
            "post_count": stored,
            "actual_post_count": actual,
            "total_views": int(views),
            "total_likes": likes.get(name, 0),
        }
        for name, slug, stored, actual, views in rows
    ]
    stats.sort(key=lambda s: (-s["actual_post_count"], s["name"]))
    return stats


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def create_category(db: AsyncSession, data: CategoryCreate) -> dict:
    name = data.name.strip()
    if not name:
        raise ValidationError("name", "Category name is required")
    if await _get_by_name(db, name) is not None:
        raise ConflictError(f"Category {name!r} already exists")

    category = Category(
        name=name,
        slug=await _unique_slug(db, name),
        description=data.description.strip() if data.description else None,
        is_active=data.is_active,
        post_count=0,
    )
    db.add(category)
    await db.flush()
    mark_stale(db, CATEGORIES_PREFIX, POSTS_PREFIX)
    return _category_to_dict(category)


async def update_category(db: AsyncSession, category_id: int, data: CategoryUpdate) -> dict | None:
    """
    Update a category; a new ``name`` renames it and rewrites every post
    that referenced the old name.  Returns None when it does not exist.
    """
    category = await _get(db, category_id)
    if category is None:
        return None

    renamed_posts = 0
    if data.name is not None:
        new_name = data.name.strip()
        if not new_name:
            raise ValidationError("name", "Category name cannot be empty")
        if new_name != category.name:
            if await _get_by_name(db, new_name) is not None:
                raise ConflictError(f"Category {new_name!r} already exists")
            old_name = category.name
            result = await db.execute(
                update(Post).where(Post.category == old_name).values(category=new_name)
            )
            renamed_posts = result.rowcount
            category.name = new_name
            category.slug = await _unique_slug(db, new_name, exclude_id=category.id)
            logger.info("Renamed category %r -> %r (%d posts rewritten)", old_name, new_name, renamed_posts)

    if data.description is not None:
        category.description = data.description.strip() or None
    if data.is_active is not None:
        category.is_active = data.is_active

    await db.flush()
    mark_stale(db, CATEGORIES_PREFIX, POSTS_PREFIX)
    result = _category_to_dict(category)
    result["renamed_posts"] = renamed_posts
    return result


async def delete_category(
    db: AsyncSession,
    category_id: int,
    reassign_to: str | None = None,
) -> dict | None:
    """
    Delete a category.  Returns None when it does not exist.

    Raises ``ValidationError("reassign_to")`` when posts still reference
    the category and no valid reassignment target was given.
    """
    category = await _get(db, category_id)
    if category is None:
        return None

    name = category.name
    referencing = (
        await db.execute(select(func.count()).select_from(Post).where(Post.category == name))
    ).scalar_one()

    target_name = None
    if referencing > 0:
        reassign_to = (reassign_to or "").strip()
        if not reassign_to:
            raise ValidationError(
                "reassign_to",
                f"Cannot delete category {name!r}: {referencing} post(s) still use it. "
                "Provide a 'reassign_to' category name to move them first.",
            )
        target = await _get_by_name(db, reassign_to)
        if target is None or not target.is_active or target.id == category.id:
            raise ValidationError("reassign_to", f"Reassign category {reassign_to!r} not found or inactive")

        moved_published = await counter_service.count_published(db, name)
        await db.execute(update(Post).where(Post.category == name).values(category=target.name))
        await counter_service.adjust_post_count(db, target.name, moved_published)
        target_name = target.name
        logger.info("Reassigned %d posts from %r to %r", referencing, name, target_name)

    await db.delete(category)
    await db.flush()
    mark_stale(db, CATEGORIES_PREFIX, POSTS_PREFIX)
    return {
        "id": category_id,
        "name": name,
        "reassigned_posts": referencing if target_name else 0,
        "reassigned_to": target_name,
    }
