"""
Post service: business logic for the Post aggregate.

Design notes
------------
- Listing goes through the filter normalizer, the query builder and the
  generic pagination engine, timed by ``monitor_query``.  Response
  caching happens one layer up in ``ResponseCacheMiddleware``; writes
  only mark the cached route families stale on the session.
- Eager loading: ``joinedload`` for the author (many-to-one) and
  ``selectinload`` for tags, so a page costs COUNT + SELECT + one tag
  query regardless of its size.
- Every write that can change a post's published category calls the
  counter synchronizer hooks.
- Service functions flush but do not commit.  The caller commits with
  ``commit_and_invalidate``, which evicts the marked prefixes only once
  the write is durable.
"""
import math
import re

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import POSTS_PREFIX
from app.database import mark_stale
from app.errors import NotFoundError, ValidationError
from app.filters import PostFilters, normalize_tags
from app.models import Category, Post, Tag, User, post_likes, utcnow
from app.monitoring import monitor_query
from app.pagination import paginate
from app.query_builder import POST_LOAD_OPTIONS, build_post_plan
from app.schemas import PostCreate, PostUpdate
from app.services import counter_service

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SLUG_STRIP_RE = re.compile(r"[^\w\s-]")
_SLUG_SEPARATOR_RE = re.compile(r"[\s_-]+")

WORDS_PER_MINUTE = 200


def slugify(text: str) -> str:
    """Return a URL-safe, lowercase slug derived from *text*."""
    text = _SLUG_STRIP_RE.sub("", text.lower().strip())
    return _SLUG_SEPARATOR_RE.sub("-", text).strip("-")


def reading_time(body: str) -> int:
    """Minutes to read *body* at 200 words per minute; never less than 1."""
    return max(1, math.ceil(len(body.split()) / WORDS_PER_MINUTE))


async def _unique_slug(db: AsyncSession, title: str, exclude_id: int | None = None) -> str:
    """
    Slug for *title* that no other post uses, suffixing ``-2``, ``-3``...
    on collision.
    """
    base = slugify(title) or "post"
    candidate, n = base, 2
    while True:
        q = select(Post.id).where(Post.slug == candidate)
        if exclude_id is not None:
            q = q.where(Post.id != exclude_id)
        if (await db.execute(q)).first() is None:
            return candidate
        candidate = f"{base}-{n}"
        n += 1


async def _resolve_tags(db: AsyncSession, names: tuple[str, ...]) -> list[Tag]:
    """Tag rows for *names* (already normalized), creating missing ones."""
    if not names:
        return []
    result = await db.execute(select(Tag).where(Tag.name.in_(names)))
    existing = {t.name: t for t in result.scalars().all()}
    tags: list[Tag] = []
    for name in names:
        tag = existing.get(name)
        if tag is None:
            tag = Tag(name=name)
            db.add(tag)
        tags.append(tag)
    await db.flush()
    return tags


async def _require_active_category(db: AsyncSession, name: str) -> Category:
    result = await db.execute(
        select(Category).where(Category.name == name.strip(), Category.is_active.is_(True))
    )
    category = result.scalar_one_or_none()
    if category is None:
        raise ValidationError("category", f"Invalid category {name!r}. Please select a valid active category.")
    return category


async def _load_post(db: AsyncSession, post_id: int) -> Post | None:
    """Fetch a post with author and tags, refreshing any stale in-session copy."""
    q = (
        select(Post)
        .where(Post.id == post_id)
        .options(*POST_LOAD_OPTIONS)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(q)
    return result.unique().scalar_one_or_none()


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _serialize_author(author: User | None) -> dict | None:
    if author is None:
        return None
    return {
        "id": author.id,
        "username": author.username,
        "display_name": author.display_name,
    }


def post_to_dict(post: Post) -> dict:
    """Serialise a Post ORM instance to a plain dict (list view)."""
    return {
        "id": post.id,
        "title": post.title,
        "slug": post.slug,
        "excerpt": post.excerpt,
        "category": post.category,
        "tags": post.tag_names,
        "status": post.status,
        "featured": post.featured,
        "reading_time": post.reading_time,
        "view_count": post.view_count,
        "like_count": post.like_count or 0,
        "author_id": post.author_id,
        "author": _serialize_author(post.author),
        "published_at": _iso(post.published_at),
        "created_at": _iso(post.created_at),
        "updated_at": _iso(post.updated_at),
    }


def post_detail_to_dict(post: Post) -> dict:
    """Detail view: list fields plus body, keywords and an SEO block."""
    data = post_to_dict(post)
    data["body"] = post.body
    data["keywords"] = post.keyword_list
    data["seo"] = {
        "title": post.title,
        "description": post.excerpt,
        "keywords": post.keyword_list or post.tag_names,
        "url": f"/blog/{post.slug}",
        "type": "article",
        "published_time": _iso(post.published_at or post.created_at),
        "modified_time": _iso(post.updated_at),
        "author": post.author.username if post.author else "Anonymous",
        "section": post.category,
        "tags": post.tag_names,
    }
    return data


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def list_posts(db: AsyncSession, filters: PostFilters) -> dict:
    """
    Paginated listing/search for *filters*.

    Returns ``{"data", "pagination", "filters", "performance"}``.  A page
    past the end is not an error: ``data`` is empty, ``total`` is exact.
    """
    plan = build_post_plan(filters)
    query_name = (
        f"list_posts page={filters.page} limit={filters.limit} search={filters.query or 'none'}"
    )
    result = await monitor_query(
        lambda: paginate(db, plan, filters.page, filters.limit, post_to_dict),
        query_name,
    )
    page = result["data"]
    return {
        "data": page.data,
        "pagination": page.pagination.model_dump(),
        "filters": filters.describe(),
        "performance": result["performance"],
    }


async def get_post(db: AsyncSession, post_id: int) -> dict | None:
    post = await _load_post(db, post_id)
    return post_detail_to_dict(post) if post else None


async def get_post_by_slug(db: AsyncSession, slug: str) -> dict | None:
    result = await db.execute(select(Post.id).where(Post.slug == slug))
    post_id = result.scalar_one_or_none()
    if post_id is None:
        return None
    return await get_post(db, post_id)


async def get_author_id(db: AsyncSession, post_id: int) -> int | None:
    """Owner of *post_id* for ownership checks; None when the post is missing."""
    result = await db.execute(select(Post.author_id).where(Post.id == post_id))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def create_post(db: AsyncSession, data: PostCreate, author_id: int) -> dict:
    """
    Create a post owned by *author_id*.  The category must exist and be
    active.  Publishing on creation bumps the category counter.
    """
    if await db.get(User, author_id) is None:
        raise NotFoundError(f"User {author_id} not found")
    category = await _require_active_category(db, data.category)
    title = data.title.strip()
    keywords = normalize_tags(data.keywords)

    post = Post(
        title=title,
        slug=await _unique_slug(db, title),
        body=data.body,
        excerpt=data.excerpt.strip(),
        keywords=",".join(keywords) or None,
        category=category.name,
        status=data.status,
        featured=data.featured,
        author_id=author_id,
        reading_time=reading_time(data.body),
        published_at=utcnow() if data.status == "published" else None,
    )
    post.tags = await _resolve_tags(db, normalize_tags(data.tags))
    db.add(post)
    await db.flush()

    await counter_service.on_post_created(db, post)
    return post_detail_to_dict(await _load_post(db, post.id))


async def update_post(db: AsyncSession, post_id: int, data: PostUpdate) -> dict | None:
    """
    Partially update a post.  Returns None when it does not exist.

    Only fields present in the payload are touched.  The slug is
    regenerated only when the title actually changes.
    """
    post = await _load_post(db, post_id)
    if post is None:
        return None

    previous_category, previous_status = post.category, post.status
    update_data = data.model_dump(exclude_unset=True)
    tags_data = update_data.pop("tags", None)
    keywords_data = update_data.pop("keywords", None)
    # Explicit nulls are ignored: every remaining column is NOT NULL.
    update_data = {k: v for k, v in update_data.items() if v is not None}

    if "category" in update_data:
        new_category = update_data["category"].strip()
        if new_category != post.category:
            new_category = (await _require_active_category(db, new_category)).name
        update_data["category"] = new_category

    if "title" in update_data:
        title = update_data["title"].strip()
        if title != post.title:
            post.slug = await _unique_slug(db, title, exclude_id=post.id)
        update_data["title"] = title

    if "excerpt" in update_data:
        update_data["excerpt"] = update_data["excerpt"].strip()

    for field, value in update_data.items():
        setattr(post, field, value)

    if "body" in update_data:
        post.reading_time = reading_time(post.body)
    if post.status == "published" and post.published_at is None:
        post.published_at = utcnow()
    if tags_data is not None:
        post.tags = await _resolve_tags(db, normalize_tags(tags_data))
    if keywords_data is not None:
        post.keywords = ",".join(normalize_tags(keywords_data)) or None

    await db.flush()
    await counter_service.on_post_updated(db, post, previous_category, previous_status)
    return post_detail_to_dict(await _load_post(db, post.id))


async def delete_post(db: AsyncSession, post_id: int) -> bool:
    """Delete a post; returns False when it does not exist."""
    post = await _load_post(db, post_id)
    if post is None:
        return False

    await db.execute(delete(post_likes).where(post_likes.c.post_id == post.id))
    await db.delete(post)
    await db.flush()
    await counter_service.on_post_deleted(db, post)
    return True


async def toggle_like(db: AsyncSession, post_id: int, user_id: int) -> dict | None:
    """
    Like the post for *user_id*, or remove the like if already present.
    Returns None when the post does not exist.
    """
    if await get_author_id(db, post_id) is None:
        return None
    if await db.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    match = (post_likes.c.post_id == post_id) & (post_likes.c.user_id == user_id)
    already_liked = (await db.execute(select(post_likes.c.post_id).where(match))).first() is not None
    if already_liked:
        await db.execute(delete(post_likes).where(match))
    else:
        await db.execute(insert(post_likes).values(post_id=post_id, user_id=user_id, created_at=utcnow()))

    like_count = (
        await db.execute(select(func.count()).select_from(post_likes).where(post_likes.c.post_id == post_id))
    ).scalar_one()
    # Likes feed the popularity ranking.
    mark_stale(db, POSTS_PREFIX)
    return {"post_id": post_id, "liked": not already_liked, "like_count": like_count}


async def increment_view(db: AsyncSession, post_id: int) -> int | None:
    """
    Atomically bump the view counter; returns the new value or None when
    the post does not exist.  Cached responses are left to expire on their
    TTL; views change far too often to invalidate on each one.
    """
    result = await db.execute(
        update(Post).where(Post.id == post_id).values(view_count=Post.view_count + 1)
    )
    if result.rowcount == 0:
        return None
    return (await db.execute(select(Post.view_count).where(Post.id == post_id))).scalar_one()
