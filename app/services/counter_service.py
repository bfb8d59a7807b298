"""
Counter synchronizer: keeps ``Category.post_count`` close to the number
of *published* posts in each category.

Semantics
---------
The counter counts published posts only.  It moves whenever a post
enters or leaves ``published`` and whenever a published post changes
category; creating a draft does not touch it.

Every adjustment is a single ``UPDATE ... SET post_count = post_count + n``
so concurrent adjustments never lose an increment.  The post write and
the counter write are separate statements; inside a request they share
the session transaction, but drift is still possible (writes made
outside this service, crashes between statements on non-transactional
stores, manual edits).  The counter is therefore treated as a cache of
a derived value: ``reconcile_category_count`` recomputes it from the
posts table and is the authoritative repair path, callable on demand
(admin endpoint, ``scripts/reconcile_counts.py``) or on a schedule
(``run_periodic_reconciliation``).
"""
import asyncio
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.cache import CATEGORIES_PREFIX, POSTS_PREFIX, CacheManager
from app.database import commit_and_invalidate, mark_stale
from app.models import Category, Post

logger = logging.getLogger(__name__)

PUBLISHED = "published"


def _counted_category(category: str | None, status: str | None) -> str | None:
    """The category a post contributes to, or None when it is not published."""
    return category if status == PUBLISHED else None


# ---------------------------------------------------------------------------
# Atomic adjustments
# ---------------------------------------------------------------------------

async def adjust_post_count(db: AsyncSession, category_name: str, delta: int) -> bool:
    """
    Atomically add *delta* to the counter of *category_name*.

    A decrement that would go below zero is skipped (and logged) instead
    of violating the non-negative constraint; reconciliation fixes the
    underlying drift.  Returns whether a row was updated.
    """
    if delta == 0:
        return True
    stmt = update(Category).where(Category.name == category_name)
    if delta < 0:
        stmt = stmt.where(Category.post_count >= -delta)
    stmt = stmt.values(post_count=Category.post_count + delta)
    result = await db.execute(stmt)
    if result.rowcount == 0:
        logger.warning(
            "post_count for category %r not adjusted by %+d (missing category or counter at zero)",
            category_name,
            delta,
        )
        return False
    return True


async def sync_transition(db: AsyncSession, before: str | None, after: str | None) -> None:
    """Move one unit of count from category *before* to *after* (either may be None)."""
    if before == after:
        return
    if before is not None:
        await adjust_post_count(db, before, -1)
    if after is not None:
        await adjust_post_count(db, after, 1)


# ---------------------------------------------------------------------------
# Post lifecycle hooks
# ---------------------------------------------------------------------------

async def on_post_created(db: AsyncSession, post: Post) -> None:
    await sync_transition(db, None, _counted_category(post.category, post.status))
    mark_stale(db, POSTS_PREFIX, CATEGORIES_PREFIX)


async def on_post_updated(
    db: AsyncSession,
    post: Post,
    previous_category: str,
    previous_status: str,
) -> None:
    await sync_transition(
        db,
        _counted_category(previous_category, previous_status),
        _counted_category(post.category, post.status),
    )
    mark_stale(db, POSTS_PREFIX, CATEGORIES_PREFIX)


async def on_post_deleted(db: AsyncSession, post: Post) -> None:
    await sync_transition(db, _counted_category(post.category, post.status), None)
    mark_stale(db, POSTS_PREFIX, CATEGORIES_PREFIX)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

async def count_published(db: AsyncSession, category_name: str) -> int:
    q = (
        select(func.count())
        .select_from(Post)
        .where(Post.category == category_name, Post.status == PUBLISHED)
    )
    return (await db.execute(q)).scalar_one()


async def reconcile_category_count(db: AsyncSession, category_name: str) -> int | None:
    """
    Overwrite the stored counter of *category_name* with the real number
    of published posts.  Returns the new count, or None when the category
    does not exist.
    """
    result = await db.execute(select(Category).where(Category.name == category_name))
    category = result.scalar_one_or_none()
    if category is None:
        return None

    stored = category.post_count
    actual = await count_published(db, category_name)
    if stored != actual:
        logger.info("Reconciled post_count for %r: %d -> %d", category_name, stored, actual)
    await db.execute(update(Category).where(Category.id == category.id).values(post_count=actual))
    await db.flush()
    mark_stale(db, CATEGORIES_PREFIX, POSTS_PREFIX)
    return actual


async def reconcile_all(db: AsyncSession) -> dict[str, int]:
    """Reconcile every category; returns ``{name: count}``."""
    names = (await db.execute(select(Category.name).order_by(Category.name))).scalars().all()
    counts: dict[str, int] = {}
    for name in names:
        counts[name] = await reconcile_category_count(db, name)
    return counts


async def run_periodic_reconciliation(
    session_factory: async_sessionmaker,
    interval_seconds: float,
    cache: CacheManager | None = None,
) -> None:
    """
    Reconcile all counters every *interval_seconds* until cancelled.
    A failed pass is logged and retried on the next tick.
    """
    logger.info("Counter reconciliation scheduled every %ss", interval_seconds)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            async with session_factory() as session:
                counts = await reconcile_all(session)
                await commit_and_invalidate(session, cache)
            logger.info("Scheduled reconciliation finished for %d categories", len(counts))
        except Exception:
            logger.exception("Scheduled counter reconciliation failed")
