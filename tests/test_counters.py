"""
Counter synchronizer tests, run against the service layer directly.

Category.post_count counts published posts; every status or category
transition of a post must move it, and reconciliation must restore it
from the posts table whatever state it drifted into.
"""
import asyncio

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import CacheManager, MemoryCacheBackend
from app.database import commit_and_invalidate, discard_stale, mark_stale
from app.models import Category, User
from app.schemas import PostCreate, PostUpdate
from app.services import counter_service, post_service


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def cache() -> CacheManager:
    return CacheManager(MemoryCacheBackend())


async def _seed(db: AsyncSession, *names: str) -> User:
    for name in names:
        db.add(Category(name=name, slug=name.lower()))
    user = User(username="counter", email="counter@example.com", role="editor")
    db.add(user)
    await db.flush()
    return user


async def _count(db: AsyncSession, name: str) -> int:
    result = await db.execute(
        select(Category.post_count).where(Category.name == name).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _post(db, author: User, category: str, status: str = "published", title: str = "Post") -> dict:
    data = PostCreate(title=title, body="Some body", excerpt="Excerpt", category=category, status=status)
    return await post_service.create_post(db, data, author_id=author.id)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_publishing_on_create_increments(db_session: AsyncSession):
    author = await _seed(db_session, "Tech")
    await _post(db_session, author, "Tech")
    await _post(db_session, author, "Tech", status="draft")
    assert await _count(db_session, "Tech") == 1


@pytest.mark.asyncio
async def test_publish_and_unpublish(db_session: AsyncSession):
    author = await _seed(db_session, "Tech")
    draft = await _post(db_session, author, "Tech", status="draft")
    assert await _count(db_session, "Tech") == 0

    published = await post_service.update_post(db_session, draft["id"], PostUpdate(status="published"))
    assert published["published_at"] is not None
    assert await _count(db_session, "Tech") == 1

    await post_service.update_post(db_session, draft["id"], PostUpdate(status="archived"))
    assert await _count(db_session, "Tech") == 0


@pytest.mark.asyncio
async def test_moving_a_published_post(db_session: AsyncSession):
    author = await _seed(db_session, "Tech", "Life")
    post = await _post(db_session, author, "Tech")

    await post_service.update_post(db_session, post["id"], PostUpdate(category="Life"))
    assert await _count(db_session, "Tech") == 0
    assert await _count(db_session, "Life") == 1


@pytest.mark.asyncio
async def test_moving_and_unpublishing_at_once(db_session: AsyncSession):
    author = await _seed(db_session, "Tech", "Life")
    post = await _post(db_session, author, "Tech")

    await post_service.update_post(db_session, post["id"], PostUpdate(category="Life", status="draft"))
    assert await _count(db_session, "Tech") == 0
    assert await _count(db_session, "Life") == 0


@pytest.mark.asyncio
async def test_moving_a_draft_leaves_counters(db_session: AsyncSession):
    author = await _seed(db_session, "Tech", "Life")
    post = await _post(db_session, author, "Tech", status="draft")

    await post_service.update_post(db_session, post["id"], PostUpdate(category="Life"))
    assert await _count(db_session, "Tech") == 0
    assert await _count(db_session, "Life") == 0


@pytest.mark.asyncio
async def test_deleting_published_post_decrements(db_session: AsyncSession):
    author = await _seed(db_session, "Tech")
    keep = await _post(db_session, author, "Tech", title="Keep")
    drop = await _post(db_session, author, "Tech", title="Drop")
    assert await _count(db_session, "Tech") == 2

    assert await post_service.delete_post(db_session, drop["id"]) is True
    assert await _count(db_session, "Tech") == 1
    assert await post_service.get_post(db_session, keep["id"]) is not None


@pytest.mark.asyncio
async def test_decrement_never_goes_negative(db_session: AsyncSession):
    await _seed(db_session, "Tech")
    assert await counter_service.adjust_post_count(db_session, "Tech", -1) is False
    assert await _count(db_session, "Tech") == 0


@pytest.mark.asyncio
async def test_adjust_unknown_category(db_session: AsyncSession):
    assert await counter_service.adjust_post_count(db_session, "Nowhere", 1) is False


@pytest.mark.asyncio
async def test_writes_invalidate_cached_responses_after_commit(db_session: AsyncSession, cache):
    author = await _seed(db_session, "Tech")
    await cache.set("response:/api/v1/posts?page=1", {"stale": True})
    await cache.set("response:/api/v1/categories/tech", {"stale": True})

    await _post(db_session, author, "Tech")
    # Nothing is evicted while the write is still uncommitted.
    assert await cache.get("response:/api/v1/posts?page=1") == {"stale": True}
    assert await cache.get("response:/api/v1/categories/tech") == {"stale": True}

    await commit_and_invalidate(db_session, cache)
    assert await cache.get("response:/api/v1/posts?page=1") is None
    assert await cache.get("response:/api/v1/categories/tech") is None


@pytest.mark.asyncio
async def test_rolled_back_writes_leave_cache_alone(db_session: AsyncSession, cache):
    author = await _seed(db_session, "Tech")
    await cache.set("response:/api/v1/posts?page=1", {"fresh": True})

    await _post(db_session, author, "Tech")
    discard_stale(db_session)
    await db_session.rollback()
    await commit_and_invalidate(db_session, cache)

    assert await cache.get("response:/api/v1/posts?page=1") == {"fresh": True}


@pytest.mark.asyncio
async def test_commit_and_invalidate_evicts_each_marked_prefix_once(db_session: AsyncSession, cache):
    await cache.set("response:/api/v1/categories", {"stale": True})
    await cache.set("response:/api/v1/posts/1", {"stale": True})
    mark_stale(db_session, "/api/v1/categories")
    mark_stale(db_session, "/api/v1/categories")
    generation = cache.generation

    await commit_and_invalidate(db_session, cache)
    assert cache.generation == generation + 1
    assert await cache.get("response:/api/v1/categories") is None
    assert await cache.get("response:/api/v1/posts/1") == {"stale": True}


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reconcile_restores_published_count(db_session: AsyncSession):
    author = await _seed(db_session, "Tech")
    for i in range(5):
        await _post(db_session, author, "Tech", title=f"Post {i}")
    await _post(db_session, author, "Tech", status="draft", title="Draft")
    await db_session.execute(update(Category).where(Category.name == "Tech").values(post_count=0))

    assert await counter_service.reconcile_category_count(db_session, "Tech") == 5
    assert await _count(db_session, "Tech") == 5


@pytest.mark.asyncio
async def test_reconcile_unknown_category(db_session: AsyncSession):
    assert await counter_service.reconcile_category_count(db_session, "Nowhere") is None


@pytest.mark.asyncio
async def test_reconcile_all_covers_every_category(db_session: AsyncSession):
    author = await _seed(db_session, "Tech", "Life")
    await _post(db_session, author, "Life")
    await db_session.execute(update(Category).values(post_count=9))

    assert await counter_service.reconcile_all(db_session) == {"Life": 1, "Tech": 0}


@pytest.mark.asyncio
async def test_periodic_reconciliation_runs_until_cancelled(db_session: AsyncSession, session_factory, cache):
    await _seed(db_session, "Tech")
    await db_session.execute(update(Category).values(post_count=3))
    await db_session.commit()

    task = asyncio.create_task(
        counter_service.run_periodic_reconciliation(session_factory, 0.05, cache)
    )
    await asyncio.sleep(0.08)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await _count(db_session, "Tech") == 0
