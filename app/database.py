from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings
from app.middleware import install_query_counter

# Tests swap in their own engine and session factory through dependency
# overrides; everything else imports these two names.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
)

install_query_counter(engine)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# session.info key holding the cached-route prefixes a write made stale.
PENDING_INVALIDATIONS = "pending_cache_invalidations"


class Base(DeclarativeBase):
    pass


async def create_tables() -> None:
    """Create any missing tables; used when CREATE_TABLES_ON_STARTUP is set."""
    import app.models  # noqa: F401  (registers the mappers on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# Transaction boundary
# ---------------------------------------------------------------------------

def mark_stale(session: AsyncSession, *path_prefixes: str) -> None:
    """
    Record that the pending transaction invalidates cached responses under
    *path_prefixes*.  Nothing is evicted until ``commit_and_invalidate``
    has committed; a rollback discards the marks.
    """
    session.info.setdefault(PENDING_INVALIDATIONS, set()).update(path_prefixes)


def discard_stale(session: AsyncSession) -> None:
    session.info.pop(PENDING_INVALIDATIONS, None)


async def commit_and_invalidate(session: AsyncSession, cache=None) -> None:
    """
    Commit, then evict every response prefix marked stale during the
    transaction.  Eviction after the commit means a read racing the
    write can only cache rows that are already durable.
    """
    await session.commit()
    prefixes = session.info.pop(PENDING_INVALIDATIONS, set())
    if cache is None:
        return
    for prefix in sorted(prefixes):
        await cache.invalidate_prefix(prefix)


def session_dependency(session_factory: async_sessionmaker):
    """
    Build a request-scoped session dependency over *session_factory*.

    Services flush; the commit happens at the transaction boundary, so a
    post write and the category counter updates it triggers land in the
    same transaction.
    """

    async def _get_db(request: Request):
        async with session_factory() as session:
            try:
                yield session
                # Write routes commit before responding; this catches the rest.
                await commit_and_invalidate(session, request.app.state.cache)
            except Exception:
                discard_stale(session)
                await session.rollback()
                raise

    return _get_db


get_db = session_dependency(async_session)
