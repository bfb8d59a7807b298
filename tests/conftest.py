"""
Test infrastructure for the blog content API.

Strategy
--------
- SQLite in-memory via aiosqlite, so no Postgres instance is needed in CI.
- StaticPool forces every session onto the same in-memory connection;
  SQLite in-memory databases are connection-scoped.
- The app's get_db dependency is rebuilt with ``session_dependency`` on
  the test session factory, so requests keep the production commit and
  cache-invalidation behaviour.
- Tables are created before each test and dropped after it, and the
  app's in-memory response cache is cleared, so every test starts clean.
- Writes go through the API with actor headers (X-User-Id / X-User-Role);
  the ``admin_headers`` / ``editor_headers`` fixtures register a user of
  that role first.
"""
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.database import Base, get_db, session_dependency
from app.main import app, create_app
from app.middleware import install_query_counter

# ---------------------------------------------------------------------------
# Test database engine: SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

install_query_counter(engine_test)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Dependency override: replace production get_db with the test session factory
# ---------------------------------------------------------------------------

override_get_db = session_dependency(async_session_test)


app.dependency_overrides[get_db] = override_get_db


def build_test_app(**overrides) -> FastAPI:
    """A separate app instance (own cache) wired to the test database."""
    test_app = create_app(Settings(**overrides))
    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


def client_for(target: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=target), base_url="http://test")


def actor_headers(user_id: int, role: str) -> dict:
    return {"X-User-Id": str(user_id), "X-User-Role": role}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables and empty the response cache before each test."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await app.state.cache.clear()
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """A live AsyncSession for seeding data or asserting ORM state directly."""
    async with async_session_test() as session:
        yield session


@pytest_asyncio.fixture
async def async_client() -> AsyncClient:
    """httpx.AsyncClient wired to the FastAPI app via ASGITransport."""
    async with client_for(app) as client:
        yield client


async def _register(client: AsyncClient, username: str, role: str) -> dict:
    resp = await client.post("/api/v1/users", json={
        "username": username,
        "email": f"{username}@example.com",
        "role": role,
    })
    assert resp.status_code == 201, resp.text
    return actor_headers(resp.json()["id"], role)


@pytest_asyncio.fixture
async def admin_headers(async_client: AsyncClient) -> dict:
    return await _register(async_client, "admin", "admin")


@pytest_asyncio.fixture
async def editor_headers(async_client: AsyncClient) -> dict:
    return await _register(async_client, "editor", "editor")


@pytest_asyncio.fixture
async def reader_headers(async_client: AsyncClient) -> dict:
    return await _register(async_client, "reader", "reader")


@pytest.fixture
def create_category(async_client: AsyncClient, admin_headers: dict):
    """Factory: create a category through the API and return its JSON."""

    async def _create(name: str, **fields) -> dict:
        resp = await async_client.post(
            "/api/v1/categories", json={"name": name, **fields}, headers=admin_headers
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _create


@pytest.fixture
def create_post(async_client: AsyncClient, admin_headers: dict):
    """
    Factory: create a post through the API and return its JSON.  Defaults
    to a published post; any PostCreate field can be overridden, plus
    ``headers`` to post as a different actor.
    """

    async def _create(title: str, category: str, headers: dict | None = None, **fields) -> dict:
        payload = {
            "title": title,
            "body": fields.pop("body", f"Body text of {title}."),
            "excerpt": fields.pop("excerpt", f"About {title}"),
            "category": category,
            "status": fields.pop("status", "published"),
            **fields,
        }
        resp = await async_client.post("/api/v1/posts", json=payload, headers=headers or admin_headers)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _create


@pytest.fixture
def app_factory():
    """Build an isolated app (own settings and cache) on the test database."""
    return build_test_app


@pytest.fixture
def session_factory():
    """The test session factory, for code that opens its own sessions."""
    return async_session_test
