"""
Regression tests for issues found during code review.

1. Unique constraint violations must return 409 (not 500)
2. Views are recorded by an explicit write, never by reads
3. X-Query-Count header must report actual query count (not always 0)
4. CORS must not set allow_credentials=true with allow_origins=*
"""
import pytest
from httpx import AsyncClient


# ---------------------------------------------------------------------------
# 1. Unique constraint violations -> 409
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_duplicate_user_returns_409(async_client: AsyncClient):
    """Creating a user with an existing username returns 409, not 500."""
    payload = {"username": "dup_user", "email": "dup1@example.com"}
    resp1 = await async_client.post("/api/v1/users", json=payload)
    assert resp1.status_code == 201

    payload2 = {"username": "dup_user", "email": "dup2@example.com"}
    resp2 = await async_client.post("/api/v1/users", json=payload2)
    assert resp2.status_code == 409


@pytest.mark.asyncio
async def test_duplicate_email_returns_409(async_client: AsyncClient):
    """Creating a user with an existing email returns 409, not 500."""
    await async_client.post("/api/v1/users", json={
        "username": "emailuser1", "email": "same@example.com",
    })
    resp = await async_client.post("/api/v1/users", json={
        "username": "emailuser2", "email": "same@example.com",
    })
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_retitle_onto_existing_slug_is_suffixed(
    async_client: AsyncClient, create_category, create_post, admin_headers
):
    """Updating a title to match another post's slug doesn't cause 500."""
    await create_category("Tech")
    await create_post("First Post", "Tech")
    second = await create_post("Second Post", "Tech")

    resp = await async_client.patch(
        f"/api/v1/posts/{second['id']}", json={"title": "First Post"}, headers=admin_headers
    )
    assert resp.status_code == 200
    assert resp.json()["slug"] == "first-post-2"


# ---------------------------------------------------------------------------
# 2. Reads do not count as views
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_detail_reads_do_not_touch_view_count(
    async_client: AsyncClient, create_category, create_post
):
    await create_category("Tech")
    post = await create_post("Quiet", "Tech")

    await async_client.get(f"/api/v1/posts/{post['id']}")
    await async_client.get(f"/api/v1/posts/by-slug/{post['slug']}")
    resp = await async_client.post(f"/api/v1/posts/{post['id']}/view")
    assert resp.json()["view_count"] == 1


# ---------------------------------------------------------------------------
# 3. X-Query-Count reports actual query count
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_query_count_header_exact_for_post_list(
    async_client: AsyncClient, create_category, create_post
):
    """
    X-Query-Count must reflect ALL SQL statements including selectinload
    internals.  Post list issues: COUNT + SELECT(joinedload author) +
    selectinload(tags) = 3 queries.
    """
    await create_category("Tech")
    await create_post("QC Post", "Tech", tags=["qc"])

    resp = await async_client.get("/api/v1/posts")
    assert resp.status_code == 200
    count = int(resp.headers["x-query-count"])
    assert count == 3, f"Expected exactly 3 queries for post list, got {count}"


@pytest.mark.asyncio
async def test_query_count_header_exact_for_post_detail(
    async_client: AsyncClient, create_category, create_post
):
    """Post detail: SELECT(joinedload author) + selectinload(tags) = 2 queries."""
    await create_category("Tech")
    post = await create_post("QC Detail", "Tech", tags=["qc"])

    resp = await async_client.get(f"/api/v1/posts/{post['id']}")
    assert resp.status_code == 200
    count = int(resp.headers["x-query-count"])
    assert count == 2, f"Expected exactly 2 queries for post detail, got {count}"


@pytest.mark.asyncio
async def test_timing_header_present(async_client: AsyncClient):
    resp = await async_client.get("/health")
    assert float(resp.headers["x-response-time-ms"]) >= 0
    assert resp.headers["x-query-count"] == "0"


# ---------------------------------------------------------------------------
# 4. CORS headers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cors_no_credentials_with_wildcard_origin(async_client: AsyncClient):
    """
    When allow_origins=["*"], the response must NOT include
    Access-Control-Allow-Credentials: true; browsers reject that combination.
    """
    resp = await async_client.options(
        "/api/v1/posts",
        headers={
            "Origin": "https://example.com",
            "Access-Control-Request-Method": "GET",
        },
    )
    cred_header = resp.headers.get("access-control-allow-credentials", "").lower()
    assert cred_header != "true", (
        "CORS must not combine allow_origins=* with allow_credentials=true"
    )
