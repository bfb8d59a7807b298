"""Query performance monitor tests."""
import asyncio
import logging

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Category
from app.middleware import slow_query_threshold_var
from app.monitoring import monitor_query


@pytest.mark.asyncio
async def test_returns_data_and_performance():
    async def query():
        return [1, 2, 3]

    result = await monitor_query(query, "numbers")
    assert result["data"] == [1, 2, 3]
    perf = result["performance"]
    assert perf["query_name"] == "numbers"
    assert perf["execution_time_ms"] >= 0
    assert perf["query_count"] == 0
    assert perf["timestamp"].endswith("+00:00")


@pytest.mark.asyncio
async def test_counts_statements(db_session: AsyncSession):
    async def query():
        await db_session.execute(select(Category))
        await db_session.execute(select(Category.id))

    result = await monitor_query(query, "two selects")
    assert result["performance"]["query_count"] == 2


@pytest.mark.asyncio
async def test_slow_query_logs_warning(caplog):
    async def slow():
        await asyncio.sleep(0.02)
        return "done"

    with caplog.at_level(logging.INFO, logger="app.monitoring"):
        result = await monitor_query(slow, "slow one", slow_threshold_ms=5)

    assert result["data"] == "done"
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "slow one" in warnings[0].getMessage()


@pytest.mark.asyncio
async def test_fast_query_does_not_warn(caplog):
    async def fast():
        return None

    with caplog.at_level(logging.INFO, logger="app.monitoring"):
        await monitor_query(fast, "fast one", slow_threshold_ms=10_000)

    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
    assert "fast one" in caplog.text


@pytest.mark.asyncio
async def test_errors_are_logged_and_reraised(caplog):
    async def broken():
        raise RuntimeError("connection lost")

    with pytest.raises(RuntimeError, match="connection lost"):
        await monitor_query(broken, "broken one")

    assert any(r.levelno == logging.ERROR and "broken one" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_request_threshold_applies_when_none_is_passed(caplog):
    async def slow():
        await asyncio.sleep(0.02)

    slow_query_threshold_var.set(10_000)
    with caplog.at_level(logging.INFO, logger="app.monitoring"):
        await monitor_query(slow, "lenient")
        await monitor_query(slow, "strict", slow_threshold_ms=5)

    warned = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warned) == 1
    assert "strict" in warned[0]


@pytest.mark.asyncio
async def test_app_settings_drive_slow_query_warnings(app_factory, caplog):
    app = app_factory(SLOW_QUERY_THRESHOLD_MS=0)
    with caplog.at_level(logging.WARNING, logger="app.monitoring"):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.get("/api/v1/posts")

    assert resp.status_code == 200
    assert any(r.getMessage().startswith("Slow query list_posts") for r in caplog.records)
