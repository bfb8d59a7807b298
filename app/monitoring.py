import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from app.config import settings
from app.middleware import query_count_var, slow_query_threshold_var

logger = logging.getLogger(__name__)


async def monitor_query(
    query_fn: Callable[[], Awaitable],
    query_name: str = "unnamed query",
    slow_threshold_ms: float | None = None,
) -> dict:
    """
    Await *query_fn* and report how long it took.

    Returns ``{"data": <result>, "performance": {...}}``.  Queries slower
    than the threshold are logged as warnings but never aborted.  The
    threshold is *slow_threshold_ms*, else the one ``TimingMiddleware``
    set for the current request, else ``SLOW_QUERY_THRESHOLD_MS``.
    Exceptions are logged with the elapsed time and re-raised.
    """
    threshold = slow_threshold_ms
    if threshold is None:
        threshold = slow_query_threshold_var.get()
    if threshold is None:
        threshold = settings.SLOW_QUERY_THRESHOLD_MS
    queries_before = query_count_var.get()
    start = time.perf_counter()
    try:
        result = await query_fn()
    except Exception as exc:
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.error("Query %s failed after %.2fms: %s", query_name, elapsed_ms, exc)
        raise

    elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
    logger.info("Query %s took %.2fms", query_name, elapsed_ms)
    if elapsed_ms > threshold:
        logger.warning("Slow query %s took %.2fms (threshold %.0fms)", query_name, elapsed_ms, threshold)

    return {
        "data": result,
        "performance": {
            "execution_time_ms": elapsed_ms,
            "query_name": query_name,
            "query_count": query_count_var.get() - queries_before,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }
