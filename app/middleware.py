import logging
import re
import time
from contextvars import ContextVar
from urllib.parse import parse_qsl, urlencode

from sqlalchemy import event
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.cache import RESPONSE_KEY_PREFIX

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Per-request SQL statement counter
# ---------------------------------------------------------------------------

query_count_var: ContextVar[int] = ContextVar("query_count", default=0)

# Slow-query threshold of the app serving the current request.
slow_query_threshold_var: ContextVar[float | None] = ContextVar("slow_query_threshold_ms", default=None)


def install_query_counter(engine) -> None:
    """
    Count every statement *engine* executes (eager-load follow-ups
    included) into ``query_count_var``.  Call once per engine.
    """
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _count_query(conn, cursor, statement, parameters, context, executemany):
        query_count_var.set(query_count_var.get() + 1)


# ---------------------------------------------------------------------------
# Timing middleware (pure ASGI so ContextVar changes stay visible)
# ---------------------------------------------------------------------------

class TimingMiddleware:
    """
    Adds ``X-Response-Time-Ms`` and ``X-Query-Count`` to every HTTP
    response.  Cache hits report a query count of 0.  Also publishes the
    app's slow-query threshold to ``monitor_query`` for the request.
    """

    def __init__(self, app: ASGIApp, slow_query_threshold_ms: float | None = None) -> None:
        self.app = app
        self.slow_query_threshold_ms = slow_query_threshold_ms

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        query_count_var.set(0)
        slow_query_threshold_var.set(self.slow_query_threshold_ms)
        start = time.perf_counter()

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                headers = list(message.get("headers", []))
                headers.append((b"x-response-time-ms", str(duration_ms).encode()))
                headers.append((b"x-query-count", str(query_count_var.get()).encode()))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


# ---------------------------------------------------------------------------
# Response cache
# ---------------------------------------------------------------------------

class CacheRule:
    """A cacheable route: a path regex and the TTL its responses get."""

    def __init__(self, pattern: str, ttl: int) -> None:
        self.pattern = re.compile(pattern)
        self.ttl = ttl

    def matches(self, path: str) -> bool:
        return self.pattern.fullmatch(path) is not None

    def __repr__(self) -> str:
        return f"CacheRule({self.pattern.pattern!r}, ttl={self.ttl})"


def build_cache_key(path: str, query_string: bytes | str) -> str:
    """
    Canonical request signature: path without trailing slash plus the
    query parameters sorted and re-encoded, so ``?b=2&a=1`` and
    ``?a=1&b=2`` share an entry.
    """
    if isinstance(query_string, bytes):
        query_string = query_string.decode("latin-1")
    canonical_path = path.rstrip("/") or "/"
    params = sorted(parse_qsl(query_string, keep_blank_values=True))
    key = f"{RESPONSE_KEY_PREFIX}{canonical_path}"
    if params:
        key = f"{key}?{urlencode(params)}"
    return key


_UNCACHED_HEADERS = frozenset({b"x-cache", b"x-response-time-ms", b"x-query-count", b"set-cookie"})


class ResponseCacheMiddleware:
    """
    Caches full JSON responses of GET routes listed in *rules*.

    A hit is answered straight from the cache with ``X-Cache: HIT`` and
    the route handler never runs.  On a miss the handler runs, the
    response goes out with ``X-Cache: MISS`` and, when it is a 2xx JSON
    response, its status, headers and body are stored under the rule's
    TTL.  A response during which any invalidation ran is not stored.
    Any cache failure degrades to running the handler.
    """

    def __init__(self, app: ASGIApp, cache, rules: list[CacheRule]) -> None:
        self.app = app
        self.cache = cache
        self.rules = rules

    def _match(self, path: str) -> CacheRule | None:
        for rule in self.rules:
            if rule.matches(path):
                return rule
        return None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] != "GET":
            await self.app(scope, receive, send)
            return
        rule = self._match(scope["path"])
        if rule is None:
            await self.app(scope, receive, send)
            return

        key = build_cache_key(scope["path"], scope.get("query_string", b""))
        generation = self.cache.generation
        cached = await self.cache.get(key)
        if cached is not None:
            try:
                await self._send_cached(cached, send)
                return
            except (KeyError, TypeError, ValueError) as exc:
                # Malformed entry: fall through and recompute.
                logger.warning("Discarding unreadable cache entry %r: %s", key, exc)

        await self._call_and_store(scope, receive, send, key, rule.ttl, generation)

    async def _send_cached(self, cached: dict, send: Send) -> None:
        headers = [(k.encode("latin-1"), v.encode("latin-1")) for k, v in cached["headers"]]
        headers.append((b"x-cache", b"HIT"))
        body = cached["body"].encode("utf-8")
        status = int(cached["status"])
        await send({"type": "http.response.start", "status": status, "headers": headers})
        await send({"type": "http.response.body", "body": body, "more_body": False})

    async def _call_and_store(
        self, scope: Scope, receive: Receive, send: Send, key: str, ttl: int, generation: int
    ) -> None:
        start_message: Message = {}
        chunks: list[bytes] = []

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                start_message.update(message)
                headers = list(message.get("headers", []))
                headers.append((b"x-cache", b"MISS"))
                message["headers"] = headers
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b""))
                if not message.get("more_body", False):
                    await self._store(start_message, b"".join(chunks), key, ttl, generation)
            await send(message)

        await self.app(scope, receive, send_wrapper)

    async def _store(self, start_message: Message, body: bytes, key: str, ttl: int, generation: int) -> None:
        status = start_message.get("status", 500)
        if not 200 <= status < 300:
            return
        if self.cache.generation != generation:
            logger.debug("Not caching %r: invalidated while it was being computed", key)
            return
        headers = [
            (k.decode("latin-1"), v.decode("latin-1"))
            for k, v in start_message.get("headers", [])
            if k.lower() not in _UNCACHED_HEADERS
        ]
        content_type = next((v for k, v in headers if k.lower() == "content-type"), "")
        if not content_type.startswith("application/json"):
            return
        await self.cache.set(
            key,
            {"status": status, "headers": headers, "body": body.decode("utf-8")},
            ttl=ttl,
        )
