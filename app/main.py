import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.cache import CacheManager
from app.config import Settings, settings as default_settings
from app.database import async_session, create_tables
from app.errors import ServiceError
from app.middleware import CacheRule, ResponseCacheMiddleware, TimingMiddleware
from app.routers import analytics, categories, metrics, posts, users
from app.services import counter_service

logger = logging.getLogger(__name__)


def cache_rules(settings: Settings) -> list[CacheRule]:
    """Cacheable GET routes, most specific first."""
    return [
        CacheRule(r"/api/v1/posts/popular", settings.CACHE_TTL_POPULAR),
        CacheRule(r"/api/v1/posts/\d+/related", settings.CACHE_TTL_RELATED),
        CacheRule(r"/api/v1/posts/?", settings.CACHE_TTL_LIST),
        CacheRule(r"/api/v1/posts/(\d+|by-slug/[^/]+)", settings.CACHE_TTL_DETAIL),
        CacheRule(r"/api/v1/categories(/.*)?", settings.CACHE_TTL_CATEGORIES),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    cache: CacheManager = app.state.cache

    # Startup
    await cache.connect()
    if settings.CREATE_TABLES_ON_STARTUP:
        await create_tables()

    reconcile_task = None
    if settings.COUNTER_RECONCILE_INTERVAL_SECONDS > 0:
        reconcile_task = asyncio.create_task(
            counter_service.run_periodic_reconciliation(
                async_session, settings.COUNTER_RECONCILE_INTERVAL_SECONDS, cache
            )
        )
    yield

    # Shutdown
    if reconcile_task is not None:
        reconcile_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reconcile_task
    await cache.disconnect()


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(level=settings.LOG_LEVEL.upper())

    app = FastAPI(
        title="Blog Content API",
        description="Post search, rankings and category bookkeeping for the blog",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.cache = CacheManager.from_settings(settings)

    # Middleware (last added runs first)
    app.add_middleware(ResponseCacheMiddleware, cache=app.state.cache, rules=cache_rules(settings))
    app.add_middleware(TimingMiddleware, slow_query_threshold_ms=settings.SLOW_QUERY_THRESHOLD_MS)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Cache", "X-Response-Time-Ms", "X-Query-Count"],
    )

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)

    # Routers
    app.include_router(posts.router)
    app.include_router(categories.router)
    app.include_router(users.router)
    app.include_router(metrics.router)
    app.include_router(analytics.router)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": "1.0.0", "cache": app.state.cache.backend.name}

    return app


app = create_app()
