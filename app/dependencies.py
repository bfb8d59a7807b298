from fastapi import Depends, Header, Query, Request

from app.cache import CacheManager
from app.config import Settings
from app.errors import ValidationError
from app.filters import PostFilters, normalize_post_filters
from app.policies import Actor, authorize


class PostListParams:
    """
    Reusable dependency collecting the raw listing parameters.

    Every parameter is accepted as an untyped string so that malformed
    values reach ``normalize_post_filters`` and come back as a 400 naming
    the offending field, rather than FastAPI's generic 422.

    Usage in a router::

        @router.get("/posts")
        async def list_posts(
            params: PostListParams = Depends(),
            settings: Settings = Depends(get_settings),
        ):
            filters = params.resolve(settings)
    """

    def __init__(
        self,
        query: str | None = Query(None, description="Free-text search over title, excerpt, keywords and body."),
        category: str | None = Query(None, description="Exact category name."),
        tags: str | None = Query(None, description="Comma-separated tags; matches posts sharing any of them."),
        status: str | None = Query(
            None,
            description="draft, published or archived. Absent or 'all' applies no status filter.",
        ),
        featured: str | None = Query(None, description="true or false."),
        author: str | None = Query(None, description="Author user id."),
        exclude: str | None = Query(None, description="Post id to leave out of the results."),
        sort_by: str | None = Query(None, description="Sort field; defaults to relevance or created_at."),
        sort_order: str | None = Query(None, description="asc or desc (default desc)."),
        page: str | None = Query(None, description="1-based page number."),
        limit: str | None = Query(None, description="Page size, clamped to MAX_PAGE_SIZE."),
    ) -> None:
        self.raw = {
            "query": query,
            "category": category,
            "tags": tags,
            "status": status,
            "featured": featured,
            "author": author,
            "exclude": exclude,
            "sort_by": sort_by,
            "sort_order": sort_order,
            "page": page,
            "limit": limit,
        }

    def resolve(self, settings: Settings | None = None) -> PostFilters:
        return normalize_post_filters(**self.raw, settings=settings)


def get_settings(request: Request) -> Settings:
    """Settings the application was created with."""
    return request.app.state.settings


def get_cache(request: Request) -> CacheManager:
    """The application's cache instance, created in ``create_app``."""
    return request.app.state.cache


def get_actor(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> Actor | None:
    """
    Actor identity forwarded by the upstream auth layer, or ``None`` for
    anonymous requests.  The headers are trusted as-is.
    """
    if not x_user_id:
        return None
    try:
        actor_id = int(x_user_id)
    except ValueError:
        raise ValidationError("X-User-Id", "X-User-Id must be an integer user id")
    return Actor(id=actor_id, role=(x_user_role or "reader").strip().lower())


def require(*policies):
    """Dependency factory: resolve the actor and check *policies* against it."""

    def _dependency(actor: Actor | None = Depends(get_actor)) -> Actor:
        return authorize(actor, *policies)

    return _dependency
