"""
Filter normalizer: turns raw, loosely-typed request parameters into
immutable, fully-resolved query descriptors.

Everything arriving here is a string (or ``None``) exactly as the HTTP
layer received it.  Downstream code (query builder, pagination, rankers)
only ever sees the frozen models returned by this module, so no further
parsing or defaulting happens after this point.

Status default
--------------
An absent, empty, ``all`` or unrecognised ``status`` means *no status
filter at all*: drafts and archived posts are included.  Public listings
must ask for ``status=published`` explicitly.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Literal

from pydantic import BaseModel, ConfigDict

from app.config import Settings, settings as default_settings
from app.errors import ValidationError
from app.models import POST_STATUSES

logger = logging.getLogger(__name__)

SORTABLE_FIELDS: frozenset[str] = frozenset(
    {"created_at", "updated_at", "published_at", "title", "view_count", "like_count", "reading_time"}
)

TIMEFRAMES: dict[str, timedelta | None] = {
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
    "all": None,
}

# Bucket label format per engagement-trend period.
ANALYTICS_PERIODS: dict[str, str] = {
    "day": "%Y-%m-%d",
    "week": "%Y-%U",
    "month": "%Y-%m",
}

_TRUE = frozenset({"true", "1", "yes", "on"})
_FALSE = frozenset({"false", "0", "no", "off"})


class PostFilters(BaseModel):
    """Resolved descriptor for a post listing / search."""

    model_config = ConfigDict(frozen=True)

    query: str | None = None
    category: str | None = None
    tags: tuple[str, ...] = ()
    status: str | None = None
    featured: bool | None = None
    author_id: int | None = None
    exclude_id: int | None = None
    sort_by: str = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    explicit_sort: bool = False
    page: int = 1
    limit: int = 10

    @property
    def search_terms(self) -> tuple[str, ...]:
        if not self.query:
            return ()
        return tuple(dict.fromkeys(self.query.lower().split()))

    def describe(self) -> dict:
        """Echo of the applied filters for the response envelope."""
        return {
            "query": self.query,
            "category": self.category,
            "tags": list(self.tags),
            "status": self.status or "all",
            "featured": self.featured,
            "author": self.author_id,
            "exclude": self.exclude_id,
            "sort_by": self.sort_by,
            "sort_order": self.sort_order,
        }


class PopularParams(BaseModel):
    """Resolved descriptor for the popularity ranking."""

    model_config = ConfigDict(frozen=True)

    category: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int = 10



class AnalyticsParams(BaseModel):
    """Resolved descriptor for the editorial analytics reports."""

    model_config = ConfigDict(frozen=True)

    start: datetime | None = None
    end: datetime | None = None
    period: Literal["day", "week", "month"] = "week"
    limit: int = 10

    def date_range(self) -> dict:
        return {
            "start_date": self.start.isoformat() if self.start else None,
            "end_date": self.end.isoformat() if self.end else None,
        }

# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------

def _clean(value) -> str | None:
    """Strip strings; treat empty / whitespace-only values as absent."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_identifier(value, field: str) -> int | None:
    """Return *value* as a positive integer id, ``None`` when absent."""
    value = _clean(value)
    if value is None:
        return None
    try:
        parsed = int(value)
    except ValueError:
        raise ValidationError(field, f"Invalid {field}: {value!r} is not a valid identifier")
    if parsed < 1:
        raise ValidationError(field, f"Invalid {field}: {value!r} is not a valid identifier")
    return parsed


def _parse_positive_int(value, field: str, default: int) -> int:
    value = _clean(value)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ValidationError(field, f"Invalid {field}: {value!r} is not an integer")
    if parsed < 1:
        raise ValidationError(field, f"Invalid {field}: must be at least 1")
    return parsed


def normalize_page(value) -> int:
    """Parse a 1-based page number (default 1)."""
    return _parse_positive_int(value, "page", 1)


def normalize_limit(value, default: int, maximum: int | None = None) -> int:
    """Parse a result-size limit, clamping it to *maximum* (default ``MAX_PAGE_SIZE``)."""
    if maximum is None:
        maximum = default_settings.MAX_PAGE_SIZE
    return min(_parse_positive_int(value, "limit", default), maximum)


def _parse_bool(value, field: str) -> bool | None:
    value = _clean(value)
    if value is None:
        return None
    lowered = value.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValidationError(field, f"Invalid {field}: expected true or false, got {value!r}")


def _parse_datetime(value, field: str) -> datetime | None:
    value = _clean(value)
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(field, f"Invalid {field}: {value!r} is not an ISO-8601 timestamp")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_tags(tags: str | Iterable[str] | None) -> tuple[str, ...]:
    """
    Split (when comma-joined), trim, lowercase and de-duplicate *tags*,
    preserving first-seen order.
    """
    if tags is None:
        return ()
    if isinstance(tags, str):
        tags = tags.split(",")
    cleaned = (t.strip().lower() for t in tags if t is not None)
    return tuple(dict.fromkeys(t for t in cleaned if t))


def normalize_status(value) -> str | None:
    value = _clean(value)
    if value is None:
        return None
    value = value.lower()
    if value in POST_STATUSES:
        return value
    if value != "all":
        logger.debug("Ignoring unknown status filter %r", value)
    return None


def _normalize_sort(sort_by, sort_order) -> tuple[str, str, bool]:
    field = _clean(sort_by)
    explicit = field is not None
    if field is None:
        field = "created_at"
    elif field not in SORTABLE_FIELDS:
        allowed = ", ".join(sorted(SORTABLE_FIELDS))
        raise ValidationError("sort_by", f"Invalid sort_by field {field!r}; expected one of: {allowed}")

    order = (_clean(sort_order) or "desc").lower()
    if order not in ("asc", "desc"):
        raise ValidationError("sort_order", f"Invalid sort_order {order!r}; expected 'asc' or 'desc'")
    return field, order, explicit


# ---------------------------------------------------------------------------
# Public normalizers
# ---------------------------------------------------------------------------

def normalize_post_filters(
    *,
    query=None,
    category=None,
    tags=None,
    status=None,
    featured=None,
    author=None,
    exclude=None,
    sort_by=None,
    sort_order=None,
    page=None,
    limit=None,
    settings: Settings | None = None,
) -> PostFilters:
    """
    Validate raw listing parameters and return a frozen ``PostFilters``.
    Page size defaults and bounds come from *settings* (the process-wide
    ones when omitted).
    """
    settings = settings or default_settings
    sort_field, order, explicit = _normalize_sort(sort_by, sort_order)
    return PostFilters(
        query=_clean(query),
        category=_clean(category),
        tags=normalize_tags(tags),
        status=normalize_status(status),
        featured=_parse_bool(featured, "featured"),
        author_id=parse_identifier(author, "author"),
        exclude_id=parse_identifier(exclude, "exclude"),
        sort_by=sort_field,
        sort_order=order,
        explicit_sort=explicit,
        page=normalize_page(page),
        limit=normalize_limit(limit, settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE),
    )


def normalize_popular_params(
    *,
    category=None,
    timeframe=None,
    created_after=None,
    created_before=None,
    limit=None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> PopularParams:
    """
    Resolve the popularity window.  ``timeframe`` (week / month / year /
    all) sets a lower bound relative to *now*; explicit ``created_after``
    wins when it is later.  Both bounds are hard filters.
    """
    settings = settings or default_settings
    after = _parse_datetime(created_after, "created_after")
    before = _parse_datetime(created_before, "created_before")

    frame = _clean(timeframe)
    if frame is not None:
        frame = frame.lower()
        if frame not in TIMEFRAMES:
            raise ValidationError(
                "timeframe", f"Invalid timeframe {frame!r}; expected one of: {', '.join(TIMEFRAMES)}"
            )
        delta = TIMEFRAMES[frame]
        if delta is not None:
            since = (now or datetime.now(timezone.utc)) - delta
            after = max(after, since) if after else since

    if after and before and after > before:
        raise ValidationError("created_after", "created_after must not be later than created_before")

    return PopularParams(
        category=_clean(category),
        created_after=after,
        created_before=before,
        limit=normalize_limit(limit, settings.POPULAR_DEFAULT_LIMIT, settings.MAX_PAGE_SIZE),
    )


def normalize_analytics_params(
    *,
    start_date=None,
    end_date=None,
    period=None,
    limit=None,
    settings: Settings | None = None,
) -> AnalyticsParams:
    """
    Resolve the analytics window (inclusive ``created_at`` bounds), the
    trend bucket size and the size of top-N reports.
    """
    settings = settings or default_settings
    start = _parse_datetime(start_date, "start_date")
    end = _parse_datetime(end_date, "end_date")
    if start and end and start > end:
        raise ValidationError("start_date", "start_date must not be later than end_date")

    bucket = (_clean(period) or "week").lower()
    if bucket not in ANALYTICS_PERIODS:
        raise ValidationError(
            "period", f"Invalid period {bucket!r}; expected one of: {', '.join(ANALYTICS_PERIODS)}"
        )

    return AnalyticsParams(
        start=start,
        end=end,
        period=bucket,
        limit=normalize_limit(limit, settings.POPULAR_DEFAULT_LIMIT, settings.MAX_PAGE_SIZE),
    )
