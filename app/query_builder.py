"""
Query/search builder: maps resolved descriptors onto SQLAlchemy
filter + sort plans.

Text relevance
--------------
The relational store has no portable full-text index, so relevance is
computed in SQL: for every search term each field contributes its weight
when it contains the term (case-insensitive).  Title weighs most, then
excerpt, keywords and body.  Rows scoring 0 are filtered out.

Ordering
--------
Every plan ends with ``Post.id`` so rows sharing a timestamp (or a score)
come back in a stable order, which keeps LIMIT/OFFSET pages disjoint.
"""
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy import Select, case, func, or_, select
from sqlalchemy.orm import joinedload, selectinload

from app.errors import ValidationError
from app.filters import AnalyticsParams, PopularParams, PostFilters
from app.models import Post, Tag, post_likes, post_tags

TEXT_SEARCH_WEIGHTS = (
    (Post.title, 10),
    (Post.excerpt, 5),
    (Post.keywords, 3),
    (Post.body, 1),
)

# Bound on search terms per query; each term adds one CASE per field.
MAX_SEARCH_TERMS = 8

_SORT_COLUMNS = {
    "created_at": Post.created_at,
    "updated_at": Post.updated_at,
    "published_at": Post.published_at,
    "title": Post.title,
    "view_count": Post.view_count,
    "like_count": Post.like_count,
    "reading_time": Post.reading_time,
}


@dataclass(frozen=True)
class QueryPlan:
    """A filter + sort plan over one mapped model, ready to execute."""

    model: Any
    where: tuple = ()
    order_by: tuple = ()
    options: tuple = field(default=())

    def statement(self) -> Select:
        return select(self.model).where(*self.where).order_by(*self.order_by).options(*self.options)

    def count_statement(self) -> Select:
        return select(func.count()).select_from(self.model).where(*self.where)


# Eager loads for any query that returns serialised posts.
POST_LOAD_OPTIONS = (joinedload(Post.author), selectinload(Post.tags))


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def resolve_sort_column(name: str):
    """Return the column for sort field *name*; unknown names are rejected."""
    column = _SORT_COLUMNS.get(name)
    if column is None:
        raise ValidationError("sort_by", f"Invalid sort_by field {name!r}")
    return column


def _directed(column, order: str):
    return column.asc() if order == "asc" else column.desc()


def relevance_score(terms: Sequence[str]):
    """Weighted relevance of a post for *terms*; 0 when nothing matches."""
    score = None
    for term in terms[:MAX_SEARCH_TERMS]:
        for column, weight in TEXT_SEARCH_WEIGHTS:
            hit = case((column.icontains(term, autoescape=True), weight), else_=0)
            score = hit if score is None else score + hit
    return score


def tag_overlap(tags: Sequence[str]):
    """Correlated count of the outer post's tags that appear in *tags*."""
    return (
        select(func.count())
        .select_from(post_tags.join(Tag.__table__, Tag.id == post_tags.c.tag_id))
        .where(post_tags.c.post_id == Post.id, Tag.name.in_(list(tags)))
        .correlate_except(post_tags, Tag.__table__)
        .scalar_subquery()
    )



def created_between(after, before) -> list:
    """Inclusive ``created_at`` bounds; either may be None."""
    where = []
    if after is not None:
        where.append(Post.created_at >= after)
    if before is not None:
        where.append(Post.created_at <= before)
    return where


def likes_per_post():
    """Subquery of ``(post_id, likes)`` for posts with at least one like."""
    return (
        select(post_likes.c.post_id, func.count().label("likes"))
        .group_by(post_likes.c.post_id)
        .subquery()
    )

# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

def build_post_plan(filters: PostFilters) -> QueryPlan:
    """
    Listing/search plan.  Structured predicates combine with AND; a free
    text query additionally requires a non-zero relevance score and, unless
    the caller chose ``sort_by``, orders by that score.
    """
    where = []
    score = None

    if filters.search_terms:
        score = relevance_score(filters.search_terms)
        where.append(score > 0)
    if filters.category:
        where.append(Post.category == filters.category)
    if filters.tags:
        where.append(Post.tags.any(Tag.name.in_(filters.tags)))
    if filters.status:
        where.append(Post.status == filters.status)
    if filters.featured is not None:
        where.append(Post.featured.is_(filters.featured))
    if filters.author_id is not None:
        where.append(Post.author_id == filters.author_id)
    if filters.exclude_id is not None:
        where.append(Post.id != filters.exclude_id)

    if score is not None and not filters.explicit_sort:
        order_by = (score.desc(), Post.created_at.desc(), Post.id.desc())
    else:
        column = resolve_sort_column(filters.sort_by)
        order_by = (_directed(column, filters.sort_order), _directed(Post.id, filters.sort_order))

    return QueryPlan(Post, tuple(where), order_by, POST_LOAD_OPTIONS)


def build_related_plan(source_id: int, category: str, tags: Sequence[str]) -> QueryPlan:
    """
    Related-content plan for a source post.

    Score = category weight (one more than the number of source tags, so a
    same-category candidate beats any tags-only candidate) + 1 per shared
    tag.  Ties: views, then recency, then id.
    """
    same_category = Post.category == category
    category_weight = len(tags) + 1
    score = case((same_category, category_weight), else_=0)
    if tags:
        overlap = tag_overlap(tags)
        score = score + overlap
        candidate = or_(same_category, overlap > 0)
    else:
        candidate = same_category

    where = (Post.status == "published", Post.id != source_id, candidate)
    order_by = (score.desc(), Post.view_count.desc(), Post.created_at.desc(), Post.id.desc())
    return QueryPlan(Post, where, order_by, POST_LOAD_OPTIONS)


def build_popular_plan(params: PopularParams) -> QueryPlan:
    """Published posts by views, then likes; the time window is a hard filter."""
    where = [Post.status == "published"]
    if params.category:
        where.append(Post.category == params.category)
    where.extend(created_between(params.created_after, params.created_before))

    order_by = (
        Post.view_count.desc(),
        Post.like_count.desc(),
        Post.created_at.desc(),
        Post.id.desc(),
    )
    return QueryPlan(Post, tuple(where), order_by, POST_LOAD_OPTIONS)


_TOP_POST_ORDERINGS = {
    "views": (Post.view_count.desc(), Post.like_count.desc(), Post.id.desc()),
    "likes": (Post.like_count.desc(), Post.view_count.desc(), Post.id.desc()),
}


def build_top_posts_plan(params: AnalyticsParams, by: str) -> QueryPlan:
    """
    Posts of any status created inside the analytics window, most viewed
    (``by="views"``) or most liked (``by="likes"``) first.
    """
    where = created_between(params.start, params.end)
    return QueryPlan(Post, tuple(where), _TOP_POST_ORDERINGS[by], POST_LOAD_OPTIONS)
