"""
User service: the author registry.

Users are the authors posts point at and the ids likes are recorded
against.  Account management and credentials live in the upstream auth
service; this module only stores the profile and role it forwards.
"""
from collections import Counter

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.errors import ValidationError
from app.models import USER_ROLES, Post, User
from app.schemas import UserCreate


def _user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "display_name": user.display_name,
        "bio": user.bio,
        "role": user.role,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def _post_summary_to_dict(post: Post) -> dict:
    """Lightweight post entry for the author detail view."""
    return {
        "id": post.id,
        "title": post.title,
        "slug": post.slug,
        "category": post.category,
        "status": post.status,
        "view_count": post.view_count,
        "created_at": post.created_at.isoformat() if post.created_at else None,
    }


def normalize_role(value: str | None) -> str | None:
    """Lowercased role filter; None when absent."""
    role = (value or "").strip().lower()
    if not role:
        return None
    if role not in USER_ROLES:
        raise ValidationError("role", f"Invalid role {role!r}; expected one of: {', '.join(USER_ROLES)}")
    return role


async def get_users(db: AsyncSession, role: str | None = None) -> list[dict]:
    """Users, newest first, optionally only those holding *role*."""
    q = select(User).order_by(User.created_at.desc(), User.id.desc())
    if role is not None:
        q = q.where(User.role == role)
    result = await db.execute(q)
    return [_user_to_dict(u) for u in result.scalars().all()]


async def get_user(db: AsyncSession, user_id: int) -> dict | None:
    """
    User detail: the profile, a summary of every post they authored and
    how many of those are in each status.
    """
    q = (
        select(User)
        .where(User.id == user_id)
        .options(selectinload(User.posts))
        .execution_options(populate_existing=True)
    )
    result = await db.execute(q)
    user = result.unique().scalar_one_or_none()
    if user is None:
        return None

    data = _user_to_dict(user)
    posts = sorted(user.posts, key=lambda p: p.id)
    data["posts"] = [_post_summary_to_dict(p) for p in posts]
    data["post_counts"] = dict(Counter(p.status for p in posts))
    return data


async def create_user(db: AsyncSession, data: UserCreate) -> dict:
    """
    Create a user.  Username/email uniqueness is enforced by the schema;
    the router turns the resulting IntegrityError into a 409.
    """
    user = User(
        username=data.username,
        email=data.email,
        display_name=data.display_name,
        bio=data.bio,
        role=data.role,
    )
    db.add(user)
    await db.flush()
    return _user_to_dict(user)
