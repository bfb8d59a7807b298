from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PostStatus = Literal["draft", "published", "archived"]
UserRole = Literal["reader", "editor", "admin"]


# --- User ---

class UserBase(BaseModel):
    username: str = Field(max_length=50)
    email: str = Field(max_length=255)
    display_name: str | None = None
    bio: str | None = None
    role: UserRole = "reader"


class UserCreate(UserBase):
    pass


class UserResponse(UserBase):
    id: int
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class AuthoredPost(BaseModel):
    """Post entry on an author's detail view."""

    id: int
    title: str
    slug: str
    category: str
    status: PostStatus
    view_count: int
    created_at: datetime


class UserDetail(UserResponse):
    posts: list[AuthoredPost] = []
    post_counts: dict[str, int] = {}


# --- Category ---

class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    description: str | None = Field(None, max_length=200)
    is_active: bool = True


class CategoryUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=50)
    description: str | None = Field(None, max_length=200)
    is_active: bool | None = None


class CategoryResponse(BaseModel):
    id: int
    name: str
    slug: str
    description: str | None
    is_active: bool
    post_count: int
    created_at: datetime
    updated_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


class CategoryUpdateResult(CategoryResponse):
    renamed_posts: int = 0


# --- Post ---

class PostCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1)
    excerpt: str = Field(min_length=1, max_length=500)
    category: str = Field(min_length=1, max_length=50)
    tags: list[str] = []
    keywords: list[str] = []
    status: PostStatus = "draft"
    featured: bool = False


class PostUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=200)
    body: str | None = Field(None, min_length=1)
    excerpt: str | None = Field(None, min_length=1, max_length=500)
    category: str | None = Field(None, min_length=1, max_length=50)
    tags: list[str] | None = None
    keywords: list[str] | None = None
    status: PostStatus | None = None
    featured: bool | None = None


# --- Metrics ---

class MetricsResponse(BaseModel):
    total_posts: int
    published_posts: int
    total_categories: int
    total_users: int
    post_stats: dict = {}
    cache_info: dict = {}
