"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.

Responses are serialized with camelCase aliases (likesCount, totalPages,
isLiked); request bodies accept either spelling.
"""
from datetime import datetime
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from feedledger.services.common import Page

T = TypeVar("T")


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class Paginated(CamelModel, Generic[T]):
    data: list[T]
    page: int
    limit: int
    total: int
    total_pages: int


def to_paginated(page: Page, item_model: type) -> Paginated:
    return Paginated[item_model](
        data=page.data,
        page=page.page,
        limit=page.limit,
        total=page.total,
        total_pages=page.total_pages,
    )


# ──────────────────────────── Likes ───────────────────────────────────────

class LikeResponse(CamelModel):
    success: bool = True
    liked: bool
    likes_count: int


class HasLikedResponse(CamelModel):
    liked: bool


class LikerOut(CamelModel):
    user_id: str
    username: str
    display_name: Optional[str] = None
    liked_at: datetime


class LikedPostOut(CamelModel):
    post_id: str
    user_id: str
    caption: Optional[str] = None
    content_type: str
    created_at: datetime
    liked_at: datetime


# ──────────────────────────── Follows ─────────────────────────────────────

class FollowResponse(CamelModel):
    success: bool = True
    status: str          # 'none' | 'pending' | 'accepted'
    followers_count: int
    following_count: int


class FollowStatusResponse(CamelModel):
    status: str
    is_following: bool


class UserEdgeOut(CamelModel):
    user_id: str
    username: str
    display_name: Optional[str] = None
    account_type: str
    since: Optional[datetime] = None


class ActionResponse(CamelModel):
    success: bool = True
    message: Optional[str] = None


# ──────────────────────────── Shares ──────────────────────────────────────

class ShareCreate(CamelModel):
    share_type: str = "repost"
    caption: Optional[str] = Field(None, max_length=500)
    platform: Optional[str] = None


class ShareResponse(CamelModel):
    success: bool = True
    share_id: str
    shares_count: int


class ShareOut(CamelModel):
    share_id: str
    user_id: str
    username: str
    display_name: Optional[str] = None
    share_type: str
    caption: Optional[str] = None
    platform: Optional[str] = None
    created_at: datetime


class PlatformCount(CamelModel):
    platform: str
    count: int


class ShareTypeCount(CamelModel):
    share_type: str
    count: int


class ShareStatsResponse(CamelModel):
    post_id: str
    total: int
    by_platform: list[PlatformCount]
    by_type: list[ShareTypeCount]


# ──────────────────────────── Comments ────────────────────────────────────

class CommentCreate(CamelModel):
    content: str
    parent_id: Optional[str] = None


class CommentUpdate(CamelModel):
    content: str


class CommentAuthor(CamelModel):
    user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None


class CommentOut(CamelModel):
    comment_id: str
    post_id: str
    parent_id: Optional[str] = None
    content: str
    likes_count: int = 0
    replies_count: int = 0
    is_edited: bool = False
    created_at: datetime
    author: CommentAuthor


class CommentCreated(CommentOut):
    comments_count: int


class CommentDeleted(CamelModel):
    success: bool = True
    comments_count: int


# ──────────────────────────── Feed ────────────────────────────────────────

class Engagement(CamelModel):
    likes: int = 0
    comments: int = 0
    shares: int = 0
    views: int = 0


class FeedAuthor(CamelModel):
    user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    account_type: str = "public"
    is_following: bool = False


class FeedPost(CamelModel):
    """A ranked post with the viewer's like/follow state."""
    post_id: str
    user_id: str
    content_type: str
    media_key: Optional[str] = None
    caption: Optional[str] = None
    industries: list[str] = []
    visibility: str
    created_at: datetime
    engagement: Engagement
    score: float
    is_liked: bool = False
    author: FeedAuthor


class FeedResponse(Paginated[FeedPost]):
    algorithm: str
    source: str          # 'database' | 'cache' | 'stale' | 'empty'
    degraded: bool = False


class InvalidateResponse(CamelModel):
    success: bool = True
    version: int
