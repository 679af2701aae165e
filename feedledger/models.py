"""
SQLAlchemy ORM models for the durable record store.

Tables:
  users    — profile fields the ledger reads + denormalized social counters
  posts    — post metadata + denormalized engagement counters and rank score
  likes    — user × post, unique per pair
  follows  — follower → followee edges with pending/accepted status
  shares   — repost / quote / external shares (many per user × post)
  comments — comments with one level of replies

Denormalized counters here are only ever rewritten from record counts by the
sync workers (see services/reconcile.py); the counter store holds the live
values.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from feedledger.database import Base

VISIBILITY_PUBLIC = "public"
VISIBILITY_FOLLOWERS = "followers"
VISIBILITY_PRIVATE = "private"
VISIBILITIES = (VISIBILITY_PUBLIC, VISIBILITY_FOLLOWERS, VISIBILITY_PRIVATE)

ACCOUNT_PUBLIC = "public"
ACCOUNT_PRIVATE = "private"

FOLLOW_PENDING = "pending"
FOLLOW_ACCEPTED = "accepted"

SHARE_TYPES = ("repost", "quote", "external")
SHARE_PLATFORMS = ("whatsapp", "twitter", "facebook", "instagram", "other")

MAX_TEXT_LENGTH = 500


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Naive UTC; both MySQL DATETIME and SQLite hand back naive values
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    account_type: Mapped[str] = mapped_column(
        String(10), default=ACCOUNT_PUBLIC, nullable=False
    )  # 'public' | 'private'
    industries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    followers_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    following_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    likes_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def is_private(self) -> bool:
        return self.account_type == ACCOUNT_PRIVATE


class Post(Base):
    __tablename__ = "posts"

    post_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    content_type: Mapped[str] = mapped_column(
        String(20), default="text", nullable=False
    )  # 'video' | 'audio' | 'image' | 'script' | 'text'
    # Object-store key of the uploaded media; upload itself lives elsewhere
    media_key: Mapped[Optional[str]] = mapped_column(String(500))
    caption: Mapped[Optional[str]] = mapped_column(Text)
    industries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    # Newly created posts are public; feed predicates treat 'public' as the
    # open default.
    visibility: Mapped[str] = mapped_column(
        String(10), default=VISIBILITY_PUBLIC, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    likes_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comments_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    shares_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    views_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_posts_user", "user_id"),
        Index("idx_posts_created", "created_at"),
        Index("idx_posts_active_created", "is_active", "created_at"),
    )

    @property
    def engagement(self) -> dict:
        return {
            "likes": self.likes_count,
            "comments": self.comments_count,
            "shares": self.shares_count,
            "views": self.views_count,
        }


class Like(Base):
    __tablename__ = "likes"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.post_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # "who liked post X?": liker lists and counter recompute
        Index("idx_likes_post", "post_id", "created_at"),
    )


class Follow(Base):
    __tablename__ = "follows"

    follower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    followee_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    status: Mapped[str] = mapped_column(
        String(10), default=FOLLOW_ACCEPTED, nullable=False
    )  # 'pending' | 'accepted'
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_followee", "followee_id", "status"),
    )


class Share(Base):
    __tablename__ = "shares"

    # Generated by the engagement service so replays of the sync job collapse
    share_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.post_id"), nullable=False
    )
    share_type: Mapped[str] = mapped_column(
        String(10), default="repost", nullable=False
    )  # 'repost' | 'quote' | 'external'
    caption: Mapped[Optional[str]] = mapped_column(String(500))
    platform: Mapped[Optional[str]] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_shares_post", "post_id", "created_at"),
        Index("idx_shares_user", "user_id", "created_at"),
    )


class Comment(Base):
    __tablename__ = "comments"

    comment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.post_id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    content: Mapped[str] = mapped_column(String(500), nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("comments.comment_id")
    )
    likes_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    replies_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_comments_post", "post_id", "is_active", "parent_id", "created_at"),
        Index("idx_comments_parent", "parent_id", "created_at"),
    )
