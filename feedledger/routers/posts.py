"""
Post engagement endpoints:
  POST   /posts/{id}/like         — like (idempotent)
  DELETE /posts/{id}/like         — unlike (idempotent)
  GET    /posts/{id}/liked        — has the caller liked this post
  GET    /posts/{id}/likes        — paginated likers
  POST   /posts/{id}/share        — share / repost
  GET    /posts/{id}/shares       — paginated shares
  GET    /posts/{id}/share-stats  — share totals by platform and type
  POST   /posts/{id}/comments     — comment or reply
  GET    /posts/{id}/comments     — paginated top-level comments
"""
import logging

from fastapi import APIRouter, Depends, Query, status
from opentelemetry import trace

from feedledger.container import Ledger
from feedledger.dependencies import get_current_user_id, get_ledger
from feedledger.schemas import (
    CommentCreate,
    CommentCreated,
    CommentOut,
    HasLikedResponse,
    LikeResponse,
    LikerOut,
    Paginated,
    ShareCreate,
    ShareOut,
    ShareResponse,
    ShareStatsResponse,
    to_paginated,
)

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


# ─────────────────────────── Likes ───────────────────────────────────────

@router.post("/{post_id}/like", response_model=LikeResponse)
async def like_post(
    post_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    with tracer.start_as_current_span("like_post") as span:
        span.set_attribute("post.id", post_id)
        result = await ledger.likes.like(user_id, post_id)
        span.set_attribute("post.likes", result.likes_count)
    return LikeResponse(liked=result.liked, likes_count=result.likes_count)


@router.delete("/{post_id}/like", response_model=LikeResponse)
async def unlike_post(
    post_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    with tracer.start_as_current_span("unlike_post") as span:
        span.set_attribute("post.id", post_id)
        result = await ledger.likes.unlike(user_id, post_id)
    return LikeResponse(liked=result.liked, likes_count=result.likes_count)


@router.get("/{post_id}/liked", response_model=HasLikedResponse)
async def has_liked(
    post_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return HasLikedResponse(liked=await ledger.likes.has_liked(user_id, post_id))


@router.get("/{post_id}/likes", response_model=Paginated[LikerOut])
async def list_likers(
    post_id: str,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return to_paginated(await ledger.likes.list_likers(post_id, page, limit), LikerOut)


# ─────────────────────────── Shares ──────────────────────────────────────

@router.post("/{post_id}/share", response_model=ShareResponse, status_code=status.HTTP_201_CREATED)
async def share_post(
    post_id: str,
    body: ShareCreate,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    with tracer.start_as_current_span("share_post") as span:
        span.set_attribute("post.id", post_id)
        span.set_attribute("share.type", body.share_type)
        result = await ledger.shares.share(
            user_id, post_id, body.share_type, body.caption, body.platform
        )
    return ShareResponse(share_id=result.share_id, shares_count=result.shares_count)


@router.get("/{post_id}/shares", response_model=Paginated[ShareOut])
async def list_shares(
    post_id: str,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return to_paginated(await ledger.shares.list_shares(post_id, page, limit), ShareOut)


@router.get("/{post_id}/share-stats", response_model=ShareStatsResponse)
async def share_stats(
    post_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    stats = await ledger.shares.share_stats(post_id)
    return ShareStatsResponse(post_id=post_id, **stats)


# ─────────────────────────── Comments ────────────────────────────────────

@router.post(
    "/{post_id}/comments", response_model=CommentCreated, status_code=status.HTTP_201_CREATED
)
async def add_comment(
    post_id: str,
    body: CommentCreate,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    with tracer.start_as_current_span("add_comment") as span:
        span.set_attribute("post.id", post_id)
        comment = await ledger.comments.add_comment(user_id, post_id, body.content, body.parent_id)
    return CommentCreated(**comment)


@router.get("/{post_id}/comments", response_model=Paginated[CommentOut])
async def list_comments(
    post_id: str,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    sort: str = Query("recent", pattern="^(recent|popular)$"),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return to_paginated(
        await ledger.comments.list_comments(post_id, page, limit, sort), CommentOut
    )
