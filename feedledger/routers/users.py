"""
Social graph endpoints:
  POST   /users/{id}/follow       — follow (pending for private accounts)
  DELETE /users/{id}/follow       — unfollow or cancel a pending request
  GET    /users/{id}/follow       — caller's follow status toward a user
  GET    /users/{id}/followers    — paginated followers
  GET    /users/{id}/following    — paginated followees
  GET    /users/{id}/liked-posts  — paginated posts the user liked
"""
import logging

from fastapi import APIRouter, Depends, Query
from opentelemetry import trace

from feedledger.container import Ledger
from feedledger.dependencies import get_current_user_id, get_ledger
from feedledger.models import FOLLOW_ACCEPTED
from feedledger.schemas import (
    FollowResponse,
    FollowStatusResponse,
    LikedPostOut,
    Paginated,
    UserEdgeOut,
    to_paginated,
)

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post("/{target_id}/follow", response_model=FollowResponse)
async def follow_user(
    target_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    with tracer.start_as_current_span("follow_user") as span:
        span.set_attribute("follow.target", target_id)
        result = await ledger.follows.follow(user_id, target_id)
        span.set_attribute("follow.status", result.status)
    return FollowResponse(
        status=result.status,
        followers_count=result.followers_count,
        following_count=result.following_count,
    )


@router.delete("/{target_id}/follow", response_model=FollowResponse)
async def unfollow_user(
    target_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    result = await ledger.follows.unfollow(user_id, target_id)
    return FollowResponse(
        status=result.status,
        followers_count=result.followers_count,
        following_count=result.following_count,
    )


@router.get("/{target_id}/follow", response_model=FollowStatusResponse)
async def follow_status(
    target_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    status = await ledger.follows.follow_status(user_id, target_id)
    return FollowStatusResponse(status=status, is_following=status == FOLLOW_ACCEPTED)


@router.get("/{target_id}/followers", response_model=Paginated[UserEdgeOut])
async def list_followers(
    target_id: str,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return to_paginated(await ledger.follows.list_followers(target_id, page, limit), UserEdgeOut)


@router.get("/{target_id}/following", response_model=Paginated[UserEdgeOut])
async def list_following(
    target_id: str,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return to_paginated(await ledger.follows.list_following(target_id, page, limit), UserEdgeOut)


@router.get("/{target_id}/liked-posts", response_model=Paginated[LikedPostOut])
async def list_liked_posts(
    target_id: str,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return to_paginated(
        await ledger.likes.list_liked_posts(target_id, page, limit), LikedPostOut
    )
