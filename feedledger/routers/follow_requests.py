"""
Pending follow requests for private accounts:
  GET  /follow-requests                — requests waiting on the caller
  POST /follow-requests/{id}/accept    — accept requester {id}
  POST /follow-requests/{id}/reject    — reject requester {id}
"""
import logging

from fastapi import APIRouter, Depends, Query

from feedledger.container import Ledger
from feedledger.dependencies import get_current_user_id, get_ledger
from feedledger.schemas import (
    ActionResponse,
    FollowResponse,
    Paginated,
    UserEdgeOut,
    to_paginated,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=Paginated[UserEdgeOut])
async def list_requests(
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return to_paginated(await ledger.follows.list_requests(user_id, page, limit), UserEdgeOut)


@router.post("/{requester_id}/accept", response_model=FollowResponse)
async def accept_request(
    requester_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    result = await ledger.follows.accept_request(user_id, requester_id)
    logger.info("User %s accepted follow request from %s", user_id, requester_id)
    return FollowResponse(
        status=result.status,
        followers_count=result.followers_count,
        following_count=result.following_count,
    )


@router.post("/{requester_id}/reject", response_model=ActionResponse)
async def reject_request(
    requester_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    await ledger.follows.reject_request(user_id, requester_id)
    return ActionResponse(message="Follow request rejected")
