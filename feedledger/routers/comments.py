"""
Comment endpoints addressed by comment id:
  GET    /comments/{id}/replies  — replies, oldest first
  PUT    /comments/{id}          — edit (author only)
  DELETE /comments/{id}          — soft delete (comment or post author)
"""
import logging

from fastapi import APIRouter, Depends, Query

from feedledger.container import Ledger
from feedledger.dependencies import get_current_user_id, get_ledger
from feedledger.schemas import (
    CommentDeleted,
    CommentOut,
    CommentUpdate,
    Paginated,
    to_paginated,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{comment_id}/replies", response_model=Paginated[CommentOut])
async def list_replies(
    comment_id: str,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return to_paginated(await ledger.comments.list_replies(comment_id, page, limit), CommentOut)


@router.put("/{comment_id}", response_model=CommentOut)
async def edit_comment(
    comment_id: str,
    body: CommentUpdate,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return CommentOut(**await ledger.comments.edit_comment(user_id, comment_id, body.content))


@router.delete("/{comment_id}", response_model=CommentDeleted)
async def delete_comment(
    comment_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    comments_count = await ledger.comments.delete_comment(user_id, comment_id)
    return CommentDeleted(comments_count=comments_count)
