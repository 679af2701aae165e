"""
Share endpoints addressed by share id:
  DELETE /shares/{id} — remove one of the caller's shares
"""
from fastapi import APIRouter, Depends

from feedledger.container import Ledger
from feedledger.dependencies import get_current_user_id, get_ledger
from feedledger.schemas import ShareResponse

router = APIRouter()


@router.delete("/{share_id}", response_model=ShareResponse)
async def delete_share(
    share_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    result = await ledger.shares.delete_share(user_id, share_id)
    return ShareResponse(share_id=result.share_id, shares_count=result.shares_count)
