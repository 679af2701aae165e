"""
FastAPI dependencies shared by the routers.

Authentication is upstream: the gateway verifies the session and forwards
the acting user id in the X-User-Id header.
"""
from typing import Optional

from fastapi import Header, Request

from feedledger.container import Ledger
from feedledger.errors import Unauthorized


def get_ledger(request: Request) -> Ledger:
    return request.app.state.ledger


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise Unauthorized("Authentication required")
    return x_user_id.strip()
