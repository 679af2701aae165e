"""
Feed endpoints — all variants share the collect → filter → score → merge →
sort → paginate pipeline in services/feed.py:

  GET  /feed                       — personalized (hybrid | chronological | engagement)
  GET  /feed/trending              — last 24 hours, by score
  GET  /feed/industry/{industry}   — posts tagged with an industry
  GET  /feed/users/{id}/posts      — a user's posts, newest first
  POST /feed/invalidate            — drop the caller's cached pages

Responses carry `degraded=true` when the candidate query timed out and a
stale (or empty) page was served instead.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from opentelemetry import trace

from feedledger.container import Ledger
from feedledger.dependencies import get_current_user_id, get_ledger
from feedledger.ranking import ALGORITHM_HYBRID
from feedledger.schemas import FeedResponse, InvalidateResponse
from feedledger.services.feed import FeedPage

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)

ALGORITHM_PATTERN = "^(hybrid|chronological|engagement)$"


def _response(result: FeedPage) -> FeedResponse:
    return FeedResponse(
        data=result.data,
        page=result.page,
        limit=result.limit,
        total=result.total,
        total_pages=result.total_pages,
        algorithm=result.algorithm,
        source=result.source,
        degraded=result.degraded,
    )


@router.get("", response_model=FeedResponse)
async def get_feed(
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    algorithm: str = Query(ALGORITHM_HYBRID, pattern=ALGORITHM_PATTERN),
    time_range: Optional[int] = Query(None, alias="timeRange", ge=1),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    with tracer.start_as_current_span("get_feed") as span:
        span.set_attribute("feed.user_id", user_id)
        span.set_attribute("feed.algorithm", algorithm)
        result = await ledger.feed.get_feed(user_id, page, limit, algorithm, time_range)
        span.set_attribute("feed.returned", len(result.data))
        span.set_attribute("feed.degraded", result.degraded)
    return _response(result)


@router.get("/trending", response_model=FeedResponse)
async def get_trending(
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return _response(await ledger.feed.get_trending(user_id, page, limit))


@router.get("/industry/{industry}", response_model=FeedResponse)
async def get_industry_feed(
    industry: str,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    algorithm: str = Query(ALGORITHM_HYBRID, pattern=ALGORITHM_PATTERN),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return _response(
        await ledger.feed.get_industry_feed(user_id, industry, page, limit, algorithm)
    )


@router.get("/users/{author_id}/posts", response_model=FeedResponse)
async def get_user_posts(
    author_id: str,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    return _response(await ledger.feed.get_user_posts(user_id, author_id, page, limit))


@router.post("/invalidate", response_model=InvalidateResponse)
async def invalidate_feed(
    user_id: str = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    version = await ledger.feed.invalidate_feed(user_id)
    return InvalidateResponse(version=version)
