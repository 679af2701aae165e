"""
Shares — reposts, quote posts and external shares.

A user may share the same post many times, so there is no membership gate:
each call mints a share id, bumps the live counter and enqueues `sync-share`
carrying that id. Replays of the job insert the same primary key once.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedledger.clients.ledger_cache import LedgerCache
from feedledger.errors import Forbidden, NotFound, ValidationError
from feedledger.jobs import JobKind, SharePayload, SyncJob
from feedledger.models import (
    MAX_TEXT_LENGTH,
    SHARE_PLATFORMS,
    SHARE_TYPES,
    VISIBILITY_PRIVATE,
    Post,
    Share,
    User,
)
from feedledger.services.common import (
    JobSubmitter,
    Page,
    check_paging,
    count,
    ensure_post_warm,
    load_active_post,
)
from feedledger.telemetry import ENGAGEMENT_WRITES_TOTAL

logger = logging.getLogger(__name__)

# How long a deleted share id stays blocked from decrementing again
SHARE_DELETE_GATE_TTL = 7 * 24 * 3600


@dataclass
class ShareResult:
    share_id: str
    shares_count: int


class ShareService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: LedgerCache,
        jobs: JobSubmitter,
        max_page_size: int = 100,
    ) -> None:
        self._sessions = session_factory
        self._cache = cache
        self._jobs = jobs
        self._max_page_size = max_page_size

    async def share(
        self,
        user_id: str,
        post_id: str,
        share_type: str = "repost",
        caption: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> ShareResult:
        if share_type not in SHARE_TYPES:
            raise ValidationError(f"share_type must be one of {', '.join(SHARE_TYPES)}")
        if platform is not None and platform not in SHARE_PLATFORMS:
            raise ValidationError(f"platform must be one of {', '.join(SHARE_PLATFORMS)}")
        if caption is not None and len(caption) > MAX_TEXT_LENGTH:
            raise ValidationError(f"caption must be at most {MAX_TEXT_LENGTH} characters")

        async with self._sessions() as session:
            post = await load_active_post(session, post_id)
            if post.visibility == VISIBILITY_PRIVATE:
                raise ValidationError("Cannot share private posts")
            await ensure_post_warm(self._cache, session, post)

        share_id = str(uuid.uuid4())
        shares_count = await self._cache.incr_post_stat(post_id, "shares", 1)
        ENGAGEMENT_WRITES_TOTAL.labels(action="share").inc()
        await self._jobs.submit(
            SyncJob(
                JobKind.SYNC_SHARE,
                SharePayload(
                    share_id=share_id,
                    user_id=user_id,
                    post_id=post_id,
                    share_type=share_type,
                    caption=caption,
                    platform=platform,
                ),
            )
        )
        await self._jobs.notify(post.user_id, "share", user_id, post_id=post_id, share_id=share_id)
        return ShareResult(share_id=share_id, shares_count=shares_count)

    async def delete_share(self, user_id: str, share_id: str) -> ShareResult:
        """Only the sharer may delete. The share must already be durable."""
        async with self._sessions() as session:
            share = await session.get(Share, share_id)
            if share is None:
                raise NotFound("Share not found")
            if share.user_id != user_id:
                raise Forbidden("Only the sharer can delete this share")
            post = await session.get(Post, share.post_id)
            if post is None:
                raise NotFound("Post not found")
            await ensure_post_warm(self._cache, session, post)

        if await self._cache.mark_share_deleted(share_id, SHARE_DELETE_GATE_TTL):
            await self._cache.incr_post_stat(post.post_id, "shares", -1)
            ENGAGEMENT_WRITES_TOTAL.labels(action="unshare").inc()
            await self._jobs.submit(
                SyncJob(
                    JobKind.SYNC_UNSHARE,
                    SharePayload(share_id=share_id, user_id=user_id, post_id=post.post_id),
                )
            )
        stats = await self._cache.post_stats(post.post_id)
        return ShareResult(share_id=share_id, shares_count=stats["shares"] if stats else 0)

    async def list_shares(self, post_id: str, page: int = 0, limit: int = 20) -> Page:
        check_paging(page, limit, self._max_page_size)
        async with self._sessions() as session:
            await load_active_post(session, post_id)
            stmt = (
                select(Share, User)
                .join(User, User.user_id == Share.user_id)
                .where(Share.post_id == post_id)
            )
            total = await count(session, stmt)
            rows = await session.execute(
                stmt.order_by(Share.created_at.desc(), Share.share_id)
                .offset(page * limit)
                .limit(limit)
            )
            data = [
                {
                    "share_id": share.share_id,
                    "user_id": user.user_id,
                    "username": user.username,
                    "display_name": user.display_name,
                    "share_type": share.share_type,
                    "caption": share.caption,
                    "platform": share.platform,
                    "created_at": share.created_at,
                }
                for share, user in rows.all()
            ]
        return Page(data=data, page=page, limit=limit, total=total)

    async def share_stats(self, post_id: str) -> dict:
        """Live total plus durable breakdowns by platform and share type."""
        async with self._sessions() as session:
            post = await load_active_post(session, post_id)
            await ensure_post_warm(self._cache, session, post)
            by_platform = await session.execute(
                select(Share.platform, func.count())
                .where(Share.post_id == post_id)
                .group_by(Share.platform)
            )
            by_type = await session.execute(
                select(Share.share_type, func.count())
                .where(Share.post_id == post_id)
                .group_by(Share.share_type)
            )
            platforms = [
                {"platform": p or "internal", "count": int(n)} for p, n in by_platform.all()
            ]
            types = [{"share_type": t, "count": int(n)} for t, n in by_type.all()]

        stats = await self._cache.post_stats(post_id)
        platforms.sort(key=lambda row: (-row["count"], row["platform"]))
        types.sort(key=lambda row: (-row["count"], row["share_type"]))
        return {
            "total": stats["shares"] if stats else post.shares_count,
            "by_platform": platforms,
            "by_type": types,
        }
