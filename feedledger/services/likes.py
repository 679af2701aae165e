"""
Like / unlike — the hot write path.

The counter store answers immediately; a `sync-like` / `sync-unlike` job
brings the durable record store in line afterwards.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedledger.clients.ledger_cache import LedgerCache
from feedledger.jobs import JobKind, LikePayload, SyncJob
from feedledger.models import Like, Post, User
from feedledger.services.common import (
    JobSubmitter,
    Page,
    check_paging,
    count,
    ensure_post_warm,
    ensure_user_warm,
    load_active_post,
    load_user,
)
from feedledger.telemetry import ENGAGEMENT_WRITES_TOTAL

logger = logging.getLogger(__name__)


@dataclass
class LikeResult:
    liked: bool
    likes_count: int


class LikeService:
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

    async def _warm_target(self, post_id: str) -> Post:
        async with self._sessions() as session:
            post = await load_active_post(session, post_id)
            await ensure_post_warm(self._cache, session, post)
            author = await session.get(User, post.user_id)
            if author is not None:
                await ensure_user_warm(self._cache, session, author)
        return post

    async def _likes_count(self, post_id: str) -> int:
        stats = await self._cache.post_stats(post_id)
        return stats["likes"] if stats else 0

    async def like(self, user_id: str, post_id: str) -> LikeResult:
        post = await self._warm_target(post_id)

        if await self._cache.add_like(user_id, post_id, author_id=post.user_id):
            ENGAGEMENT_WRITES_TOTAL.labels(action="like").inc()
            await self._jobs.submit(SyncJob(JobKind.SYNC_LIKE, LikePayload(user_id, post_id)))
            await self._jobs.notify(post.user_id, "like", user_id, post_id=post_id)
        else:
            logger.debug("Duplicate like %s → %s absorbed", user_id, post_id)

        return LikeResult(liked=True, likes_count=await self._likes_count(post_id))

    async def unlike(self, user_id: str, post_id: str) -> LikeResult:
        post = await self._warm_target(post_id)

        if await self._cache.remove_like(user_id, post_id, author_id=post.user_id):
            ENGAGEMENT_WRITES_TOTAL.labels(action="unlike").inc()
            await self._jobs.submit(SyncJob(JobKind.SYNC_UNLIKE, LikePayload(user_id, post_id)))

        return LikeResult(liked=False, likes_count=await self._likes_count(post_id))

    async def has_liked(self, user_id: str, post_id: str) -> bool:
        await self._warm_target(post_id)
        return await self._cache.has_liked(user_id, post_id)

    async def list_likers(self, post_id: str, page: int = 0, limit: int = 20) -> Page:
        """Durable liker list, newest first. Trails the live count by the sync lag."""
        check_paging(page, limit, self._max_page_size)
        async with self._sessions() as session:
            await load_active_post(session, post_id)
            stmt = (
                select(Like, User)
                .join(User, User.user_id == Like.user_id)
                .where(Like.post_id == post_id)
            )
            total = await count(session, stmt)
            rows = await session.execute(
                stmt.order_by(Like.created_at.desc(), Like.user_id)
                .offset(page * limit)
                .limit(limit)
            )
            data = [
                {
                    "user_id": user.user_id,
                    "username": user.username,
                    "display_name": user.display_name,
                    "liked_at": like.created_at,
                }
                for like, user in rows.all()
            ]
        return Page(data=data, page=page, limit=limit, total=total)

    async def list_liked_posts(self, user_id: str, page: int = 0, limit: int = 20) -> Page:
        check_paging(page, limit, self._max_page_size)
        async with self._sessions() as session:
            await load_user(session, user_id)
            stmt = (
                select(Like, Post)
                .join(Post, Post.post_id == Like.post_id)
                .where(Like.user_id == user_id, Post.is_active.is_(True))
            )
            total = await count(session, stmt)
            rows = await session.execute(
                stmt.order_by(Like.created_at.desc(), Like.post_id)
                .offset(page * limit)
                .limit(limit)
            )
            data = [
                {
                    "post_id": post.post_id,
                    "user_id": post.user_id,
                    "caption": post.caption,
                    "content_type": post.content_type,
                    "created_at": post.created_at,
                    "liked_at": like.created_at,
                }
                for like, post in rows.all()
            ]
        return Page(data=data, page=page, limit=limit, total=total)
