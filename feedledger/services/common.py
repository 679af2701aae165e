"""
Helpers shared by the engagement, feed and reconciliation services:
pagination, durable-store lookups, counter-store warm-up and job submission.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from feedledger.clients.ledger_cache import LedgerCache
from feedledger.clients.sync_queue import SyncQueue
from feedledger.config import Settings
from feedledger.errors import NotFound, ValidationError
from feedledger.jobs import FeedPayload, JobKind, NotificationPayload, SyncJob
from feedledger.models import (
    FOLLOW_ACCEPTED,
    FOLLOW_PENDING,
    Comment,
    Follow,
    Like,
    Post,
    User,
)
from feedledger.telemetry import ENQUEUE_FAILURES_TOTAL, SYNC_JOBS_TOTAL

logger = logging.getLogger(__name__)


@dataclass
class Page:
    data: list[Any]
    page: int
    limit: int
    total: int
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def check_paging(page: int, limit: int, max_limit: int) -> None:
    if page < 0:
        raise ValidationError("page must be >= 0")
    if limit < 1 or limit > max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}")


async def count(session: AsyncSession, stmt) -> int:
    return int(await session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)


# ─────────────────────── Record lookups ───────────────────────────────────


async def load_user(session: AsyncSession, user_id: str) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def load_active_post(session: AsyncSession, post_id: str) -> Post:
    post = await session.get(Post, post_id)
    if post is None or not post.is_active:
        raise NotFound("Post not found")
    return post


# ─────────────────────── Counter-store warm-up ────────────────────────────


async def ensure_post_warm(cache: LedgerCache, session: AsyncSession, post: Post) -> None:
    """Seed a post's likers and counters from durable state on first touch."""
    if await cache.post_is_warm(post.post_id):
        return
    rows = await session.execute(select(Like.user_id).where(Like.post_id == post.post_id))
    likers = [r[0] for r in rows.all()]
    # Comments are written synchronously, so their record count is current
    comments = await session.scalar(
        select(func.count())
        .select_from(Comment)
        .where(Comment.post_id == post.post_id, Comment.is_active.is_(True))
    )
    await cache.warm_post(
        post.post_id,
        likers,
        {
            "likes": len(likers),
            "comments": int(comments or 0),
            "shares": post.shares_count,
            "views": post.views_count,
        },
    )
    logger.debug("Warmed post %s (%d likers)", post.post_id, len(likers))


async def ensure_user_warm(cache: LedgerCache, session: AsyncSession, user: User) -> None:
    """Seed a user's follow graph and counters from durable state on first touch."""
    if await cache.user_is_warm(user.user_id):
        return
    following = await session.execute(
        select(Follow.followee_id).where(
            Follow.follower_id == user.user_id, Follow.status == FOLLOW_ACCEPTED
        )
    )
    followers = await session.execute(
        select(Follow.follower_id, Follow.status).where(Follow.followee_id == user.user_id)
    )
    received = await session.scalar(
        select(func.count())
        .select_from(Like)
        .join(Post, Post.post_id == Like.post_id)
        .where(Post.user_id == user.user_id)
    )
    following_ids = [r[0] for r in following.all()]
    accepted, pending = [], []
    for follower_id, status in followers.all():
        (pending if status == FOLLOW_PENDING else accepted).append(follower_id)
    await cache.warm_user(
        user.user_id,
        following_ids,
        accepted,
        pending,
        {
            "followers": len(accepted),
            "following": len(following_ids),
            "likes_received": int(received or 0),
        },
    )


# ─────────────────────── Job submission ───────────────────────────────────


class JobSubmitter:
    """
    Fire-and-forget enqueue for the write path.

    A failed enqueue is logged at ERROR and counted; it never turns a request
    whose counter-store write succeeded into an error. The resulting gap is
    closed by reconciliation (services/reconcile.py).
    """

    def __init__(self, queue: SyncQueue, cache: LedgerCache, settings: Settings) -> None:
        self.queue = queue
        self.cache = cache
        self.settings = settings

    async def submit(self, job: SyncJob) -> bool:
        try:
            await self.queue.enqueue(job)
        except Exception as exc:
            ENQUEUE_FAILURES_TOTAL.labels(kind=job.kind.value).inc()
            logger.error(
                "Failed to enqueue %s job (key=%s): %s — durable store will lag until reconciled",
                job.kind.value,
                job.partition_key,
                exc,
            )
            return False
        return True

    async def submit_feed_update(
        self, *, post_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> bool:
        """
        Enqueue update-feed unless an identical one is already waiting.
        Returns False when the job was coalesced into the waiting one.
        """
        payload = FeedPayload(post_id=post_id, user_id=user_id)
        kind = JobKind.UPDATE_FEED.value
        if not await self.cache.claim_job(kind, payload.key, self.settings.update_feed_dedupe_ttl):
            SYNC_JOBS_TOTAL.labels(kind=kind, outcome="coalesced").inc()
            return False
        submitted = await self.submit(SyncJob(JobKind.UPDATE_FEED, payload))
        if not submitted:
            await self.cache.release_job(kind, payload.key)
        return submitted

    async def notify(
        self,
        recipient_id: str,
        type_: str,
        actor_id: str,
        *,
        post_id: Optional[str] = None,
        comment_id: Optional[str] = None,
        share_id: Optional[str] = None,
    ) -> None:
        if recipient_id == actor_id:
            return
        await self.submit(
            SyncJob(
                JobKind.SEND_NOTIFICATION,
                NotificationPayload(
                    user_id=recipient_id,
                    type=type_,
                    actor_id=actor_id,
                    post_id=post_id,
                    comment_id=comment_id,
                    share_id=share_id,
                ),
            )
        )
