"""
Sync job handlers — one per JobKind, registered in an explicit table.

Each durable-sync handler:
  1. creates or deletes the record under its uniqueness constraint
     (existing rows are left alone, missing rows on delete are a no-op)
  2. recomputes the affected denormalized counters from record counts
  3. commits, then asks for a coalesced update-feed of the post or user

So replaying a job, or running two jobs for the same key out of order,
converges on the same state.
"""
import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedledger.clients.ledger_cache import LedgerCache
from feedledger.clients.notification_client import NotificationDispatcher
from feedledger.errors import NotFound
from feedledger.jobs import (
    CommentPayload,
    FeedPayload,
    FollowPayload,
    JobKind,
    LikePayload,
    NotificationPayload,
    SharePayload,
)
from feedledger.models import FOLLOW_ACCEPTED, FOLLOW_PENDING, Follow, Like, Post, Share, User
from feedledger.services.common import JobSubmitter
from feedledger.services.feed import FeedService
from feedledger.services.reconcile import ReconciliationService

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[None]]


class SyncHandlers:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: LedgerCache,
        reconcile: ReconciliationService,
        feed: FeedService,
        jobs: JobSubmitter,
        notifier: NotificationDispatcher,
    ) -> None:
        self._sessions = session_factory
        self._cache = cache
        self._reconcile = reconcile
        self._feed = feed
        self._jobs = jobs
        self._notifier = notifier

    def table(self) -> dict[JobKind, Handler]:
        return {
            JobKind.SYNC_LIKE: self.sync_like,
            JobKind.SYNC_UNLIKE: self.sync_unlike,
            JobKind.SYNC_FOLLOW: self.sync_follow,
            JobKind.SYNC_UNFOLLOW: self.sync_unfollow,
            JobKind.SYNC_SHARE: self.sync_share,
            JobKind.SYNC_UNSHARE: self.sync_unshare,
            JobKind.SYNC_COMMENT: self.sync_comment,
            JobKind.UPDATE_FEED: self.update_feed,
            JobKind.SEND_NOTIFICATION: self.send_notification,
        }

    async def _require_post(self, session: AsyncSession, post_id: str) -> Post:
        post = await session.get(Post, post_id)
        if post is None:
            raise NotFound(f"post {post_id} does not exist")
        return post

    # ─────────────────────── Likes ──────────────────────────────────────────

    async def sync_like(self, payload: LikePayload) -> None:
        async with self._sessions() as session:
            post = await self._require_post(session, payload.post_id)
            if await session.get(Like, (payload.user_id, payload.post_id)) is None:
                session.add(Like(user_id=payload.user_id, post_id=payload.post_id))
                await session.flush()
            await self._reconcile.recompute_post_counters(session, payload.post_id)
            await self._reconcile.recompute_user_counters(session, post.user_id)
            await session.commit()
        await self._jobs.submit_feed_update(post_id=payload.post_id)

    async def sync_unlike(self, payload: LikePayload) -> None:
        async with self._sessions() as session:
            post = await self._require_post(session, payload.post_id)
            like = await session.get(Like, (payload.user_id, payload.post_id))
            if like is not None:
                await session.delete(like)
                await session.flush()
            await self._reconcile.recompute_post_counters(session, payload.post_id)
            await self._reconcile.recompute_user_counters(session, post.user_id)
            await session.commit()
        await self._jobs.submit_feed_update(post_id=payload.post_id)

    # ─────────────────────── Follows ────────────────────────────────────────

    async def sync_follow(self, payload: FollowPayload) -> None:
        async with self._sessions() as session:
            for user_id in (payload.follower_id, payload.followee_id):
                if await session.get(User, user_id) is None:
                    raise NotFound(f"user {user_id} does not exist")
            edge = await session.get(Follow, (payload.follower_id, payload.followee_id))
            if edge is None:
                session.add(
                    Follow(
                        follower_id=payload.follower_id,
                        followee_id=payload.followee_id,
                        status=payload.status,
                    )
                )
            elif edge.status == FOLLOW_PENDING and payload.status == FOLLOW_ACCEPTED:
                edge.status = FOLLOW_ACCEPTED
            # An accepted edge is never downgraded by a replayed pending job
            await session.flush()
            await self._reconcile.recompute_user_counters(session, payload.follower_id)
            await self._reconcile.recompute_user_counters(session, payload.followee_id)
            await session.commit()
        if payload.status == FOLLOW_ACCEPTED:
            await self._jobs.submit_feed_update(user_id=payload.follower_id)

    async def sync_unfollow(self, payload: FollowPayload) -> None:
        async with self._sessions() as session:
            edge = await session.get(Follow, (payload.follower_id, payload.followee_id))
            if edge is not None:
                await session.delete(edge)
                await session.flush()
            await self._reconcile.recompute_user_counters(session, payload.follower_id)
            await self._reconcile.recompute_user_counters(session, payload.followee_id)
            await session.commit()
        await self._feed.invalidate_feed(payload.follower_id)

    # ─────────────────────── Shares ─────────────────────────────────────────

    async def sync_share(self, payload: SharePayload) -> None:
        async with self._sessions() as session:
            await self._require_post(session, payload.post_id)
            if await session.get(Share, payload.share_id) is None:
                session.add(
                    Share(
                        share_id=payload.share_id,
                        user_id=payload.user_id,
                        post_id=payload.post_id,
                        share_type=payload.share_type,
                        caption=payload.caption,
                        platform=payload.platform,
                    )
                )
                await session.flush()
            await self._reconcile.recompute_post_counters(session, payload.post_id)
            await session.commit()
        await self._jobs.submit_feed_update(post_id=payload.post_id)

    async def sync_unshare(self, payload: SharePayload) -> None:
        async with self._sessions() as session:
            share = await session.get(Share, payload.share_id)
            if share is not None:
                await session.delete(share)
                await session.flush()
            await self._reconcile.recompute_post_counters(session, payload.post_id)
            await session.commit()
        await self._jobs.submit_feed_update(post_id=payload.post_id)

    # ─────────────────────── Comments ───────────────────────────────────────

    async def sync_comment(self, payload: CommentPayload) -> None:
        async with self._sessions() as session:
            await self._require_post(session, payload.post_id)
            await self._reconcile.recompute_post_counters(session, payload.post_id)
            if payload.comment_id:
                await self._reconcile.recompute_replies(session, payload.comment_id)
            await session.commit()
        await self._jobs.submit_feed_update(post_id=payload.post_id)

    # ─────────────────────── Feed / notifications ───────────────────────────

    async def update_feed(self, payload: FeedPayload) -> None:
        # Release first so engagement arriving mid-run schedules a fresh pass
        await self._cache.release_job(JobKind.UPDATE_FEED.value, payload.key)
        if payload.post_id:
            await self._feed.recompute_post_score(payload.post_id)
        if payload.user_id:
            await self._feed.regenerate_feed(payload.user_id)

    async def send_notification(self, payload: NotificationPayload) -> None:
        await self._notifier.dispatch(payload)
