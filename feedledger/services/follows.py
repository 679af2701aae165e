"""
Follow graph: follow / unfollow, private-account requests, graph listings.

Public targets get an accepted edge straight away. Private targets get a
pending request that moves no counters until the target accepts it.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedledger.clients.ledger_cache import LedgerCache
from feedledger.errors import NotFound, ValidationError
from feedledger.jobs import FollowPayload, JobKind, SyncJob
from feedledger.models import FOLLOW_ACCEPTED, FOLLOW_PENDING, Follow, User
from feedledger.services.common import (
    JobSubmitter,
    Page,
    check_paging,
    count,
    ensure_user_warm,
    load_user,
)
from feedledger.telemetry import ENGAGEMENT_WRITES_TOTAL

logger = logging.getLogger(__name__)

STATUS_NONE = "none"


@dataclass
class FollowResult:
    status: str              # none | pending | accepted
    followers_count: int     # target's followers
    following_count: int     # acting user's following


class FollowService:
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

    async def _warm_pair(self, user_id: str, target_id: str) -> tuple[User, User]:
        async with self._sessions() as session:
            user = await load_user(session, user_id)
            target = await load_user(session, target_id)
            await ensure_user_warm(self._cache, session, user)
            await ensure_user_warm(self._cache, session, target)
        return user, target

    async def _result(self, status: str, user_id: str, target_id: str) -> FollowResult:
        target_stats = await self._cache.user_stats(target_id)
        user_stats = await self._cache.user_stats(user_id)
        return FollowResult(
            status=status,
            followers_count=target_stats["followers"],
            following_count=user_stats["following"],
        )

    async def _submit(
        self, kind: JobKind, follower_id: str, followee_id: str, status: str = FOLLOW_ACCEPTED
    ) -> None:
        await self._jobs.submit(SyncJob(kind, FollowPayload(follower_id, followee_id, status)))

    # ─────────────────────── Writes ─────────────────────────────────────────

    async def follow(self, user_id: str, target_id: str) -> FollowResult:
        if user_id == target_id:
            raise ValidationError("Cannot follow yourself")
        _, target = await self._warm_pair(user_id, target_id)

        if target.is_private and not await self._cache.is_following(user_id, target_id):
            if await self._cache.add_request(target_id, user_id):
                ENGAGEMENT_WRITES_TOTAL.labels(action="follow_request").inc()
                await self._submit(JobKind.SYNC_FOLLOW, user_id, target_id, FOLLOW_PENDING)
                await self._jobs.notify(target_id, "follow_request", user_id)
            return await self._result(FOLLOW_PENDING, user_id, target_id)

        if await self._cache.add_follow(user_id, target_id):
            ENGAGEMENT_WRITES_TOTAL.labels(action="follow").inc()
            await self._submit(JobKind.SYNC_FOLLOW, user_id, target_id)
            await self._cache.bump_feed_version(user_id)
            await self._jobs.submit_feed_update(user_id=user_id)
            await self._jobs.notify(target_id, "follow", user_id)
        return await self._result(FOLLOW_ACCEPTED, user_id, target_id)

    async def unfollow(self, user_id: str, target_id: str) -> FollowResult:
        """Drops an accepted edge or cancels a pending request; a no-op otherwise."""
        await self._warm_pair(user_id, target_id)

        removed = await self._cache.remove_follow(user_id, target_id)
        cancelled = await self._cache.remove_request(target_id, user_id)
        if removed or cancelled:
            ENGAGEMENT_WRITES_TOTAL.labels(action="unfollow").inc()
            await self._submit(JobKind.SYNC_UNFOLLOW, user_id, target_id)
        if removed:
            await self._cache.bump_feed_version(user_id)
        return await self._result(STATUS_NONE, user_id, target_id)

    async def accept_request(self, user_id: str, requester_id: str) -> FollowResult:
        await self._warm_pair(user_id, requester_id)

        if not await self._cache.remove_request(user_id, requester_id):
            raise NotFound("Follow request not found")
        await self._cache.add_follow(requester_id, user_id)
        ENGAGEMENT_WRITES_TOTAL.labels(action="accept").inc()
        await self._submit(JobKind.SYNC_FOLLOW, requester_id, user_id)
        await self._cache.bump_feed_version(requester_id)
        await self._jobs.submit_feed_update(user_id=requester_id)
        await self._jobs.notify(requester_id, "follow_accept", user_id)

        # From the acting (accepting) user's side: their followers went up
        requester_stats = await self._cache.user_stats(requester_id)
        user_stats = await self._cache.user_stats(user_id)
        return FollowResult(
            status=FOLLOW_ACCEPTED,
            followers_count=user_stats["followers"],
            following_count=requester_stats["following"],
        )

    async def reject_request(self, user_id: str, requester_id: str) -> None:
        await self._warm_pair(user_id, requester_id)

        if not await self._cache.remove_request(user_id, requester_id):
            raise NotFound("Follow request not found")
        ENGAGEMENT_WRITES_TOTAL.labels(action="reject").inc()
        await self._submit(JobKind.SYNC_UNFOLLOW, requester_id, user_id)

    # ─────────────────────── Reads ──────────────────────────────────────────

    async def is_following(self, user_id: str, target_id: str) -> bool:
        await self._warm_pair(user_id, target_id)
        return await self._cache.is_following(user_id, target_id)

    async def follow_status(self, user_id: str, target_id: str) -> str:
        await self._warm_pair(user_id, target_id)
        if await self._cache.is_following(user_id, target_id):
            return FOLLOW_ACCEPTED
        if await self._cache.has_request(target_id, user_id):
            return FOLLOW_PENDING
        return STATUS_NONE

    async def _list_edges(self, stmt, page: int, limit: int) -> Page:
        async with self._sessions() as session:
            total = await count(session, stmt)
            rows = await session.execute(
                stmt.order_by(Follow.created_at.desc(), User.user_id)
                .offset(page * limit)
                .limit(limit)
            )
            data = [
                {
                    "user_id": user.user_id,
                    "username": user.username,
                    "display_name": user.display_name,
                    "account_type": user.account_type,
                    "since": edge.created_at,
                }
                for edge, user in rows.all()
            ]
        return Page(data=data, page=page, limit=limit, total=total)

    async def list_requests(self, user_id: str, page: int = 0, limit: int = 20) -> Page:
        """
        Pending requests come from the counter store, so a request is
        listable (and acceptable) before its sync-follow job has landed.
        """
        check_paging(page, limit, self._max_page_size)
        async with self._sessions() as session:
            user = await load_user(session, user_id)
            await ensure_user_warm(self._cache, session, user)
            requester_ids = await self._cache.request_ids(user_id)
            if not requester_ids:
                return Page(data=[], page=page, limit=limit, total=0)
            rows = await session.execute(
                select(User).where(User.user_id.in_(requester_ids)).order_by(User.username)
            )
            requesters = rows.scalars().all()
        window = requesters[page * limit:(page + 1) * limit]
        data = [
            {
                "user_id": u.user_id,
                "username": u.username,
                "display_name": u.display_name,
                "account_type": u.account_type,
            }
            for u in window
        ]
        return Page(data=data, page=page, limit=limit, total=len(requesters))

    async def list_followers(self, user_id: str, page: int = 0, limit: int = 20) -> Page:
        check_paging(page, limit, self._max_page_size)
        async with self._sessions() as session:
            await load_user(session, user_id)
        stmt = (
            select(Follow, User)
            .join(User, User.user_id == Follow.follower_id)
            .where(Follow.followee_id == user_id, Follow.status == FOLLOW_ACCEPTED)
        )
        return await self._list_edges(stmt, page, limit)

    async def list_following(self, user_id: str, page: int = 0, limit: int = 20) -> Page:
        check_paging(page, limit, self._max_page_size)
        async with self._sessions() as session:
            await load_user(session, user_id)
        stmt = (
            select(Follow, User)
            .join(User, User.user_id == Follow.followee_id)
            .where(Follow.follower_id == user_id, Follow.status == FOLLOW_ACCEPTED)
        )
        return await self._list_edges(stmt, page, limit)
