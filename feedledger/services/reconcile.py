"""
Reconciliation — the authoritative "recompute from record counts" path.

Every sync handler ends by calling recompute_post_counters /
recompute_user_counters, so a replayed or reordered job converges on the
same denormalized values. reconcile_all() sweeps every row (for drift left
by lost jobs) and rebuild_counter_store() reloads the counter store after a
cache loss.
"""
import logging
from collections import defaultdict
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedledger.clients.ledger_cache import LedgerCache
from feedledger.models import (
    FOLLOW_ACCEPTED,
    FOLLOW_PENDING,
    VISIBILITY_PRIVATE,
    Comment,
    Follow,
    Like,
    Post,
    Share,
    User,
)
from feedledger.ranking import calculate_score

logger = logging.getLogger(__name__)


async def _count(session: AsyncSession, model, *criteria) -> int:
    return int(await session.scalar(select(func.count()).select_from(model).where(*criteria)) or 0)


class ReconciliationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: LedgerCache,
    ) -> None:
        self._sessions = session_factory
        self._cache = cache

    # ─────────────────────── Per-record recompute ───────────────────────────

    async def recompute_post_counters(self, session: AsyncSession, post_id: str) -> Optional[Post]:
        """Rewrite a post's likes/comments/shares columns from record counts (caller commits)."""
        post = await session.get(Post, post_id)
        if post is None:
            return None
        post.likes_count = await _count(session, Like, Like.post_id == post_id)
        post.comments_count = await _count(
            session, Comment, Comment.post_id == post_id, Comment.is_active.is_(True)
        )
        post.shares_count = await _count(session, Share, Share.post_id == post_id)
        return post

    async def recompute_user_counters(self, session: AsyncSession, user_id: str) -> Optional[User]:
        """Rewrite a user's follower/following/likes-received columns (caller commits)."""
        user = await session.get(User, user_id)
        if user is None:
            return None
        user.followers_count = await _count(
            session, Follow, Follow.followee_id == user_id, Follow.status == FOLLOW_ACCEPTED
        )
        user.following_count = await _count(
            session, Follow, Follow.follower_id == user_id, Follow.status == FOLLOW_ACCEPTED
        )
        user.likes_received = int(
            await session.scalar(
                select(func.count())
                .select_from(Like)
                .join(Post, Post.post_id == Like.post_id)
                .where(Post.user_id == user_id)
            )
            or 0
        )
        return user

    async def recompute_replies(self, session: AsyncSession, comment_id: str) -> None:
        """Refresh replies_count on the top-level comment of a thread."""
        comment = await session.get(Comment, comment_id)
        if comment is None:
            return
        root = await session.get(Comment, comment.parent_id) if comment.parent_id else comment
        if root is None:
            return
        root.replies_count = await _count(
            session, Comment, Comment.parent_id == root.comment_id, Comment.is_active.is_(True)
        )

    # ─────────────────────── Sweeps ─────────────────────────────────────────

    async def reconcile_all(self) -> dict[str, int]:
        """
        Recompute every post's and user's denormalized counters.
        Returns how many rows were checked and how many had drifted.
        """
        report = {"posts": 0, "posts_fixed": 0, "users": 0, "users_fixed": 0}
        async with self._sessions() as session:
            post_ids = (await session.execute(select(Post.post_id))).scalars().all()
            for post_id in post_ids:
                post = await session.get(Post, post_id)
                before = (post.likes_count, post.comments_count, post.shares_count)
                await self.recompute_post_counters(session, post_id)
                report["posts"] += 1
                if before != (post.likes_count, post.comments_count, post.shares_count):
                    report["posts_fixed"] += 1
                    logger.warning(
                        "Post %s counters drifted %s → %s",
                        post_id,
                        before,
                        (post.likes_count, post.comments_count, post.shares_count),
                    )

            user_ids = (await session.execute(select(User.user_id))).scalars().all()
            for user_id in user_ids:
                user = await session.get(User, user_id)
                before = (user.followers_count, user.following_count, user.likes_received)
                await self.recompute_user_counters(session, user_id)
                report["users"] += 1
                if before != (user.followers_count, user.following_count, user.likes_received):
                    report["users_fixed"] += 1
                    logger.warning("User %s counters drifted %s", user_id, before)
            await session.commit()

        logger.info(
            "Reconciled %d posts (%d fixed), %d users (%d fixed)",
            report["posts"],
            report["posts_fixed"],
            report["users"],
            report["users_fixed"],
        )
        return report

    async def rebuild_counter_store(self) -> dict[str, int]:
        """
        Replay Like/Follow/Share/Comment records into the counter store and
        refill the scope sorted sets. Existing cached state for every post
        and user is overwritten.
        """
        async with self._sessions() as session:
            likers: dict[str, list[str]] = defaultdict(list)
            liked: dict[str, list[str]] = defaultdict(list)
            like_rows = await session.execute(select(Like.user_id, Like.post_id))
            for user_id, post_id in like_rows.all():
                likers[post_id].append(user_id)
                liked[user_id].append(post_id)

            following: dict[str, list[str]] = defaultdict(list)
            followers: dict[str, list[str]] = defaultdict(list)
            requests: dict[str, list[str]] = defaultdict(list)
            edges = await session.execute(select(Follow.follower_id, Follow.followee_id, Follow.status))
            for follower_id, followee_id, status in edges.all():
                if status == FOLLOW_PENDING:
                    requests[followee_id].append(follower_id)
                else:
                    following[follower_id].append(followee_id)
                    followers[followee_id].append(follower_id)

            share_rows = await session.execute(
                select(Share.post_id, func.count()).group_by(Share.post_id)
            )
            shares = {pid: int(n) for pid, n in share_rows.all()}
            comment_rows = await session.execute(
                select(Comment.post_id, func.count())
                .where(Comment.is_active.is_(True))
                .group_by(Comment.post_id)
            )
            comments = {pid: int(n) for pid, n in comment_rows.all()}
            posts = (await session.execute(select(Post))).scalars().all()
            users = (await session.execute(select(User))).scalars().all()

        await self._cache.clear_scopes()
        received: dict[str, int] = defaultdict(int)
        for post in posts:
            counts = {
                "likes": len(likers[post.post_id]),
                "comments": comments.get(post.post_id, 0),
                "shares": shares.get(post.post_id, 0),
                "views": post.views_count,
            }
            received[post.user_id] += counts["likes"]
            await self._cache.set_post_state(post.post_id, likers[post.post_id], counts)
            if post.is_active and post.visibility != VISIBILITY_PRIVATE:
                score = calculate_score(
                    counts["likes"], counts["comments"], counts["shares"], post.created_at
                )
                await self._cache.update_scopes(post.post_id, score, post.industries or [])

        for user in users:
            await self._cache.set_user_state(
                user.user_id,
                following[user.user_id],
                followers[user.user_id],
                requests[user.user_id],
                {
                    "followers": len(followers[user.user_id]),
                    "following": len(following[user.user_id]),
                    "likes_received": received[user.user_id],
                },
            )
            await self._cache.set_user_liked(user.user_id, liked[user.user_id])
            await self._cache.bump_feed_version(user.user_id)

        logger.info("Rebuilt counter store for %d posts and %d users", len(posts), len(users))
        return {"posts": len(posts), "users": len(users)}
