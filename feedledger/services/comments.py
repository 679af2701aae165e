"""
Comments and one level of replies.

Comment bodies are content, not counters, so they are written to the durable
record store synchronously. The post's live comment counter moves in the
counter store and a `sync-comment` job recomputes the durable counters.
"""
import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedledger.clients.ledger_cache import LedgerCache
from feedledger.errors import Forbidden, NotFound, ValidationError
from feedledger.jobs import CommentPayload, JobKind, SyncJob
from feedledger.models import MAX_TEXT_LENGTH, Comment, Post, User
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

SORT_RECENT = "recent"
SORT_POPULAR = "popular"


def _clean_content(content: Optional[str]) -> str:
    text = (content or "").strip()
    if not text:
        raise ValidationError("Comment content is required")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError(f"Comment must be at most {MAX_TEXT_LENGTH} characters")
    return text


def _serialize(comment: Comment, author: Optional[User], replies_count: int = 0) -> dict:
    return {
        "comment_id": comment.comment_id,
        "post_id": comment.post_id,
        "parent_id": comment.parent_id,
        "content": comment.content,
        "likes_count": comment.likes_count,
        "replies_count": replies_count,
        "is_edited": comment.is_edited,
        "created_at": comment.created_at,
        "author": {
            "user_id": comment.user_id,
            "username": author.username if author else None,
            "display_name": author.display_name if author else None,
        },
    }


class CommentService:
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

    async def _load_active(self, session: AsyncSession, comment_id: str) -> Comment:
        comment = await session.get(Comment, comment_id)
        if comment is None or not comment.is_active:
            raise NotFound("Comment not found")
        return comment

    async def _sync(self, post_id: str, comment_id: Optional[str]) -> None:
        await self._jobs.submit(SyncJob(JobKind.SYNC_COMMENT, CommentPayload(post_id, comment_id)))

    # ─────────────────────── Writes ─────────────────────────────────────────

    async def add_comment(
        self, user_id: str, post_id: str, content: str, parent_id: Optional[str] = None
    ) -> dict:
        text = _clean_content(content)

        async with self._sessions() as session:
            post = await load_active_post(session, post_id)
            parent = None
            if parent_id:
                parent = await session.get(Comment, parent_id)
                if parent is None or not parent.is_active:
                    raise NotFound("Parent comment not found")
                if parent.post_id != post_id:
                    raise ValidationError("Parent comment belongs to a different post")
                # Replies to replies attach to the thread's top-level comment
                if parent.parent_id:
                    parent = await self._load_active(session, parent.parent_id)

            await ensure_post_warm(self._cache, session, post)
            comment = Comment(
                post_id=post_id,
                user_id=user_id,
                content=text,
                parent_id=parent.comment_id if parent else None,
            )
            session.add(comment)
            await session.commit()
            author = await session.get(User, user_id)

        comments_count = await self._cache.incr_post_stat(post_id, "comments", 1)
        ENGAGEMENT_WRITES_TOTAL.labels(action="comment").inc()
        await self._sync(post_id, comment.comment_id)
        if parent is not None:
            await self._jobs.notify(
                parent.user_id, "reply", user_id, post_id=post_id, comment_id=comment.comment_id
            )
        else:
            await self._jobs.notify(
                post.user_id, "comment", user_id, post_id=post_id, comment_id=comment.comment_id
            )

        result = _serialize(comment, author)
        result["comments_count"] = comments_count
        return result

    async def edit_comment(self, user_id: str, comment_id: str, content: str) -> dict:
        text = _clean_content(content)
        async with self._sessions() as session:
            comment = await self._load_active(session, comment_id)
            if comment.user_id != user_id:
                raise Forbidden("Only the author can edit this comment")
            comment.content = text
            comment.is_edited = True
            await session.commit()
            author = await session.get(User, user_id)
            replies = await session.scalar(
                select(func.count())
                .select_from(Comment)
                .where(Comment.parent_id == comment_id, Comment.is_active.is_(True))
            )
        return _serialize(comment, author, int(replies or 0))

    async def delete_comment(self, user_id: str, comment_id: str) -> int:
        """
        Soft-deletes the comment and, for a top-level comment, its replies.
        Allowed for the comment's author and the post's author. Returns the
        post's live comment count.
        """
        async with self._sessions() as session:
            comment = await self._load_active(session, comment_id)
            post = await session.get(Post, comment.post_id)
            if post is None:
                raise NotFound("Post not found")
            if user_id not in (comment.user_id, post.user_id):
                raise Forbidden("Not allowed to delete this comment")
            await ensure_post_warm(self._cache, session, post)

            # WHERE is_active keeps a racing second delete from counting twice
            result = await session.execute(
                update(Comment)
                .where(Comment.comment_id == comment_id, Comment.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            removed = result.rowcount or 0
            if removed and comment.parent_id is None:
                cascade = await session.execute(
                    update(Comment)
                    .where(Comment.parent_id == comment_id, Comment.is_active.is_(True))
                    .values(is_active=False)
                    .execution_options(synchronize_session=False)
                )
                removed += cascade.rowcount or 0
            await session.commit()

        if not removed:
            raise NotFound("Comment not found")
        comments_count = await self._cache.incr_post_stat(post.post_id, "comments", -removed)
        await self._sync(post.post_id, comment_id)
        logger.info("Comment %s deleted by %s (%d rows)", comment_id, user_id, removed)
        return comments_count

    # ─────────────────────── Reads ──────────────────────────────────────────

    async def _replies_counts(self, session: AsyncSession, ids: list[str]) -> dict[str, int]:
        if not ids:
            return {}
        rows = await session.execute(
            select(Comment.parent_id, func.count())
            .where(Comment.parent_id.in_(ids), Comment.is_active.is_(True))
            .group_by(Comment.parent_id)
        )
        return {parent: int(n) for parent, n in rows.all()}

    async def list_comments(
        self, post_id: str, page: int = 0, limit: int = 20, sort: str = SORT_RECENT
    ) -> Page:
        check_paging(page, limit, self._max_page_size)
        if sort not in (SORT_RECENT, SORT_POPULAR):
            raise ValidationError("sort must be 'recent' or 'popular'")

        async with self._sessions() as session:
            await load_active_post(session, post_id)
            stmt = (
                select(Comment, User)
                .outerjoin(User, User.user_id == Comment.user_id)
                .where(
                    Comment.post_id == post_id,
                    Comment.parent_id.is_(None),
                    Comment.is_active.is_(True),
                )
            )
            total = await count(session, stmt)
            if sort == SORT_POPULAR:
                ordering = (Comment.likes_count.desc(), Comment.created_at.desc())
            else:
                ordering = (Comment.created_at.desc(),)
            rows = (
                await session.execute(
                    stmt.order_by(*ordering, Comment.comment_id)
                    .offset(page * limit)
                    .limit(limit)
                )
            ).all()
            replies = await self._replies_counts(session, [c.comment_id for c, _ in rows])

        data = [_serialize(c, u, replies.get(c.comment_id, 0)) for c, u in rows]
        return Page(data=data, page=page, limit=limit, total=total)

    async def list_replies(self, comment_id: str, page: int = 0, limit: int = 20) -> Page:
        """Replies in conversation order (oldest first)."""
        check_paging(page, limit, self._max_page_size)
        async with self._sessions() as session:
            await self._load_active(session, comment_id)
            stmt = (
                select(Comment, User)
                .outerjoin(User, User.user_id == Comment.user_id)
                .where(Comment.parent_id == comment_id, Comment.is_active.is_(True))
            )
            total = await count(session, stmt)
            rows = await session.execute(
                stmt.order_by(Comment.created_at.asc(), Comment.comment_id)
                .offset(page * limit)
                .limit(limit)
            )
            data = [_serialize(c, u) for c, u in rows.all()]
        return Page(data=data, page=page, limit=limit, total=total)
