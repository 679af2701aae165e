"""
Feed Ranking Service.

Pipeline for every variant (personal, trending, industry, user posts):
  1. Collect   — bounded candidate query against the durable record store
  2. Filter    — the shared visibility predicate (ranking.can_view)
  3. Merge     — overlay live counters from the counter store
  4. Score     — 0.6·ln(weighted engagement + 1) + 0.4/(age_h + 1)
  5. Sort      — hybrid | chronological | engagement, ties on age then id
  6. Paginate  — zero-based page / limit
  7. Enrich    — isLiked and author.isFollowing for the viewer

Ranked pages are cached per (viewer, filters, page) under a per-viewer
version number; invalidation is an INCR of that version. Enrichment is
applied on every read, cached or not, so a viewer's own likes and follows
show up immediately.
"""
import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import String, cast, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedledger.clients.ledger_cache import SCOPE_GLOBAL, LedgerCache
from feedledger.config import Settings
from feedledger.errors import ValidationError
from feedledger.models import (
    FOLLOW_ACCEPTED,
    VISIBILITY_PRIVATE,
    Follow,
    Like,
    Post,
    User,
    utcnow,
)
from feedledger.ranking import (
    ALGORITHM_CHRONOLOGICAL,
    ALGORITHM_ENGAGEMENT,
    ALGORITHM_HYBRID,
    ALGORITHMS,
    calculate_score,
    can_view,
    engagement_total,
)
from feedledger.services.common import check_paging, load_user
from feedledger.telemetry import (
    FEED_CACHE_HITS_TOTAL,
    FEED_CANDIDATES_TOTAL,
    FEED_DEGRADED_TOTAL,
    FEED_LATENCY,
)

logger = logging.getLogger(__name__)

VARIANT_PERSONAL = "feed"
VARIANT_TRENDING = "trending"
VARIANT_INDUSTRY = "industry"
VARIANT_USER = "user"


@dataclass
class FeedRequest:
    variant: str
    algorithm: str = ALGORITHM_HYBRID
    time_range_days: Optional[int] = None
    industry: Optional[str] = None
    author_id: Optional[str] = None

    def cache_token(self) -> str:
        return ":".join(
            [
                self.variant,
                self.algorithm,
                str(self.time_range_days or ""),
                self.industry or "",
                self.author_id or "",
            ]
        )


@dataclass
class FeedPage:
    data: list[dict]
    page: int
    limit: int
    total: int
    algorithm: str
    source: str = "database"     # database | cache | stale | empty
    degraded: bool = False
    extra: dict = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "data": self.data,
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "algorithm": self.algorithm,
            }
        )

    @classmethod
    def from_json(cls, raw: str, source: str) -> "FeedPage":
        body = json.loads(raw)
        return cls(
            data=body["data"],
            page=body["page"],
            limit=body["limit"],
            total=body["total"],
            algorithm=body["algorithm"],
            source=source,
        )


class FeedService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: LedgerCache,
        settings: Settings,
    ) -> None:
        self._sessions = session_factory
        self._cache = cache
        self._settings = settings

    # ─────────────────────── Public variants ────────────────────────────────

    async def get_feed(
        self,
        viewer_id: str,
        page: int = 0,
        limit: Optional[int] = None,
        algorithm: str = ALGORITHM_HYBRID,
        time_range_days: Optional[int] = None,
    ) -> FeedPage:
        """Personalized feed; the viewer's own posts are excluded."""
        if time_range_days is not None and time_range_days < 1:
            raise ValidationError("timeRange must be at least 1 day")
        request = FeedRequest(VARIANT_PERSONAL, algorithm, time_range_days)
        return await self._serve(viewer_id, request, page, limit)

    async def get_trending(
        self, viewer_id: str, page: int = 0, limit: Optional[int] = None
    ) -> FeedPage:
        return await self._serve(viewer_id, FeedRequest(VARIANT_TRENDING), page, limit)

    async def get_industry_feed(
        self,
        viewer_id: str,
        industry: str,
        page: int = 0,
        limit: Optional[int] = None,
        algorithm: str = ALGORITHM_HYBRID,
    ) -> FeedPage:
        if not industry or not industry.strip():
            raise ValidationError("industry is required")
        request = FeedRequest(VARIANT_INDUSTRY, algorithm, industry=industry.strip().lower())
        return await self._serve(viewer_id, request, page, limit)

    async def get_user_posts(
        self, viewer_id: str, author_id: str, page: int = 0, limit: Optional[int] = None
    ) -> FeedPage:
        """Profile grid, newest first."""
        async with self._sessions() as session:
            await load_user(session, author_id)
        request = FeedRequest(VARIANT_USER, ALGORITHM_CHRONOLOGICAL, author_id=author_id)
        return await self._serve(viewer_id, request, page, limit)

    async def invalidate_feed(self, user_id: str) -> int:
        version = await self._cache.bump_feed_version(user_id)
        logger.debug("Feed cache for %s invalidated (v%d)", user_id, version)
        return version

    async def regenerate_feed(self, user_id: str) -> FeedPage:
        """Drop the viewer's cached pages and pre-compute page 0."""
        await self.invalidate_feed(user_id)
        return await self.get_feed(user_id)

    async def recompute_post_score(self, post_id: str) -> Optional[float]:
        """Persist a post's score from its durable counters and refresh the scope pools."""
        async with self._sessions() as session:
            post = await session.get(Post, post_id)
            if post is None:
                logger.warning("Score refresh skipped: post %s not found", post_id)
                return None
            score = calculate_score(
                post.likes_count, post.comments_count, post.shares_count, post.created_at
            )
            post.score = score
            await session.commit()

        industries = post.industries or []
        if post.is_active and post.visibility != VISIBILITY_PRIVATE:
            await self._cache.update_scopes(post_id, score, industries)
        else:
            await self._cache.remove_from_scopes(post_id, industries)
        return score

    # ─────────────────────── Serving ────────────────────────────────────────

    async def _serve(
        self, viewer_id: str, request: FeedRequest, page: int, limit: Optional[int]
    ) -> FeedPage:
        limit = limit or self._settings.feed_page_size
        check_paging(page, limit, self._settings.feed_max_page_size)
        if request.algorithm not in ALGORITHMS:
            raise ValidationError(f"algorithm must be one of {', '.join(ALGORITHMS)}")

        started = time.perf_counter()
        version = await self._cache.feed_version(viewer_id)
        token = f"{request.cache_token()}:{page}:{limit}"
        page_key = f"feed:{viewer_id}:page:{version}:{token}"
        stale_key = f"feed:{viewer_id}:stale:{token}"

        cached = await self._cache.get_cached(page_key)
        if cached:
            FEED_CACHE_HITS_TOTAL.inc()
            result = FeedPage.from_json(cached, source="cache")
        else:
            try:
                result = await asyncio.wait_for(
                    self._build(viewer_id, request, page, limit),
                    timeout=self._settings.feed_query_timeout_seconds,
                )
            except asyncio.TimeoutError:
                FEED_DEGRADED_TOTAL.inc()
                logger.warning(
                    "[Feed] %s for %s timed out after %.2fs — serving degraded result",
                    request.variant,
                    viewer_id,
                    self._settings.feed_query_timeout_seconds,
                )
                stale = await self._cache.get_cached(stale_key)
                if stale:
                    result = FeedPage.from_json(stale, source="stale")
                else:
                    result = FeedPage(
                        data=[], page=page, limit=limit, total=0,
                        algorithm=request.algorithm, source="empty",
                    )
                result.degraded = True
                return await self._enrich(viewer_id, result)

            payload = result.to_json()
            await self._cache.set_cached(page_key, payload, self._settings.feed_cache_ttl)
            await self._cache.set_cached(stale_key, payload, self._settings.feed_stale_ttl)

        result = await self._enrich(viewer_id, result)
        FEED_LATENCY.labels(variant=request.variant).observe(time.perf_counter() - started)
        return result

    async def _build(
        self, viewer_id: str, request: FeedRequest, page: int, limit: int
    ) -> FeedPage:
        async with self._sessions() as session:
            following = await self._following(session, viewer_id)
            rows = await self._collect(session, viewer_id, request, following)
        FEED_CANDIDATES_TOTAL.labels(stage="collected").inc(len(rows))

        visible = [
            (post, author)
            for post, author in rows
            if can_view(
                post.visibility,
                post.user_id,
                author.is_private,
                viewer_id,
                post.user_id in following,
            )
        ]
        if request.industry:
            visible = [
                (post, author)
                for post, author in visible
                if request.industry in {i.lower() for i in (post.industries or [])}
            ]
        FEED_CANDIDATES_TOTAL.labels(stage="visible").inc(len(visible))
        logger.info(
            "[Feed] %s viewer=%s algorithm=%s candidates=%d visible=%d",
            request.variant,
            viewer_id,
            request.algorithm,
            len(rows),
            len(visible),
        )

        live = await self._cache.batch_post_stats([post.post_id for post, _ in visible])
        now = utcnow()
        ranked = []
        for post, author in visible:
            engagement = live.get(post.post_id) or post.engagement
            score = calculate_score(
                engagement["likes"], engagement["comments"], engagement["shares"],
                post.created_at, now,
            )
            age = (now - post.created_at).total_seconds()
            ranked.append((post, author, engagement, score, age))

        if request.algorithm == ALGORITHM_CHRONOLOGICAL:
            ranked.sort(key=lambda r: (r[4], r[0].post_id))
        elif request.algorithm == ALGORITHM_ENGAGEMENT:
            ranked.sort(key=lambda r: (-engagement_total(r[2]), r[4], r[0].post_id))
        else:
            ranked.sort(key=lambda r: (-r[3], r[4], r[0].post_id))

        window = ranked[page * limit:(page + 1) * limit]
        return FeedPage(
            data=[self._item(*r[:4]) for r in window],
            page=page,
            limit=limit,
            total=len(ranked),
            algorithm=request.algorithm,
        )

    async def _collect(
        self,
        session: AsyncSession,
        viewer_id: str,
        request: FeedRequest,
        following: set[str],
    ) -> list[tuple[Post, User]]:
        """Bounded candidate query; visibility is refined afterwards by can_view."""
        now = utcnow()
        stmt = (
            select(Post, User)
            .join(User, User.user_id == Post.user_id)
            .where(Post.is_active.is_(True))
        )

        if request.variant == VARIANT_USER:
            stmt = stmt.where(Post.user_id == request.author_id)
            if request.author_id != viewer_id:
                stmt = stmt.where(Post.visibility != VISIBILITY_PRIVATE)
            stmt = stmt.order_by(Post.created_at.desc())

        elif request.variant == VARIANT_TRENDING:
            cutoff = now - timedelta(hours=self._settings.feed_trending_hours)
            stmt = stmt.where(
                Post.created_at >= cutoff, self._not_private_unless_own(viewer_id)
            ).order_by(Post.created_at.desc())
            rows = await self._fetch(session, stmt)
            # High scorers from the global pool that fell past the newest-first bound
            pool = await self._cache.scope_candidates(
                SCOPE_GLOBAL, self._settings.feed_candidate_limit
            )
            missing = set(pool) - {post.post_id for post, _ in rows}
            if missing:
                extra = (
                    select(Post, User)
                    .join(User, User.user_id == Post.user_id)
                    .where(
                        Post.is_active.is_(True),
                        Post.created_at >= cutoff,
                        self._not_private_unless_own(viewer_id),
                        Post.post_id.in_(sorted(missing)),
                    )
                )
                rows.extend(await self._fetch(session, extra))
            return rows

        else:
            days = request.time_range_days or self._settings.feed_default_time_range_days
            stmt = stmt.where(
                Post.created_at >= now - timedelta(days=days),
                self._not_private_unless_own(viewer_id),
            )
            if request.variant == VARIANT_PERSONAL:
                stmt = stmt.where(Post.user_id != viewer_id)
            if request.industry:
                # Coarse match on the JSON text; exact tag match happens in _build
                stmt = stmt.where(
                    cast(Post.industries, String).ilike(f'%"{request.industry}"%')
                )
            if request.algorithm == ALGORITHM_ENGAGEMENT:
                stmt = stmt.order_by(
                    (Post.likes_count + Post.comments_count + Post.shares_count).desc(),
                    Post.created_at.desc(),
                )
            else:
                stmt = stmt.order_by(Post.created_at.desc())

        return await self._fetch(session, stmt)

    async def _fetch(self, session: AsyncSession, stmt) -> list[tuple[Post, User]]:
        result = await session.execute(stmt.limit(self._settings.feed_candidate_limit))
        return [(post, author) for post, author in result.all()]

    @staticmethod
    def _not_private_unless_own(viewer_id: str):
        return or_(Post.visibility != VISIBILITY_PRIVATE, Post.user_id == viewer_id)

    async def _following(self, session: AsyncSession, viewer_id: str) -> set[str]:
        if await self._cache.user_is_warm(viewer_id):
            return await self._cache.following_ids(viewer_id)
        rows = await session.execute(
            select(Follow.followee_id).where(
                Follow.follower_id == viewer_id, Follow.status == FOLLOW_ACCEPTED
            )
        )
        return {r[0] for r in rows.all()}

    @staticmethod
    def _item(post: Post, author: User, engagement: dict, score: float) -> dict:
        return {
            "post_id": post.post_id,
            "user_id": post.user_id,
            "content_type": post.content_type,
            "media_key": post.media_key,
            "caption": post.caption,
            "industries": list(post.industries or []),
            "visibility": post.visibility,
            "created_at": post.created_at.isoformat(),
            "engagement": dict(engagement),
            "score": score,
            "author": {
                "user_id": author.user_id,
                "username": author.username,
                "display_name": author.display_name,
                "account_type": author.account_type,
            },
        }

    # ─────────────────────── Enrichment ─────────────────────────────────────

    async def _enrich(self, viewer_id: str, feed: FeedPage) -> FeedPage:
        post_ids = [item["post_id"] for item in feed.data]
        live = await self._cache.batch_post_stats(post_ids)

        # Warm posts seed user:{id}:liked with their likers, so one SMEMBERS covers them
        liked = await self._cache.liked_among(viewer_id, live)

        cold = [pid for pid in post_ids if pid not in live]
        async with self._sessions() as session:
            following = await self._following(session, viewer_id)
            if cold:
                rows = await session.execute(
                    select(Like.post_id).where(Like.user_id == viewer_id, Like.post_id.in_(cold))
                )
                liked.update(r[0] for r in rows.all())

        for item in feed.data:
            if item["post_id"] in live:
                item["engagement"] = live[item["post_id"]]
            item["is_liked"] = item["post_id"] in liked
            item["author"]["is_following"] = item["user_id"] in following
        return feed
