import asyncio
import logging

import pytest
from sqlalchemy import func, select

from feedledger.errors import NotFound
from feedledger.jobs import JobKind, Topic
from feedledger.models import Like, Post, User
from feedledger.services.likes import LikeResult


async def _durable_likes(ledger, post_id: str) -> tuple[int, int]:
    """(posts.likes_count, number of Like rows)."""
    async with ledger.session_factory() as session:
        post = await session.get(Post, post_id)
        rows = await session.scalar(
            select(func.count()).select_from(Like).where(Like.post_id == post_id)
        )
    return post.likes_count, int(rows)


@pytest.mark.asyncio
async def test_like_is_live_at_once_and_durable_after_sync(ledger, make_user, make_post, drain):
    author = await make_user("author")
    fans = [await make_user(f"fan{i}") for i in range(5)]
    viewer = await make_user("viewer")
    post = await make_post(author, likers=tuple(fans))

    result = await ledger.likes.like(viewer.user_id, post.post_id)
    assert result == LikeResult(liked=True, likes_count=6)
    assert await _durable_likes(ledger, post.post_id) == (5, 5)

    await drain()
    assert await _durable_likes(ledger, post.post_id) == (6, 6)
    async with ledger.session_factory() as session:
        assert await session.get(Like, (viewer.user_id, post.post_id)) is not None
        assert (await session.get(User, author.user_id)).likes_received == 6


@pytest.mark.asyncio
async def test_duplicate_like_is_absorbed(ledger, make_user, make_post, drain):
    author = await make_user("author")
    viewer = await make_user("viewer")
    post = await make_post(author)

    first = await ledger.likes.like(viewer.user_id, post.post_id)
    second = await ledger.likes.like(viewer.user_id, post.post_id)
    assert first.likes_count == 1
    assert second == LikeResult(liked=True, likes_count=1)
    assert ledger.queue.pending(Topic.LIKES) == 1

    await drain()
    assert await _durable_likes(ledger, post.post_id) == (1, 1)


@pytest.mark.asyncio
async def test_unlike_without_like_is_a_noop(ledger, make_user, make_post):
    author = await make_user("author")
    viewer = await make_user("viewer")
    post = await make_post(author, likers=(author,))

    result = await ledger.likes.unlike(viewer.user_id, post.post_id)
    assert result == LikeResult(liked=False, likes_count=1)
    assert ledger.queue.pending() == 0


@pytest.mark.asyncio
async def test_like_unlike_like_ends_liked(ledger, make_user, make_post, drain):
    author = await make_user("author")
    viewer = await make_user("viewer")
    post = await make_post(author)

    await ledger.likes.like(viewer.user_id, post.post_id)
    await ledger.likes.unlike(viewer.user_id, post.post_id)
    result = await ledger.likes.like(viewer.user_id, post.post_id)
    assert result.likes_count == 1
    assert await ledger.likes.has_liked(viewer.user_id, post.post_id) is True

    kinds = [job.kind for job in ledger.queue.pending_jobs() if job.topic == Topic.LIKES]
    assert kinds == [JobKind.SYNC_LIKE, JobKind.SYNC_UNLIKE, JobKind.SYNC_LIKE]

    await drain()
    assert await _durable_likes(ledger, post.post_id) == (1, 1)


@pytest.mark.asyncio
async def test_concurrent_likes_from_many_users(ledger, make_user, make_post, drain):
    author = await make_user("author")
    users = [await make_user(f"user{i}") for i in range(10)]
    post = await make_post(author)

    await asyncio.gather(*(ledger.likes.like(u.user_id, post.post_id) for u in users))
    assert (await ledger.cache.post_stats(post.post_id))["likes"] == 10

    await drain()
    assert await _durable_likes(ledger, post.post_id) == (10, 10)


@pytest.mark.asyncio
async def test_concurrent_likes_from_one_user_count_once(ledger, make_user, make_post):
    author = await make_user("author")
    viewer = await make_user("viewer")
    post = await make_post(author)

    results = await asyncio.gather(
        *(ledger.likes.like(viewer.user_id, post.post_id) for _ in range(8))
    )
    assert {r.likes_count for r in results} == {1}
    assert ledger.queue.pending(Topic.LIKES) == 1


@pytest.mark.asyncio
async def test_live_and_durable_counts_converge(ledger, make_user, make_post, drain):
    author = await make_user("author")
    users = [await make_user(f"user{i}") for i in range(4)]
    post = await make_post(author)

    # user0: like; user1: like, unlike; user2: like, unlike, like; user3: unlike
    ops = [
        (users[0], "like"),
        (users[1], "like"),
        (users[2], "like"),
        (users[1], "unlike"),
        (users[3], "unlike"),
        (users[2], "unlike"),
        (users[2], "like"),
    ]
    for user, op in ops:
        await getattr(ledger.likes, op)(user.user_id, post.post_id)

    assert (await ledger.cache.post_stats(post.post_id))["likes"] == 2
    await drain()
    assert await _durable_likes(ledger, post.post_id) == (2, 2)


@pytest.mark.asyncio
async def test_like_unknown_or_removed_post(ledger, make_user, make_post):
    author = await make_user("author")
    gone = await make_post(author, is_active=False)

    with pytest.raises(NotFound):
        await ledger.likes.like(author.user_id, "no-such-post")
    with pytest.raises(NotFound):
        await ledger.likes.like(author.user_id, gone.post_id)
    assert ledger.queue.pending() == 0


@pytest.mark.asyncio
async def test_author_likes_received_is_live(ledger, make_user, make_post, drain):
    author = await make_user("author")
    fans = [await make_user(f"fan{i}") for i in range(2)]
    viewer = await make_user("viewer")
    await make_post(author, likers=tuple(fans))
    post = await make_post(author)

    await ledger.likes.like(viewer.user_id, post.post_id)
    await ledger.likes.like(viewer.user_id, post.post_id)
    assert (await ledger.cache.user_stats(author.user_id))["likes_received"] == 3

    await ledger.likes.unlike(viewer.user_id, post.post_id)
    assert (await ledger.cache.user_stats(author.user_id))["likes_received"] == 2

    await drain()
    async with ledger.session_factory() as session:
        assert (await session.get(User, author.user_id)).likes_received == 2


@pytest.mark.asyncio
async def test_enqueue_failure_keeps_the_live_write(ledger, make_user, make_post, caplog):
    author = await make_user("author")
    viewer = await make_user("viewer")
    post = await make_post(author)
    ledger.queue.fail_with = ConnectionError("broker down")

    with caplog.at_level(logging.ERROR, logger="feedledger.services.common"):
        result = await ledger.likes.like(viewer.user_id, post.post_id)

    assert result == LikeResult(liked=True, likes_count=1)
    assert "Failed to enqueue sync-like" in caplog.text
    assert ledger.queue.pending() == 0


@pytest.mark.asyncio
async def test_like_notifies_author_but_not_self(ledger, make_user, make_post):
    author = await make_user("author")
    viewer = await make_user("viewer")
    post = await make_post(author)

    await ledger.likes.like(author.user_id, post.post_id)
    assert ledger.queue.pending(Topic.NOTIFICATIONS) == 0

    await ledger.likes.like(viewer.user_id, post.post_id)
    assert ledger.queue.pending(Topic.NOTIFICATIONS) == 1


@pytest.mark.asyncio
async def test_liker_and_liked_post_listings(ledger, make_user, make_post, drain):
    author = await make_user("author")
    viewer = await make_user("viewer", display_name="Vee")
    first = await make_post(author, caption="first")
    second = await make_post(author, caption="second")

    await ledger.likes.like(viewer.user_id, first.post_id)
    await ledger.likes.like(viewer.user_id, second.post_id)
    await drain()

    likers = await ledger.likes.list_likers(first.post_id)
    assert likers.total == 1
    assert likers.data[0]["username"] == "viewer"
    assert likers.data[0]["display_name"] == "Vee"

    liked = await ledger.likes.list_liked_posts(viewer.user_id, page=0, limit=1)
    assert liked.total == 2
    assert liked.total_pages == 2
    assert len(liked.data) == 1


@pytest.mark.asyncio
async def test_likes_on_redis_backend(redis_ledger):
    async with redis_ledger.session_factory() as session:
        author = User(username="author")
        viewer = User(username="viewer")
        session.add_all([author, viewer])
        await session.flush()
        post = Post(user_id=author.user_id)
        session.add(post)
        await session.commit()

    assert (await redis_ledger.likes.like(viewer.user_id, post.post_id)).likes_count == 1
    assert (await redis_ledger.likes.like(viewer.user_id, post.post_id)).likes_count == 1
    assert (await redis_ledger.likes.unlike(viewer.user_id, post.post_id)).likes_count == 0

    await redis_ledger.runner.drain(redis_ledger.queue)
    assert await _durable_likes(redis_ledger, post.post_id) == (0, 0)
