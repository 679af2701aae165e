import pytest

from feedledger.models import ACCOUNT_PRIVATE, Follow, Post, User


async def _wipe_store(ledger) -> None:
    keys = await ledger.store.keys("*")
    await ledger.store.delete(*keys)


@pytest.mark.asyncio
async def test_reconcile_all_fixes_drifted_counters(ledger, make_user, make_post):
    author = await make_user("author")
    fans = [await make_user(f"fan{i}") for i in range(2)]
    post = await make_post(author, likers=tuple(fans))
    async with ledger.session_factory() as session:
        stored = await session.get(Post, post.post_id)
        stored.likes_count = 99
        stored.shares_count = 4
        session.add(Follow(follower_id=fans[0].user_id, followee_id=author.user_id))
        await session.commit()

    report = await ledger.reconcile.reconcile_all()
    assert report["posts"] == 1
    assert report["posts_fixed"] == 1
    assert report["users"] == 3
    assert report["users_fixed"] == 2

    async with ledger.session_factory() as session:
        stored = await session.get(Post, post.post_id)
        owner = await session.get(User, author.user_id)
    assert (stored.likes_count, stored.shares_count) == (2, 0)
    assert (owner.followers_count, owner.likes_received) == (1, 2)

    again = await ledger.reconcile.reconcile_all()
    assert again["posts_fixed"] == 0
    assert again["users_fixed"] == 0


@pytest.mark.asyncio
async def test_rebuild_restores_a_lost_counter_store(ledger, make_user, make_post, drain):
    author = await make_user("author")
    carol = await make_user("carol", account_type=ACCOUNT_PRIVATE)
    fan = await make_user("fan")
    post = await make_post(author, industries=["Tech"])

    await ledger.likes.like(fan.user_id, post.post_id)
    await ledger.follows.follow(fan.user_id, author.user_id)
    await ledger.follows.follow(fan.user_id, carol.user_id)
    await ledger.shares.share(fan.user_id, post.post_id)
    await ledger.comments.add_comment(fan.user_id, post.post_id, "hello")
    await drain()

    await _wipe_store(ledger)
    assert await ledger.cache.post_stats(post.post_id) is None

    report = await ledger.reconcile.rebuild_counter_store()
    assert report == {"posts": 1, "users": 3}

    stats = await ledger.cache.post_stats(post.post_id)
    assert stats == {"likes": 1, "comments": 1, "shares": 1, "views": 0}
    assert await ledger.cache.has_liked(fan.user_id, post.post_id) is True
    assert await ledger.cache.is_following(fan.user_id, author.user_id) is True
    assert await ledger.cache.has_request(carol.user_id, fan.user_id) is True
    assert (await ledger.cache.user_stats(author.user_id))["likes_received"] == 1
    assert await ledger.cache.scope_candidates("feed:scope:industry:tech", 10) == [post.post_id]

    # Live operations carry on from the rebuilt state
    result = await ledger.likes.like(fan.user_id, post.post_id)
    assert result.likes_count == 1
