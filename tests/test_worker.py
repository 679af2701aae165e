import logging

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
)

from feedledger.clients.notification_client import (
    LoggingNotificationDispatcher,
    create_notification_dispatcher,
)
from feedledger.clients.sync_queue import InMemorySyncQueue
from feedledger.config import Settings
from feedledger.errors import NotFound, TransientStoreError, is_transient
from feedledger.jobs import (
    FeedPayload,
    FollowPayload,
    JobKind,
    LikePayload,
    NotificationPayload,
    SharePayload,
    SyncJob,
    Topic,
)
from feedledger.models import FOLLOW_ACCEPTED, FOLLOW_PENDING, Follow, Like, Post, Share
from feedledger.worker.runner import JobRunner


def runner_settings(**overrides) -> Settings:
    values = dict(
        sync_max_attempts=3,
        sync_backoff_base_seconds=2.0,
        sync_backoff_max_seconds=30.0,
        tracing_enabled=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def like_job() -> SyncJob:
    return SyncJob(JobKind.SYNC_LIKE, LikePayload(user_id="u1", post_id="p1"))


# ─────────────────────── Retry policy ─────────────────────────────────────


@pytest.mark.asyncio
async def test_transient_failure_is_retried_then_dead_lettered():
    calls = []

    async def always_down(payload):
        calls.append(payload)
        raise TransientStoreError("record store unreachable")

    queue = InMemorySyncQueue()
    sleep = RecordingSleep()
    runner = JobRunner({JobKind.SYNC_LIKE: always_down}, queue, runner_settings(), sleep=sleep)
    job = like_job()

    assert await runner.process(job) is False
    assert len(calls) == 3
    assert sleep.delays == [2.0, 4.0]
    assert job.attempts == 3
    assert len(queue.dead_letters) == 1
    assert queue.dead_letters[0].job is job
    assert "failed after 3 attempts" in queue.dead_letters[0].reason


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried():
    calls = []

    async def broken(payload):
        calls.append(payload)
        raise ValueError("bad payload")

    queue = InMemorySyncQueue()
    sleep = RecordingSleep()
    runner = JobRunner({JobKind.SYNC_LIKE: broken}, queue, runner_settings(), sleep=sleep)

    assert await runner.process(like_job()) is False
    assert len(calls) == 1
    assert sleep.delays == []
    assert queue.dead_letters[0].reason == "ValueError: bad payload"


@pytest.mark.asyncio
async def test_transient_failure_then_success():
    attempts = []

    async def flaky(payload):
        attempts.append(payload)
        if len(attempts) == 1:
            raise ConnectionError("reset by peer")

    queue = InMemorySyncQueue()
    sleep = RecordingSleep()
    runner = JobRunner({JobKind.SYNC_LIKE: flaky}, queue, runner_settings(), sleep=sleep)

    assert await runner.process(like_job()) is True
    assert len(attempts) == 2
    assert sleep.delays == [2.0]
    assert queue.dead_letters == []


def test_backoff_is_capped():
    runner = JobRunner(
        {}, InMemorySyncQueue(), runner_settings(sync_backoff_max_seconds=5.0)
    )
    assert [runner.backoff(n) for n in (1, 2, 3, 10)] == [2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_job_without_handler_is_dead_lettered():
    queue = InMemorySyncQueue()
    runner = JobRunner({}, queue, runner_settings())

    assert await runner.process(like_job()) is False
    assert "no handler registered for sync-like" in queue.dead_letters[0].reason


@pytest.mark.asyncio
async def test_lost_dead_letter_is_logged_critically(caplog):
    class BrokenDeadLetters(InMemorySyncQueue):
        async def dead_letter(self, job, reason):
            raise ConnectionError("dead-letter topic unavailable")

    async def broken(payload):
        raise ValueError("nope")

    runner = JobRunner({JobKind.SYNC_LIKE: broken}, BrokenDeadLetters(), runner_settings())
    with caplog.at_level(logging.ERROR, logger="feedledger.worker.runner"):
        assert await runner.process(like_job()) is False

    levels = [r.levelname for r in caplog.records]
    assert "ERROR" in levels
    assert "CRITICAL" in levels


# ─────────────────────── Wire format ──────────────────────────────────────


def test_job_message_round_trip():
    job = SyncJob(
        JobKind.SYNC_SHARE,
        SharePayload(share_id="s1", user_id="u1", post_id="p1", platform="twitter"),
        attempts=2,
    )
    message = job.to_message()
    assert message["kind"] == "sync-share"
    assert message["payload"]["platform"] == "twitter"

    restored = SyncJob.from_message(message)
    assert restored.payload == job.payload
    assert restored.attempts == 2
    assert restored.job_id == job.job_id
    assert restored.topic == Topic.SHARES
    assert restored.partition_key == "p1"


def test_payload_must_match_kind():
    with pytest.raises(TypeError):
        SyncJob(JobKind.SYNC_FOLLOW, LikePayload(user_id="u1", post_id="p1"))


def test_partition_keys_keep_related_jobs_together():
    like = SyncJob(JobKind.SYNC_LIKE, LikePayload("u1", "p1"))
    unlike = SyncJob(JobKind.SYNC_UNLIKE, LikePayload("u2", "p1"))
    assert like.partition_key == unlike.partition_key == "p1"

    request = SyncJob(JobKind.SYNC_FOLLOW, FollowPayload("a", "b", FOLLOW_PENDING))
    accept = SyncJob(JobKind.SYNC_FOLLOW, FollowPayload("a", "b"))
    assert request.partition_key == accept.partition_key == "a:b"

    assert FeedPayload(post_id="p1").key == "post:p1"
    assert FeedPayload(user_id="u1").key == "user:u1"


# ─────────────────────── Handlers ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_replayed_like_inserts_one_row(ledger, make_user, make_post):
    author = await make_user("author")
    viewer = await make_user("viewer")
    post = await make_post(author)
    payload = LikePayload(viewer.user_id, post.post_id)

    await ledger.handlers.sync_like(payload)
    await ledger.handlers.sync_like(payload)
    await ledger.handlers.sync_unlike(LikePayload(author.user_id, post.post_id))

    async with ledger.session_factory() as session:
        rows = await session.scalar(
            select(func.count()).select_from(Like).where(Like.post_id == post.post_id)
        )
        stored = await session.get(Post, post.post_id)
    assert rows == 1
    assert stored.likes_count == 1


@pytest.mark.asyncio
async def test_sync_like_for_missing_post_is_dead_lettered(ledger):
    job = SyncJob(JobKind.SYNC_LIKE, LikePayload("u1", "gone"))
    assert await ledger.runner.process(job) is False
    assert job.attempts == 1
    assert ledger.queue.dead_letters[0].reason.startswith(NotFound.__name__)


@pytest.mark.asyncio
async def test_replayed_pending_follow_never_downgrades(ledger, make_user):
    alice = await make_user("alice")
    carol = await make_user("carol")

    await ledger.handlers.sync_follow(FollowPayload(alice.user_id, carol.user_id, FOLLOW_PENDING))
    await ledger.handlers.sync_follow(FollowPayload(alice.user_id, carol.user_id, FOLLOW_ACCEPTED))
    await ledger.handlers.sync_follow(FollowPayload(alice.user_id, carol.user_id, FOLLOW_PENDING))

    async with ledger.session_factory() as session:
        edge = await session.get(Follow, (alice.user_id, carol.user_id))
    assert edge.status == FOLLOW_ACCEPTED

    await ledger.handlers.sync_unfollow(FollowPayload(alice.user_id, carol.user_id))
    await ledger.handlers.sync_unfollow(FollowPayload(alice.user_id, carol.user_id))
    async with ledger.session_factory() as session:
        assert await session.get(Follow, (alice.user_id, carol.user_id)) is None


@pytest.mark.asyncio
async def test_replayed_share_inserts_once(ledger, make_user, make_post):
    author = await make_user("author")
    post = await make_post(author)
    payload = SharePayload(share_id="share-1", user_id=author.user_id, post_id=post.post_id)

    await ledger.handlers.sync_share(payload)
    await ledger.handlers.sync_share(payload)
    async with ledger.session_factory() as session:
        assert (await session.get(Post, post.post_id)).shares_count == 1

    await ledger.handlers.sync_unshare(payload)
    await ledger.handlers.sync_unshare(payload)
    async with ledger.session_factory() as session:
        assert await session.get(Share, "share-1") is None
        assert (await session.get(Post, post.post_id)).shares_count == 0


@pytest.mark.asyncio
async def test_feed_updates_are_coalesced(ledger, make_user, make_post, drain):
    author = await make_user("author")
    fans = [await make_user(f"fan{i}") for i in range(3)]
    post = await make_post(author)

    for fan in fans:
        await ledger.likes.like(fan.user_id, post.post_id)
    await ledger.runner.drain(ledger.queue, topics=[Topic.LIKES])
    assert ledger.queue.pending(Topic.FEED) == 1

    await drain()
    async with ledger.session_factory() as session:
        stored = await session.get(Post, post.post_id)
    assert stored.likes_count == 3
    assert stored.score > 0
    assert await ledger.cache.scope_candidates("feed:scope:global", 10) == [post.post_id]

    # The claim was released, so later engagement schedules a fresh pass
    assert await ledger.jobs.submit_feed_update(post_id=post.post_id) is True


@pytest.mark.asyncio
async def test_notifications_are_dispatched(ledger, make_user, make_post, drain):
    author = await make_user("author")
    fan = await make_user("fan")
    post = await make_post(author)

    await ledger.likes.like(fan.user_id, post.post_id)
    await drain()
    assert ledger.notifier.sent == [
        NotificationPayload(
            user_id=author.user_id, type="like", actor_id=fan.user_id, post_id=post.post_id
        )
    ]


# ─────────────────────── Error classification ─────────────────────────────


@pytest.mark.asyncio
async def test_constraint_violation_is_not_retried():
    calls = []

    async def violates(payload):
        calls.append(payload)
        raise IntegrityError("INSERT INTO likes", {}, Exception("FOREIGN KEY constraint failed"))

    queue = InMemorySyncQueue()
    sleep = RecordingSleep()
    runner = JobRunner({JobKind.SYNC_LIKE: violates}, queue, runner_settings(), sleep=sleep)

    assert await runner.process(like_job()) is False
    assert len(calls) == 1
    assert sleep.delays == []
    assert queue.dead_letters[0].reason.startswith("IntegrityError")


@pytest.mark.parametrize(
    "exc, transient",
    [
        (OperationalError("SELECT 1", {}, Exception("server has gone away")), True),
        (InterfaceError("SELECT 1", {}, Exception("connection closed")), True),
        (DBAPIError("SELECT 1", {}, Exception("reset"), connection_invalidated=True), True),
        (IntegrityError("INSERT", {}, Exception("duplicate key")), False),
        (ProgrammingError("SELEC", {}, Exception("syntax error")), False),
        (TransientStoreError("counter store unreachable"), True),
        (ValueError("bad payload"), False),
    ],
)
def test_transient_classification(exc, transient):
    assert is_transient(exc) is transient


@pytest.mark.asyncio
async def test_record_store_outage_exhausts_sync_like(
    ledger, make_user, make_post, monkeypatch, drain
):
    author = await make_user("author")
    fan = await make_user("fan")
    post = await make_post(author)
    await ledger.likes.like(fan.user_id, post.post_id)

    calls = []

    async def store_down(session, post_id):
        calls.append(post_id)
        raise OperationalError("UPDATE posts", {}, Exception("Lost connection to MySQL server"))

    monkeypatch.setattr(ledger.reconcile, "recompute_post_counters", store_down)
    await drain()

    attempts = ledger.settings.sync_max_attempts
    assert len(calls) == attempts
    assert [d.job.kind for d in ledger.queue.dead_letters] == [JobKind.SYNC_LIKE]
    assert f"failed after {attempts} attempts" in ledger.queue.dead_letters[0].reason

    async with ledger.session_factory() as session:
        assert await session.get(Like, (fan.user_id, post.post_id)) is None
        assert (await session.get(Post, post.post_id)).likes_count == 0
    assert (await ledger.cache.post_stats(post.post_id))["likes"] == 1


@pytest.mark.asyncio
async def test_logging_dispatcher_keeps_no_history(caplog):
    dispatcher = create_notification_dispatcher(Settings(_env_file=None, notification_service_url=""))
    assert isinstance(dispatcher, LoggingNotificationDispatcher)

    with caplog.at_level(logging.INFO, logger="feedledger.clients.notification_client"):
        for i in range(3):
            await dispatcher.dispatch(NotificationPayload(user_id="u1", type="like", actor_id=f"a{i}"))

    assert len(caplog.records) == 3
    assert vars(dispatcher) == {}
