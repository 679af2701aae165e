import os

# Must be set before feedledger.config is imported anywhere
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("COUNTER_STORE_BACKEND", "memory")
os.environ.setdefault("SYNC_QUEUE_BACKEND", "memory")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import datetime
from typing import Optional

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

from feedledger.clients.counter_store import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
)
from feedledger.clients.notification_client import LoggingNotificationDispatcher
from feedledger.clients.sync_queue import InMemorySyncQueue
from feedledger.config import Settings
from feedledger.container import Ledger, build_ledger
from feedledger.database import create_engine
from feedledger.jobs import NotificationPayload
from feedledger.main import create_app
from feedledger.models import ACCOUNT_PUBLIC, Like, Post, User, utcnow


class RecordingNotifier(LoggingNotificationDispatcher):
    """Keeps every dispatched notification for assertions."""

    def __init__(self) -> None:
        self.sent: list[NotificationPayload] = []

    async def dispatch(self, notification: NotificationPayload) -> None:
        self.sent.append(notification)
        await super().dispatch(notification)


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+aiosqlite://",
        counter_store_backend="memory",
        sync_queue_backend="memory",
        tracing_enabled=False,
        sync_backoff_base_seconds=0.0,
        sync_backoff_max_seconds=0.0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def start_ledger(settings: Settings, store: CounterStore) -> Ledger:
    ledger = build_ledger(
        settings,
        engine=create_engine(settings.tidb_url),
        store=store,
        queue=InMemorySyncQueue(),
        notifier=RecordingNotifier(),
    )
    await ledger.start()
    return ledger


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def ledger(test_settings):
    ledger = await start_ledger(test_settings, InMemoryCounterStore())
    try:
        yield ledger
    finally:
        await ledger.stop()


@pytest_asyncio.fixture
async def redis_ledger(test_settings):
    """Same wiring, with the Redis-backed counter store over fakeredis."""
    client = FakeRedis(server=FakeServer(), decode_responses=True)
    ledger = await start_ledger(test_settings, RedisCounterStore(client))
    try:
        yield ledger
    finally:
        await ledger.stop()


@pytest.fixture
def drain(ledger):
    async def _drain() -> int:
        return await ledger.runner.drain(ledger.queue)

    return _drain


@pytest.fixture
def make_user(ledger):
    async def _make(username: str, account_type: str = ACCOUNT_PUBLIC, **fields) -> User:
        async with ledger.session_factory() as session:
            user = User(username=username, account_type=account_type, **fields)
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest.fixture
def make_post(ledger):
    async def _make(
        author: User,
        created_at: Optional[datetime] = None,
        likers: tuple = (),
        **fields,
    ) -> Post:
        async with ledger.session_factory() as session:
            post = Post(user_id=author.user_id, created_at=created_at or utcnow(), **fields)
            session.add(post)
            await session.flush()
            for liker in likers:
                session.add(Like(user_id=liker.user_id, post_id=post.post_id))
            post.likes_count = len(likers)
            await session.commit()
            return post

    return _make


@pytest_asyncio.fixture
async def api_client(ledger):
    app = create_app(ledger)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
