"""
Wiring for one process (API or sync worker).

Builds the engine, counter store, sync queue and notification dispatcher
selected by Settings, and the services on top of them. Nothing here is a
module-level singleton: the API keeps its Ledger on `app.state.ledger`, the
worker keeps it on the stack, tests build their own.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from feedledger.clients.counter_store import CounterStore, create_counter_store
from feedledger.clients.ledger_cache import LedgerCache
from feedledger.clients.notification_client import (
    NotificationDispatcher,
    create_notification_dispatcher,
)
from feedledger.clients.sync_queue import SyncQueue, create_sync_queue
from feedledger.config import Settings
from feedledger.database import create_engine, create_session_factory, init_db
from feedledger.services.comments import CommentService
from feedledger.services.common import JobSubmitter
from feedledger.services.feed import FeedService
from feedledger.services.follows import FollowService
from feedledger.services.likes import LikeService
from feedledger.services.reconcile import ReconciliationService
from feedledger.services.shares import ShareService
from feedledger.worker.handlers import SyncHandlers
from feedledger.worker.runner import JobRunner

logger = logging.getLogger(__name__)


@dataclass
class Ledger:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    store: CounterStore
    cache: LedgerCache
    queue: SyncQueue
    notifier: NotificationDispatcher
    jobs: JobSubmitter
    likes: LikeService
    follows: FollowService
    shares: ShareService
    comments: CommentService
    feed: FeedService
    reconcile: ReconciliationService
    handlers: SyncHandlers
    runner: JobRunner

    async def start(self, create_tables: bool = True) -> None:
        if create_tables:
            await init_db(self.engine)
        await self.store.ping()
        await self.queue.start()
        await self.notifier.start()

    async def stop(self) -> None:
        await self.notifier.stop()
        await self.queue.stop()
        await self.store.close()
        await self.engine.dispose()


def build_ledger(
    settings: Settings,
    *,
    engine: Optional[AsyncEngine] = None,
    store: Optional[CounterStore] = None,
    queue: Optional[SyncQueue] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> Ledger:
    engine = engine or create_engine(settings.tidb_url)
    session_factory = create_session_factory(engine)
    store = store or create_counter_store(settings)
    queue = queue or create_sync_queue(settings)
    notifier = notifier or create_notification_dispatcher(settings)

    cache = LedgerCache(store, scope_max_size=settings.feed_scope_max_size)
    jobs = JobSubmitter(queue, cache, settings)
    page_cap = settings.feed_max_page_size

    reconcile = ReconciliationService(session_factory, cache)
    feed = FeedService(session_factory, cache, settings)
    handlers = SyncHandlers(session_factory, cache, reconcile, feed, jobs, notifier)

    return Ledger(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        cache=cache,
        queue=queue,
        notifier=notifier,
        jobs=jobs,
        likes=LikeService(session_factory, cache, jobs, page_cap),
        follows=FollowService(session_factory, cache, jobs, page_cap),
        shares=ShareService(session_factory, cache, jobs, page_cap),
        comments=CommentService(session_factory, cache, jobs, page_cap),
        feed=feed,
        reconcile=reconcile,
        handlers=handlers,
        runner=JobRunner(handlers.table(), queue, settings),
    )
