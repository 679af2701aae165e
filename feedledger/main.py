"""
Engagement Ledger API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Build the Ledger: DB engine (TiDB), counter store (Redis), sync queue
     (Kafka producer), notification dispatcher
  3. Create tables if not present
  4. With the in-memory queue, start in-process workers (one per topic)
  5. Expose Prometheus /metrics endpoint

Run with:  uvicorn feedledger.main:app
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from feedledger.clients.sync_queue import InMemorySyncQueue
from feedledger.config import settings
from feedledger.container import Ledger, build_ledger
from feedledger.errors import install_error_handlers
from feedledger.jobs import Topic
from feedledger.routers import comments, feed, follow_requests, posts, shares, users
from feedledger.telemetry import instrument_app, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
if settings.tracing_enabled:
    setup_tracing(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Engagement Ledger API (env=%s)", settings.environment)

    ledger: Optional[Ledger] = getattr(app.state, "ledger", None)
    owned = ledger is None
    if owned:
        ledger = build_ledger(settings)
        app.state.ledger = ledger
    await ledger.start()

    workers: list[asyncio.Task] = []
    if isinstance(ledger.queue, InMemorySyncQueue):
        # Single-process mode: drain the in-memory queue inside the API
        workers = [
            asyncio.create_task(ledger.runner.consume_memory(ledger.queue, topic))
            for topic in Topic
        ]

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    for task in workers:
        task.cancel()
    await asyncio.gather(*workers, return_exceptions=True)
    if owned:
        await ledger.stop()


def create_app(ledger: Optional[Ledger] = None) -> FastAPI:
    app = FastAPI(
        title="Engagement Ledger API",
        description=(
            "Likes, follows, shares and comments with a live counter store, "
            "eventually-consistent durable sync and ranked feeds."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    if ledger is not None:
        app.state.ledger = ledger

    install_error_handlers(app)

    # ── Routers ────────────────────────────────────────────────────────────
    app.include_router(posts.router, prefix="/posts", tags=["Posts"])
    app.include_router(users.router, prefix="/users", tags=["Users"])
    app.include_router(follow_requests.router, prefix="/follow-requests", tags=["Follows"])
    app.include_router(comments.router, prefix="/comments", tags=["Comments"])
    app.include_router(shares.router, prefix="/shares", tags=["Shares"])
    app.include_router(feed.router, prefix="/feed", tags=["Feed"])

    # ── Prometheus metrics endpoint ────────────────────────────────────────
    # Mounted at /metrics — scraped by Prometheus
    app.mount("/metrics", make_asgi_app())

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
if settings.tracing_enabled:
    instrument_app(app)
