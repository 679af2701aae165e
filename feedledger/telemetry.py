"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for the write path, the sync workers and the feed

Tracing is initialised once per process (API or worker); metrics are module
level so every component increments the same collectors.
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import Counter, Histogram

from feedledger.config import Settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
ENGAGEMENT_WRITES_TOTAL = Counter(
    "engagement_writes_total",
    "Engagement operations applied to the counter store",
    ["action"],  # like | unlike | follow | unfollow | follow_request | accept | reject | share | unshare | comment
)

ENQUEUE_FAILURES_TOTAL = Counter(
    "sync_enqueue_failures_total",
    "Sync jobs that could not be enqueued after a successful counter write",
    ["kind"],
)

SYNC_JOBS_TOTAL = Counter(
    "sync_jobs_total",
    "Sync job executions by outcome",
    ["kind", "outcome"],  # outcome: ok | retry | dead_letter | coalesced
)

SYNC_DEAD_LETTERS_TOTAL = Counter(
    "sync_dead_letters_total",
    "Sync jobs moved to the dead-letter topic",
    ["kind"],
)

SYNC_JOB_LATENCY = Histogram(
    "sync_job_latency_seconds",
    "Time spent applying one sync job to the record store",
    ["kind"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0],
)

FEED_LATENCY = Histogram(
    "feed_latency_seconds",
    "End-to-end latency of feed requests",
    ["variant"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

FEED_CANDIDATES_TOTAL = Counter(
    "feed_candidates_total",
    "Candidate posts surviving each feed pipeline stage",
    ["stage"],  # collected | visible
)

FEED_DEGRADED_TOTAL = Counter(
    "feed_degraded_total",
    "Feed requests answered from stale cache or empty after a store timeout",
)

FEED_CACHE_HITS_TOTAL = Counter(
    "feed_cache_hits_total",
    "Feed pages served from the page cache",
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing(settings: Settings, component: str = "api") -> None:
    """Install the global TracerProvider for one process.

    The API and the sync workers export under separate service names
    (``feedledger-api``, ``feedledger-sync-worker``) so a like request and
    the job that later lands it show up as two services in Jaeger.
    """
    resource = Resource.create(
        {
            "service.name": f"{settings.service_name}-{component}",
            "service.namespace": settings.service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)

    try:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info(
            "Tracing %s → %s", resource.attributes["service.name"], settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("OTLP exporter unavailable (%s), spans will not be exported", exc)

    trace.set_tracer_provider(provider)

    # Counter store, record store and push-service calls become child spans
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()
    HTTPXClientInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Add request spans to the FastAPI app; call once the routers are mounted."""
    FastAPIInstrumentor.instrument_app(app)
