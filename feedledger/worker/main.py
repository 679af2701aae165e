"""
Sync worker — Kafka consumer.

One consumer task per topic (likes, follows, shares, comments, feed,
notifications), each in its own consumer group. For every message:
  1. Decode the SyncJob envelope.
  2. Run it through JobRunner (bounded retry, dead-letter on exhaustion).
  3. Commit the offset.

Offsets are committed manually after the runner returns, so a crash
mid-job redelivers it; handlers are idempotent, which makes that safe.
Jobs sharing a partition key land on the same partition and are applied
in order.

Run with:  python -m feedledger.worker.main
"""
import asyncio
import json
import logging

from aiokafka import AIOKafkaConsumer
from opentelemetry import trace

from feedledger.clients.sync_queue import topic_name
from feedledger.config import settings
from feedledger.container import Ledger, build_ledger
from feedledger.jobs import SyncJob, Topic
from feedledger.telemetry import setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)


def selected_topics() -> list[Topic]:
    if not settings.worker_topics:
        return list(Topic)
    return [Topic(name) for name in settings.worker_topics]


async def consume(ledger: Ledger, topic: Topic) -> None:
    consumer = AIOKafkaConsumer(
        topic_name(settings, topic),
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=f"{settings.kafka_consumer_group_prefix}-{topic.value}",
        auto_offset_reset="earliest",
        enable_auto_commit=False,
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
    )
    await consumer.start()
    logger.info("Sync worker listening on topic '%s'", topic_name(settings, topic))

    try:
        async for msg in consumer:
            try:
                job = SyncJob.from_message(msg.value)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Malformed sync message on %s: %s (%s)", msg.topic, msg.value, exc)
                await consumer.commit()
                continue

            with tracer.start_as_current_span("sync-job") as span:
                span.set_attribute("job.id", job.job_id)
                span.set_attribute("job.kind", job.kind.value)
                span.set_attribute("job.key", job.partition_key)
                applied = await ledger.runner.process(job)
                span.set_attribute("job.applied", applied)
            await consumer.commit()
    finally:
        await consumer.stop()


async def main() -> None:
    if settings.tracing_enabled:
        setup_tracing(settings, component="sync-worker")

    ledger = build_ledger(settings)
    # Producer side is still needed: handlers enqueue update-feed and dead letters
    await ledger.start(create_tables=False)

    topics = selected_topics()
    try:
        await asyncio.gather(*(consume(ledger, topic) for topic in topics))
    finally:
        await ledger.stop()


if __name__ == "__main__":
    asyncio.run(main())
