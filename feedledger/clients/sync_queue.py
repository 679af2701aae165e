"""
Sync queue — carries durable-sync jobs from the API to the workers.

Two implementations share the `SyncQueue` contract:
  • KafkaSyncQueue     — aiokafka producer; one topic per job group,
                         keyed by the job's partition key so same-record
                         jobs stay ordered. Dead letters go to their own topic.
  • InMemorySyncQueue  — FIFO per topic, for tests and single-process runs.

Enqueue failures raise; the engagement services log and count them rather
than failing a request whose counter-store write already succeeded.
"""
import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional, Protocol

from aiokafka import AIOKafkaProducer

from feedledger.config import Settings
from feedledger.jobs import SyncJob, Topic

logger = logging.getLogger(__name__)


@dataclass
class DeadLetter:
    job: SyncJob
    reason: str


class SyncQueue(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def enqueue(self, job: SyncJob) -> None: ...

    async def dead_letter(self, job: SyncJob, reason: str) -> None: ...


def topic_name(settings: Settings, topic: Topic) -> str:
    return f"{settings.kafka_topic_prefix}.{topic.value}"


# ─────────────────────────── Kafka ────────────────────────────────────────


class KafkaSyncQueue:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._settings.kafka_bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8"),
            acks="all",          # wait for all in-sync replicas
            enable_idempotence=True,
        )
        await self._producer.start()
        logger.info(
            "Kafka sync queue started → %s", self._settings.kafka_bootstrap_servers
        )

    async def stop(self) -> None:
        if self._producer:
            await self._producer.stop()

    def _get_producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            raise RuntimeError("Kafka producer not initialised")
        return self._producer

    async def enqueue(self, job: SyncJob) -> None:
        producer = self._get_producer()
        await producer.send_and_wait(
            topic_name(self._settings, job.topic),
            job.to_message(),
            key=job.partition_key,
        )
        logger.debug("Queued %s job %s (key=%s)", job.kind.value, job.job_id, job.partition_key)

    async def dead_letter(self, job: SyncJob, reason: str) -> None:
        producer = self._get_producer()
        message = {**job.to_message(), "reason": reason}
        await producer.send_and_wait(
            self._settings.kafka_topic_dead_letter, message, key=job.partition_key
        )


# ─────────────────────────── In-memory ────────────────────────────────────


class InMemorySyncQueue:
    def __init__(self) -> None:
        self._queues: dict[Topic, asyncio.Queue] = defaultdict(asyncio.Queue)
        self.dead_letters: list[DeadLetter] = []
        # Test hook: set to an exception instance to make enqueue fail
        self.fail_with: Optional[Exception] = None

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def enqueue(self, job: SyncJob) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        await self._queues[job.topic].put(job)

    async def dead_letter(self, job: SyncJob, reason: str) -> None:
        self.dead_letters.append(DeadLetter(job=job, reason=reason))

    async def get(self, topic: Topic) -> SyncJob:
        return await self._queues[topic].get()

    def get_nowait(self, topic: Topic) -> Optional[SyncJob]:
        try:
            return self._queues[topic].get_nowait()
        except asyncio.QueueEmpty:
            return None

    def pending(self, topic: Optional[Topic] = None) -> int:
        if topic is not None:
            return self._queues[topic].qsize()
        return sum(q.qsize() for q in self._queues.values())

    def pending_jobs(self) -> list[SyncJob]:
        jobs: list[SyncJob] = []
        for q in self._queues.values():
            jobs.extend(list(q._queue))  # type: ignore[attr-defined]
        return jobs


def create_sync_queue(settings: Settings) -> SyncQueue:
    if settings.sync_queue_backend == "memory":
        logger.info("Sync queue: in-memory")
        return InMemorySyncQueue()
    return KafkaSyncQueue(settings)
