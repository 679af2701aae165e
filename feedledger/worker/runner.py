"""
Job runner — applies one sync job with bounded retry.

Transient failures (see errors.is_transient) are retried with exponential
backoff: base · 2^(attempt-1), capped at sync_backoff_max_seconds, for at
most sync_max_attempts attempts in total. Anything else, or a transient
failure on the last attempt, is dead-lettered: published to the dead-letter
topic, logged at ERROR and counted. A job is never retried forever and
never dropped without a trace.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, Optional

from feedledger.clients.sync_queue import InMemorySyncQueue, SyncQueue
from feedledger.config import Settings
from feedledger.errors import QueueExhausted, is_transient
from feedledger.jobs import JobKind, SyncJob, Topic
from feedledger.telemetry import SYNC_DEAD_LETTERS_TOTAL, SYNC_JOB_LATENCY, SYNC_JOBS_TOTAL
from feedledger.worker.handlers import Handler

logger = logging.getLogger(__name__)


class JobRunner:
    def __init__(
        self,
        handlers: dict[JobKind, Handler],
        queue: SyncQueue,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._handlers = handlers
        self._queue = queue
        self._settings = settings
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        delay = self._settings.sync_backoff_base_seconds * 2 ** (attempt - 1)
        return min(delay, self._settings.sync_backoff_max_seconds)

    async def process(self, job: SyncJob) -> bool:
        """Returns True when the job was applied, False when it was dead-lettered."""
        kind = job.kind.value
        handler = self._handlers.get(job.kind)
        if handler is None:
            await self._dead_letter(job, f"no handler registered for {kind}")
            return False

        max_attempts = max(1, self._settings.sync_max_attempts)
        while True:
            job.attempts += 1
            started = time.perf_counter()
            try:
                await handler(job.payload)
            except Exception as exc:
                transient = is_transient(exc)
                if transient and job.attempts < max_attempts:
                    delay = self.backoff(job.attempts)
                    SYNC_JOBS_TOTAL.labels(kind=kind, outcome="retry").inc()
                    logger.warning(
                        "%s job %s failed (attempt %d/%d): %s — retrying in %.1fs",
                        kind, job.job_id, job.attempts, max_attempts, exc, delay,
                    )
                    await self._sleep(delay)
                    continue
                if transient:
                    reason = QueueExhausted(
                        f"{kind} failed after {job.attempts} attempts: {type(exc).__name__}: {exc}"
                    ).message
                else:
                    reason = f"{type(exc).__name__}: {exc}"
                await self._dead_letter(job, reason)
                return False

            SYNC_JOB_LATENCY.labels(kind=kind).observe(time.perf_counter() - started)
            SYNC_JOBS_TOTAL.labels(kind=kind, outcome="ok").inc()
            logger.debug("%s job %s applied (attempt %d)", kind, job.job_id, job.attempts)
            return True

    async def _dead_letter(self, job: SyncJob, reason: str) -> None:
        kind = job.kind.value
        SYNC_JOBS_TOTAL.labels(kind=kind, outcome="dead_letter").inc()
        SYNC_DEAD_LETTERS_TOTAL.labels(kind=kind).inc()
        logger.error(
            "Dead-lettering %s job %s (key=%s) after %d attempt(s): %s",
            kind, job.job_id, job.partition_key, job.attempts, reason,
        )
        try:
            await self._queue.dead_letter(job, reason)
        except Exception as exc:
            logger.critical(
                "Could not publish dead letter for %s job %s: %s — payload=%s",
                kind, job.job_id, exc, job.to_message(),
            )

    # ─────────────────────── In-process consumption ─────────────────────────

    async def drain(
        self, queue: InMemorySyncQueue, topics: Optional[Iterable[Topic]] = None
    ) -> int:
        """
        Apply every job waiting on the in-memory queue, including jobs the
        handlers enqueue along the way. Returns the number processed.
        """
        selected = list(topics) if topics is not None else list(Topic)
        processed = 0
        while True:
            progressed = False
            for topic in selected:
                job = queue.get_nowait(topic)
                while job is not None:
                    await self.process(job)
                    processed += 1
                    progressed = True
                    job = queue.get_nowait(topic)
            if not progressed:
                return processed

    async def consume_memory(self, queue: InMemorySyncQueue, topic: Topic) -> None:
        """Long-running consumer for one topic of the in-memory queue."""
        logger.info("In-process worker consuming %s", topic.value)
        while True:
            job = await queue.get(topic)
            await self.process(job)
