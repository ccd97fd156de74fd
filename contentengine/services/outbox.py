from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.core.errors import InfraError
from contentengine.domain.jobs import QueueEnvelope
from contentengine.domain.models import OutboxMessage


logger = logging.getLogger(__name__)

# arq function name registered by the content worker.
CONTENT_JOB_FUNCTION = "process_content_job"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QueuePublisher(Protocol):
    async def publish(self, queue: str, payload: dict[str, Any], *, message_id: int) -> None:
        ...


class ArqQueuePublisher:
    def __init__(self, redis_settings: RedisSettings | None = None) -> None:
        settings = get_settings()
        self._redis_settings = redis_settings or RedisSettings.from_dsn(settings.redis_url)
        self._default_queue = settings.content_queue_name
        self._pool: ArqRedis | None = None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> ArqRedis:
        # Connect lazily and reuse the pool for every publish.
        async with self._lock:
            if self._pool is None:
                self._pool = await create_pool(self._redis_settings, default_queue_name=self._default_queue)
        return self._pool

    async def publish(self, queue: str, payload: dict[str, Any], *, message_id: int) -> None:
        try:
            pool = await self._get_pool()
            job = await pool.enqueue_job(
                CONTENT_JOB_FUNCTION,
                payload,
                _job_id=f"outbox:{message_id}",
                _queue_name=queue,
            )
        except Exception as exc:  # noqa: BLE001 - normalize redis/network failures for the dispatcher
            raise InfraError(f"Queue push failed for outbox message {message_id}: {exc}") from exc
        if job is None:
            # arq returns None when the job id already exists: an earlier push was accepted.
            logger.info("outbox_publish_duplicate outbox_id=%s queue=%s", message_id, queue)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None


@dataclass
class DispatchStats:
    selected: int = 0
    sent: int = 0
    failed: int = 0
    malformed: int = 0


class OutboxDispatcher:
    """Relays unsent outbox rows onto the queue.

    Enqueue happens before the row is marked: a failed push leaves ``sent_at``
    null for the next poll, and a failed mark after a successful push leads to
    a re-push that consumers absorb through their terminal-state check.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: QueuePublisher,
        *,
        batch_size: int | None = None,
        poll_interval_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._publisher = publisher
        self._batch_size = max(1, int(batch_size or settings.outbox_batch_size))
        self._poll_interval_s = max(0.05, float(poll_interval_s or settings.outbox_poll_interval_s))
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def dispatch_batch(self) -> DispatchStats:
        stats = DispatchStats()
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(OutboxMessage)
                    .where(OutboxMessage.sent_at.is_(None))
                    .order_by(OutboxMessage.created_at, OutboxMessage.id)
                    .limit(self._batch_size)
                )
            ).scalars().all()
            # Snapshot rows so no session stays open across network pushes.
            pending = [(row.id, row.queue, dict(row.payload_json or {})) for row in rows]
        stats.selected = len(pending)
        for message_id, queue, payload in pending:
            await self._dispatch_one(message_id, queue, payload, stats)
        if stats.selected:
            logger.info(
                "outbox_batch_dispatched selected=%s sent=%s failed=%s malformed=%s",
                stats.selected,
                stats.sent,
                stats.failed,
                stats.malformed,
            )
        return stats

    async def _dispatch_one(self, message_id: int, queue: str, payload: dict[str, Any], stats: DispatchStats) -> None:
        try:
            envelope = QueueEnvelope.model_validate(payload)
        except PydanticValidationError:
            envelope = None
        if envelope is None or envelope.job_id is None:
            # Retire malformed rows so they cannot be retried forever.
            await self._mark(message_id, sent=True, error="malformed_envelope")
            stats.malformed += 1
            logger.error("outbox_message_malformed outbox_id=%s", message_id)
            return
        try:
            await self._publisher.publish(queue, payload, message_id=message_id)
        except Exception as exc:  # noqa: BLE001 - failed pushes stay unsent for the next cycle
            await self._mark(message_id, sent=False, error=str(exc)[:1000])
            stats.failed += 1
            logger.warning("outbox_dispatch_failed outbox_id=%s job_id=%s", message_id, envelope.job_id, exc_info=exc)
            return
        await self._mark(message_id, sent=True, error=None)
        stats.sent += 1

    async def _mark(self, message_id: int, *, sent: bool, error: str | None) -> None:
        values: dict[str, Any] = {"attempts": OutboxMessage.attempts + 1, "last_error": error}
        if sent:
            values["sent_at"] = _utc_now()
        async with self._session_factory() as session:
            await session.execute(
                update(OutboxMessage)
                .where(OutboxMessage.id == message_id, OutboxMessage.sent_at.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def run_forever(self) -> None:
        # Poll on a fixed cadence and keep the loop alive across failures.
        while not self._stop_event.is_set():
            try:
                await self.dispatch_batch()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("outbox dispatch cycle failed")
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_s)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._task
        self._task = None
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task
