from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import os
import socket
from typing import Any

from arq import Retry
from arq.connections import RedisSettings
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.core.errors import InfraError, JobTimeoutError, VertexTimeoutError
from contentengine.core.logging import configure_logging
from contentengine.domain.jobs import HydrationStatus, QueueEnvelope, TimelineEvent
from contentengine.domain.models import ExecutionRequest, GeneratedContent
from contentengine.persistence.db import SessionLocal
from contentengine.persistence.repos import jobs as jobs_repo
from contentengine.services.audit import CONTENT_JOB_FAILED, record_event
from contentengine.services.hydrators.base import HydrationContext, HydrationResult, LLMContentGenerator
from contentengine.services.hydrators.registry import HydratorRegistry, build_registry
from contentengine.services.operability.watchdogs import heartbeat_key, heartbeat_ttl_s
from contentengine.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Errors worth another automatic attempt; AI-output rejections are not.
_RETRYABLE_ERRORS = (InfraError, JobTimeoutError, VertexTimeoutError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class ContentJobProcessor:
    """Worker shell around hydrators: claim, run, record exactly one terminal outcome."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: HydratorRegistry,
        *,
        worker_id: str | None = None,
        max_tries: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._worker_id = worker_id or default_worker_id()
        self._max_tries = int(max_tries or get_settings().content_max_retries)

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def process(self, envelope: dict[str, Any], *, job_try: int = 1) -> str:
        try:
            job_id = QueueEnvelope.model_validate(envelope).job_id
        except PydanticValidationError:
            job_id = None
        if not job_id:
            logger.error("content_job_envelope_invalid envelope=%s", envelope)
            return "invalid"

        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None:
                logger.warning("content_job_missing job_id=%s", job_id)
                return "noop"
            if job.status in HydrationStatus.TERMINAL:
                # Duplicate delivery of finished work.
                logger.info("content_job_already_terminal job_id=%s status=%s", job_id, job.status)
                return "noop"
            # Rollback expires the instance, so read what the log needs first.
            seen_status = job.status
            now = _utc_now()
            if not await jobs_repo.claim_job(session, job_id, worker_id=self._worker_id, now=now):
                await session.rollback()
                logger.info("content_job_claim_lost job_id=%s status=%s", job_id, seen_status)
                return "claim_lost"
            await jobs_repo.transition_request(
                session,
                job.request_id,
                from_statuses=HydrationStatus.ACTIVE,
                to_status=HydrationStatus.RUNNING,
                attempts=ExecutionRequest.attempts + 1,
                locked_by=self._worker_id,
                started_at=now,
            )
            jobs_repo.add_log(
                session,
                job_id=job_id,
                event=TimelineEvent.STARTED,
                prev_status=HydrationStatus.PENDING,
                new_status=HydrationStatus.RUNNING,
                meta={"worker_id": self._worker_id, "job_try": job_try},
            )
            await session.commit()
            context = HydrationContext.from_job(job)

        logger.info("content_job_started job_id=%s kind=%s", job_id, context.job_kind.value)
        try:
            hydrator = self._registry.resolve(context.job_kind)
            result = await hydrator.hydrate(context)
        except Exception as exc:  # noqa: BLE001 - classified and recorded as the job's outcome
            return await self._record_failure(context, exc, job_try=job_try)
        return await self._record_success(context, result)

    async def _record_success(self, context: HydrationContext, result: HydrationResult) -> str:
        async with self._session_factory() as session:
            content = GeneratedContent(
                hydration_job_id=context.job_id,
                job_kind=context.job_kind.value,
                target_type=context.target_type,
                target_id=context.target_id,
                language=context.language,
                difficulty=context.difficulty or "any",
                content_json=result.content,
            )
            session.add(content)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                logger.info("content_job_content_exists job_id=%s", context.job_id)
                return "noop"
            # Content and status commit together, and only if the job is still ours.
            completed = await jobs_repo.transition_job(
                session,
                context.job_id,
                from_statuses=[HydrationStatus.RUNNING],
                to_status=HydrationStatus.COMPLETED,
                completed_at=_utc_now(),
                last_error=None,
            )
            if not completed:
                await session.rollback()
                logger.info("content_job_completion_superseded job_id=%s", context.job_id)
                return "superseded"
            jobs_repo.add_log(
                session,
                job_id=context.job_id,
                event=TimelineEvent.COMPLETED,
                prev_status=HydrationStatus.RUNNING,
                new_status=HydrationStatus.COMPLETED,
                meta={"content_id": content.id, **result.metadata},
            )
            await session.commit()
        increment_counter("jobs_completed_total")
        logger.info("content_job_completed job_id=%s content_id=%s", context.job_id, content.id)
        return "completed"

    async def _record_failure(self, context: HydrationContext, exc: Exception, *, job_try: int) -> str:
        will_retry = isinstance(exc, _RETRYABLE_ERRORS) and job_try < self._max_tries
        message = f"{type(exc).__name__}: {exc}"[:2000]
        error_code = getattr(exc, "code", None) or type(exc).__name__
        next_status = HydrationStatus.PENDING if will_retry else HydrationStatus.FAILED
        async with self._session_factory() as session:
            values: dict[str, Any] = {"last_error": message, "locked_by": None, "locked_at": None}
            if not will_retry:
                values["completed_at"] = _utc_now()
            flipped = await jobs_repo.transition_job(
                session,
                context.job_id,
                from_statuses=[HydrationStatus.RUNNING],
                to_status=next_status,
                **values,
            )
            jobs_repo.add_log(
                session,
                job_id=context.job_id,
                event=TimelineEvent.FAILED,
                prev_status=HydrationStatus.RUNNING,
                new_status=next_status if flipped else None,
                meta={
                    "error_code": error_code,
                    "message": message,
                    "details": getattr(exc, "details", None),
                    "job_try": job_try,
                    "will_retry": will_retry and flipped,
                },
            )
            await record_event(
                session=session,
                action=CONTENT_JOB_FAILED,
                outcome="failure",
                entity_type="hydration_job",
                entity_id=context.job_id,
                error_code=error_code,
                metadata={"job_kind": context.job_kind.value, "message": message, "job_try": job_try},
            )
            await session.commit()
        increment_counter("jobs_failed_total")
        logger.warning(
            "content_job_failed job_id=%s error_code=%s will_retry=%s",
            context.job_id,
            error_code,
            will_retry,
            exc_info=exc,
        )
        if will_retry and flipped:
            # Let arq back off and redeliver; the row is pending again so the next claim succeeds.
            raise Retry(defer=job_try * 5) from exc
        return "failed"


async def process_content_job(ctx: dict[str, Any], envelope: dict[str, Any]) -> str:
    processor: ContentJobProcessor = ctx["processor"]
    return await processor.process(envelope, job_try=ctx.get("job_try", 1))


async def _heartbeat_loop(redis, worker_id: str) -> None:  # noqa: ANN001
    # Emit heartbeats on a fixed interval; the watchdog flags workers that stop.
    settings = get_settings()
    while True:
        await redis.set(heartbeat_key(worker_id), _utc_now().isoformat(), ex=heartbeat_ttl_s())
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx: dict[str, Any]) -> None:
    # Build the hydrator registry once per process.
    configure_logging()
    ctx["processor"] = ContentJobProcessor(SessionLocal, build_registry(LLMContentGenerator(), SessionLocal))
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop(ctx["redis"], ctx["processor"].worker_id))


async def _shutdown(ctx: dict[str, Any]) -> None:
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()
    processor = ctx.get("processor")
    if processor is not None:
        # A clean exit is not a stale worker.
        await ctx["redis"].delete(heartbeat_key(processor.worker_id))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.content_queue_name
    functions = [process_content_job]
    max_jobs = settings.content_worker_concurrency
    max_tries = settings.content_max_retries
    # Generation enforces its own timeout; arq's is the outer backstop.
    job_timeout = settings.content_job_timeout_s + 60
    on_startup = _startup
    on_shutdown = _shutdown
