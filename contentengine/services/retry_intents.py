from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import get_args

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.errors import (
    AlreadyExecutedError,
    RegenerationJobNotFoundError,
    RetryIntentNotFoundError,
    RetryNotAllowedError,
    ValidationError,
)
from contentengine.domain.jobs import RegenerationStatus, RetryIntentStatus, RetryReasonCode
from contentengine.domain.models import RegenerationJob, RetryIntent
from contentengine.persistence.db import SessionLocal
from contentengine.services.audit import RETRY_CREATED, RETRY_INTENT_CREATED, record_event


logger = logging.getLogger(__name__)

_REASON_CODES = set(get_args(RetryReasonCode))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_retry_intent(
    *,
    source_job_id: str,
    reason_code: str,
    reason_text: str | None = None,
    requested_by: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> RetryIntent:
    if reason_code not in _REASON_CODES:
        raise ValidationError(f"Unsupported retry reason code: {reason_code}")
    factory = session_factory or SessionLocal
    async with factory() as session:
        source = await session.get(RegenerationJob, source_job_id)
        if source is None:
            raise RegenerationJobNotFoundError(f"Regeneration job {source_job_id} not found")
        if source.status != RegenerationStatus.FAILED:
            raise RetryNotAllowedError(f"Regeneration job {source_job_id} is {source.status}; only FAILED jobs can be retried")
        intent = RetryIntent(
            source_job_id=source_job_id,
            reason_code=reason_code,
            reason_text=reason_text,
            requested_by=requested_by,
            status=RetryIntentStatus.PENDING,
        )
        session.add(intent)
        await session.flush()
        await record_event(
            session=session,
            action=RETRY_INTENT_CREATED,
            actor_type="user" if requested_by else "system",
            actor_id=requested_by,
            entity_type="retry_intent",
            entity_id=intent.id,
            metadata={"source_job_id": source_job_id, "reason_code": reason_code},
        )
        await session.commit()
    logger.info("retry_intent_created intent_id=%s source_job_id=%s", intent.id, source_job_id)
    return intent


async def create_retry_job_from_intent(
    intent_id: str,
    *,
    actor_id: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> RegenerationJob:
    """Consume a retry intent and queue exactly one regeneration job for it.

    The intent flip is the gate: of two concurrent callers only one sees a
    row-count of one, the other gets ``AlreadyExecutedError`` and writes nothing.
    """
    factory = session_factory or SessionLocal
    async with factory() as session:
        consumed = await session.execute(
            update(RetryIntent)
            .where(RetryIntent.id == intent_id, RetryIntent.status == RetryIntentStatus.PENDING)
            .values(status=RetryIntentStatus.EXECUTED, executed_at=_utc_now())
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            await session.rollback()
            if await session.get(RetryIntent, intent_id) is None:
                raise RetryIntentNotFoundError(f"Retry intent {intent_id} not found")
            raise AlreadyExecutedError(f"Retry intent {intent_id} was already executed")

        intent = await session.get(RetryIntent, intent_id)
        source_job_id = intent.source_job_id
        source = await session.get(RegenerationJob, source_job_id)
        if source is None:
            await session.rollback()
            raise RegenerationJobNotFoundError(f"Regeneration job {source_job_id} not found")
        job = RegenerationJob(
            suggestion_id=source.suggestion_id,
            target_type=source.target_type,
            target_id=source.target_id,
            # Verbatim copy: a retry reproduces exactly what failed.
            instruction_json=source.instruction_json,
            status=RegenerationStatus.PENDING,
            retry_intent_id=intent_id,
            retry_of_job_id=source.id,
            created_by=actor_id or intent.requested_by,
        )
        session.add(job)
        try:
            await session.flush()
        except IntegrityError as exc:
            await session.rollback()
            raise AlreadyExecutedError(f"Retry intent {intent_id} already has a job") from exc
        await record_event(
            session=session,
            action=RETRY_CREATED,
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            entity_type="regeneration_job",
            entity_id=job.id,
            metadata={"retry_intent_id": intent_id, "retry_of_job_id": source.id, "reason_code": intent.reason_code},
        )
        await session.commit()
    logger.info("retry_job_created job_id=%s intent_id=%s source_job_id=%s", job.id, intent_id, source.id)
    return job
