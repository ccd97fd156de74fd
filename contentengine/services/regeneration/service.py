from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.errors import RegenerationJobNotFoundError, ValidationError
from contentengine.domain.jobs import RegenerationStatus, RegenerationTarget
from contentengine.domain.models import RegenerationJob, RegenerationOutput
from contentengine.persistence.db import SessionLocal
from contentengine.services.audit import SUGGESTION_CREATED, record_event


logger = logging.getLogger(__name__)

_TARGET_TYPES = {
    RegenerationTarget.LESSON,
    RegenerationTarget.QUIZ,
    RegenerationTarget.PROJECT,
    RegenerationTarget.MODULE,
}


async def create_regeneration_job(
    *,
    suggestion_id: str | None,
    target_type: str,
    target_id: str,
    instruction: dict[str, Any] | None,
    actor_id: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> tuple[RegenerationJob, bool]:
    """Queue a regeneration for an accepted suggestion.

    Returns ``(job, created)``. While a non-failed job exists for the same
    suggestion it is returned unchanged with ``created=False``.
    """
    normalized_type = (target_type or "").upper()
    if normalized_type not in _TARGET_TYPES:
        raise ValidationError(f"Unsupported regeneration target type: {target_type}")
    if not target_id:
        raise ValidationError("target_id is required")
    factory = session_factory or SessionLocal
    async with factory() as session:
        if suggestion_id:
            existing = (
                await session.execute(
                    select(RegenerationJob)
                    .where(
                        RegenerationJob.suggestion_id == suggestion_id,
                        RegenerationJob.status != RegenerationStatus.FAILED,
                    )
                    .order_by(RegenerationJob.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if existing is not None:
                logger.info("regeneration_job_reused job_id=%s suggestion_id=%s", existing.id, suggestion_id)
                return existing, False
        job = RegenerationJob(
            suggestion_id=suggestion_id,
            target_type=normalized_type,
            target_id=target_id,
            instruction_json=dict(instruction or {}),
            status=RegenerationStatus.PENDING,
            created_by=actor_id,
        )
        session.add(job)
        await session.flush()
        await record_event(
            session=session,
            action=SUGGESTION_CREATED,
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            entity_type="regeneration_job",
            entity_id=job.id,
            metadata={"suggestion_id": suggestion_id, "target_type": normalized_type, "target_id": target_id},
        )
        await session.commit()
        await session.refresh(job)
    logger.info("regeneration_job_created job_id=%s target_type=%s", job.id, normalized_type)
    return job, True


async def get_regeneration_job(
    job_id: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> RegenerationJob:
    factory = session_factory or SessionLocal
    async with factory() as session:
        job = await session.get(RegenerationJob, job_id)
    if job is None:
        raise RegenerationJobNotFoundError(f"Regeneration job {job_id} not found")
    return job


async def get_regeneration_output(
    output_id: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> RegenerationOutput | None:
    factory = session_factory or SessionLocal
    async with factory() as session:
        return await session.get(RegenerationOutput, output_id)
