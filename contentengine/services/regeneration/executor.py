from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import traceback

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.domain.jobs import RegenerationStatus
from contentengine.domain.models import RegenerationJob, RegenerationOutput
from contentengine.services.audit import (
    REGEN_JOB_COMPLETED,
    REGEN_JOB_FAILED,
    REGEN_JOB_STARTED,
    record_event,
)
from contentengine.services.regeneration.generator import RegenerationGenerator


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegenerationOutcome:
    job_id: str
    status: str
    output_id: str | None = None
    error: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _transition(
    session: AsyncSession,
    job_id: str,
    *,
    from_status: str,
    to_status: str,
    **values,
) -> bool:
    result = await session.execute(
        update(RegenerationJob)
        .where(RegenerationJob.id == job_id, RegenerationJob.status == from_status)
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def claim_regeneration_job(
    session_factory: async_sessionmaker[AsyncSession],
    job_id: str,
) -> RegenerationJob | None:
    # PENDING -> RUNNING or nothing; a zero-row claim means another runner owns the job.
    async with session_factory() as session:
        claimed = await _transition(
            session,
            job_id,
            from_status=RegenerationStatus.PENDING,
            to_status=RegenerationStatus.RUNNING,
            started_at=_utc_now(),
        )
        if not claimed:
            await session.rollback()
            return None
        await session.commit()
        return (await session.execute(select(RegenerationJob).where(RegenerationJob.id == job_id))).scalar_one()


async def next_pending_job_id(session_factory: async_sessionmaker[AsyncSession]) -> str | None:
    async with session_factory() as session:
        return await session.scalar(
            select(RegenerationJob.id)
            .where(RegenerationJob.status == RegenerationStatus.PENDING)
            .order_by(RegenerationJob.created_at, RegenerationJob.id)
            .limit(1)
        )


async def execute_claimed_job(
    session_factory: async_sessionmaker[AsyncSession],
    generator: RegenerationGenerator,
    job: RegenerationJob,
) -> RegenerationOutcome:
    # Audit events bracket every attempt: STARTED then COMPLETED or FAILED.
    async with session_factory() as session:
        await record_event(
            session=session,
            action=REGEN_JOB_STARTED,
            actor_id=job.created_by,
            entity_type="regeneration_job",
            entity_id=job.id,
            metadata={"status": RegenerationStatus.RUNNING, "target_type": job.target_type},
            commit=True,
        )
    try:
        content = await generator.generate(job)
    except Exception as exc:  # noqa: BLE001 - every generator failure becomes a FAILED job
        return await _record_failure(session_factory, job, exc)

    async with session_factory() as session:
        output = RegenerationOutput(
            job_id=job.id,
            content_json=content,
            metadata_json={"target_type": job.target_type, "target_id": job.target_id},
        )
        session.add(output)
        await session.flush()
        completed = await _transition(
            session,
            job.id,
            from_status=RegenerationStatus.RUNNING,
            to_status=RegenerationStatus.COMPLETED,
            output_ref=output.id,
            completed_at=_utc_now(),
        )
        if not completed:
            # Stale claim: drop the output with the rest of the transaction.
            await session.rollback()
            logger.warning("regeneration_completion_superseded job_id=%s", job.id)
            return RegenerationOutcome(job_id=job.id, status="superseded")
        await record_event(
            session=session,
            action=REGEN_JOB_COMPLETED,
            entity_type="regeneration_job",
            entity_id=job.id,
            metadata={"status": RegenerationStatus.COMPLETED, "output_ref": output.id},
        )
        await session.commit()
    logger.info("regeneration_job_completed job_id=%s output_id=%s", job.id, output.id)
    return RegenerationOutcome(job_id=job.id, status=RegenerationStatus.COMPLETED, output_id=output.id)


async def _record_failure(
    session_factory: async_sessionmaker[AsyncSession],
    job: RegenerationJob,
    exc: Exception,
) -> RegenerationOutcome:
    error_json = {
        "message": str(exc) or type(exc).__name__,
        "type": type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))[-8000:],
    }
    async with session_factory() as session:
        flipped = await _transition(
            session,
            job.id,
            from_status=RegenerationStatus.RUNNING,
            to_status=RegenerationStatus.FAILED,
            error_json=error_json,
            completed_at=_utc_now(),
        )
        await record_event(
            session=session,
            action=REGEN_JOB_FAILED,
            outcome="failure",
            entity_type="regeneration_job",
            entity_id=job.id,
            error_code=type(exc).__name__,
            metadata={"status": RegenerationStatus.FAILED, "message": error_json["message"], "applied": flipped},
        )
        await session.commit()
    logger.warning("regeneration_job_failed job_id=%s error=%s", job.id, error_json["message"], exc_info=exc)
    return RegenerationOutcome(job_id=job.id, status=RegenerationStatus.FAILED, error=error_json["message"])
