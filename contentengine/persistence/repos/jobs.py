from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from contentengine.domain.jobs import HydrationStatus
from contentengine.domain.models import ExecutionRequest, HydrationJob, JobExecutionLog, OutboxMessage


async def get_job(session: AsyncSession, job_id: str) -> HydrationJob | None:
    result = await session.execute(select(HydrationJob).where(HydrationJob.id == job_id))
    return result.scalar_one_or_none()


async def find_reusable_job(
    session: AsyncSession,
    *,
    job_kind: str,
    target_id: str,
    language: str,
    difficulty: str,
    completed_since: datetime | None,
) -> HydrationJob | None:
    # Match in-flight jobs first, then recently completed ones when the reuse window is enabled.
    statuses = HydrationJob.status.in_(sorted(HydrationStatus.ACTIVE))
    if completed_since is not None:
        statuses = or_(
            HydrationJob.status.in_(sorted(HydrationStatus.ACTIVE)),
            (HydrationJob.status == HydrationStatus.COMPLETED) & (HydrationJob.completed_at >= completed_since),
        )
    stmt = (
        select(HydrationJob)
        .where(
            HydrationJob.job_kind == job_kind,
            HydrationJob.target_id == target_id,
            HydrationJob.language == language,
            HydrationJob.difficulty == difficulty,
            statuses,
        )
        .order_by(HydrationJob.created_at.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def add_log(
    session: AsyncSession,
    *,
    job_id: str,
    event: str,
    prev_status: str | None,
    new_status: str | None,
    meta: dict[str, Any] | None = None,
) -> JobExecutionLog:
    # Append-only; timeline rows are never updated.
    entry = JobExecutionLog(
        job_id=job_id,
        event=event,
        prev_status=prev_status,
        new_status=new_status,
        meta_json=meta or {},
    )
    session.add(entry)
    return entry


def add_outbox_message(session: AsyncSession, *, queue: str, payload: dict[str, Any]) -> OutboxMessage:
    message = OutboxMessage(queue=queue, payload_json=payload, attempts=0)
    session.add(message)
    return message


async def list_timeline(session: AsyncSession, job_id: str) -> list[JobExecutionLog]:
    result = await session.execute(
        select(JobExecutionLog)
        .where(JobExecutionLog.job_id == job_id)
        .order_by(JobExecutionLog.created_at, JobExecutionLog.id)
    )
    return list(result.scalars().all())


async def transition_job(
    session: AsyncSession,
    job_id: str,
    *,
    from_statuses: Iterable[str],
    to_status: str,
    **values: Any,
) -> bool:
    # Every state change is gated on the current status; zero rows means another writer won.
    result = await session.execute(
        update(HydrationJob)
        .where(HydrationJob.id == job_id, HydrationJob.status.in_(list(from_statuses)))
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition_request(
    session: AsyncSession,
    request_id: str,
    *,
    from_statuses: Iterable[str],
    to_status: str,
    **values: Any,
) -> bool:
    result = await session.execute(
        update(ExecutionRequest)
        .where(ExecutionRequest.id == request_id, ExecutionRequest.status.in_(list(from_statuses)))
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def claim_job(session: AsyncSession, job_id: str, *, worker_id: str, now: datetime) -> bool:
    # pending -> running is the only claim path; a zero-row result is authoritative.
    return await transition_job(
        session,
        job_id,
        from_statuses=[HydrationStatus.PENDING],
        to_status=HydrationStatus.RUNNING,
        attempts=HydrationJob.attempts + 1,
        locked_by=worker_id,
        locked_at=now,
        last_error=None,
    )
