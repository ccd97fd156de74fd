from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.domain.jobs import HydrationStatus, TimelineEvent
from contentengine.domain.models import ExecutionRequest, HydrationJob
from contentengine.persistence.db import SessionLocal
from contentengine.persistence.locks import AdvisoryLock
from contentengine.persistence.repos import jobs as jobs_repo
from contentengine.services.cascade import advance_cascades


logger = logging.getLogger(__name__)

HYDRATION_RECONCILER_LOCK = "hydration_reconciler"
STALE_RUNNING_ERROR = "stale_running_timeout"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _fail_stale_running(session: AsyncSession, *, now: datetime, stale_after_s: int) -> int:
    cutoff = now - timedelta(seconds=stale_after_s)
    stale_ids = list(
        (
            await session.execute(
                select(HydrationJob.id).where(
                    HydrationJob.status == HydrationStatus.RUNNING,
                    HydrationJob.locked_at.is_not(None),
                    HydrationJob.locked_at < cutoff,
                )
            )
        ).scalars()
    )
    failed = 0
    for job_id in stale_ids:
        # A worker finishing right now wins; the gate is the running status.
        flipped = await jobs_repo.transition_job(
            session,
            job_id,
            from_statuses=[HydrationStatus.RUNNING],
            to_status=HydrationStatus.FAILED,
            last_error=STALE_RUNNING_ERROR,
            locked_by=None,
            locked_at=None,
            completed_at=now,
        )
        if not flipped:
            continue
        jobs_repo.add_log(
            session,
            job_id=job_id,
            event=TimelineEvent.FAILED,
            prev_status=HydrationStatus.RUNNING,
            new_status=HydrationStatus.FAILED,
            meta={"error_code": STALE_RUNNING_ERROR, "stale_after_s": stale_after_s},
        )
        failed += 1
        logger.warning("hydration_job_stale_failed job_id=%s", job_id)
    await session.commit()
    return failed


async def _sync_requests(session: AsyncSession, *, now: datetime) -> int:
    rows = (
        await session.execute(
            select(ExecutionRequest.id, HydrationJob.id, HydrationJob.status, HydrationJob.last_error, HydrationJob.completed_at)
            .join(HydrationJob, HydrationJob.request_id == ExecutionRequest.id)
            .where(
                ExecutionRequest.status.in_(sorted(HydrationStatus.ACTIVE)),
                HydrationJob.status.in_(sorted(HydrationStatus.TERMINAL)),
            )
        )
    ).all()
    synced = 0
    for request_id, job_id, job_status, last_error, completed_at in rows:
        if await jobs_repo.transition_request(
            session,
            request_id,
            from_statuses=HydrationStatus.ACTIVE,
            to_status=job_status,
            last_error=last_error,
            completed_at=completed_at or now,
        ):
            synced += 1
            jobs_repo.add_log(
                session,
                job_id=job_id,
                event=TimelineEvent.RECONCILED,
                prev_status=None,
                new_status=job_status,
                meta={"request_id": request_id},
            )
    await session.commit()
    return synced


async def reconcile_hydration(
    now: datetime | None = None,
    *,
    lock: AdvisoryLock | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """Bring ExecutionRequest status in line with its HydrationJob.

    Workers only move the job; request terminal states are set here. Jobs left
    running by a dead worker are failed so they become eligible for retry.
    Hydrate-all cascades then advance by at most one level per pass.
    """
    current = now or _utc_now()
    factory = session_factory or SessionLocal
    resolved_lock = lock or AdvisoryLock()
    async with resolved_lock.hold(HYDRATION_RECONCILER_LOCK) as acquired:
        if not acquired:
            logger.info("hydration_reconcile_skipped reason=lock_unavailable")
            return {"skipped": True}
        async with factory() as session:
            stale_failed = await _fail_stale_running(
                session,
                now=current,
                stale_after_s=int(get_settings().hydration_stale_running_s),
            )
            requests_synced = await _sync_requests(session, now=current)
            # Cascades read the statuses settled above, so they advance last.
            cascades = await advance_cascades(session, now=current)
    if stale_failed or requests_synced:
        logger.info("hydration_reconciled stale_failed=%s requests_synced=%s", stale_failed, requests_synced)
    return {"skipped": False, "stale_failed": stale_failed, "requests_synced": requests_synced, **cascades}
