from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from contentengine.domain.jobs import HydrationStatus, JobKind, build_envelope
from contentengine.domain.models import ExecutionRequest, HydrationJob
from contentengine.persistence.db import SessionLocal
from contentengine.persistence.locks import AdvisoryLock
from contentengine.services.hydrators.registry import build_registry
from contentengine.services.reconciler import (
    HYDRATION_RECONCILER_LOCK,
    STALE_RUNNING_ERROR,
    reconcile_hydration,
)
from contentengine.services.submission import get_timeline, submit_job
from contentengine.tests.utils.fakes import StaticGenerator, notes_output
from contentengine.workers.content_worker import ContentJobProcessor


async def _submit(target_id: str = "T1"):  # noqa: ANN202
    return await submit_job(job_kind="notes", target_type="topic", target_id=target_id, payload={"language": "en"})


async def _request_status(request_id: str) -> tuple[str, str | None]:
    async with SessionLocal() as session:
        request = await session.get(ExecutionRequest, request_id)
        return request.status, request.last_error


async def _abandon(job_id: str, request_id: str, *, locked_at: datetime) -> None:
    # Simulate a worker that claimed the job and then died.
    async with SessionLocal() as session:
        await session.execute(
            update(HydrationJob)
            .where(HydrationJob.id == job_id)
            .values(status=HydrationStatus.RUNNING, locked_by="dead-worker", locked_at=locked_at, attempts=1)
        )
        await session.execute(
            update(ExecutionRequest)
            .where(ExecutionRequest.id == request_id)
            .values(status=HydrationStatus.RUNNING)
        )
        await session.commit()


@pytest.mark.asyncio
async def test_completed_job_status_is_copied_to_request() -> None:
    result = await _submit()
    processor = ContentJobProcessor(
        SessionLocal,
        build_registry(StaticGenerator(notes_output()), SessionLocal),
        worker_id="worker-test",
    )
    await processor.process(build_envelope(JobKind.NOTES, result.job_id))
    assert (await _request_status(result.request_id))[0] == HydrationStatus.RUNNING

    summary = await reconcile_hydration()

    assert summary == {
        "skipped": False,
        "stale_failed": 0,
        "requests_synced": 1,
        "cascade_children_created": 0,
        "cascades_finalized": 0,
    }
    assert (await _request_status(result.request_id))[0] == HydrationStatus.COMPLETED
    timeline = await get_timeline(result.job_id)
    assert timeline[-1]["event"] == "RECONCILED"

    # A second pass has nothing left to do.
    assert (await reconcile_hydration())["requests_synced"] == 0


@pytest.mark.asyncio
async def test_stale_running_job_is_failed_and_request_synced() -> None:
    now = datetime.now(timezone.utc)
    stale = await _submit("T1")
    fresh = await _submit("T2")
    await _abandon(stale.job_id, stale.request_id, locked_at=now - timedelta(hours=2))
    await _abandon(fresh.job_id, fresh.request_id, locked_at=now - timedelta(minutes=1))

    summary = await reconcile_hydration(now)

    assert summary == {
        "skipped": False,
        "stale_failed": 1,
        "requests_synced": 1,
        "cascade_children_created": 0,
        "cascades_finalized": 0,
    }
    async with SessionLocal() as session:
        stale_job = await session.get(HydrationJob, stale.job_id)
        fresh_job = await session.get(HydrationJob, fresh.job_id)
    assert stale_job.status == HydrationStatus.FAILED
    assert stale_job.last_error == STALE_RUNNING_ERROR
    assert stale_job.locked_by is None
    assert fresh_job.status == HydrationStatus.RUNNING
    assert await _request_status(stale.request_id) == (HydrationStatus.FAILED, STALE_RUNNING_ERROR)
    events = [entry["event"] for entry in await get_timeline(stale.job_id)]
    assert events[-2:] == ["FAILED", "RECONCILED"]


@pytest.mark.asyncio
async def test_reconcile_skips_while_lock_is_held() -> None:
    result = await _submit()
    await _abandon(result.job_id, result.request_id, locked_at=datetime.now(timezone.utc) - timedelta(hours=2))
    async with AdvisoryLock().hold(HYDRATION_RECONCILER_LOCK):
        assert await reconcile_hydration() == {"skipped": True}
    async with SessionLocal() as session:
        assert (await session.get(HydrationJob, result.job_id)).status == HydrationStatus.RUNNING
