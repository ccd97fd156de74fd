from __future__ import annotations

import pytest
from sqlalchemy import func, select

from contentengine.core.errors import ConflictError, NotFoundError, ValidationError
from contentengine.domain.jobs import HydrationStatus
from contentengine.domain.models import AuditEvent, ExecutionRequest, HydrationJob, OutboxMessage
from contentengine.persistence.db import SessionLocal
from contentengine.services.submission import cancel_job, get_job, get_timeline, retry_job, submit_job


async def _submit_notes(target_id: str = "T1", **payload) -> object:
    # Submit a notes job for a topic with English defaults.
    return await submit_job(
        job_kind="notes",
        target_type="topic",
        target_id=target_id,
        payload={"language": "en", **payload},
    )


async def _count(model) -> int:  # noqa: ANN001
    async with SessionLocal() as session:
        return int(await session.scalar(select(func.count()).select_from(model)) or 0)


@pytest.mark.asyncio
async def test_submit_writes_request_job_outbox_and_timeline() -> None:
    result = await _submit_notes()
    assert result.existing is False

    async with SessionLocal() as session:
        job = await session.get(HydrationJob, result.job_id)
        request = await session.get(ExecutionRequest, result.request_id)
        messages = (await session.execute(select(OutboxMessage))).scalars().all()

    assert job.status == HydrationStatus.PENDING
    assert job.language == "en"
    assert job.difficulty == "any"
    assert job.topic_id == "T1"
    assert request.status == HydrationStatus.PENDING
    assert len(messages) == 1
    assert messages[0].payload_json == {"type": "NOTES", "payload": {"jobId": result.job_id}}
    assert messages[0].sent_at is None

    timeline = await get_timeline(result.job_id)
    assert [entry["event"] for entry in timeline] == ["CREATED", "ENQUEUED"]


@pytest.mark.asyncio
async def test_identical_submission_reuses_active_job() -> None:
    first = await _submit_notes()
    second = await _submit_notes(language="EN")
    assert second.existing is True
    assert second.job_id == first.job_id
    assert await _count(HydrationJob) == 1
    assert await _count(OutboxMessage) == 1


@pytest.mark.asyncio
async def test_difficulty_is_part_of_the_generation_key() -> None:
    plain = await submit_job(job_kind="questions", target_type="topic", target_id="T1", payload={"language": "en"})
    easy = await submit_job(
        job_kind="questions",
        target_type="topic",
        target_id="T1",
        payload={"language": "en", "difficulty": "easy"},
    )
    assert easy.existing is False
    assert easy.job_id != plain.job_id


@pytest.mark.asyncio
async def test_invalid_submissions_are_rejected_before_writing() -> None:
    with pytest.raises(ValidationError):
        await submit_job(job_kind="notes", target_type="subject", target_id="S1", payload={"language": "en"})
    with pytest.raises(ValidationError):
        await submit_job(job_kind="essay", target_type="topic", target_id="T1", payload={"language": "en"})
    with pytest.raises(ValidationError):
        await submit_job(job_kind="notes", target_type="topic", target_id=" ", payload={"language": "en"})
    with pytest.raises(ValidationError):
        await _submit_notes(unexpected="field")
    with pytest.raises(ValidationError, match="max_attempts"):
        await submit_job(
            job_kind="notes",
            target_type="topic",
            target_id="T1",
            payload={"language": "en"},
            max_attempts=0,
        )
    assert await _count(HydrationJob) == 0
    assert await _count(OutboxMessage) == 0


@pytest.mark.asyncio
async def test_cancel_flips_job_and_request() -> None:
    result = await _submit_notes()
    job = await cancel_job(result.job_id, actor_id="admin-1")
    assert job.status == HydrationStatus.CANCELLED

    async with SessionLocal() as session:
        request = await session.get(ExecutionRequest, result.request_id)
        audit = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == "JOB_CANCELLED"))
        ).scalar_one()
    assert request.status == HydrationStatus.CANCELLED
    assert audit.entity_id == result.job_id
    assert audit.actor_id == "admin-1"

    with pytest.raises(ConflictError):
        await cancel_job(result.job_id)


@pytest.mark.asyncio
async def test_cancelled_job_frees_the_generation_key() -> None:
    first = await _submit_notes()
    await cancel_job(first.job_id)
    second = await _submit_notes()
    assert second.existing is False
    assert second.job_id != first.job_id


@pytest.mark.asyncio
async def test_retry_reopens_cancelled_job_with_fresh_message() -> None:
    result = await _submit_notes()
    with pytest.raises(ConflictError):
        await retry_job(result.job_id)

    await cancel_job(result.job_id)
    job = await retry_job(result.job_id, actor_id="admin-1")
    assert job.status == HydrationStatus.PENDING
    assert job.completed_at is None
    assert await _count(OutboxMessage) == 2

    timeline = await get_timeline(result.job_id)
    assert [entry["event"] for entry in timeline] == ["CREATED", "ENQUEUED", "CANCELLED", "RETRY_CREATED"]


@pytest.mark.asyncio
async def test_retry_conflicts_when_key_is_taken_again() -> None:
    first = await _submit_notes()
    await cancel_job(first.job_id)
    await _submit_notes()
    with pytest.raises(ConflictError):
        await retry_job(first.job_id)


@pytest.mark.asyncio
async def test_unknown_job_is_not_found() -> None:
    with pytest.raises(NotFoundError):
        await get_job("missing")
    with pytest.raises(NotFoundError):
        await get_timeline("missing")
    with pytest.raises(NotFoundError):
        await cancel_job("missing")
