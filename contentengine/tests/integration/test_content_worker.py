from __future__ import annotations

import asyncio

import pytest
from arq import Retry
from sqlalchemy import func, select, update

from contentengine.core.errors import InfraError
from contentengine.domain.jobs import HydrationStatus, JobKind, build_envelope
from contentengine.domain.models import AuditEvent, GeneratedContent, HydrationJob
from contentengine.persistence.db import SessionLocal
from contentengine.services.hydrators.registry import build_registry
from contentengine.services.submission import cancel_job, get_timeline, submit_job
from contentengine.services.telemetry import counters_snapshot
from contentengine.tests.utils.fakes import StaticGenerator, notes_output, question_output
from contentengine.workers.content_worker import ContentJobProcessor


def _processor(generator: StaticGenerator, *, max_tries: int = 3) -> ContentJobProcessor:
    return ContentJobProcessor(
        SessionLocal,
        build_registry(generator, SessionLocal),
        worker_id="worker-test",
        max_tries=max_tries,
    )


async def _submit(kind: str = "notes", **payload) -> str:
    result = await submit_job(
        job_kind=kind,
        target_type="topic",
        target_id="T1",
        payload={"language": "en", **payload},
    )
    return result.job_id


async def _job(job_id: str) -> HydrationJob:
    async with SessionLocal() as session:
        return await session.get(HydrationJob, job_id)


async def _content_count(job_id: str) -> int:
    async with SessionLocal() as session:
        return int(
            await session.scalar(
                select(func.count()).select_from(GeneratedContent).where(GeneratedContent.hydration_job_id == job_id)
            )
            or 0
        )


@pytest.mark.asyncio
async def test_successful_hydration_persists_content_and_completes() -> None:
    job_id = await _submit()
    generator = StaticGenerator(notes_output())

    outcome = await _processor(generator).process(build_envelope(JobKind.NOTES, job_id))

    assert outcome == "completed"
    job = await _job(job_id)
    assert job.status == HydrationStatus.COMPLETED
    assert job.attempts == 1
    assert job.locked_by == "worker-test"
    assert job.completed_at is not None
    assert await _content_count(job_id) == 1
    assert generator.calls[0].language == "en"
    timeline = await get_timeline(job_id)
    assert [entry["event"] for entry in timeline] == ["CREATED", "ENQUEUED", "STARTED", "COMPLETED"]
    assert counters_snapshot()["jobs_completed_total"] == 1


@pytest.mark.asyncio
async def test_rejected_output_fails_without_retry() -> None:
    job_id = await _submit()
    generator = StaticGenerator(notes_output(summary="Content coming soon"))

    outcome = await _processor(generator).process(build_envelope(JobKind.NOTES, job_id))

    assert outcome == "failed"
    job = await _job(job_id)
    assert job.status == HydrationStatus.FAILED
    assert job.last_error.startswith("PlaceholderContentError")
    assert await _content_count(job_id) == 0
    timeline = await get_timeline(job_id)
    failed = timeline[-1]
    assert failed["event"] == "FAILED"
    assert failed["meta"]["error_code"] == "PLACEHOLDER_CONTENT"
    assert failed["meta"]["will_retry"] is False
    async with SessionLocal() as session:
        audit = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == "CONTENT_JOB_FAILED"))
        ).scalar_one()
    assert audit.outcome == "failure"
    assert audit.error_code == "PLACEHOLDER_CONTENT"


@pytest.mark.asyncio
async def test_infra_failure_is_retried_until_tries_run_out() -> None:
    job_id = await _submit()
    processor = _processor(StaticGenerator(error=InfraError("database unreachable")), max_tries=2)
    envelope = build_envelope(JobKind.NOTES, job_id)

    with pytest.raises(Retry):
        await processor.process(envelope, job_try=1)
    job = await _job(job_id)
    assert job.status == HydrationStatus.PENDING
    assert job.locked_by is None

    assert await processor.process(envelope, job_try=2) == "failed"
    job = await _job(job_id)
    assert job.status == HydrationStatus.FAILED
    assert job.attempts == 2


@pytest.mark.asyncio
async def test_duplicate_delivery_of_finished_job_is_noop() -> None:
    job_id = await _submit()
    generator = StaticGenerator(notes_output())
    processor = _processor(generator)
    envelope = build_envelope(JobKind.NOTES, job_id)

    assert await processor.process(envelope) == "completed"
    assert await processor.process(envelope) == "noop"
    assert len(generator.calls) == 1
    assert await _content_count(job_id) == 1


@pytest.mark.asyncio
async def test_cancel_during_generation_wins_over_completion() -> None:
    job_id = await _submit()

    async def cancel_mid_flight(context) -> None:  # noqa: ANN001
        await cancel_job(context.job_id, actor_id="admin-1")

    generator = StaticGenerator(notes_output(), hook=cancel_mid_flight)
    outcome = await _processor(generator).process(build_envelope(JobKind.NOTES, job_id))

    assert outcome == "superseded"
    job = await _job(job_id)
    assert job.status == HydrationStatus.CANCELLED
    assert await _content_count(job_id) == 0


@pytest.mark.asyncio
async def test_second_delivery_while_running_loses_the_claim() -> None:
    job_id = await _submit()
    envelope = build_envelope(JobKind.NOTES, job_id)
    nested: list[str] = []

    async def redeliver(context) -> None:  # noqa: ANN001
        nested.append(await _processor(StaticGenerator(notes_output())).process(envelope))

    outcome = await _processor(StaticGenerator(notes_output(), hook=redeliver)).process(envelope)

    assert nested == ["claim_lost"]
    assert outcome == "completed"
    job = await _job(job_id)
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_invalid_and_unknown_envelopes_are_ignored() -> None:
    processor = _processor(StaticGenerator(notes_output()))
    assert await processor.process({"type": "NOTES", "payload": {}}) == "invalid"
    assert await processor.process({"unexpected": True}) == "invalid"
    assert await processor.process(build_envelope(JobKind.NOTES, "missing")) == "noop"


@pytest.mark.asyncio
async def test_assemble_samples_existing_question_pool() -> None:
    questions_id = await _submit("questions")
    generator = StaticGenerator(question_output())
    assert await _processor(generator).process(build_envelope(JobKind.QUESTIONS, questions_id)) == "completed"

    assemble_id = await _submit("assemble", count=5)
    assert await _processor(generator).process(build_envelope(JobKind.ASSEMBLE, assemble_id)) == "completed"

    # The pool satisfied the request, so the generator was not called again.
    assert len(generator.calls) == 1
    timeline = await get_timeline(assemble_id)
    assert timeline[-1]["meta"]["source"] == "question_pool"
    async with SessionLocal() as session:
        content = (
            await session.execute(select(GeneratedContent).where(GeneratedContent.hydration_job_id == assemble_id))
        ).scalar_one()
    assert content.content_json["questions"] == question_output()["questions"]


@pytest.mark.asyncio
async def test_concurrent_deliveries_claim_the_job_once() -> None:
    job_id = await _submit()
    envelope = build_envelope(JobKind.NOTES, job_id)
    rival_done = asyncio.Event()

    async def wait_for_rival(context) -> None:  # noqa: ANN001
        # The winner stays inside generation until the other delivery has returned.
        await asyncio.wait_for(rival_done.wait(), timeout=5)

    generator = StaticGenerator(notes_output(), hook=wait_for_rival)

    async def deliver(worker_id: str) -> str:
        processor = ContentJobProcessor(SessionLocal, build_registry(generator, SessionLocal), worker_id=worker_id)
        outcome = await processor.process(envelope)
        if outcome != "completed":
            rival_done.set()
        return outcome

    outcomes = await asyncio.gather(deliver("worker-a"), deliver("worker-b"))

    assert sorted(outcomes) == ["claim_lost", "completed"]
    assert len(generator.calls) == 1
    job = await _job(job_id)
    assert job.status == HydrationStatus.COMPLETED
    assert job.attempts == 1
    assert await _content_count(job_id) == 1


@pytest.mark.asyncio
async def test_redelivery_to_job_owned_elsewhere_returns_claim_lost() -> None:
    job_id = await _submit()
    async with SessionLocal() as session:
        await session.execute(
            update(HydrationJob)
            .where(HydrationJob.id == job_id)
            .values(status=HydrationStatus.RUNNING, locked_by="other-worker", attempts=1)
        )
        await session.commit()
    generator = StaticGenerator(notes_output())

    outcome = await _processor(generator).process(build_envelope(JobKind.NOTES, job_id))

    assert outcome == "claim_lost"
    assert generator.calls == []
    job = await _job(job_id)
    assert job.status == HydrationStatus.RUNNING
    assert job.locked_by == "other-worker"
