from __future__ import annotations

import pytest
from sqlalchemy import select

from contentengine.core.config import get_settings
from contentengine.domain.jobs import HydrationStatus, JobKind
from contentengine.domain.models import GeneratedContent
from contentengine.persistence.db import SessionLocal
from contentengine.services.hydrators.base import LLMContentGenerator
from contentengine.services.hydrators.registry import build_registry
from contentengine.services.outbox import OutboxDispatcher
from contentengine.services.reconciler import reconcile_hydration
from contentengine.services.submission import get_job, get_timeline, submit_job
from contentengine.services.validation import ValidationContext, validate_or_throw
from contentengine.tests.utils.fakes import InMemoryPublisher
from contentengine.workers.content_worker import ContentJobProcessor


async def _relay_and_process(publisher: InMemoryPublisher, processor: ContentJobProcessor) -> list[str]:
    # Push every unsent outbox row, then consume what the queue received.
    await OutboxDispatcher(SessionLocal, publisher).dispatch_batch()
    outcomes = [await processor.process(payload) for _, payload, _ in publisher.published]
    publisher.published.clear()
    return outcomes


@pytest.mark.asyncio
async def test_notes_request_flows_from_submission_to_content() -> None:
    publisher = InMemoryPublisher()
    processor = ContentJobProcessor(
        SessionLocal,
        build_registry(LLMContentGenerator(), SessionLocal),
        worker_id="e2e-worker",
    )

    submitted = await submit_job(
        job_kind="notes",
        target_type="topic",
        target_id="T1",
        payload={"language": "en", "topic_name": "Photosynthesis"},
    )
    # Until the worker picks it up, an identical request joins the in-flight job.
    duplicate = await submit_job(
        job_kind="notes",
        target_type="topic",
        target_id="T1",
        payload={"language": "en", "topic_name": "Photosynthesis"},
    )
    assert duplicate.existing is True
    assert duplicate.job_id == submitted.job_id

    assert await _relay_and_process(publisher, processor) == ["completed"]

    job = await get_job(submitted.job_id)
    assert job.status == HydrationStatus.COMPLETED
    events = [entry["event"] for entry in await get_timeline(submitted.job_id)]
    assert events == ["CREATED", "ENQUEUED", "STARTED", "COMPLETED"]
    async with SessionLocal() as session:
        content = (
            await session.execute(
                select(GeneratedContent).where(GeneratedContent.hydration_job_id == submitted.job_id)
            )
        ).scalar_one()
    assert content.language == "en"
    assert "Photosynthesis" in content.content_json["title"]
    assert validate_or_throw(content.content_json, ValidationContext(job_kind=JobKind.NOTES, language="en"))

    await reconcile_hydration()
    again = await submit_job(job_kind="notes", target_type="topic", target_id="T1", payload={"language": "en"})
    assert again.existing is True
    assert again.job_id == submitted.job_id


@pytest.mark.asyncio
async def test_completed_job_is_regenerated_when_reuse_is_disabled(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(get_settings(), "submission_reuse_completed_window_s", 0)
    publisher = InMemoryPublisher()
    processor = ContentJobProcessor(
        SessionLocal,
        build_registry(LLMContentGenerator(), SessionLocal),
        worker_id="e2e-worker",
    )
    first = await submit_job(job_kind="notes", target_type="topic", target_id="T1", payload={"language": "en"})
    assert await _relay_and_process(publisher, processor) == ["completed"]

    again = await submit_job(job_kind="notes", target_type="topic", target_id="T1", payload={"language": "en"})
    assert again.existing is False
    assert again.job_id != first.job_id


@pytest.mark.asyncio
async def test_question_bank_feeds_assembled_set() -> None:
    publisher = InMemoryPublisher()
    processor = ContentJobProcessor(
        SessionLocal,
        build_registry(LLMContentGenerator(), SessionLocal),
        worker_id="e2e-worker",
    )
    await submit_job(
        job_kind="questions",
        target_type="topic",
        target_id="T1",
        payload={"language": "en", "difficulty": "easy"},
    )
    assert await _relay_and_process(publisher, processor) == ["completed"]

    assembled = await submit_job(
        job_kind="assemble",
        target_type="topic",
        target_id="T1",
        payload={"language": "en", "count": 3},
    )
    assert await _relay_and_process(publisher, processor) == ["completed"]

    timeline = await get_timeline(assembled.job_id)
    assert timeline[-1]["meta"]["source"] == "question_pool"
