from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.core.errors import ConflictError, NotFoundError, ValidationError
from contentengine.domain.jobs import (
    ANY_DIFFICULTY,
    TARGET_TYPE_BY_KIND,
    HydrationStatus,
    JobKind,
    TargetType,
    TimelineEvent,
    build_envelope,
    parse_job_payload,
)
from contentengine.domain.models import ExecutionRequest, HydrationJob, JobExecutionLog
from contentengine.persistence.db import SessionLocal
from contentengine.persistence.repos import jobs as jobs_repo
from contentengine.services import system_settings
from contentengine.services.audit import JOB_CANCELLED, RETRY_CREATED, record_event


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    job_id: str
    request_id: str
    existing: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_kind(job_kind: JobKind | str) -> JobKind:
    try:
        return JobKind(str(getattr(job_kind, "value", job_kind)).lower())
    except ValueError as exc:
        raise ValidationError(f"Unsupported job kind: {job_kind}") from exc


def _coerce_target_type(kind: JobKind, target_type: TargetType | str | None) -> TargetType:
    expected = TARGET_TYPE_BY_KIND[kind]
    if target_type is None:
        raise ValidationError("target_type is required")
    try:
        resolved = TargetType(str(getattr(target_type, "value", target_type)).lower())
    except ValueError as exc:
        raise ValidationError(f"Unsupported target type: {target_type}") from exc
    if resolved is not expected:
        raise ValidationError(f"{kind.value} jobs must target a {expected.value}, got {resolved.value}")
    return resolved


@dataclass(frozen=True)
class StagedJob:
    request: ExecutionRequest
    job: HydrationJob
    outbox_id: int


async def stage_job(
    session: AsyncSession,
    *,
    kind: JobKind,
    target_type: TargetType,
    target_id: str,
    parsed: Any,
    max_attempts: int,
    root_job_id: str | None = None,
    hierarchy_level: int | None = None,
) -> StagedJob:
    """Add the request, job, outbox message and first two timeline rows.

    Nothing is committed. The job flush raises ``IntegrityError`` when the
    active-key index already holds the same generation key; callers decide
    whether that is a conflict or a skip.
    """
    settings = get_settings()
    language = parsed.language.strip().lower()
    payload_json = parsed.model_dump(mode="json", exclude_none=True)
    request = ExecutionRequest(
        job_kind=kind.value,
        target_type=target_type.value,
        target_id=target_id,
        payload_json=payload_json,
        status=HydrationStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts,
    )
    session.add(request)
    await session.flush()
    job = HydrationJob(
        request_id=request.id,
        job_kind=kind.value,
        target_type=target_type.value,
        target_id=target_id,
        language=language,
        difficulty=parsed.difficulty or ANY_DIFFICULTY,
        board_id=parsed.board_id,
        grade_id=parsed.grade_id,
        subject_id=parsed.subject_id,
        chapter_id=parsed.chapter_id,
        topic_id=parsed.topic_id or (target_id if target_type is TargetType.TOPIC else None),
        payload_json=payload_json,
        status=HydrationStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts,
        root_job_id=root_job_id,
        hierarchy_level=hierarchy_level,
    )
    session.add(job)
    await session.flush()
    # Outbox row commits with the job; a job without a message would never run.
    message = jobs_repo.add_outbox_message(
        session,
        queue=settings.content_queue_name,
        payload=build_envelope(kind, job.id),
    )
    created_meta: dict[str, Any] = {"request_id": request.id, "job_kind": kind.value, "target_id": target_id}
    if root_job_id is not None:
        created_meta["root_job_id"] = root_job_id
    jobs_repo.add_log(
        session,
        job_id=job.id,
        event=TimelineEvent.CREATED,
        prev_status=None,
        new_status=HydrationStatus.PENDING,
        meta=created_meta,
    )
    jobs_repo.add_log(
        session,
        job_id=job.id,
        event=TimelineEvent.ENQUEUED,
        prev_status=HydrationStatus.PENDING,
        new_status=HydrationStatus.PENDING,
        meta={"queue": settings.content_queue_name},
    )
    await session.flush()
    return StagedJob(request=request, job=job, outbox_id=message.id)


async def submit_job(
    *,
    job_kind: JobKind | str,
    target_type: TargetType | str | None,
    target_id: str | None,
    payload: dict[str, Any] | None,
    max_attempts: int | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> SubmitResult:
    kind = _coerce_kind(job_kind)
    factory = session_factory or SessionLocal
    # Operator switches are checked before the payload so a paused system rejects everything.
    async with factory() as session:
        await system_settings.ensure_hydration_enabled(session, kind)

    # Validate the closed payload model at the boundary; downstream code trusts it.
    resolved_target_type = _coerce_target_type(kind, target_type)
    if not target_id or not str(target_id).strip():
        raise ValidationError("target_id is required")
    try:
        parsed = parse_job_payload(kind, payload or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {kind.value} payload: {exc.errors(include_url=False)}") from exc

    settings = get_settings()
    attempts_ceiling = settings.submission_default_max_attempts if max_attempts is None else int(max_attempts)
    if attempts_ceiling < 1:
        raise ValidationError("max_attempts must be >= 1")
    reuse_window = int(settings.submission_reuse_completed_window_s)
    completed_since = _utc_now() - timedelta(seconds=reuse_window) if reuse_window > 0 else None

    async with factory() as session:
        existing = await jobs_repo.find_reusable_job(
            session,
            job_kind=kind.value,
            target_id=str(target_id),
            language=parsed.language.strip().lower(),
            difficulty=parsed.difficulty or ANY_DIFFICULTY,
            completed_since=completed_since,
        )
        if existing is not None:
            logger.info("content_job_reused job_id=%s status=%s", existing.id, existing.status)
            return SubmitResult(job_id=existing.id, request_id=existing.request_id, existing=True)

        try:
            staged = await stage_job(
                session,
                kind=kind,
                target_type=resolved_target_type,
                target_id=str(target_id),
                parsed=parsed,
                max_attempts=attempts_ceiling,
            )
            await session.commit()
        except IntegrityError as exc:
            # The partial unique index rejects a concurrent submission for the same key.
            await session.rollback()
            raise ConflictError("A matching job was created concurrently; retry the submission") from exc
        logger.info(
            "content_job_submitted job_id=%s request_id=%s kind=%s target_id=%s outbox_id=%s",
            staged.job.id,
            staged.request.id,
            kind.value,
            target_id,
            staged.outbox_id,
        )
        return SubmitResult(job_id=staged.job.id, request_id=staged.request.id, existing=False)


async def get_job(job_id: str, *, session_factory: async_sessionmaker[AsyncSession] | None = None) -> HydrationJob:
    factory = session_factory or SessionLocal
    async with factory() as session:
        job = await jobs_repo.get_job(session, job_id)
    if job is None:
        raise NotFoundError(f"Hydration job {job_id} not found")
    return job


async def get_timeline(
    job_id: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> list[dict[str, Any]]:
    # Ordered view for admin timelines: event, status transition, metadata, time.
    factory = session_factory or SessionLocal
    async with factory() as session:
        if await jobs_repo.get_job(session, job_id) is None:
            raise NotFoundError(f"Hydration job {job_id} not found")
        entries: list[JobExecutionLog] = await jobs_repo.list_timeline(session, job_id)
    return [
        {
            "event": entry.event,
            "prev_status": entry.prev_status,
            "new_status": entry.new_status,
            "meta": entry.meta_json or {},
            "created_at": entry.created_at.isoformat(),
        }
        for entry in entries
    ]


async def cancel_job(
    job_id: str,
    *,
    actor_id: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> HydrationJob:
    # A status flip only; an in-flight hydrator finishes and its terminal write loses.
    factory = session_factory or SessionLocal
    async with factory() as session:
        job = await jobs_repo.get_job(session, job_id)
        if job is None:
            raise NotFoundError(f"Hydration job {job_id} not found")
        prev_status = job.status
        now = _utc_now()
        flipped = await jobs_repo.transition_job(
            session,
            job_id,
            from_statuses=HydrationStatus.ACTIVE,
            to_status=HydrationStatus.CANCELLED,
            completed_at=now,
        )
        if not flipped:
            await session.rollback()
            raise ConflictError(f"Job {job_id} is not cancellable from status {prev_status}")
        await jobs_repo.transition_request(
            session,
            job.request_id,
            from_statuses=HydrationStatus.ACTIVE,
            to_status=HydrationStatus.CANCELLED,
            completed_at=now,
        )
        jobs_repo.add_log(
            session,
            job_id=job_id,
            event=TimelineEvent.CANCELLED,
            prev_status=prev_status,
            new_status=HydrationStatus.CANCELLED,
            meta={"actor_id": actor_id},
        )
        await record_event(
            session=session,
            action=JOB_CANCELLED,
            actor_type="admin" if actor_id else "system",
            actor_id=actor_id,
            entity_type="hydration_job",
            entity_id=job_id,
            metadata={"prev_status": prev_status},
        )
        await session.commit()
        await session.refresh(job)
        logger.info("content_job_cancelled job_id=%s prev_status=%s", job_id, prev_status)
        return job


async def retry_job(
    job_id: str,
    *,
    actor_id: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> HydrationJob:
    # Manual retry re-opens a failed/cancelled job and writes a fresh outbox message.
    settings = get_settings()
    factory = session_factory or SessionLocal
    async with factory() as session:
        job = await jobs_repo.get_job(session, job_id)
        if job is None:
            raise NotFoundError(f"Hydration job {job_id} not found")
        if job.attempts >= job.max_attempts:
            raise ConflictError(f"Job {job_id} exhausted {job.max_attempts} attempts")
        prev_status = job.status
        try:
            reopened = await jobs_repo.transition_job(
                session,
                job_id,
                from_statuses=[HydrationStatus.FAILED, HydrationStatus.CANCELLED],
                to_status=HydrationStatus.PENDING,
                completed_at=None,
                locked_by=None,
                locked_at=None,
            )
        except IntegrityError as exc:
            # Another in-flight job already holds the same generation key.
            await session.rollback()
            raise ConflictError(f"An active job for the same target exists; cannot retry {job_id}") from exc
        if not reopened:
            await session.rollback()
            raise ConflictError(f"Job {job_id} is not retryable from status {prev_status}")
        await jobs_repo.transition_request(
            session,
            job.request_id,
            from_statuses=[HydrationStatus.FAILED, HydrationStatus.CANCELLED, HydrationStatus.RUNNING],
            to_status=HydrationStatus.PENDING,
            completed_at=None,
        )
        jobs_repo.add_outbox_message(
            session,
            queue=settings.content_queue_name,
            payload=build_envelope(JobKind(job.job_kind), job_id),
        )
        jobs_repo.add_log(
            session,
            job_id=job_id,
            event=TimelineEvent.RETRY_CREATED,
            prev_status=prev_status,
            new_status=HydrationStatus.PENDING,
            meta={"actor_id": actor_id, "attempts": job.attempts},
        )
        await record_event(
            session=session,
            action=RETRY_CREATED,
            actor_type="admin" if actor_id else "system",
            actor_id=actor_id,
            entity_type="hydration_job",
            entity_id=job_id,
            metadata={"prev_status": prev_status, "attempts": job.attempts},
        )
        await session.commit()
        await session.refresh(job)
        logger.info("content_job_retry_created job_id=%s prev_status=%s", job_id, prev_status)
        return job
