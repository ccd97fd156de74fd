from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.core.errors import ConflictError, HydrationDisabledError, NotFoundError, ValidationError
from contentengine.domain.jobs import (
    ANY_DIFFICULTY,
    CascadeStatus,
    HydrationStatus,
    JobKind,
    TargetType,
    TimelineEvent,
    parse_job_payload,
)
from contentengine.domain.models import GeneratedContent, HydrationJob
from contentengine.persistence.db import SessionLocal
from contentengine.persistence.repos import jobs as jobs_repo
from contentengine.services import system_settings
from contentengine.services.audit import HYDRATE_ALL_SUBMITTED, record_event
from contentengine.services.submission import stage_job


logger = logging.getLogger(__name__)

ROOT_LEVEL = 1
NOTES_LEVEL = 2
QUESTIONS_LEVEL = 3

_FAILED_CHILD_STATUSES = frozenset({HydrationStatus.FAILED, HydrationStatus.CANCELLED})


@dataclass(frozen=True)
class HydrateAllResult:
    root_job_id: str
    existing: bool


@dataclass(frozen=True)
class SyllabusTopic:
    chapter_id: str
    topic_id: str
    title: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def submit_hydrate_all(
    *,
    subject_id: str,
    language: str,
    difficulties: list[str] | None = None,
    board_id: str | None = None,
    grade_id: str | None = None,
    actor_id: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> HydrateAllResult:
    """Start a syllabus -> notes -> questions cascade for one subject.

    Only the syllabus root is created here. The reconciler adds each later
    level once the previous one is terminal.
    """
    if not subject_id or not subject_id.strip():
        raise ValidationError("subject_id is required")
    factory = session_factory or SessionLocal
    async with factory() as session:
        await system_settings.ensure_hydration_enabled(session, JobKind.SYLLABUS)
        try:
            parsed = parse_job_payload(
                JobKind.SYLLABUS,
                {
                    "language": language,
                    "subject_id": subject_id,
                    "board_id": board_id,
                    "grade_id": grade_id,
                    "difficulties": difficulties,
                },
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid hydrate-all request: {exc.errors(include_url=False)}") from exc

        existing = (
            await session.execute(
                select(HydrationJob)
                .where(
                    HydrationJob.hierarchy_level == ROOT_LEVEL,
                    HydrationJob.cascade_status == CascadeStatus.RUNNING,
                    HydrationJob.target_id == subject_id,
                    HydrationJob.language == parsed.language.strip().lower(),
                )
                .order_by(HydrationJob.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.info("hydrate_all_reused root_job_id=%s", existing.id)
            return HydrateAllResult(root_job_id=existing.id, existing=True)

        try:
            staged = await stage_job(
                session,
                kind=JobKind.SYLLABUS,
                target_type=TargetType.SUBJECT,
                target_id=subject_id,
                parsed=parsed,
                max_attempts=get_settings().submission_default_max_attempts,
                hierarchy_level=ROOT_LEVEL,
            )
        except IntegrityError as exc:
            await session.rollback()
            raise ConflictError(f"A syllabus job for subject {subject_id} is already in flight") from exc
        staged.job.cascade_status = CascadeStatus.RUNNING
        root_job_id = staged.job.id
        await record_event(
            session=session,
            action=HYDRATE_ALL_SUBMITTED,
            actor_type="admin" if actor_id else "system",
            actor_id=actor_id,
            entity_type="hydration_job",
            entity_id=root_job_id,
            metadata={"subject_id": subject_id, "language": parsed.language, "difficulties": difficulties},
        )
        await session.commit()
    logger.info("hydrate_all_submitted root_job_id=%s subject_id=%s", root_job_id, subject_id)
    return HydrateAllResult(root_job_id=root_job_id, existing=False)


def syllabus_topics(subject_id: str, content_json: dict[str, Any]) -> list[SyllabusTopic]:
    # Generated chapters rarely carry ids; positional ids keep reruns of the same syllabus stable.
    topics: list[SyllabusTopic] = []
    for chapter_index, chapter in enumerate(content_json.get("chapters") or [], start=1):
        if not isinstance(chapter, dict):
            continue
        chapter_id = str(chapter.get("id") or f"{subject_id}.ch{chapter_index}")
        for topic_index, topic in enumerate(chapter.get("topics") or [], start=1):
            if isinstance(topic, str):
                title, explicit_id = topic, None
            elif isinstance(topic, dict) and topic.get("title"):
                title, explicit_id = str(topic["title"]), topic.get("id")
            else:
                continue
            topics.append(
                SyllabusTopic(
                    chapter_id=chapter_id,
                    topic_id=str(explicit_id or f"{chapter_id}.t{topic_index}"),
                    title=title,
                )
            )
    return topics


async def _load_topics(session: AsyncSession, root: HydrationJob) -> list[SyllabusTopic] | None:
    content = (
        await session.execute(select(GeneratedContent).where(GeneratedContent.hydration_job_id == root.id))
    ).scalar_one_or_none()
    if content is None:
        return None
    return syllabus_topics(root.target_id, content.content_json or {})


async def _add_child(
    session: AsyncSession,
    root: HydrationJob,
    *,
    kind: JobKind,
    level: int,
    topic: SyllabusTopic,
    difficulty: str | None = None,
) -> bool:
    raw: dict[str, Any] = {
        "language": root.language,
        "board_id": root.board_id,
        "grade_id": root.grade_id,
        "subject_id": root.target_id,
        "chapter_id": topic.chapter_id,
        "topic_id": topic.topic_id,
        "topic_name": topic.title,
    }
    if difficulty is not None:
        raw["difficulty"] = difficulty
    parsed = parse_job_payload(kind, raw)
    # A standalone job already running for the same key is adopted instead of duplicated.
    active = await jobs_repo.find_reusable_job(
        session,
        job_kind=kind.value,
        target_id=topic.topic_id,
        language=root.language,
        difficulty=difficulty or ANY_DIFFICULTY,
        completed_since=None,
    )
    if active is not None:
        if active.root_job_id not in (None, root.id):
            logger.warning(
                "hydrate_all_child_owned_elsewhere root_job_id=%s job_id=%s owner=%s",
                root.id,
                active.id,
                active.root_job_id,
            )
            return False
        active.root_job_id = root.id
        active.hierarchy_level = level
        return True
    await stage_job(
        session,
        kind=kind,
        target_type=TargetType.TOPIC,
        target_id=topic.topic_id,
        parsed=parsed,
        max_attempts=root.max_attempts,
        root_job_id=root.id,
        hierarchy_level=level,
    )
    return True


async def _finalize(session: AsyncSession, root: HydrationJob, outcome: str, *, now: datetime, reason: str) -> None:
    root.cascade_status = outcome
    jobs_repo.add_log(
        session,
        job_id=root.id,
        event=TimelineEvent.CASCADE_FINALIZED,
        prev_status=root.status,
        new_status=root.status,
        meta={
            "cascade_status": outcome,
            "reason": reason,
            "notes_completed": root.notes_completed,
            "questions_completed": root.questions_completed,
            "finalized_at": now.isoformat(),
        },
    )
    logger.info("hydrate_all_finalized root_job_id=%s cascade_status=%s reason=%s", root.id, outcome, reason)


async def _advance_root(session: AsyncSession, root: HydrationJob, *, now: datetime) -> tuple[int, bool]:
    """Move one cascade forward by at most one level; returns (children_created, finalized)."""
    if root.status in _FAILED_CHILD_STATUSES:
        await _finalize(session, root, CascadeStatus.FAILED, now=now, reason=f"syllabus_{root.status}")
        return 0, True
    if root.status != HydrationStatus.COMPLETED:
        return 0, False

    topics = await _load_topics(session, root)
    if topics is None:
        await _finalize(session, root, CascadeStatus.FAILED, now=now, reason="syllabus_content_missing")
        return 0, True
    root.topics_expected = len(topics)
    if not topics:
        await _finalize(session, root, CascadeStatus.COMPLETED, now=now, reason="no_topics")
        return 0, True

    children = list(
        (await session.execute(select(HydrationJob).where(HydrationJob.root_job_id == root.id))).scalars()
    )
    notes = [child for child in children if child.hierarchy_level == NOTES_LEVEL]
    questions = [child for child in children if child.hierarchy_level == QUESTIONS_LEVEL]

    if not notes:
        try:
            await system_settings.ensure_hydration_enabled(session, JobKind.NOTES)
        except HydrationDisabledError as exc:
            logger.info("hydrate_all_level_paused root_job_id=%s switch=%s", root.id, exc.code)
            return 0, False
        created = 0
        for topic in topics:
            if await _add_child(session, root, kind=JobKind.NOTES, level=NOTES_LEVEL, topic=topic):
                created += 1
        root.notes_expected = created
        return created, False

    root.notes_expected = len(notes)
    root.notes_completed = sum(1 for child in notes if child.status == HydrationStatus.COMPLETED)
    if any(child.status in HydrationStatus.ACTIVE for child in notes):
        return 0, False

    if not questions:
        try:
            await system_settings.ensure_hydration_enabled(session, JobKind.QUESTIONS)
        except HydrationDisabledError as exc:
            logger.info("hydrate_all_level_paused root_job_id=%s switch=%s", root.id, exc.code)
            return 0, False
        difficulties = root.payload_json.get("difficulties") or get_settings().hydrate_all_default_difficulties
        created = 0
        for topic in topics:
            for difficulty in difficulties:
                if await _add_child(
                    session,
                    root,
                    kind=JobKind.QUESTIONS,
                    level=QUESTIONS_LEVEL,
                    topic=topic,
                    difficulty=difficulty,
                ):
                    created += 1
        root.questions_expected = created
        if created:
            return created, False

    root.questions_expected = len(questions)
    root.questions_completed = sum(1 for child in questions if child.status == HydrationStatus.COMPLETED)
    if any(child.status in HydrationStatus.ACTIVE for child in questions):
        return 0, False

    failed_children = [child.id for child in children if child.status in _FAILED_CHILD_STATUSES]
    if failed_children:
        await _finalize(session, root, CascadeStatus.FAILED, now=now, reason=f"{len(failed_children)}_children_failed")
    else:
        await _finalize(session, root, CascadeStatus.COMPLETED, now=now, reason="all_levels_completed")
    return 0, True


async def advance_cascades(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    current = now or _utc_now()
    root_ids = list(
        (
            await session.execute(
                select(HydrationJob.id)
                .where(HydrationJob.cascade_status == CascadeStatus.RUNNING)
                .order_by(HydrationJob.created_at)
            )
        ).scalars()
    )
    children_created = 0
    finalized = 0
    for root_id in root_ids:
        root = await session.get(HydrationJob, root_id)
        if root is None:
            continue
        try:
            created, done = await _advance_root(session, root, now=current)
            await session.commit()
        except IntegrityError:
            # A concurrent submission took a child key; the next pass adopts it.
            await session.rollback()
            logger.warning("hydrate_all_advance_conflict root_job_id=%s", root_id, exc_info=True)
            continue
        children_created += created
        finalized += int(done)
    return {"cascade_children_created": children_created, "cascades_finalized": finalized}


async def get_cascade_progress(
    root_job_id: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    factory = session_factory or SessionLocal
    async with factory() as session:
        root = await session.get(HydrationJob, root_job_id)
        if root is None or root.hierarchy_level != ROOT_LEVEL or root.cascade_status is None:
            raise NotFoundError(f"Hydrate-all root {root_job_id} not found")
        children = list(
            (await session.execute(select(HydrationJob).where(HydrationJob.root_job_id == root_job_id))).scalars()
        )
    by_level: dict[int, dict[str, int]] = {}
    for child in children:
        counts = by_level.setdefault(int(child.hierarchy_level or 0), {})
        counts[child.status] = counts.get(child.status, 0) + 1
    return {
        "root_job_id": root.id,
        "subject_id": root.target_id,
        "language": root.language,
        "syllabus_status": root.status,
        "cascade_status": root.cascade_status,
        "topics_expected": root.topics_expected,
        "notes_expected": root.notes_expected,
        "notes_completed": root.notes_completed,
        "questions_expected": root.questions_expected,
        "questions_completed": root.questions_completed,
        "levels": {str(level): counts for level, counts in sorted(by_level.items())},
    }
