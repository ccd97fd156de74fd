from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import get_args

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.errors import (
    CandidateAlreadyApprovedError,
    CandidateAlreadyRejectedError,
    CandidateNotFoundError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from contentengine.domain.jobs import CandidateStatus, PromotionScope
from contentengine.domain.models import PromotionCandidate, PublishedOutput, RegenerationOutput
from contentengine.persistence.db import SessionLocal
from contentengine.services.audit import PROMOTION_APPROVED, PROMOTION_REJECTED, record_event


logger = logging.getLogger(__name__)

_SCOPES = set(get_args(PromotionScope))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_candidate(
    *,
    output_id: str,
    scope: str,
    scope_ref_id: str,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> PromotionCandidate:
    if scope not in _SCOPES:
        raise ValidationError(f"Unsupported promotion scope: {scope}")
    if not scope_ref_id:
        raise ValidationError("scope_ref_id is required")
    factory = session_factory or SessionLocal
    async with factory() as session:
        if await session.get(RegenerationOutput, output_id) is None:
            raise NotFoundError(f"Regeneration output {output_id} not found")
        candidate = PromotionCandidate(
            output_id=output_id,
            scope=scope,
            scope_ref_id=scope_ref_id,
            status=CandidateStatus.PENDING,
        )
        session.add(candidate)
        await session.commit()
    logger.info("promotion_candidate_created candidate_id=%s scope=%s", candidate.id, scope)
    return candidate


async def _load_pending(session: AsyncSession, candidate_id: str) -> PromotionCandidate:
    candidate = await session.get(PromotionCandidate, candidate_id)
    if candidate is None:
        raise CandidateNotFoundError(f"Promotion candidate {candidate_id} not found")
    if candidate.status == CandidateStatus.APPROVED:
        raise CandidateAlreadyApprovedError(f"Promotion candidate {candidate_id} is already approved")
    if candidate.status == CandidateStatus.REJECTED:
        raise CandidateAlreadyRejectedError(f"Promotion candidate {candidate_id} is already rejected")
    return candidate


async def _review(
    session: AsyncSession,
    candidate_id: str,
    *,
    status: str,
    actor_id: str | None,
    notes: str | None,
    now: datetime,
) -> None:
    # Gate on PENDING so two reviewers cannot both win.
    result = await session.execute(
        update(PromotionCandidate)
        .where(PromotionCandidate.id == candidate_id, PromotionCandidate.status == CandidateStatus.PENDING)
        .values(status=status, reviewer_id=actor_id, reviewed_at=now, review_notes=notes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f"Promotion candidate {candidate_id} was reviewed concurrently")


async def approve_candidate(
    candidate_id: str,
    *,
    actor_id: str | None,
    notes: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> PublishedOutput:
    """Publish a candidate's output, replacing whatever was live for its scope.

    The delete, insert, candidate flip and audit row share one transaction, so
    a scope never has zero or two live outputs as seen by other readers.
    """
    factory = session_factory or SessionLocal
    now = _utc_now()
    async with factory() as session:
        candidate = await _load_pending(session, candidate_id)
        scope, scope_ref_id = candidate.scope, candidate.scope_ref_id
        try:
            await session.execute(
                delete(PublishedOutput)
                .where(
                    PublishedOutput.scope == candidate.scope,
                    PublishedOutput.scope_ref_id == candidate.scope_ref_id,
                )
                .execution_options(synchronize_session=False)
            )
            published = PublishedOutput(
                scope=candidate.scope,
                scope_ref_id=candidate.scope_ref_id,
                candidate_id=candidate.id,
                output_id=candidate.output_id,
                approved_by=actor_id,
                approved_at=now,
            )
            session.add(published)
            await session.flush()
            await _review(
                session,
                candidate_id,
                status=CandidateStatus.APPROVED,
                actor_id=actor_id,
                notes=notes,
                now=now,
            )
        except IntegrityError as exc:
            await session.rollback()
            raise ConflictError(f"Scope {scope}:{scope_ref_id} was published concurrently") from exc
        except ConflictError:
            await session.rollback()
            raise
        await record_event(
            session=session,
            action=PROMOTION_APPROVED,
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            entity_type="promotion_candidate",
            entity_id=candidate.id,
            metadata={
                "scope": candidate.scope,
                "scope_ref_id": candidate.scope_ref_id,
                "output_id": candidate.output_id,
                "published_output_id": published.id,
            },
        )
        await session.commit()
    logger.info(
        "promotion_candidate_approved candidate_id=%s scope=%s scope_ref_id=%s",
        candidate_id,
        published.scope,
        published.scope_ref_id,
    )
    return published


async def reject_candidate(
    candidate_id: str,
    *,
    actor_id: str | None,
    notes: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> PromotionCandidate:
    factory = session_factory or SessionLocal
    now = _utc_now()
    async with factory() as session:
        candidate = await _load_pending(session, candidate_id)
        try:
            await _review(
                session,
                candidate_id,
                status=CandidateStatus.REJECTED,
                actor_id=actor_id,
                notes=notes,
                now=now,
            )
        except ConflictError:
            await session.rollback()
            raise
        await record_event(
            session=session,
            action=PROMOTION_REJECTED,
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            entity_type="promotion_candidate",
            entity_id=candidate.id,
            metadata={"scope": candidate.scope, "scope_ref_id": candidate.scope_ref_id, "notes": notes},
        )
        await session.commit()
        await session.refresh(candidate)
    logger.info("promotion_candidate_rejected candidate_id=%s", candidate_id)
    return candidate


async def get_published_output(
    scope: str,
    scope_ref_id: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> PublishedOutput | None:
    factory = session_factory or SessionLocal
    async with factory() as session:
        return (
            await session.execute(
                select(PublishedOutput).where(
                    PublishedOutput.scope == scope,
                    PublishedOutput.scope_ref_id == scope_ref_id,
                )
            )
        ).scalar_one_or_none()
