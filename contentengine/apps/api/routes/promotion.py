from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from contentengine.apps.api.deps import get_actor_id, require_admin
from contentengine.apps.api.response import success_response
from contentengine.core.errors import NotFoundError
from contentengine.domain.jobs import PromotionScope
from contentengine.domain.models import PromotionCandidate, PublishedOutput
from contentengine.services import promotion


router = APIRouter(tags=["promotion"], dependencies=[Depends(require_admin)])


class CreateCandidateRequest(BaseModel):
    output_id: str = Field(min_length=1)
    scope: PromotionScope
    scope_ref_id: str = Field(min_length=1)


class ReviewRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class CandidateResponse(BaseModel):
    id: str
    output_id: str
    scope: str
    scope_ref_id: str
    status: str
    reviewer_id: str | None
    reviewed_at: str | None
    review_notes: str | None


class PublishedOutputResponse(BaseModel):
    id: str
    scope: str
    scope_ref_id: str
    candidate_id: str
    output_id: str
    approved_by: str | None
    approved_at: str


def _candidate_response(candidate: PromotionCandidate) -> CandidateResponse:
    return CandidateResponse(
        id=candidate.id,
        output_id=candidate.output_id,
        scope=candidate.scope,
        scope_ref_id=candidate.scope_ref_id,
        status=candidate.status,
        reviewer_id=candidate.reviewer_id,
        reviewed_at=candidate.reviewed_at.isoformat() if candidate.reviewed_at else None,
        review_notes=candidate.review_notes,
    )


def _published_response(published: PublishedOutput) -> PublishedOutputResponse:
    return PublishedOutputResponse(
        id=published.id,
        scope=published.scope,
        scope_ref_id=published.scope_ref_id,
        candidate_id=published.candidate_id,
        output_id=published.output_id,
        approved_by=published.approved_by,
        approved_at=published.approved_at.isoformat(),
    )


@router.post("/promotion-candidates", status_code=status.HTTP_201_CREATED)
async def create_candidate(request: Request, body: CreateCandidateRequest) -> dict:
    candidate = await promotion.create_candidate(
        output_id=body.output_id,
        scope=body.scope,
        scope_ref_id=body.scope_ref_id,
    )
    return success_response(request=request, data=_candidate_response(candidate))


@router.post("/promotion-candidates/{candidate_id}/approve")
async def approve_candidate(
    request: Request,
    candidate_id: str,
    body: ReviewRequest | None = None,
    actor_id: str | None = Depends(get_actor_id),
) -> dict:
    published = await promotion.approve_candidate(
        candidate_id,
        actor_id=actor_id,
        notes=body.notes if body else None,
    )
    return success_response(request=request, data=_published_response(published))


@router.post("/promotion-candidates/{candidate_id}/reject")
async def reject_candidate(
    request: Request,
    candidate_id: str,
    body: ReviewRequest | None = None,
    actor_id: str | None = Depends(get_actor_id),
) -> dict:
    candidate = await promotion.reject_candidate(
        candidate_id,
        actor_id=actor_id,
        notes=body.notes if body else None,
    )
    return success_response(request=request, data=_candidate_response(candidate))


@router.get("/published-outputs/{scope}/{scope_ref_id}")
async def get_published_output(request: Request, scope: PromotionScope, scope_ref_id: str) -> dict:
    published = await promotion.get_published_output(scope, scope_ref_id)
    if published is None:
        raise NotFoundError(f"No published output for {scope}:{scope_ref_id}")
    return success_response(request=request, data=_published_response(published))
