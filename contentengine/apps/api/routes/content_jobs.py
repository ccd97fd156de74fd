from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from contentengine.apps.api.deps import get_actor_id, require_admin
from contentengine.apps.api.response import success_response
from contentengine.domain.models import HydrationJob
from contentengine.services import submission


router = APIRouter(prefix="/content-jobs", tags=["content-jobs"], dependencies=[Depends(require_admin)])


class SubmitContentJobRequest(BaseModel):
    job_kind: str
    target_type: str
    target_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int | None = Field(default=None, ge=1, le=20)


class SubmitContentJobResponse(BaseModel):
    job_id: str
    request_id: str
    existing: bool


class ContentJobResponse(BaseModel):
    id: str
    request_id: str
    job_kind: str
    target_type: str
    target_id: str
    language: str
    difficulty: str
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None
    created_at: str
    updated_at: str | None
    completed_at: str | None


def _to_response(job: HydrationJob) -> ContentJobResponse:
    return ContentJobResponse(
        id=job.id,
        request_id=job.request_id,
        job_kind=job.job_kind,
        target_type=job.target_type,
        target_id=job.target_id,
        language=job.language,
        difficulty=job.difficulty,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        last_error=job.last_error,
        created_at=job.created_at.isoformat(),
        updated_at=job.updated_at.isoformat() if job.updated_at else None,
        completed_at=job.completed_at.isoformat() if job.completed_at else None,
    )


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def submit_content_job(request: Request, body: SubmitContentJobRequest) -> dict:
    result = await submission.submit_job(
        job_kind=body.job_kind,
        target_type=body.target_type,
        target_id=body.target_id,
        payload=body.payload,
        max_attempts=body.max_attempts,
    )
    payload = SubmitContentJobResponse(job_id=result.job_id, request_id=result.request_id, existing=result.existing)
    return success_response(request=request, data=payload)


@router.get("/{job_id}")
async def get_content_job(request: Request, job_id: str) -> dict:
    job = await submission.get_job(job_id)
    return success_response(request=request, data=_to_response(job))


@router.get("/{job_id}/timeline")
async def get_content_job_timeline(request: Request, job_id: str) -> dict:
    entries = await submission.get_timeline(job_id)
    return success_response(request=request, data={"job_id": job_id, "items": entries})


@router.post("/{job_id}/cancel")
async def cancel_content_job(request: Request, job_id: str, actor_id: str | None = Depends(get_actor_id)) -> dict:
    job = await submission.cancel_job(job_id, actor_id=actor_id)
    return success_response(request=request, data=_to_response(job))


@router.post("/{job_id}/retry")
async def retry_content_job(request: Request, job_id: str, actor_id: str | None = Depends(get_actor_id)) -> dict:
    job = await submission.retry_job(job_id, actor_id=actor_id)
    return success_response(request=request, data=_to_response(job))
