from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field

from contentengine.apps.api.deps import get_actor_id, require_admin
from contentengine.apps.api.response import success_response
from contentengine.domain.models import RegenerationJob, RetryIntent
from contentengine.services import retry_intents
from contentengine.services.regeneration import service as regeneration_service


router = APIRouter(tags=["regeneration"], dependencies=[Depends(require_admin)])


class CreateRegenerationJobRequest(BaseModel):
    suggestion_id: str | None = None
    target_type: str
    target_id: str = Field(min_length=1)
    instruction: dict[str, Any] = Field(default_factory=dict)


class RegenerationJobResponse(BaseModel):
    id: str
    suggestion_id: str | None
    target_type: str
    target_id: str
    status: str
    output_ref: str | None
    error: dict[str, Any] | None
    retry_intent_id: str | None
    retry_of_job_id: str | None
    created_at: str


class CreateRetryIntentRequest(BaseModel):
    reason_code: str
    reason_text: str | None = Field(default=None, max_length=2000)


class RetryIntentResponse(BaseModel):
    id: str
    source_job_id: str
    reason_code: str
    reason_text: str | None
    requested_by: str | None
    status: str
    executed_at: str | None


def _job_response(job: RegenerationJob) -> RegenerationJobResponse:
    error = dict(job.error_json) if job.error_json else None
    if error:
        # Stacks stay in the database for operators; clients get the message.
        error.pop("stack", None)
    return RegenerationJobResponse(
        id=job.id,
        suggestion_id=job.suggestion_id,
        target_type=job.target_type,
        target_id=job.target_id,
        status=job.status,
        output_ref=job.output_ref,
        error=error,
        retry_intent_id=job.retry_intent_id,
        retry_of_job_id=job.retry_of_job_id,
        created_at=job.created_at.isoformat(),
    )


def _intent_response(intent: RetryIntent) -> RetryIntentResponse:
    return RetryIntentResponse(
        id=intent.id,
        source_job_id=intent.source_job_id,
        reason_code=intent.reason_code,
        reason_text=intent.reason_text,
        requested_by=intent.requested_by,
        status=intent.status,
        executed_at=intent.executed_at.isoformat() if intent.executed_at else None,
    )


@router.post("/regeneration-jobs", status_code=status.HTTP_201_CREATED)
async def create_regeneration_job(
    request: Request,
    response: Response,
    body: CreateRegenerationJobRequest,
    actor_id: str | None = Depends(get_actor_id),
) -> dict:
    job, created = await regeneration_service.create_regeneration_job(
        suggestion_id=body.suggestion_id,
        target_type=body.target_type,
        target_id=body.target_id,
        instruction=body.instruction,
        actor_id=actor_id,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return success_response(request=request, data=_job_response(job))


@router.get("/regeneration-jobs/{job_id}")
async def get_regeneration_job(request: Request, job_id: str) -> dict:
    job = await regeneration_service.get_regeneration_job(job_id)
    return success_response(request=request, data=_job_response(job))


@router.post("/regeneration-jobs/{job_id}/retry-intents", status_code=status.HTTP_201_CREATED)
async def create_retry_intent(
    request: Request,
    job_id: str,
    body: CreateRetryIntentRequest,
    actor_id: str | None = Depends(get_actor_id),
) -> dict:
    intent = await retry_intents.create_retry_intent(
        source_job_id=job_id,
        reason_code=body.reason_code,
        reason_text=body.reason_text,
        requested_by=actor_id,
    )
    return success_response(request=request, data=_intent_response(intent))


@router.post("/retry-intents/{intent_id}/execute", status_code=status.HTTP_201_CREATED)
async def execute_retry_intent(
    request: Request,
    intent_id: str,
    actor_id: str | None = Depends(get_actor_id),
) -> dict:
    job = await retry_intents.create_retry_job_from_intent(intent_id, actor_id=actor_id)
    return success_response(request=request, data=_job_response(job))
