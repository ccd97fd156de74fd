from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from contentengine.apps.api.deps import get_actor_id, require_admin
from contentengine.apps.api.response import success_response
from contentengine.services import cascade


router = APIRouter(prefix="/hydrate-all", tags=["hydrate-all"], dependencies=[Depends(require_admin)])


class HydrateAllRequest(BaseModel):
    subject_id: str = Field(min_length=1)
    language: str = Field(min_length=2)
    difficulties: list[Literal["easy", "medium", "hard"]] | None = Field(default=None, min_length=1)
    board_id: str | None = None
    grade_id: str | None = None


class HydrateAllResponse(BaseModel):
    root_job_id: str
    existing: bool


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def start_hydrate_all(
    request: Request,
    body: HydrateAllRequest,
    actor_id: str | None = Depends(get_actor_id),
) -> dict:
    result = await cascade.submit_hydrate_all(
        subject_id=body.subject_id,
        language=body.language,
        difficulties=body.difficulties,
        board_id=body.board_id,
        grade_id=body.grade_id,
        actor_id=actor_id,
    )
    return success_response(
        request=request,
        data=HydrateAllResponse(root_job_id=result.root_job_id, existing=result.existing),
    )


@router.get("/{root_job_id}")
async def get_hydrate_all_progress(request: Request, root_job_id: str) -> dict:
    progress = await cascade.get_cascade_progress(root_job_id)
    return success_response(request=request, data=progress)
