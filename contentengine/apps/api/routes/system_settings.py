from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from contentengine.apps.api.deps import get_actor_id, get_db, require_admin
from contentengine.apps.api.response import success_response
from contentengine.domain.models import SystemSetting
from contentengine.services import system_settings


router = APIRouter(prefix="/system-settings", tags=["system-settings"], dependencies=[Depends(require_admin)])


class UpdateSettingRequest(BaseModel):
    value: str = Field(max_length=256)


class SettingResponse(BaseModel):
    key: str
    value: str
    updated_by: str | None
    updated_at: str


def _to_response(row: SystemSetting) -> SettingResponse:
    return SettingResponse(
        key=row.key,
        value=row.value,
        updated_by=row.updated_by,
        updated_at=row.updated_at.isoformat(),
    )


@router.get("")
async def list_system_settings(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    rows = await system_settings.list_settings(db)
    return success_response(request=request, data={"items": [_to_response(row).model_dump() for row in rows]})


@router.put("/{key}")
async def update_system_setting(
    request: Request,
    key: str,
    body: UpdateSettingRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str | None = Depends(get_actor_id),
) -> dict:
    row = await system_settings.set_setting(db, key, body.value, actor_id=actor_id)
    return success_response(request=request, data=_to_response(row))
