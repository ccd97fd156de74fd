from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from contentengine.apps.api.deps import get_db, require_admin
from contentengine.apps.api.response import success_response
from contentengine.domain.models import SystemAlert
from contentengine.services.operability.alerts import list_active_alerts


router = APIRouter(prefix="/alerts", tags=["alerts"], dependencies=[Depends(require_admin)])


class AlertResponse(BaseModel):
    id: str
    type: str
    severity: str
    message: str
    payload: dict[str, Any] | None
    created_at: str
    last_seen: str


def _to_response(alert: SystemAlert) -> AlertResponse:
    return AlertResponse(
        id=alert.id,
        type=alert.type,
        severity=alert.severity,
        message=alert.message,
        payload=alert.payload_json,
        created_at=alert.created_at.isoformat(),
        last_seen=alert.last_seen.isoformat(),
    )


@router.get("")
async def get_active_alerts(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    alerts = await list_active_alerts(db)
    return success_response(request=request, data={"items": [_to_response(alert).model_dump() for alert in alerts]})
