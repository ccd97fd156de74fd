from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from contentengine.apps.api.deps import get_db, require_admin
from contentengine.apps.api.response import success_response
from contentengine.core.errors import NotFoundError
from contentengine.domain.models import AuditEvent
from contentengine.persistence.repos import audit as audit_repo


router = APIRouter(prefix="/audit", tags=["audit"], dependencies=[Depends(require_admin)])


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    action: str
    outcome: str
    actor_type: str
    actor_id: str | None
    entity_type: str | None
    entity_id: str | None
    metadata_json: dict[str, Any] | None
    error_code: str | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _to_response(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        action=event.action,
        outcome=event.outcome,
        actor_type=event.actor_type,
        actor_id=event.actor_id,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        metadata_json=event.metadata_json,
        error_code=event.error_code,
    )


@router.get("/events")
async def list_audit_events(
    request: Request,
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    outcome: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> dict:
    events = await audit_repo.list_events(
        db,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        outcome=outcome,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        offset=offset,
        limit=limit + 1,
    )
    # Fetch one extra row to know whether another page exists.
    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit
    page = AuditEventsPage(items=[_to_response(event) for event in events], next_offset=next_offset)
    return success_response(request=request, data=page)


@router.get("/events/{event_id}")
async def get_audit_event(request: Request, event_id: int, db: AsyncSession = Depends(get_db)) -> dict:
    event = await audit_repo.get_event_by_id(db, event_id)
    if event is None:
        raise NotFoundError(f"Audit event {event_id} not found")
    return success_response(request=request, data=_to_response(event))
