from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from contentengine.apps.api.deps import get_db
from contentengine.apps.api.response import success_response
from contentengine.services.telemetry import counters_snapshot


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    database: str
    counters: dict[str, int]


@router.get("/health")
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Degraded rather than failing so load balancers can tell DB trouble from a dead process.
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unreachable", exc_info=exc)
        database = "unreachable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload)
