from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from contentengine.core.config import get_settings
from contentengine.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_admin(authorization: str | None = Header(default=None)) -> None:
    # An empty configured token disables auth for local development.
    expected = get_settings().admin_api_token
    if not expected:
        return
    token = _parse_bearer_token(authorization)
    if token is None or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Missing or invalid bearer token")


async def get_actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id", max_length=128)) -> str | None:
    return x_actor_id.strip() if x_actor_id and x_actor_id.strip() else None
