from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from contentengine.domain.models import AuditEvent
from contentengine.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

JOB_RUN = "JOB_RUN"
JOB_CANCELLED = "JOB_CANCELLED"
CONTENT_JOB_FAILED = "CONTENT_JOB_FAILED"
RETRY_CREATED = "RETRY_CREATED"
RETRY_INTENT_CREATED = "RETRY_INTENT_CREATED"
PROMOTION_APPROVED = "PROMOTION_APPROVED"
PROMOTION_REJECTED = "PROMOTION_REJECTED"
REGEN_JOB_STARTED = "REGEN_JOB_STARTED"
REGEN_JOB_COMPLETED = "REGEN_JOB_COMPLETED"
REGEN_JOB_FAILED = "REGEN_JOB_FAILED"
SUGGESTION_CREATED = "SUGGESTION_CREATED"
SYSTEM_SETTING_UPDATED = "SYSTEM_SETTING_UPDATED"
HYDRATE_ALL_SUBMITTED = "HYDRATE_ALL_SUBMITTED"

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def record_event(
    *,
    session: AsyncSession | None = None,
    action: str,
    actor_type: str = "system",
    actor_id: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    outcome: str = "success",
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner so pipeline flows never break on audit writes.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        action=action,
        outcome=outcome,
        actor_type=actor_type,
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                if not best_effort:
                    raise
                logger.warning(
                    "audit_event_write_failed action=%s entity_id=%s",
                    action,
                    entity_id,
                    exc_info=exc,
                )
        return

    # Inside a caller transaction the row commits (or rolls back) with the business change.
    resolved_commit = commit if commit is not None else False
    try:
        session.add(event)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed action=%s entity_id=%s",
            action,
            entity_id,
            exc_info=exc,
        )
