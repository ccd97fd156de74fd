from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from contentengine.core.config import get_settings
from contentengine.core.errors import HydrationDisabledError, ValidationError
from contentengine.domain.jobs import JobKind
from contentengine.domain.models import SystemSetting
from contentengine.services.audit import SYSTEM_SETTING_UPDATED, record_event


logger = logging.getLogger(__name__)

HYDRATION_DISABLED = "HYDRATION_DISABLED"

_TRUTHY = {"1", "true", "yes", "on"}
_SETTING_KEY_MAX_LEN = 64


def kind_switch_key(kind: JobKind) -> str:
    # HYDRATION_DISABLED_NOTES, HYDRATION_DISABLED_SYLLABUS, ...
    return f"{HYDRATION_DISABLED}_{kind.value.upper()}"


def is_enabled(raw: str | None) -> bool:
    if raw is None:
        return False
    return raw.strip().lower() in _TRUTHY


async def get_setting(session: AsyncSession, key: str) -> str | None:
    row = await session.get(SystemSetting, key)
    return row.value if row is not None else None


async def list_settings(session: AsyncSession) -> list[SystemSetting]:
    result = await session.execute(select(SystemSetting).order_by(SystemSetting.key))
    return list(result.scalars().all())


async def set_setting(
    session: AsyncSession,
    key: str,
    value: str,
    *,
    actor_id: str | None = None,
) -> SystemSetting:
    normalized = key.strip().upper()
    if not normalized or len(normalized) > _SETTING_KEY_MAX_LEN:
        raise ValidationError("setting key must be 1-64 characters")
    row = await session.get(SystemSetting, normalized)
    previous = row.value if row is not None else None
    if row is None:
        row = SystemSetting(key=normalized, value=value, updated_by=actor_id)
        session.add(row)
    else:
        row.value = value
        row.updated_by = actor_id
    await record_event(
        session=session,
        action=SYSTEM_SETTING_UPDATED,
        actor_type="admin" if actor_id else "system",
        actor_id=actor_id,
        entity_type="system_setting",
        entity_id=normalized,
        metadata={"previous": previous, "value": value},
    )
    await session.commit()
    await session.refresh(row)
    logger.info("system_setting_updated key=%s value=%s actor_id=%s", normalized, value, actor_id)
    return row


async def ensure_hydration_enabled(session: AsyncSession, kind: JobKind) -> None:
    """Raise when either the global or the per-kind hydration switch is on.

    The environment default only covers the global switch; stored settings
    override it in both directions so operators can pause or resume at runtime.
    """
    settings = get_settings()
    stored = await get_setting(session, HYDRATION_DISABLED)
    globally_disabled = is_enabled(stored) if stored is not None else bool(settings.hydration_disabled)
    if globally_disabled:
        logger.warning("hydration_submission_blocked switch=%s kind=%s", HYDRATION_DISABLED, kind.value)
        raise HydrationDisabledError(HYDRATION_DISABLED)
    kind_key = kind_switch_key(kind)
    if is_enabled(await get_setting(session, kind_key)):
        logger.warning("hydration_submission_blocked switch=%s kind=%s", kind_key, kind.value)
        raise HydrationDisabledError(kind_key)
