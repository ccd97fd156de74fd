from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.domain.jobs import HydrationStatus
from contentengine.domain.models import HydrationJob
from contentengine.persistence.db import SessionLocal
from contentengine.services.operability.alerts import CRITICAL, WARNING, AlertDecision, apply_alert_decision


logger = logging.getLogger(__name__)

REDIS_DOWN = "REDIS_DOWN"
DB_DOWN = "DB_DOWN"
WORKER_STALE = "WORKER_STALE"
JOB_STUCK = "JOB_STUCK"

# One key per worker; TTL drops workers that died without cleaning up.
WORKER_HEARTBEAT_KEY = "contentengine:worker:heartbeat"
_HEARTBEAT_TTL_FACTOR = 10
_STUCK_SAMPLE_LIMIT = 20

HeartbeatReader = Callable[[], Awaitable[dict[str, datetime] | None]]
DatabaseCheck = Callable[[], Awaitable[bool]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def heartbeat_key(worker_id: str) -> str:
    return f"{WORKER_HEARTBEAT_KEY}:{worker_id}"


def heartbeat_ttl_s() -> int:
    return max(60, int(get_settings().worker_stale_after_s)) * _HEARTBEAT_TTL_FACTOR


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


def parse_heartbeats(keys: list[Any], values: list[Any]) -> dict[str, datetime]:
    prefix = f"{WORKER_HEARTBEAT_KEY}:"
    heartbeats: dict[str, datetime] = {}
    for raw_key, raw_value in zip(keys, values):
        key = _text(raw_key)
        if raw_value is None or not key.startswith(prefix):
            continue
        try:
            seen = datetime.fromisoformat(_text(raw_value))
        except ValueError:
            logger.warning("worker_heartbeat_unreadable key=%s", key)
            continue
        if seen.tzinfo is None:
            seen = seen.replace(tzinfo=timezone.utc)
        heartbeats[key[len(prefix):]] = seen
    return heartbeats


async def read_worker_heartbeats(redis_url: str | None = None) -> dict[str, datetime] | None:
    # None means Redis itself could not be read.
    client = Redis.from_url(redis_url or get_settings().redis_url)
    try:
        keys = [key async for key in client.scan_iter(match=f"{WORKER_HEARTBEAT_KEY}:*")]
        values = await client.mget(keys) if keys else []
    except Exception:  # noqa: BLE001 - reported as REDIS_DOWN
        logger.warning("watchdog_redis_unreachable", exc_info=True)
        return None
    finally:
        await client.aclose()
    return parse_heartbeats(keys, list(values))


async def _ping_database(factory: async_sessionmaker[AsyncSession]) -> bool:
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.error("watchdog_database_unreachable", exc_info=True)
        return False
    return True


def _redis_decision(reachable: bool) -> AlertDecision:
    if reachable:
        return AlertDecision(type=REDIS_DOWN, triggered=False)
    return AlertDecision(type=REDIS_DOWN, triggered=True, severity=CRITICAL, message="Redis is unreachable")


def _database_decision(reachable: bool) -> AlertDecision:
    if reachable:
        return AlertDecision(type=DB_DOWN, triggered=False)
    return AlertDecision(type=DB_DOWN, triggered=True, severity=CRITICAL, message="Database connectivity failure")


def _worker_decision(heartbeats: dict[str, datetime], *, now: datetime, stale_after_s: int) -> AlertDecision:
    ages = {worker_id: int((now - seen).total_seconds()) for worker_id, seen in heartbeats.items()}
    stale = sorted(worker_id for worker_id, age in ages.items() if age > stale_after_s)
    payload = {"workers": len(ages), "stale": stale, "stale_after_s": stale_after_s}
    if not ages:
        return AlertDecision(
            type=WORKER_STALE,
            triggered=True,
            severity=WARNING,
            message="No content worker heartbeats recorded",
            payload=payload,
        )
    if not stale:
        return AlertDecision(type=WORKER_STALE, triggered=False, payload=payload)
    return AlertDecision(
        type=WORKER_STALE,
        triggered=True,
        severity=WARNING,
        message=f"{len(stale)} worker(s) stale",
        payload={**payload, "ages_s": {worker_id: ages[worker_id] for worker_id in stale}},
    )


async def _stuck_job_decision(session: AsyncSession, *, now: datetime, stuck_after_s: int) -> AlertDecision:
    cutoff = now - timedelta(seconds=stuck_after_s)
    stuck_ids = list(
        (
            await session.execute(
                select(HydrationJob.id)
                .where(
                    HydrationJob.status == HydrationStatus.RUNNING,
                    HydrationJob.locked_at.is_not(None),
                    HydrationJob.locked_at < cutoff,
                )
                .order_by(HydrationJob.locked_at)
            )
        ).scalars()
    )
    payload = {"stuck_running": len(stuck_ids), "stuck_after_s": stuck_after_s}
    if not stuck_ids:
        return AlertDecision(type=JOB_STUCK, triggered=False, payload=payload)
    return AlertDecision(
        type=JOB_STUCK,
        triggered=True,
        severity=WARNING,
        message=f"{len(stuck_ids)} job(s) stuck",
        payload={**payload, "job_ids": stuck_ids[:_STUCK_SAMPLE_LIMIT]},
    )


async def run_watchdogs(
    *,
    now: datetime | None = None,
    heartbeat_reader: HeartbeatReader | None = None,
    database_check: DatabaseCheck | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, str]:
    """Raise or resolve dependency and liveness alerts.

    Worker staleness is only judged when Redis answered, and stuck jobs only
    when the database did; an unreachable dependency leaves those alerts as
    they were.
    """
    current = now or _utc_now()
    settings = get_settings()
    factory = session_factory or SessionLocal
    heartbeats = await (heartbeat_reader or read_worker_heartbeats)()
    database_ok = await (database_check or (lambda: _ping_database(factory)))()

    decisions = [_redis_decision(heartbeats is not None), _database_decision(database_ok)]
    if heartbeats is not None:
        decisions.append(
            _worker_decision(heartbeats, now=current, stale_after_s=int(settings.worker_stale_after_s))
        )

    results: dict[str, str] = {}
    async with factory() as session:
        if database_ok:
            decisions.append(
                await _stuck_job_decision(session, now=current, stuck_after_s=int(settings.job_stuck_after_s))
            )
        for decision in decisions:
            try:
                await apply_alert_decision(session, decision, now=current)
            except SQLAlchemyError:
                # Nowhere to record the alert; the log line is the signal.
                await session.rollback()
                logger.error("watchdog_alert_write_failed type=%s", decision.type, exc_info=True)
                decision.action = "none"
            if decision.action != "none":
                logger.info("watchdog_%s type=%s severity=%s", decision.action, decision.type, decision.severity)
            results[decision.type] = decision.action
    return results
