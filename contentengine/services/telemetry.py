from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.domain.jobs import HydrationStatus
from contentengine.domain.models import HydrationJob, OutboxMessage, TelemetrySample
from contentengine.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

QUEUE_DEPTH_KEY = "queue.depth.value"
JOBS_FAILED_KEY = "jobs.failed.count"

_counters: dict[str, int] = defaultdict(int)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def increment_counter(name: str, value: int = 1) -> None:
    # In-process counters for worker-level visibility; persisted samples drive alerts.
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_counters() -> None:
    _counters.clear()


def dimension_hash(dimensions: dict[str, Any] | None) -> str:
    # Stable across key order so equal dimension sets share a series.
    canonical = json.dumps(dimensions or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def record_sample(
    session: AsyncSession,
    *,
    key: str,
    value: float,
    dimensions: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> TelemetrySample:
    sample = TelemetrySample(
        key=key,
        value=float(value),
        dimensions_json=dimensions or {},
        dimension_hash=dimension_hash(dimensions),
        timestamp=timestamp or _utc_now(),
    )
    session.add(sample)
    return sample


async def measure_queue_depth(session: AsyncSession) -> int:
    # Backlog = messages not yet relayed + jobs not yet claimed.
    unsent = await session.scalar(
        select(func.count()).select_from(OutboxMessage).where(OutboxMessage.sent_at.is_(None))
    )
    pending = await session.scalar(
        select(func.count()).select_from(HydrationJob).where(HydrationJob.status == HydrationStatus.PENDING)
    )
    return int(unsent or 0) + int(pending or 0)


async def measure_failed_jobs(session: AsyncSession, *, since: datetime) -> int:
    count = await session.scalar(
        select(func.count())
        .select_from(HydrationJob)
        .where(HydrationJob.status == HydrationStatus.FAILED, HydrationJob.updated_at >= since)
    )
    return int(count or 0)


async def sample_pipeline_metrics(
    *,
    now: datetime | None = None,
    window_s: int | None = None,
    queue_depth_reader: Callable[[], Awaitable[int | None]] | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, int]:
    # One sample per key per cycle; the alert evaluator reads these series.
    current = now or _utc_now()
    window = int(window_s or get_settings().telemetry_sample_interval_s)
    factory = session_factory or SessionLocal
    async with factory() as session:
        depth = await queue_depth_reader() if queue_depth_reader is not None else None
        if depth is None:
            depth = await measure_queue_depth(session)
        failed = await measure_failed_jobs(session, since=current - timedelta(seconds=window))
        record_sample(session, key=QUEUE_DEPTH_KEY, value=depth, timestamp=current)
        record_sample(session, key=JOBS_FAILED_KEY, value=failed, timestamp=current)
        await session.commit()
    logger.info("telemetry_sampled queue_depth=%s failed_jobs=%s", depth, failed)
    return {QUEUE_DEPTH_KEY: depth, JOBS_FAILED_KEY: failed}


async def arq_queue_depth(redis_url: str | None = None) -> int | None:
    # None signals Redis is unreachable; callers fall back to the relational backlog.
    settings = get_settings()
    client = Redis.from_url(redis_url or settings.redis_url)
    try:
        # arq keeps queued job ids in a sorted set named after the queue.
        return int(await client.zcard(settings.content_queue_name))
    except Exception:  # noqa: BLE001 - telemetry degrades instead of failing the sampler
        logger.warning("telemetry_queue_depth_unavailable queue=%s", settings.content_queue_name)
        return None
    finally:
        await client.aclose()


async def sample_pipeline_metrics_with_queue() -> dict[str, int]:
    return await sample_pipeline_metrics(queue_depth_reader=arq_queue_depth)
