from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.config import get_settings
from contentengine.domain.jobs import RegenerationStatus
from contentengine.domain.models import RegenerationJob
from contentengine.persistence.db import SessionLocal
from contentengine.persistence.locks import AdvisoryLock
from contentengine.services.regeneration.executor import claim_regeneration_job, execute_claimed_job
from contentengine.services.regeneration.generator import LLMRegenerationGenerator, RegenerationGenerator


logger = logging.getLogger(__name__)

REGENERATION_RUNNER_LOCK = "regeneration_job_runner"


async def run_regeneration_batch(
    limit: int | None = None,
    *,
    lock: AdvisoryLock | None = None,
    generator: RegenerationGenerator | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    # Single-runner batch mode: the global lock serializes whole batches across processes.
    factory = session_factory or SessionLocal
    batch_limit = max(1, int(limit or get_settings().regeneration_batch_size))
    resolved_lock = lock or AdvisoryLock()
    resolved_generator = generator or LLMRegenerationGenerator()
    async with resolved_lock.hold(REGENERATION_RUNNER_LOCK) as acquired:
        if not acquired:
            logger.info("regeneration_batch_skipped reason=lock_unavailable")
            return {"skipped": True}

        async with factory() as session:
            candidate_ids = list(
                (
                    await session.execute(
                        select(RegenerationJob.id)
                        .where(RegenerationJob.status == RegenerationStatus.PENDING)
                        .order_by(RegenerationJob.created_at, RegenerationJob.id)
                        .limit(batch_limit)
                    )
                ).scalars()
            )

        summary: dict[str, Any] = {"skipped": False, "claimed": 0, "completed": 0, "failed": 0, "job_ids": []}
        for job_id in candidate_ids:
            # The lock does not cover the continuous worker, so claims stay conditional.
            job = await claim_regeneration_job(factory, job_id)
            if job is None:
                continue
            summary["claimed"] += 1
            summary["job_ids"].append(job_id)
            outcome = await execute_claimed_job(factory, resolved_generator, job)
            if outcome.status == RegenerationStatus.COMPLETED:
                summary["completed"] += 1
            elif outcome.status == RegenerationStatus.FAILED:
                summary["failed"] += 1
    logger.info(
        "regeneration_batch_finished claimed=%s completed=%s failed=%s",
        summary["claimed"],
        summary["completed"],
        summary["failed"],
    )
    return summary
